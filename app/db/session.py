from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def create_db_engine(database_url: str) -> Engine:
    """
    Build the process-wide engine. Created once at startup and disposed on shutdown.
    """
    if database_url.startswith("sqlite"):
        # SQLite is used for local development and tests; one connection per thread
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    # Configure connection pooling to prevent connection exhaustion
    return create_engine(
        database_url,
        pool_size=10,  # Number of connections to maintain persistently
        max_overflow=20,  # Maximum number of connections to create beyond pool_size
        pool_timeout=30,  # Seconds to wait before giving up on getting a connection
        pool_pre_ping=True,  # Verify connections before using them (handles stale connections)
        pool_recycle=3600,  # Recycle connections after 1 hour to prevent stale connections
        echo=False,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request):
    """Request-scoped session from the factory stored on app.state at startup."""
    db: Session = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
