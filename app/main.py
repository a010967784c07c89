"""
Unbannable backend API: post credits, payments and AI post tools for Reddit.
"""
from dotenv import load_dotenv
load_dotenv()

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from alembic import command
from alembic.config import Config
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import payments, posts, reddit, tools, users, webhooks
from app.core.config import Settings, get_settings
from app.core.errors import register_exception_handlers
from app.db.base import Base
from app.db.session import create_db_engine, create_session_factory
from app.dependencies.auth import JwksCache
# Import all models to ensure they're registered with Base
from app.models import PaymentRecord, UsageRecord, User  # noqa: F401
from app.services.dodo_client import DodoClient
from app.services.gemini_client import GeminiClient
from app.services.reddit_client import RedditClient

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True  # Override any existing configuration
)

logger = logging.getLogger(__name__)


def run_migrations(database_url: str) -> None:
    """Run Alembic migrations on startup. Uses alembic.ini and DATABASE_URL.
    Fails startup if migrations fail, so the DB is never left out of sync."""
    project_root = Path(__file__).resolve().parent.parent
    alembic_ini = project_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found, skipping Alembic migrations")
        return
    if not database_url:
        logger.error("DATABASE_URL is not set. Alembic migrations will not run.")
        return
    try:
        alembic_cfg = Config(str(alembic_ini))
        alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
        alembic_cfg.set_main_option("sqlalchemy.url", database_url)
        alembic_cfg.attributes["configure_logger"] = False
        command.upgrade(alembic_cfg, "head")
        logger.info("Alembic migrations completed successfully")
    except Exception as e:
        logger.exception("Alembic migration failed: %s", e)
        raise  # Fail startup so DB is not left out of sync; fix migration or env and redeploy


def build_clients(settings: Settings, injected: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    clients = dict(injected or {})
    factories = {
        "dodo": lambda: DodoClient(
            settings.DODO_API_KEY,
            settings.DODO_BASE_URL,
            timeout=settings.DODO_TIMEOUT_SECONDS,
        ),
        "gemini": lambda: GeminiClient(
            settings.GEMINI_API_KEY,
            settings.GEMINI_MODEL,
            base_url=settings.GEMINI_BASE_URL,
            timeout=settings.GEMINI_TIMEOUT_SECONDS,
        ),
        "reddit": lambda: RedditClient(
            settings.REDDIT_CLIENT_ID,
            settings.REDDIT_CLIENT_SECRET,
            settings.REDDIT_USER_AGENT,
        ),
    }
    for name, factory in factories.items():
        if name not in clients:
            clients[name] = factory()
    return clients


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the engine and HTTP clients once per process and hang them on app.state.
    Clients passed to create_app (tests) are used as given.
    """
    settings: Settings = app.state.settings

    if settings.RUN_MIGRATIONS:
        run_migrations(settings.DATABASE_URL)
    engine = create_db_engine(settings.DATABASE_URL)
    logger.info("Creating database tables (if missing)")
    Base.metadata.create_all(bind=engine)
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)

    clients = build_clients(settings, app.state.injected_clients)
    for name, client in clients.items():
        setattr(app.state, name, client)

    try:
        yield
    finally:
        for name, client in clients.items():
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()
        engine.dispose()
        logger.info("Shutdown complete")


def create_app(settings: Optional[Settings] = None, clients: Optional[Dict[str, Any]] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(title=f"{settings.APP_NAME} API", lifespan=lifespan)
    app.state.settings = settings
    app.state.injected_clients = clients
    app.state.jwks = JwksCache(settings.AUTH_JWKS_URL) if settings.AUTH_JWKS_URL else None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    # Register routers
    app.include_router(users.router, prefix="/users", tags=["Users"])
    app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
    app.include_router(payments.legacy_router, prefix="/api", tags=["Payments"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(posts.router, prefix="/api/posts", tags=["Posts"])
    app.include_router(tools.router, prefix="/api/tools", tags=["AI Tools"])
    app.include_router(reddit.router, prefix="/api/reddit", tags=["Reddit"])

    @app.get("/health", tags=["Health"])
    def health():
        return {"status": "ok"}

    return app


app = create_app()
