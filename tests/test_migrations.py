from sqlalchemy import create_engine, inspect

from app.main import run_migrations


def test_upgrade_head_creates_schema(tmp_path):
    url = f"sqlite:///{tmp_path / 'migrated.db'}"

    run_migrations(url)
    # A second run is a no-op
    run_migrations(url)

    engine = create_engine(url)
    try:
        inspector = inspect(engine)
        assert {"users", "payment_records", "usage_records", "alembic_version"} <= set(inspector.get_table_names())
        payment_indexes = inspector.get_indexes("payment_records")
        assert any(ix["unique"] and ix["column_names"] == ["external_payment_id"] for ix in payment_indexes)
    finally:
        engine.dispose()
