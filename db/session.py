from __future__ import annotations

import logging

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def _connect_args(database_url: str) -> dict:
    # Sessions are opened from FastAPI's worker threads.
    if make_url(database_url).get_backend_name() == "sqlite":
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db() -> None:
    """Bootstrap schema for environments without migrations."""
    from reservations.models import Base

    Base.metadata.create_all(bind=engine)


def validate_db_compatibility() -> None:
    """Compare the live schema with the mapped models.

    Every mapped table and column must exist; extra ones are ignored so the
    service can share a database with other components.
    """
    from reservations.models import Base

    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())

    problems: list[str] = []
    for table in Base.metadata.sorted_tables:
        if table.name not in existing_tables:
            problems.append(f"missing table {table.name}")
            continue
        existing_columns = {col["name"] for col in inspector.get_columns(table.name)}
        missing = sorted(col.name for col in table.columns if col.name not in existing_columns)
        if missing:
            problems.append(f"{table.name} missing columns [{', '.join(missing)}]")

    if problems:
        raise RuntimeError(
            f"Database compatibility check failed: {'; '.join(problems)}. "
            "Apply required migrations before starting the API."
        )
    logger.debug("Schema check passed for %s tables", len(Base.metadata.sorted_tables))
