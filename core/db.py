"""
Database initialization and migration helpers.
"""

from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.config import Settings, logger


class DB:
    """Database state holder (avoids global scoping issues)."""

    engine = None
    SessionLocal = None


def _get_alembic_config(database_url: str):
    try:
        from alembic.config import Config
    except ImportError as exc:
        raise RuntimeError("Alembic is required for migrations") from exc

    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    alembic_cfg = Config(os.path.join(base_dir, "alembic.ini"))
    alembic_cfg.set_main_option("script_location", os.path.join(base_dir, "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    return alembic_cfg


def _get_schema_revisions(engine, database_url: str) -> tuple[Optional[str], Optional[str]]:
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    alembic_cfg = _get_alembic_config(database_url)
    script = ScriptDirectory.from_config(alembic_cfg)
    head_revision = script.get_current_head()
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        current_revision = context.get_current_revision()
    return current_revision, head_revision


def _ensure_schema_up_to_date(engine, settings: Settings) -> None:
    from alembic import command

    database_url = settings.resolved_database_url()
    current_rev, head_rev = _get_schema_revisions(engine, database_url)
    if current_rev == head_rev:
        return

    if settings.auto_migrate_on_startup:
        alembic_cfg = _get_alembic_config(database_url)
        command.upgrade(alembic_cfg, "head")
        new_current, _ = _get_schema_revisions(engine, database_url)
        if new_current != head_rev:
            raise RuntimeError("Database migration did not reach expected revision")
    else:
        raise RuntimeError(
            f"Database schema out of date (current={current_rev}, expected={head_rev}). "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true for dev."
        )


def init_db(settings: Settings) -> None:
    """Initialize database connection and bring the schema to head."""
    logger.info("Connecting to database...")
    engine_kwargs = {"pool_pre_ping": True}
    if settings.db_backend == "sqlite":
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    DB.engine = create_engine(settings.resolved_database_url(), **engine_kwargs)
    DB.SessionLocal = sessionmaker(bind=DB.engine)

    _ensure_schema_up_to_date(DB.engine, settings)

    logger.info("Database initialized")


def close_db() -> None:
    if DB.engine:
        DB.engine.dispose()
    DB.engine = None
    DB.SessionLocal = None
