"""Alembic migration utilities for automatic schema management.

run_migrations() is called from the application lifespan before the cache
store is used, so the schema always matches the models.
"""

from pathlib import Path
from loguru import logger
from alembic import command
from alembic.config import Config


def get_alembic_config() -> Config:
    """Create and configure an Alembic Config object.

    Returns:
        Config: Configured Alembic config pointing to the project's alembic.ini
    """
    project_root = Path(__file__).resolve().parents[2]
    alembic_ini = project_root / "alembic.ini"

    if not alembic_ini.exists():
        raise FileNotFoundError(
            f"alembic.ini not found at {alembic_ini}. "
            "Ensure Alembic is initialized properly."
        )

    alembic_cfg = Config(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
    alembic_cfg.set_main_option(
        "version_locations", str(project_root / "app" / "db" / "migrations" / "versions")
    )
    return alembic_cfg


def run_migrations() -> None:
    """Run all pending Alembic migrations to bring the database up to date.

    Safe to call repeatedly; nothing happens when no migrations are pending.

    Raises:
        Exception: If migration fails for any reason
    """
    try:
        logger.info("Running Alembic migrations...")
        alembic_cfg = get_alembic_config()
        command.upgrade(alembic_cfg, "head")
        logger.success("Alembic migrations completed successfully.")
    except Exception as e:
        logger.error(f"Failed to run Alembic migrations: {e}")
        raise


def get_current_revision() -> str:
    """Get the current database schema revision.

    Returns:
        str: The current revision id, or "base" if no migrations have been applied
    """
    try:
        from alembic.runtime.migration import MigrationContext
        from app.db.session import engine

        with engine.connect() as connection:
            context = MigrationContext.configure(connection)
            current = context.get_current_revision()
            return current if current else "base"
    except Exception as e:
        logger.warning(f"Failed to get current revision: {e}")
        return "unknown"


def check_migrations_status() -> dict:
    """Check the status of database migrations.

    Returns:
        dict: ``current_revision`` and the config file in use, or an ``error``.
    """
    try:
        alembic_cfg = get_alembic_config()
        current = get_current_revision()

        return {
            "current_revision": current,
            "config_location": alembic_cfg.config_file_name,
        }
    except Exception as e:
        logger.warning(f"Failed to check migration status: {e}")
        return {
            "current_revision": "unknown",
            "error": str(e),
        }


__all__ = [
    "run_migrations",
    "get_current_revision",
    "check_migrations_status",
    "get_alembic_config",
]
