"""Database package: SQLModel models, engine, and CRUD helpers.

Key modules:
    - base: ModelBase class for all table models
    - session: Database engine and session management
    - models: Manifest cache tables and CRUD functions
    - migrations: Alembic migration utilities
"""

from .base import ModelBase
from .session import engine, get_session, dispose_engine, DATABASE_URL
from .migrations import run_migrations, get_current_revision, check_migrations_status
from .models import *  # noqa: F401,F403
from .models import __all__ as _models_all

__all__ = [
    "ModelBase",
    "engine",
    "get_session",
    "dispose_engine",
    "DATABASE_URL",
    "run_migrations",
    "get_current_revision",
    "check_migrations_status",
] + list(_models_all)
