"""Base SQLModel class and metadata for all database models.

The metadata from this base class is used by Alembic for migration generation.
"""

from sqlmodel import SQLModel
from sqlalchemy.orm import registry as sa_registry

# Private registry: tests re-import the app, and SQLModel's global default
# registry would otherwise warn about duplicate class names.
_registry = sa_registry()


class ModelBase(SQLModel, registry=_registry):  # type: ignore[call-arg]
    """Base class for all table models."""

    pass


__all__ = ["ModelBase"]
