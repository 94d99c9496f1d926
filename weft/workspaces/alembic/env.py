"""Alembic migration environment.

Reads the database URL from WeftSettings (WEFT_DATABASE_URL, or the SQLite
default under ``data_root``).  Callers that already configured logging set
``config.attributes["configure_logger"] = False``.
"""

from __future__ import annotations

from logging.config import fileConfig
from typing import Any

from alembic import context

from weft.workspaces.db.engine import create_engine
from weft.workspaces.db.tables import Base
from weft.workspaces.settings import get_settings

# -- Alembic Config object ----------------------------------------------------
config = context.config
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name)

# -- Target metadata for autogenerate ----------------------------------------
target_metadata = Base.metadata


def get_url() -> str:
    """Return an explicitly passed URL, else the one from settings."""
    return config.attributes.get("database_url") or get_settings().resolve_database_url()


def include_object(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    """Filter objects for autogenerate.

    Excludes tables that exist in the database but are not defined in our
    models, preventing Alembic from generating DROP TABLE for foreign tables.
    """
    return not (type_ == "table" and reflected and compare_to is None)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Generates SQL scripts without connecting to the database.
    """
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        include_object=include_object,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode.

    Connects to the database and applies migrations directly.  Batch mode is
    on so ALTER-style migrations work on SQLite.
    """
    connectable = create_engine(get_url())

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            include_object=include_object,
            compare_type=True,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()

    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
