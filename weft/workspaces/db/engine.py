"""SQLAlchemy engine and session factory.

The default backend is an embedded SQLite file, one connection per CLI
invocation.  Any SQLAlchemy URL works.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Engine, event
from sqlalchemy import create_engine as sa_create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker


def create_engine(database_url: str, **kwargs: object) -> Engine:
    """Create a SQLAlchemy engine.

    For SQLite the parent directory of the database file is created, and
    foreign keys are switched on for every connection so ``ON DELETE``
    clauses behave as declared.  A generous ``timeout`` lets concurrent weft
    processes wait on each other's write locks instead of failing.

    All defaults can be overridden via *kwargs*.
    """
    url = make_url(database_url)
    defaults: dict[str, object] = {"echo": False}
    if url.get_backend_name() == "sqlite":
        defaults["connect_args"] = {"timeout": 30}
        if url.database and url.database != ":memory:":
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    defaults.update(kwargs)
    engine = sa_create_engine(url, **defaults)  # type: ignore[arg-type]

    if url.get_backend_name() == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:  # noqa: ANN001
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a session factory bound to *engine*.

    ``expire_on_commit=False`` so that ORM instances returned by managers
    stay readable after the manager commits.
    """
    return sessionmaker(engine, expire_on_commit=False)
