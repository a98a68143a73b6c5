"""
Engine and session wiring for the marketplace tables.

``DATABASE_URL`` selects the backend. In-memory SQLite shares one
connection across threads so tests and the CLI see the same tables.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from plugmarket.config import get_settings
from plugmarket.models.base import Base


def get_database_url() -> str:
    return get_settings().DATABASE_URL


def _enable_foreign_keys(dbapi_connection, _connection_record) -> None:  # pragma: no cover
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(database_url: Optional[str] = None, *, echo: bool = False) -> Engine:
    url = database_url or get_database_url()
    is_sqlite = url.startswith("sqlite")

    options: dict = {"echo": echo}
    if is_sqlite:
        options["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            options["poolclass"] = StaticPool
    else:
        options.update(pool_pre_ping=True, pool_recycle=3600)

    new_engine = create_engine(url, **options)
    if is_sqlite:
        event.listen(new_engine, "connect", _enable_foreign_keys)
    return new_engine


engine = create_db_engine()
SessionLocal = sessionmaker(
    bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
)


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Yield a session that commits on success and rolls back on any error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(*, create_tables: bool = False, bind_engine: Optional[Engine] = None) -> None:
    """
    Create the marketplace tables when ``create_tables`` is set.

    Under ``SCHEMA_MODE=migrations`` the schema is owned elsewhere; an empty
    database is reported instead of being populated.
    """
    if not create_tables:
        return

    target = bind_engine or engine
    if get_settings().SCHEMA_MODE == "migrations":
        if not inspect(target).get_table_names():
            raise RuntimeError(
                "SCHEMA_MODE=migrations: database has no tables; "
                "apply the marketplace schema before starting"
            )
        return

    from plugmarket.marketplace import models as _models  # noqa: F401  registers tables

    Base.metadata.create_all(bind=target, checkfirst=True)
