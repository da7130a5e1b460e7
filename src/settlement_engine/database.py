"""Database connection and session management."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


def build_engine(database_url: str, *, echo: bool = False) -> Engine:
    """Create a database engine for the given URL.

    SQLite engines are configured so every transaction starts with
    ``BEGIN IMMEDIATE``. This takes the database write lock up front, which is
    what serializes withdrawals on SQLite (PostgreSQL uses the balance guard
    row lock instead).
    """
    if database_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, **kwargs)
        install_sqlite_immediate_transactions(engine)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def install_sqlite_immediate_transactions(engine: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so it can be BEGIN IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory used by the engine, reconciler and API."""
    return sessionmaker(engine, expire_on_commit=False, autoflush=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Open a session, commit on success, roll back on error."""
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def create_schema(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    from settlement_engine.models import Base

    Base.metadata.create_all(engine)
