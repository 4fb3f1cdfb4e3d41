from __future__ import annotations

import logging
from collections.abc import Generator, Iterable
from contextlib import contextmanager

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def _engine_kwargs(db_url: str) -> dict[str, object]:
    kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        kwargs.update(pool_recycle=1800, pool_size=5, max_overflow=10, pool_timeout=30)
    return kwargs


def install_sqlite_hooks(engine: Engine) -> None:
    """
    Per-connection setup for SQLite.

    Foreign keys are off by default and ON DELETE SET NULL/CASCADE depends on
    them. pysqlite also defers BEGIN, which breaks SAVEPOINT, so the driver's
    transaction handling is disabled and BEGIN is emitted explicitly.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-redef]
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # type: ignore[no-redef]
        conn.exec_driver_sql("BEGIN")


def build_engine(db_url: str) -> Engine:
    engine = create_engine(db_url, **_engine_kwargs(db_url))
    if db_url.startswith("sqlite"):
        install_sqlite_hooks(engine)
    return engine


def missing_tables(engine: Engine, required: Iterable[str]) -> list[str]:
    insp = inspect(engine)
    return [t for t in required if not insp.has_table(t)]


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"])
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        expire_on_commit=False,
    )


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers; closed at teardown.
    Handlers commit explicitly; services only flush.
    """
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        sm = (app or current_app).extensions["sqlalchemy_sessionmaker"]
        s = g.db_session = sm()
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        return
    g.db_session = None
    try:
        s.close()
    except Exception:
        logger.exception("Failed to close request DB session")


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Transaction outside a request (scripts, tests): commit on success,
    roll back and re-raise on error.
    """
    s: Session = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
