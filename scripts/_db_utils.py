from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.rdms.db import build_engine


def create_script_engine(db_url: str) -> Engine:
    """Same engine setup as the app (SQLite FK pragma included), without Flask."""
    return build_engine(db_url)


@contextmanager
def script_session(db_url: str):
    """Commit-or-rollback session for one-off scripts; disposes its engine."""
    engine = create_script_engine(db_url)
    s: Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
