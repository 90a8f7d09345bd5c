from __future__ import annotations

import os
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

DEFAULT_DATABASE_URL = "sqlite:///polimaks.db"


def script_database_url(explicit: str | None = None) -> str:
    """
    The URL scripts connect to: an explicit value, else DATABASE_URL, else the
    local SQLite file. Hosted Postgres often hands out `postgres://`, which
    SQLAlchemy no longer accepts.
    """
    url = (explicit or os.environ.get("DATABASE_URL") or DEFAULT_DATABASE_URL).strip()
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def create_script_engine(db_url: str):
    if db_url.startswith("sqlite"):
        engine = create_engine(db_url, future=True)

        @event.listens_for(engine, "connect")
        def _sqlite_fk_pragma(dbapi_connection, connection_record):  # type: ignore[no-redef]
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        return engine
    return create_engine(db_url, future=True, pool_pre_ping=True, pool_recycle=1800, pool_size=2, max_overflow=0)


@contextmanager
def script_session(db_url: str):
    """Commit on success, roll back on error; the engine is disposed either way."""
    engine = create_script_engine(db_url)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
