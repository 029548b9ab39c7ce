"""
database.py — SQLAlchemy engine and session management for the local store.

Provides:
  make_engine(url)           — build an engine (SQLite gets WAL + thread sharing)
  make_session_factory(eng)  — sessionmaker bound to an engine
  engine / SessionLocal      — process-wide defaults built from PHOTO_DB_URL

The photo store and settings store each open a short-lived session per
operation; nothing holds a session across an await.

All SQLAlchemy calls remain synchronous. Use starlette.concurrency.run_in_threadpool
to call them from async route handlers without blocking the event loop.
"""

import os
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

# ── Database URL ──────────────────────────────────────────────────────────────
DEFAULT_DB_URL = 'sqlite:///travel_bingo_photos.db'

_db_url = os.getenv('PHOTO_DB_URL', DEFAULT_DB_URL).strip()


def make_engine(url: str) -> Engine:
    """
    Create an engine for the local store.

    SQLite connections are shared across the threadpool used by async routes,
    and every pooled connection is switched to WAL so a bulk city delete can
    run alongside point reads and writes for other keys.
    """
    connect_args: dict = {}
    if url.startswith('sqlite'):
        connect_args = {'timeout': 15, 'check_same_thread': False}

    eng = create_engine(url, connect_args=connect_args, pool_pre_ping=True)

    if url.startswith('sqlite'):
        @event.listens_for(eng, 'connect')
        def _set_sqlite_wal(dbapi_conn, _connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute('PRAGMA journal_mode=WAL')
            cursor.close()

    return eng


def make_session_factory(eng: Engine) -> sessionmaker:
    return sessionmaker(
        bind=eng,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,   # rows stay readable after the session closes
    )


# ── Process-wide defaults ─────────────────────────────────────────────────────
# An empty PHOTO_DB_URL disables local storage; PhotoStore.open() then raises
# StorageUnavailable.
engine = make_engine(_db_url) if _db_url else None
SessionLocal = make_session_factory(engine) if engine is not None else None
