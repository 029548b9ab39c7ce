"""
photo_store.py — Local photo store for Travel Bingo.

Maps (city_id, item_id) → photo payload (an image data URL) in the local
SQLite database.  Records are keyed by the synthetic id "{city_id}-{item_id}"
with a non-unique index on city_id for city-wide scans.

Failure policy
--------------
Photo capture is best-effort.  open() raises StorageUnavailable when no
database can be reached; every other public method catches storage errors,
logs them and returns False / None / 0 so callers never need a try block.

Concurrency
-----------
Each operation opens its own session and transaction.  No locking is layered
on top of the database's own isolation, except for the one-time schema
creation in open().

Usage
-----
    store = PhotoStore().open()
    store.save('paris', 'paris-1', 'data:image/jpeg;base64,...')
    store.get('paris', 'paris-1')
    store.delete_all_for_city('paris')
"""

import logging
import threading
import time

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

import database
from errors import StorageError, StorageOperationFailed, StorageUnavailable
from models import StoredPhoto, db

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _upsert(dialect_name: str, values: dict):
    """
    One INSERT ... ON CONFLICT DO UPDATE statement, so concurrent saves of a
    new key cannot both take the insert path.
    """
    if dialect_name == 'postgresql':
        stmt = postgresql_insert(StoredPhoto).values(**values)
    else:
        stmt = sqlite_insert(StoredPhoto).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=[StoredPhoto.id],
        set_={
            'photo_payload': stmt.excluded.photo_payload,
            'timestamp':     stmt.excluded.timestamp,
        },
    )


class PhotoStore:
    """Durable (city_id, item_id) → payload store with bulk city deletion."""

    def __init__(self, engine: Engine | None = None):
        self._engine = engine if engine is not None else database.engine
        self._session_factory = (
            database.make_session_factory(self._engine) if self._engine is not None else None
        )
        self._opened = False
        self._open_lock = threading.Lock()

    # ── Schema ────────────────────────────────────────────────────────────────

    def open(self) -> 'PhotoStore':
        """
        Ensure the photo table and its indexes exist.  Safe to call repeatedly
        and from several threads; the schema is created at most once per store.
        """
        if self._opened:
            return self
        with self._open_lock:
            if self._opened:
                return self
            if self._engine is None:
                raise StorageUnavailable('No local database configured (PHOTO_DB_URL is empty)')
            try:
                db.metadata.create_all(self._engine, tables=[StoredPhoto.__table__], checkfirst=True)
            except SQLAlchemyError as exc:
                raise StorageUnavailable(f'Local photo database unavailable: {exc}') from exc
            self._opened = True
            logger.info('Photo store ready (%s)', self._engine.url.render_as_string(hide_password=True))
        return self

    def _session(self):
        self.open()
        return self._session_factory()

    # ── Point operations ──────────────────────────────────────────────────────

    def save(self, city_id: str, item_id: str, payload: str) -> bool:
        """Upsert the photo for (city_id, item_id); the latest save wins."""
        key = StoredPhoto.key_for(city_id, item_id)
        values = {
            'id':            key,
            'city_id':       city_id,
            'item_id':       item_id,
            'photo_payload': payload,
            'timestamp':     _now_ms(),
        }
        try:
            with self._session() as session, session.begin():
                session.execute(_upsert(self._engine.dialect.name, values))
        except (StorageError, SQLAlchemyError) as exc:
            logger.error('Photo store: save failed for %s: %s', key, exc)
            return False
        logger.info('Photo store: saved photo for item %s in city %s', item_id, city_id)
        return True

    def get(self, city_id: str, item_id: str) -> str | None:
        """Return the stored payload, or None when there is none."""
        key = StoredPhoto.key_for(city_id, item_id)
        try:
            with self._session() as session:
                photo = session.get(StoredPhoto, key)
                return photo.photo_payload if photo is not None else None
        except (StorageError, SQLAlchemyError) as exc:
            logger.error('Photo store: read failed for %s: %s', key, exc)
            return None

    def delete(self, city_id: str, item_id: str) -> bool:
        """Remove one photo.  Deleting a photo that isn't there succeeds."""
        key = StoredPhoto.key_for(city_id, item_id)
        try:
            removed = self._delete_key(key)
        except (StorageError, SQLAlchemyError) as exc:
            logger.error('Photo store: delete failed for %s: %s', key, exc)
            return False
        if removed:
            logger.info('Photo store: deleted photo for item %s in city %s', item_id, city_id)
        return True

    def _delete_key(self, key: str) -> bool:
        """Delete one record in its own transaction; True if a row was removed."""
        with self._session() as session, session.begin():
            result = session.execute(delete(StoredPhoto).where(StoredPhoto.id == key))
            return result.rowcount > 0

    # ── City-wide operations ──────────────────────────────────────────────────

    def _keys_for_city(self, city_id: str) -> list[str]:
        with self._session() as session:
            return list(session.scalars(
                select(StoredPhoto.id).where(StoredPhoto.city_id == city_id)
            ))

    def delete_all_for_city(self, city_id: str) -> int:
        """
        Delete every photo stored under city_id and return how many were
        removed.  Keys are deleted one at a time; a failure on one key is
        logged and the rest are still attempted.
        """
        try:
            keys = self._keys_for_city(city_id)
        except (StorageError, SQLAlchemyError) as exc:
            logger.error('Photo store: could not scan photos for city %s: %s', city_id, exc)
            return 0

        deleted = 0
        for key in keys:
            try:
                if self._delete_key(key):
                    deleted += 1
            except (StorageError, SQLAlchemyError) as exc:
                failure = StorageOperationFailed(f'delete {key!r}: {exc}')
                logger.warning('Photo store: %s, continuing with remaining photos', failure)

        logger.info('Photo store: deleted %d/%d photo(s) for city %s', deleted, len(keys), city_id)
        return deleted

    def photos_for_city(self, city_id: str) -> dict[str, str]:
        """Return {item_id: payload} for every photo stored under city_id."""
        try:
            with self._session() as session:
                rows = session.execute(
                    select(StoredPhoto.item_id, StoredPhoto.photo_payload)
                    .where(StoredPhoto.city_id == city_id)
                )
                return {item_id: payload for item_id, payload in rows}
        except (StorageError, SQLAlchemyError) as exc:
            logger.error('Photo store: could not list photos for city %s: %s', city_id, exc)
            return {}

    def count_for_city(self, city_id: str) -> int:
        try:
            with self._session() as session:
                return session.scalar(
                    select(func.count()).select_from(StoredPhoto)
                    .where(StoredPhoto.city_id == city_id)
                ) or 0
        except (StorageError, SQLAlchemyError) as exc:
            logger.error('Photo store: could not count photos for city %s: %s', city_id, exc)
            return 0


# ── FastAPI dependency ────────────────────────────────────────────────────────

_default_store: PhotoStore | None = None


def get_photo_store() -> PhotoStore:
    """
    Return the process-wide store built on database.engine.

    Usage:
        from fastapi import Depends
        from photo_store import PhotoStore, get_photo_store

        async def my_route(store: PhotoStore = Depends(get_photo_store)):
            ...
    """
    global _default_store
    if _default_store is None:
        _default_store = PhotoStore()
    return _default_store
