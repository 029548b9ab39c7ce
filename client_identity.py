"""
client_identity.py — Per-install client identifier for Travel Bingo.

The identifier is an opaque "{epochMillis}-{8 base36 chars}" token, generated
once and persisted in the local_settings table under CLIENT_ID_KEY.  It tags
generation requests so the backend can attribute usage; it is not a credential.

Resolve it once at startup and pass the value to GenerationClient:

    identity  = ClientIdentityProvider(SettingsStore())
    client_id = identity.resolve()
"""

import logging
import secrets
import threading
import time

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

import database
from errors import StorageOperationFailed, StorageUnavailable
from models import LocalSetting, db

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = 'bingo_client_id'

_BASE36 = '0123456789abcdefghijklmnopqrstuvwxyz'


def generate_client_id() -> str:
    """Return a fresh client id: epoch milliseconds plus 8 random base36 chars."""
    random_part = ''.join(secrets.choice(_BASE36) for _ in range(8))
    return f'{int(time.time() * 1000)}-{random_part}'


class SettingsStore:
    """Tiny key/value store on the local database."""

    def __init__(self, engine: Engine | None = None):
        self._engine = engine if engine is not None else database.engine
        self._ready = False

    def _ensure_table(self) -> None:
        if self._ready:
            return
        if self._engine is None:
            raise StorageUnavailable('No local database configured (PHOTO_DB_URL is empty)')
        try:
            db.metadata.create_all(self._engine, tables=[LocalSetting.__table__], checkfirst=True)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f'Local settings database unavailable: {exc}') from exc
        self._ready = True

    def get(self, key: str) -> str | None:
        self._ensure_table()
        try:
            with database.make_session_factory(self._engine)() as session:
                row = session.get(LocalSetting, key)
                return row.value if row is not None else None
        except SQLAlchemyError as exc:
            raise StorageOperationFailed(f'read {key!r}: {exc}') from exc

    def set(self, key: str, value: str) -> None:
        self._ensure_table()
        try:
            with database.make_session_factory(self._engine)() as session, session.begin():
                session.merge(LocalSetting(key=key, value=value))
        except SQLAlchemyError as exc:
            raise StorageOperationFailed(f'write {key!r}: {exc}') from exc


class ClientIdentityProvider:
    """Resolves the persisted client id, creating it the first time."""

    def __init__(self, settings: SettingsStore):
        self._settings = settings
        self._lock = threading.Lock()

    def resolve(self) -> str:
        with self._lock:
            existing = self._settings.get(CLIENT_ID_KEY)
            if existing:
                return existing
            client_id = generate_client_id()
            self._settings.set(CLIENT_ID_KEY, client_id)
            logger.info('Generated new client id %s', client_id)
            return client_id


def resolve_client_id(settings: SettingsStore | None = None) -> str:
    """
    Resolve the client id, falling back to a process-lifetime token when no
    local storage is available.
    """
    try:
        return ClientIdentityProvider(settings or SettingsStore()).resolve()
    except (StorageUnavailable, StorageOperationFailed) as exc:
        client_id = generate_client_id()
        logger.warning('Client id not persisted (%s); using ephemeral id %s', exc, client_id)
        return client_id
