"""
SQLAlchemy ORM models for the Travel Bingo local store.

Two models:
  StoredPhoto   — a user-captured photo for one (city, item) pair
  LocalSetting  — small key/value settings persisted per install (client id)

Default database: SQLite (travel_bingo_photos.db).
Set PHOTO_DB_URL to point the store somewhere else.
"""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base


def _utcnow():
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


# db is kept as a module-level name so photo_store.py and client_identity.py
# can reference db.metadata for table creation.
db = declarative_base()


# ---------------------------------------------------------------------------
# StoredPhoto
# ---------------------------------------------------------------------------

class StoredPhoto(db):
    __tablename__ = 'user_photos'
    __table_args__ = (
        UniqueConstraint('city_id', 'item_id', name='uq_user_photos_city_item'),
    )

    id            = Column(String(255), primary_key=True)   # "{city_id}-{item_id}"
    city_id       = Column(String(100), nullable=False, index=True)
    item_id       = Column(String(150), nullable=False)
    photo_payload = Column(Text,        nullable=False)     # image data URL
    timestamp     = Column(BigInteger,  nullable=False)     # epoch milliseconds

    @staticmethod
    def key_for(city_id: str, item_id: str) -> str:
        return f'{city_id}-{item_id}'

    def to_dict(self):
        return {
            'id':            self.id,
            'city_id':       self.city_id,
            'item_id':       self.item_id,
            'photo_payload': self.photo_payload,
            'timestamp':     self.timestamp,
        }

    def __repr__(self):
        return f'<StoredPhoto {self.id!r} ts={self.timestamp}>'


# ---------------------------------------------------------------------------
# LocalSetting
# ---------------------------------------------------------------------------

class LocalSetting(db):
    __tablename__ = 'local_settings'

    key        = Column(String(100), primary_key=True)
    value      = Column(Text,        nullable=False)
    updated_at = Column(DateTime,    nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f'<LocalSetting {self.key!r}>'
