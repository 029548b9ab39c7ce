"""
Shared fixtures.

The local store is pointed at a throwaway SQLite file before any project
module is imported, and Redis is disabled so every store uses its
in-memory fallback.
"""

import os
import sys
import tempfile

_tmpdir = tempfile.mkdtemp(prefix='travel-bingo-tests-')
os.environ['PHOTO_DB_URL'] = f'sqlite:///{os.path.join(_tmpdir, "photos.db")}'
os.environ.pop('REDIS_URL', None)

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest  # noqa: E402

from database import make_engine  # noqa: E402
from schemas import BingoItem, City  # noqa: E402


@pytest.fixture
def sqlite_engine(tmp_path):
    eng = make_engine(f'sqlite:///{tmp_path / "store.db"}')
    yield eng
    eng.dispose()


@pytest.fixture(autouse=True)
def _clear_rate_limits():
    from rate_limit import reset_rate_limits
    reset_rate_limits()
    yield
    reset_rate_limits()


def make_item(item_id: str, image: str | None = 'https://img.example/x.png',
              description: str | None = 'A description.', **extra) -> BingoItem:
    return BingoItem(id=item_id, text=f'Tile {item_id}', image=image, description=description, **extra)


@pytest.fixture
def amsterdam() -> City:
    """25 tiles; three need images (one empty, one placeholder, one missing)."""
    items = [make_item(f'amsterdam-{n}') for n in range(1, 26)]
    items[2]  = make_item('amsterdam-3', image='')
    items[9]  = make_item('amsterdam-10', image='/api/placeholder-image?text=Canal')
    items[17] = make_item('amsterdam-18', image=None, description=None)
    return City(id='amsterdam', title='Amsterdam', items=items)


@pytest.fixture(autouse=True)
def _fresh_redis_resolution():
    from redis_client import reset_redis
    reset_redis()
    yield
    reset_redis()
