"""
photos.py — Local photo store router for Travel Bingo (FastAPI)

Routes:
  PUT    /photos/{city_id}/{item_id}   — save (or replace) the photo for a tile
  GET    /photos/{city_id}/{item_id}   — fetch one photo (404 when absent)
  DELETE /photos/{city_id}/{item_id}   — delete one photo (absent is fine)
  GET    /photos/{city_id}             — all photos for a city, keyed by item id
  DELETE /photos/{city_id}             — delete every photo for a city (city reset)

Storage failures never surface as errors: a failed save answers
{'saved': false} and the caller simply carries on without the photo.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from starlette.concurrency import run_in_threadpool

from photo_store import PhotoStore, get_photo_store
from schemas import PhotoUpload

logger = logging.getLogger(__name__)

photos_router = APIRouter(prefix='/photos', tags=['photos'])


@photos_router.put('/{city_id}/{item_id}')
async def save_photo(
    city_id: str,
    item_id: str,
    body: PhotoUpload,
    store: PhotoStore = Depends(get_photo_store),
):
    """PUT /photos/{city_id}/{item_id} — last write wins."""
    saved = await run_in_threadpool(store.save, city_id, item_id, body.payload)
    return {'saved': saved}


@photos_router.get('/{city_id}/{item_id}')
async def get_photo(
    city_id: str,
    item_id: str,
    store: PhotoStore = Depends(get_photo_store),
):
    payload = await run_in_threadpool(store.get, city_id, item_id)
    if payload is None:
        raise HTTPException(status_code=404, detail='No photo for this item')
    return {'city_id': city_id, 'item_id': item_id, 'payload': payload}


@photos_router.delete('/{city_id}/{item_id}')
async def delete_photo(
    city_id: str,
    item_id: str,
    store: PhotoStore = Depends(get_photo_store),
):
    deleted = await run_in_threadpool(store.delete, city_id, item_id)
    return {'deleted': deleted}


@photos_router.get('/{city_id}')
async def list_city_photos(
    city_id: str,
    store: PhotoStore = Depends(get_photo_store),
):
    """GET /photos/{city_id} — {item_id: payload} for every stored photo."""
    photos = await run_in_threadpool(store.photos_for_city, city_id)
    return {'city_id': city_id, 'photos': photos}


@photos_router.delete('/{city_id}')
async def reset_city_photos(
    city_id: str,
    store: PhotoStore = Depends(get_photo_store),
):
    """DELETE /photos/{city_id} — used when a city's progress is reset."""
    deleted_count = await run_in_threadpool(store.delete_all_for_city, city_id)
    logger.info('City %s reset: %d photo(s) removed', city_id, deleted_count)
    return {'city_id': city_id, 'deleted_count': deleted_count}
