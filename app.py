#!/usr/bin/env python3
"""
Travel Bingo Companion — Backend API (FastAPI, async)

- Admin generation flows run as background asyncio tasks and are polled via
  GET /jobs/{job_id} (progress 0-100, then an aggregate success/fail summary)
- Jobs can be cancelled between items / groups via POST /jobs/{job_id}/cancel
- httpx.AsyncClient talks to the generation backend (generation_client.py)
- The local photo store is exposed under /photos (photos.py)
- run_in_threadpool wraps synchronous SQLAlchemy calls
"""

import asyncio
import json
import logging
import os
import time
import uuid

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis import RedisError
from starlette.concurrency import run_in_threadpool

from admin_flows import (
    FLOW_FIX_MISSING_IMAGES,
    FLOW_GENERATE_ALL_IMAGES,
    FLOW_GENERATE_DESCRIPTIONS,
    completion_message,
    get_flow,
    run_flow,
    select_items,
)
from batch_runner import ProgressEvent, progress_percent
from city_state import CityStateCache
from client_identity import resolve_client_id
from errors import GenerationError, StorageUnavailable
from generation_client import GENERATION_API_URL, GenerationClient
from photo_store import PhotoStore, get_photo_store
from photos import photos_router
from rate_limit import check_client_rate_limit
from redis_client import get_redis, reset_redis
from schemas import BatchJobRequest, BatchOptions, City

# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

load_dotenv(os.path.join(os.path.dirname(__file__), '.env'))

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(title='Travel Bingo API', docs_url=None, redoc_url=None)

# ── CORS ─────────────────────────────────────────────────────────────────────
_cors_origins = [
    o.strip()
    for o in os.getenv(
        'CORS_ORIGINS', 'http://localhost:5000,http://127.0.0.1:5000'
    ).split(',')
    if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


# ── Security headers ──────────────────────────────────────────────────────────
@app.middleware('http')
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options']        = 'DENY'
    response.headers['Referrer-Policy']        = 'strict-origin-when-cross-origin'
    if os.getenv('APP_ENV') == 'production':
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    return response


# ── Map HTTPException → { "error": "..." } ────────────────────────────────────
# FastAPI's default shape is { "detail": "..." }; the admin panel expects "error".
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={'error': exc.detail})


# ── Router registration ───────────────────────────────────────────────────────
app.include_router(photos_router)

# ---------------------------------------------------------------------------
# Constants / state
# ---------------------------------------------------------------------------

JOB_TTL_SECONDS = 3600

_jobs: dict = {}                                   # job-state fallback when Redis is unreachable
_cancel_events: dict[str, asyncio.Event] = {}      # job_id -> cancel signal (this worker only)
_active_jobs: dict[tuple[str, str], str] = {}      # (city_id, flow) -> running job_id
_background_tasks: set = set()

_client_id: str | None = None
_generation_client: GenerationClient | None = None
_state_cache: CityStateCache | None = None

# ---------------------------------------------------------------------------
# Startup / shutdown
# ---------------------------------------------------------------------------

@app.on_event('startup')
async def startup():
    global _client_id, _generation_client, _state_cache

    # Identity is resolved once and passed explicitly into every request.
    _client_id = await run_in_threadpool(resolve_client_id)
    _generation_client = GenerationClient(GENERATION_API_URL, client_id=_client_id)
    _state_cache = CityStateCache(_generation_client)

    try:
        await run_in_threadpool(get_photo_store().open)
    except StorageUnavailable as exc:
        logger.warning('Photo store unavailable, photos will not be persisted: %s', exc)

    if get_redis() is not None:
        logger.info('Redis connected and ready (job store, state cache, rate limiter active)')
    else:
        logger.info('Redis unavailable, using in-memory fallbacks (set REDIS_URL to enable)')
    logger.info('Travel Bingo API ready: backend=%s client_id=%s', GENERATION_API_URL, _client_id)


@app.on_event('shutdown')
async def shutdown():
    if _generation_client is not None:
        await _generation_client.aclose()
    reset_redis()


# ---------------------------------------------------------------------------
# Job store helpers (Redis + in-memory fallback)
# ---------------------------------------------------------------------------

def _job_set(job_id: str, payload: dict) -> None:
    """Write (or overwrite) a job state record with a 1-hour TTL."""
    r = get_redis()
    if r is not None:
        try:
            r.setex(f'job:{job_id}', JOB_TTL_SECONDS, json.dumps(payload))
            return
        except RedisError as exc:
            logger.warning('Redis job SET error: %s', exc)
    _jobs[job_id] = {**payload, '_ts': time.time()}


def _job_get(job_id: str) -> dict | None:
    r = get_redis()
    if r is not None:
        try:
            raw = r.get(f'job:{job_id}')
            if raw is not None:
                return json.loads(raw)
        except RedisError as exc:
            logger.warning('Redis job GET error: %s', exc)
    entry = _jobs.get(job_id)
    if entry and (time.time() - entry.get('_ts', 0)) < JOB_TTL_SECONDS:
        return {k: v for k, v in entry.items() if k != '_ts'}
    return None


def _job_update(job_id: str, fields: dict) -> None:
    """Merge fields into an existing job record (read → modify → write)."""
    existing = _job_get(job_id) or {}
    existing.update(fields)
    _job_set(job_id, existing)


# ---------------------------------------------------------------------------
# Background flow task (asyncio.create_task — runs concurrently with requests)
# ---------------------------------------------------------------------------

async def _run_flow_background(job_id: str, flow_name: str, city: City, options: BatchOptions) -> None:
    """
    Run one admin flow and keep its job record current so any poller of
    GET /jobs/{job_id} sees progress and, at the end, the summary.
    """
    flow = get_flow(flow_name)
    base = {'flow': flow_name, 'city_id': city.id}
    try:
        total = len(select_items(flow_name, city))
        _job_update(job_id, {
            'status':  'running',
            'message': flow.start_message.format(count=total, city=city.title),
        })

        def _on_progress(event: ProgressEvent) -> None:
            _job_update(job_id, {
                'progress': event.percent,
                'message':  f'{event.completed}/{event.total} items processed',
            })

        summary = await run_flow(
            flow_name, city, _generation_client, options,
            refresh      = _state_cache.refresh,
            on_progress  = _on_progress,
            cancel_event = _cancel_events.get(job_id),
            label        = f'job={job_id[:8]} {flow_name}',
        )

        _job_set(job_id, {
            **base,
            'status':   'cancelled' if summary.cancelled else 'done',
            'progress': progress_percent(summary.attempted, summary.total),
            'message':  completion_message(flow_name, summary),
            'variant':  'destructive' if summary.fail_count else 'default',
            'results':  summary.to_dict(),
            'error':    None,
        })
        logger.info('Job %s %s: %d succeeded, %d failed',
                    job_id[:8], 'cancelled' if summary.cancelled else 'complete',
                    summary.success_count, summary.fail_count)

    except Exception as exc:
        logger.error('Job %s (%s for %s) failed: %s', job_id[:8], flow_name, city.id, exc, exc_info=True)
        _job_set(job_id, {
            **base,
            'status':   'failed',
            'progress': 0,
            'message':  'Failed',
            'results':  None,
            'error':    f'Failed to run {flow_name}. Please try again.',
        })

    finally:
        _cancel_events.pop(job_id, None)
        if _active_jobs.get((city.id, flow_name)) == job_id:
            del _active_jobs[(city.id, flow_name)]


# ---------------------------------------------------------------------------
# Route helpers
# ---------------------------------------------------------------------------

async def _load_city(city_id: str) -> City:
    try:
        city = await _state_cache.get_city(city_id)
    except GenerationError as exc:
        logger.error('Could not load bingo state: %s', exc)
        raise HTTPException(status_code=502, detail='Could not load bingo state from the generation backend')
    if city is None:
        raise HTTPException(status_code=404, detail=f'City {city_id} not found')
    return city


async def _enqueue_flow(flow_name: str, city_id: str, body: BatchJobRequest) -> dict:
    client_id = body.client_id or _client_id or 'anonymous'

    city    = await _load_city(city_id)
    flow    = get_flow(flow_name)
    options = body.apply_to(flow.defaults)
    total   = len(select_items(flow_name, city))

    # No await from here until the job is registered: the duplicate check and
    # the registration must not interleave with another request.
    key    = (city_id, flow_name)
    job_id = str(uuid.uuid4())
    running = _active_jobs.setdefault(key, job_id)
    if running != job_id:
        raise HTTPException(
            status_code=409,
            detail=f'A {flow_name} job is already running for {city_id} (job {running}).',
        )

    # Only requests that would start a job count against the limit
    allowed, retry_after = check_client_rate_limit(client_id, flow_name)
    if not allowed:
        del _active_jobs[key]
        logger.warning('Rate limit hit: client=%s %s retry_after=%ds', client_id, flow_name, retry_after)
        raise HTTPException(
            status_code=429,
            detail=f'Too many requests. Please wait {retry_after} seconds before trying again.',
        )

    _job_set(job_id, {
        'flow':     flow_name,
        'city_id':  city_id,
        'status':   'pending',
        'progress': 0,
        'message':  'Queued...',
        'results':  None,
        'error':    None,
    })
    _cancel_events[job_id] = asyncio.Event()

    # All flow work is async I/O, so other requests are served while it runs.
    task = asyncio.create_task(_run_flow_background(job_id, flow_name, city, options))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    logger.info('Job %s queued: %s for %s (%d items, client=%s)',
                job_id[:8], flow_name, city_id, total, client_id)
    return {'job_id': job_id, 'total': total}


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get('/health')
async def health():
    return {'status': 'ok', 'message': f'Travel Bingo API is running against {GENERATION_API_URL}'}


@app.get('/client-id')
async def client_id():
    return {'client_id': _client_id}


@app.get('/cities/{city_id}/status')
async def city_status(city_id: str, store: PhotoStore = Depends(get_photo_store)):
    """What the admin panel needs to decide which flow to offer for a city."""
    city = await _load_city(city_id)
    photo_count = await run_in_threadpool(store.count_for_city, city_id)
    return {
        'city_id':                    city.id,
        'title':                      city.title,
        'item_count':                 len(city.items),
        'completed_count':            sum(1 for i in city.items if i.completed),
        'items_needing_images':       [i.id for i in city.items_needing_images()],
        'items_needing_descriptions': [i.id for i in city.items_needing_descriptions()],
        'photo_count':                photo_count,
    }


@app.post('/admin/cities/{city_id}/fix-missing-images')
async def fix_missing_images(city_id: str, body: BatchJobRequest | None = None):
    """Regenerate, one at a time with retries, every image that is missing or a placeholder."""
    return await _enqueue_flow(FLOW_FIX_MISSING_IMAGES, city_id, body or BatchJobRequest())


@app.post('/admin/cities/{city_id}/generate-all-images')
async def generate_all_images(city_id: str, body: BatchJobRequest | None = None):
    """Regenerate every image for the city in concurrent groups."""
    return await _enqueue_flow(FLOW_GENERATE_ALL_IMAGES, city_id, body or BatchJobRequest())


@app.post('/admin/cities/{city_id}/generate-descriptions')
async def generate_descriptions(city_id: str, body: BatchJobRequest | None = None):
    """Generate descriptions for every tile that lacks one."""
    return await _enqueue_flow(FLOW_GENERATE_DESCRIPTIONS, city_id, body or BatchJobRequest())


@app.get('/jobs/{job_id}')
async def poll_job(job_id: str):
    """
    Poll the status of a background flow job.

    Returns:
        { status: 'pending'|'running'|'done'|'cancelled'|'failed',
          progress: 0–100,
          message:  str,
          flow, city_id,
          results:  {total, success_count, fail_count, cancelled, failed_ids} | null,
          error:    str | null }
    """
    job = _job_get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail='Job not found or expired.')
    return job


@app.post('/jobs/{job_id}/cancel')
async def cancel_job(job_id: str):
    """Stop a running job before its next item / group starts."""
    job = _job_get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail='Job not found or expired.')
    event = _cancel_events.get(job_id)
    if event is None:
        return {'job_id': job_id, 'cancelled': False, 'status': job.get('status')}
    event.set()
    _job_update(job_id, {'message': 'Cancelling...'})
    logger.info('Job %s: cancellation requested', job_id[:8])
    return {'job_id': job_id, 'cancelled': True, 'status': job.get('status')}
