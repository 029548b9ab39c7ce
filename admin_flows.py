"""
admin_flows.py — Admin generation flows for Travel Bingo.

Each flow picks the tiles of one city that need work, wraps one
GenerationClient call as the runner's generate_one, and hands both to
batch_runner with the flow's mode and default options:

  fix-missing-images     sequential, 3 retries, items with a missing/placeholder image
  generate-all-images    batched (groups of 3), every item, forced regeneration
  generate-descriptions  batched (groups of 5), items without a description

app.py runs flows with run_flow (progress via callback into the job record);
manage.py iterates stream_flow (progress events drive a terminal bar).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from batch_runner import (
    MODE_BATCHED,
    MODE_SEQUENTIAL,
    BatchSummary,
    GenerateOne,
    ProgressEvent,
    run_batch,
    stream_batch,
)
from generation_client import GenerationClient
from schemas import BatchOptions, BingoItem, City

logger = logging.getLogger(__name__)

FLOW_FIX_MISSING_IMAGES    = 'fix-missing-images'
FLOW_GENERATE_ALL_IMAGES   = 'generate-all-images'
FLOW_GENERATE_DESCRIPTIONS = 'generate-descriptions'


@dataclass(frozen=True)
class Flow:
    name:             str
    mode:             str
    defaults:         BatchOptions
    start_message:    str   # formatted with count=, city=
    success_template: str   # formatted with n=
    failure_template: str   # formatted with n=


FLOWS: dict[str, Flow] = {
    FLOW_FIX_MISSING_IMAGES: Flow(
        name             = FLOW_FIX_MISSING_IMAGES,
        mode             = MODE_SEQUENTIAL,
        defaults         = BatchOptions(max_retries=3, backoff_base=1.0, item_delay=1.0),
        start_message    = 'Generating images for {count} items with missing or placeholder images in {city}.',
        success_template = 'Successfully fixed {n} images.',
        failure_template = 'Failed to fix {n} images.',
    ),
    FLOW_GENERATE_ALL_IMAGES: Flow(
        name             = FLOW_GENERATE_ALL_IMAGES,
        mode             = MODE_BATCHED,
        defaults         = BatchOptions(concurrency=3, inter_batch_delay=1.0),
        start_message    = 'Regenerating images for all {count} items in {city}.',
        success_template = 'Successfully regenerated {n} images.',
        failure_template = 'Failed to generate {n} images.',
    ),
    FLOW_GENERATE_DESCRIPTIONS: Flow(
        name             = FLOW_GENERATE_DESCRIPTIONS,
        mode             = MODE_BATCHED,
        defaults         = BatchOptions(concurrency=5, inter_batch_delay=1.0),
        start_message    = 'Generating descriptions for {count} items in {city}.',
        success_template = 'Generated descriptions for {n} items.',
        failure_template = 'Failed to generate {n} descriptions.',
    ),
}


def get_flow(name: str) -> Flow:
    try:
        return FLOWS[name]
    except KeyError:
        raise ValueError(f'Unknown flow {name!r}; expected one of {sorted(FLOWS)}') from None


# ── Item selection ────────────────────────────────────────────────────────────

def select_items(flow_name: str, city: City, only_missing: bool = True) -> list[BingoItem]:
    """Tiles the flow would work on, in board order."""
    if flow_name == FLOW_FIX_MISSING_IMAGES:
        return city.items_needing_images()
    if flow_name == FLOW_GENERATE_ALL_IMAGES:
        return list(city.items)
    if flow_name == FLOW_GENERATE_DESCRIPTIONS:
        return city.items_needing_descriptions() if only_missing else list(city.items)
    get_flow(flow_name)   # raises for unknown names
    return []


def make_generate_one(flow_name: str, city: City, client: GenerationClient) -> GenerateOne:
    if flow_name == FLOW_GENERATE_DESCRIPTIONS:
        async def _describe(item: BingoItem) -> str:
            return await client.generate_description(city, item)
        return _describe

    async def _draw(item: BingoItem) -> str:
        return await client.generate_image(city, item, force_new_image=True)
    return _draw


# ── Flows ─────────────────────────────────────────────────────────────────────

async def run_flow(
    flow_name: str,
    city: City,
    client: GenerationClient,
    options: BatchOptions | None = None,
    *,
    only_missing: bool = True,
    refresh: Callable[[], Any] | None = None,
    on_progress: Callable[[ProgressEvent], Any] | None = None,
    cancel_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str | None = None,
) -> BatchSummary:
    flow  = get_flow(flow_name)
    items = select_items(flow_name, city, only_missing=only_missing)
    logger.info('%s: %s', flow.name, flow.start_message.format(count=len(items), city=city.title))

    summary = await run_batch(
        items,
        make_generate_one(flow_name, city, client),
        options or flow.defaults,
        mode         = flow.mode,
        refresh      = refresh,
        on_progress  = on_progress,
        cancel_event = cancel_event,
        sleep        = sleep,
        label        = label or f'{flow.name}:{city.id}',
    )
    await _after_batch(flow_name, city, client, summary)
    return summary


async def stream_flow(
    flow_name: str,
    city: City,
    client: GenerationClient,
    options: BatchOptions | None = None,
    *,
    only_missing: bool = True,
    refresh: Callable[[], Any] | None = None,
    cancel_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str | None = None,
) -> AsyncIterator[ProgressEvent | BatchSummary]:
    """Like run_flow, but yields each ProgressEvent and then the BatchSummary."""
    flow  = get_flow(flow_name)
    items = select_items(flow_name, city, only_missing=only_missing)
    logger.info('%s: %s', flow.name, flow.start_message.format(count=len(items), city=city.title))

    async for event in stream_batch(
        items,
        make_generate_one(flow_name, city, client),
        options or flow.defaults,
        mode         = flow.mode,
        refresh      = refresh,
        cancel_event = cancel_event,
        sleep        = sleep,
        label        = label or f'{flow.name}:{city.id}',
    ):
        if isinstance(event, BatchSummary):
            await _after_batch(flow_name, city, client, event)
        yield event


async def _after_batch(flow_name: str, city: City, client: GenerationClient, summary: BatchSummary) -> None:
    # The backend keeps per-city image counts; recount after a full regeneration.
    if flow_name == FLOW_GENERATE_ALL_IMAGES and summary.attempted:
        await client.update_city_metadata(city.id)


async def fix_missing_images(city: City, client: GenerationClient,
                             options: BatchOptions | None = None, **kwargs) -> BatchSummary:
    return await run_flow(FLOW_FIX_MISSING_IMAGES, city, client, options, **kwargs)


async def generate_all_images(city: City, client: GenerationClient,
                              options: BatchOptions | None = None, **kwargs) -> BatchSummary:
    return await run_flow(FLOW_GENERATE_ALL_IMAGES, city, client, options, **kwargs)


async def generate_descriptions(city: City, client: GenerationClient,
                                options: BatchOptions | None = None, **kwargs) -> BatchSummary:
    return await run_flow(FLOW_GENERATE_DESCRIPTIONS, city, client, options, **kwargs)


def completion_message(flow_name: str, summary: BatchSummary) -> str:
    """Aggregate wording shown to the user; no per-item detail."""
    flow = get_flow(flow_name)
    parts = [flow.success_template.format(n=summary.success_count)]
    if summary.fail_count:
        parts.append(flow.failure_template.format(n=summary.fail_count))
    if summary.cancelled:
        parts.append('Cancelled before all items were attempted.')
    return ' '.join(parts)
