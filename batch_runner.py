"""
batch_runner.py — Bounded-concurrency batch execution for generation jobs.

Drives "generate one item" over a list of items and reports progress, without
one failing item blocking the rest.  Two strategies:

  sequential  — one item at a time, up to 1 + max_retries attempts each with
                exponential backoff (backoff_base * 2**(attempt-1)) between
                attempts, and a fixed item_delay between items
  batched     — fixed-size groups of `concurrency` items in original order;
                each group runs concurrently and fully settles before
                inter_batch_delay and the next group.  Items get
                1 + parallel_retries attempts (a single attempt by default).

Per item:  Pending → Attempting(n) → Succeeded | Attempting(n+1) | Failed

The runner never raises for item failures: every exception from
generate_one is logged with the item id and attempt number and counted.
Progress is reported after each item as round(completed / total * 100),
either through an on_progress callback or by iterating stream_batch().
When at least one item was attempted, `refresh` is awaited exactly once at
the end so the caller can pick up the newly generated assets.

Usage
-----
    summary = await run_batch(items, generate_one, BatchOptions(concurrency=3),
                              mode=MODE_BATCHED, refresh=state.refresh)

    async for event in stream_batch(items, generate_one, mode=MODE_SEQUENTIAL):
        ...   # ProgressEvent, then a final BatchSummary
"""

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Sequence

from schemas import BatchOptions

logger = logging.getLogger(__name__)

MODE_SEQUENTIAL = 'sequential'
MODE_BATCHED    = 'batched'
MODES = (MODE_SEQUENTIAL, MODE_BATCHED)

GenerateOne = Callable[[Any], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def item_id_of(item) -> str:
    """Stable identifier of a work unit: .id, ['id'], or the item itself."""
    item_id = getattr(item, 'id', None)
    if item_id is None and isinstance(item, dict):
        item_id = item.get('id')
    return str(item_id if item_id is not None else item)


def progress_percent(completed: int, total: int) -> int:
    """round(completed / total * 100) with halves rounded up."""
    if total <= 0:
        return 100
    return (200 * completed + total) // (2 * total)


def backoff_delay(attempt: int, base: float) -> float:
    """Wait before attempt + 1, after `attempt` (1-based) has failed."""
    return base * 2 ** (attempt - 1)


def partition(items: Sequence, size: int) -> list[list]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProgressEvent:
    item_id:   str
    ok:        bool
    attempts:  int
    completed: int
    total:     int
    percent:   int


@dataclass
class BatchSummary:
    total:         int
    success_count: int = 0
    fail_count:    int = 0
    cancelled:     bool = False
    failed_ids:    list[str] = field(default_factory=list)
    results:       dict[str, Any] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return self.success_count + self.fail_count

    def to_dict(self, include_results: bool = False) -> dict:
        d = asdict(self)
        if not include_results:
            d.pop('results')
        return d


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class BatchRunner:

    def __init__(
        self,
        generate_one: GenerateOne,
        options: BatchOptions | None = None,
        *,
        refresh: Callable[[], Any] | None = None,
        on_progress: Callable[[ProgressEvent], Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        label: str = 'batch',
    ):
        self.generate_one = generate_one
        self.options      = options or BatchOptions()
        self.label        = label
        self._refresh_fn  = refresh
        self._on_progress = on_progress
        self._cancel      = cancel_event
        self._sleep       = sleep

    async def run(self, items: Iterable, mode: str = MODE_BATCHED) -> BatchSummary:
        if mode not in MODES:
            raise ValueError(f'Unknown batch mode {mode!r}; expected one of {MODES}')

        items = list(items)
        summary = BatchSummary(total=len(items))
        if not items:
            logger.info('%s: nothing to do', self.label)
            return summary

        logger.info('%s: %d item(s), %s mode: %s', self.label, len(items), mode,
                    ', '.join(item_id_of(i) for i in items))

        if mode == MODE_SEQUENTIAL:
            await self._run_sequential(items, summary)
        else:
            await self._run_batched(items, summary)

        if summary.attempted:
            await self._refresh()

        logger.info('%s: %s: %d succeeded, %d failed of %d',
                    self.label, 'cancelled' if summary.cancelled else 'complete',
                    summary.success_count, summary.fail_count, summary.total)
        return summary

    # ── Strategies ────────────────────────────────────────────────────────────

    async def _run_sequential(self, items: list, summary: BatchSummary) -> None:
        for index, item in enumerate(items):
            if index:
                await self._sleep(self.options.item_delay)
            if self._cancelled():
                summary.cancelled = True
                break
            await self._process(item, self.options.max_retries, summary)

    async def _run_batched(self, items: list, summary: BatchSummary) -> None:
        groups = partition(items, self.options.concurrency)
        for number, group in enumerate(groups, start=1):
            if number > 1:
                await self._sleep(self.options.inter_batch_delay)
            if self._cancelled():
                summary.cancelled = True
                break
            logger.info('%s: group %d/%d (%d item(s))', self.label, number, len(groups), len(group))
            outcomes = await asyncio.gather(
                *[self._process(item, self.options.parallel_retries, summary) for item in group],
                return_exceptions=True,
            )
            for item, outcome in zip(group, outcomes):
                if isinstance(outcome, Exception):
                    logger.error('%s: item %s escaped its handler: %s', self.label, item_id_of(item), outcome)

    # ── Per item ──────────────────────────────────────────────────────────────

    async def _process(self, item, max_retries: int, summary: BatchSummary) -> bool:
        item_id = item_id_of(item)
        ok, attempts, result = await self._attempt(item, item_id, max_retries)

        # Counters are only touched on the event loop thread between awaits.
        if ok:
            summary.success_count += 1
            summary.results[item_id] = result
        else:
            summary.fail_count += 1
            summary.failed_ids.append(item_id)

        completed = summary.attempted
        await self._emit(ProgressEvent(
            item_id   = item_id,
            ok        = ok,
            attempts  = attempts,
            completed = completed,
            total     = summary.total,
            percent   = progress_percent(completed, summary.total),
        ))
        return ok

    async def _attempt(self, item, item_id: str, max_retries: int) -> tuple[bool, int, Any]:
        attempt = 0
        while True:
            attempt += 1
            if attempt > 1:
                logger.info('%s: retry %d/%d for item %s', self.label, attempt - 1, max_retries, item_id)
            try:
                result = await self.generate_one(item)
            except Exception as exc:
                logger.warning('%s: item %s attempt %d/%d failed (%s): %s',
                               self.label, item_id, attempt, max_retries + 1, type(exc).__name__, exc)
                if attempt > max_retries:
                    logger.error('%s: item %s failed after %d attempt(s)', self.label, item_id, attempt)
                    return False, attempt, None
                delay = backoff_delay(attempt, self.options.backoff_base)
                logger.info('%s: waiting %.1fs before retrying %s', self.label, delay, item_id)
                await self._sleep(delay)
            else:
                logger.info('%s: item %s succeeded on attempt %d', self.label, item_id, attempt)
                return True, attempt, result

    # ── Collaborators ─────────────────────────────────────────────────────────

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    async def _emit(self, event: ProgressEvent) -> None:
        if self._on_progress is None:
            return
        try:
            outcome = self._on_progress(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning('%s: progress callback failed: %s', self.label, exc)

    async def _refresh(self) -> None:
        if self._refresh_fn is None:
            return
        try:
            outcome = self._refresh_fn()
            if inspect.isawaitable(outcome):
                await outcome
            logger.info('%s: state refreshed', self.label)
        except Exception as exc:
            logger.error('%s: state refresh failed: %s', self.label, exc)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

async def run_batch(
    items: Iterable,
    generate_one: GenerateOne,
    options: BatchOptions | None = None,
    *,
    mode: str = MODE_BATCHED,
    refresh: Callable[[], Any] | None = None,
    on_progress: Callable[[ProgressEvent], Any] | None = None,
    cancel_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = 'batch',
) -> BatchSummary:
    runner = BatchRunner(generate_one, options, refresh=refresh, on_progress=on_progress,
                         cancel_event=cancel_event, sleep=sleep, label=label)
    return await runner.run(items, mode)


_DONE = object()


async def stream_batch(
    items: Iterable,
    generate_one: GenerateOne,
    options: BatchOptions | None = None,
    *,
    mode: str = MODE_BATCHED,
    refresh: Callable[[], Any] | None = None,
    cancel_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = 'batch',
) -> AsyncIterator[ProgressEvent | BatchSummary]:
    """
    Run a batch in a background task and yield each ProgressEvent as it
    happens, then the BatchSummary.  Closing the iterator early cancels the
    batch.
    """
    queue: asyncio.Queue = asyncio.Queue()
    task = asyncio.create_task(run_batch(
        items, generate_one, options, mode=mode, refresh=refresh,
        on_progress=queue.put_nowait, cancel_event=cancel_event, sleep=sleep, label=label,
    ))
    task.add_done_callback(lambda _task: queue.put_nowait(_DONE))
    try:
        while True:
            event = await queue.get()
            if event is _DONE:
                break
            yield event
        yield task.result()
    finally:
        if not task.done():
            task.cancel()
