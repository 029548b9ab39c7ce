"""
Tests for batch_runner.py

generate_one is a local coroutine and sleep is replaced by a recorder, so
nothing here waits on the clock or the network.
"""

import asyncio

import pytest

from batch_runner import (
    MODE_BATCHED,
    MODE_SEQUENTIAL,
    BatchSummary,
    ProgressEvent,
    backoff_delay,
    item_id_of,
    partition,
    progress_percent,
    run_batch,
    stream_batch,
)
from schemas import BatchOptions


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _ids(n: int) -> list[str]:
    return [f'item-{i}' for i in range(1, n + 1)]


def _run(coro):
    return asyncio.run(coro)


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    def test_progress_percent_rounds_half_up(self) -> None:
        assert progress_percent(1, 8) == 13     # 12.5
        assert progress_percent(1, 3) == 33
        assert progress_percent(2, 3) == 67
        assert progress_percent(3, 3) == 100

    def test_progress_percent_empty(self) -> None:
        assert progress_percent(0, 0) == 100

    def test_backoff_doubles(self) -> None:
        assert [backoff_delay(a, 1.0) for a in (1, 2, 3)] == [1.0, 2.0, 4.0]
        assert backoff_delay(2, 0.5) == 1.0

    def test_partition_preserves_order(self) -> None:
        assert partition([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_item_id_of(self) -> None:
        assert item_id_of({'id': 'a'}) == 'a'
        assert item_id_of('plain') == 'plain'


# =============================================================================
# Batched strategy
# =============================================================================


class TestBatched:
    def test_groups_run_in_order_without_overlap(self) -> None:
        """Each group settles before the next starts; never more than 3 in flight."""
        started: list[str] = []
        in_flight = 0
        max_in_flight = 0
        finished: set[str] = set()
        overlap_violations = []

        async def generate_one(item_id):
            nonlocal in_flight, max_in_flight
            index = int(item_id.split('-')[1]) - 1
            group_start = (index // 3) * 3
            # every item of earlier groups must be finished already
            earlier = {f'item-{i + 1}' for i in range(group_start)}
            if not earlier <= finished:
                overlap_violations.append(item_id)
            started.append(item_id)
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            in_flight -= 1
            finished.add(item_id)
            return item_id.upper()

        sleep = RecordingSleep()
        summary = _run(run_batch(_ids(10), generate_one, BatchOptions(concurrency=3, inter_batch_delay=0.25),
                                 mode=MODE_BATCHED, sleep=sleep))

        assert summary.success_count == 10
        assert summary.fail_count == 0
        assert max_in_flight == 3
        assert overlap_violations == []
        assert started[:3] == ['item-1', 'item-2', 'item-3']
        # ceil(10 / 3) = 4 groups -> 3 pauses between them
        assert sleep.calls == [0.25, 0.25, 0.25]
        assert summary.results['item-7'] == 'ITEM-7'

    def test_twenty_five_items_in_groups_of_three(self) -> None:
        sleep = RecordingSleep()

        async def generate_one(item_id):
            return 'ok'

        summary = _run(run_batch(_ids(25), generate_one, BatchOptions(concurrency=3, inter_batch_delay=1.0),
                                 mode=MODE_BATCHED, sleep=sleep))
        assert summary.attempted == 25
        assert len(sleep.calls) == 8      # 9 groups

    def test_failures_do_not_stop_the_group(self) -> None:
        async def generate_one(item_id):
            if item_id in ('item-2', 'item-5'):
                raise RuntimeError('backend said no')
            return 'ok'

        summary = _run(run_batch(_ids(6), generate_one, BatchOptions(concurrency=3, inter_batch_delay=0),
                                 mode=MODE_BATCHED, sleep=RecordingSleep()))
        assert summary.success_count == 4
        assert summary.fail_count == 2
        assert sorted(summary.failed_ids) == ['item-2', 'item-5']

    def test_single_attempt_by_default(self) -> None:
        calls = []

        async def generate_one(item_id):
            calls.append(item_id)
            raise RuntimeError('nope')

        summary = _run(run_batch(['a'], generate_one, BatchOptions(inter_batch_delay=0),
                                 mode=MODE_BATCHED, sleep=RecordingSleep()))
        assert calls == ['a']
        assert summary.fail_count == 1

    def test_parallel_retries_opt_in(self) -> None:
        calls = []

        async def generate_one(item_id):
            calls.append(item_id)
            if len(calls) < 2:
                raise RuntimeError('flaky')
            return 'ok'

        sleep = RecordingSleep()
        summary = _run(run_batch(['a'], generate_one, BatchOptions(parallel_retries=2, backoff_base=0.5),
                                 mode=MODE_BATCHED, sleep=sleep))
        assert summary.success_count == 1
        assert len(calls) == 2
        assert sleep.calls == [0.5]


# =============================================================================
# Sequential strategy
# =============================================================================


class TestSequential:
    def test_retry_then_succeed(self) -> None:
        attempts = {'n': 0}

        async def generate_one(item_id):
            attempts['n'] += 1
            if attempts['n'] <= 2:
                raise RuntimeError('timeout')
            return 'https://img/x.png'

        sleep = RecordingSleep()
        summary = _run(run_batch(['a'], generate_one, BatchOptions(max_retries=3, backoff_base=1.0),
                                 mode=MODE_SEQUENTIAL, sleep=sleep))
        assert summary.success_count == 1
        assert attempts['n'] == 3
        assert sleep.calls == [1.0, 2.0]

    def test_gives_up_after_max_retries(self) -> None:
        attempts = {'n': 0}

        async def generate_one(item_id):
            attempts['n'] += 1
            raise RuntimeError('down')

        sleep = RecordingSleep()
        summary = _run(run_batch(['a'], generate_one, BatchOptions(max_retries=3, backoff_base=1.0),
                                 mode=MODE_SEQUENTIAL, sleep=sleep))
        assert attempts['n'] == 4
        assert sleep.calls == [1.0, 2.0, 4.0]
        assert summary.fail_count == 1
        assert summary.failed_ids == ['a']

    def test_delay_between_items_only(self) -> None:
        async def generate_one(item_id):
            return 'ok'

        sleep = RecordingSleep()
        _run(run_batch(_ids(3), generate_one, BatchOptions(item_delay=0.5),
                       mode=MODE_SEQUENTIAL, sleep=sleep))
        assert sleep.calls == [0.5, 0.5]

    def test_one_at_a_time(self) -> None:
        in_flight = 0
        max_in_flight = 0

        async def generate_one(item_id):
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            return 'ok'

        _run(run_batch(_ids(4), generate_one, BatchOptions(item_delay=0),
                       mode=MODE_SEQUENTIAL, sleep=RecordingSleep()))
        assert max_in_flight == 1


# =============================================================================
# Progress, refresh, cancellation
# =============================================================================


class TestProgress:
    @pytest.mark.parametrize('mode', [MODE_SEQUENTIAL, MODE_BATCHED])
    def test_percent_sequence(self, mode) -> None:
        events: list[ProgressEvent] = []

        async def generate_one(item_id):
            if item_id == 'item-2':
                raise RuntimeError('bad')
            return 'ok'

        summary = _run(run_batch(_ids(7), generate_one,
                                 BatchOptions(max_retries=0, item_delay=0, inter_batch_delay=0),
                                 mode=mode, on_progress=events.append, sleep=RecordingSleep()))

        percents = [e.percent for e in events]
        assert len(events) == 7
        assert percents == sorted(percents)
        assert percents.count(100) == 1
        assert percents[-1] == 100
        assert summary.success_count + summary.fail_count == 7

    def test_progress_callback_failure_is_ignored(self) -> None:
        def on_progress(event):
            raise RuntimeError('ui went away')

        async def generate_one(item_id):
            return 'ok'

        summary = _run(run_batch(_ids(2), generate_one, BatchOptions(item_delay=0),
                                 mode=MODE_SEQUENTIAL, on_progress=on_progress, sleep=RecordingSleep()))
        assert summary.success_count == 2


class TestRefresh:
    def test_called_once_after_batch(self) -> None:
        calls = []

        async def refresh():
            calls.append('refresh')

        async def generate_one(item_id):
            raise RuntimeError('all fail')

        _run(run_batch(_ids(5), generate_one, BatchOptions(inter_batch_delay=0),
                       mode=MODE_BATCHED, refresh=refresh, sleep=RecordingSleep()))
        assert calls == ['refresh']

    def test_not_called_for_empty_batch(self) -> None:
        calls = []

        async def generate_one(item_id):
            return 'ok'

        summary = _run(run_batch([], generate_one, refresh=lambda: calls.append(1)))
        assert calls == []
        assert summary.total == 0

    def test_refresh_failure_is_swallowed(self) -> None:
        def refresh():
            raise RuntimeError('backend offline')

        async def generate_one(item_id):
            return 'ok'

        summary = _run(run_batch(['a'], generate_one, mode=MODE_SEQUENTIAL, refresh=refresh,
                                 sleep=RecordingSleep()))
        assert summary.success_count == 1


class TestCancellation:
    def test_sequential_stops_before_next_item(self) -> None:
        async def scenario():
            cancel = asyncio.Event()
            refreshed = []

            async def generate_one(item_id):
                cancel.set()
                return 'ok'

            summary = await run_batch(_ids(5), generate_one, BatchOptions(item_delay=0),
                                      mode=MODE_SEQUENTIAL, cancel_event=cancel,
                                      refresh=lambda: refreshed.append(1), sleep=RecordingSleep())
            return summary, refreshed

        summary, refreshed = _run(scenario())
        assert summary.cancelled is True
        assert summary.attempted == 1
        assert refreshed == [1]

    def test_batched_finishes_current_group(self) -> None:
        async def scenario():
            cancel = asyncio.Event()

            async def generate_one(item_id):
                cancel.set()
                return 'ok'

            return await run_batch(_ids(7), generate_one, BatchOptions(concurrency=3, inter_batch_delay=0),
                                   mode=MODE_BATCHED, cancel_event=cancel, sleep=RecordingSleep())

        summary = _run(scenario())
        assert summary.cancelled is True
        assert summary.attempted == 3


class TestEntryPoints:
    def test_unknown_mode(self) -> None:
        async def generate_one(item_id):
            return 'ok'

        with pytest.raises(ValueError):
            _run(run_batch(['a'], generate_one, mode='parallel'))

    def test_stream_yields_events_then_summary(self) -> None:
        async def generate_one(item_id):
            return item_id

        async def collect():
            return [e async for e in stream_batch(_ids(4), generate_one, BatchOptions(concurrency=2, inter_batch_delay=0),
                                                  mode=MODE_BATCHED, sleep=RecordingSleep())]

        events = _run(collect())
        assert len(events) == 5
        assert all(isinstance(e, ProgressEvent) for e in events[:4])
        assert isinstance(events[-1], BatchSummary)
        assert events[-1].success_count == 4
        assert events[3].percent == 100

    def test_summary_to_dict(self) -> None:
        summary = BatchSummary(total=2, success_count=1, fail_count=1, failed_ids=['b'], results={'a': 'x'})
        assert summary.to_dict() == {
            'total': 2, 'success_count': 1, 'fail_count': 1, 'cancelled': False, 'failed_ids': ['b'],
        }
        assert summary.to_dict(include_results=True)['results'] == {'a': 'x'}
