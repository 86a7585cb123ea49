# tests/engine/test_pool.py
"""Tests for BoundedDispatcher and EnvironmentLimits."""

import threading
import time

import pytest

from imigrate.contracts import ApiVersion, Environment
from imigrate.engine.pool import BoundedDispatcher, EnvironmentLimits


def _env(env_id: str = "dest", insert_concurrency: int = 3) -> Environment:
    return Environment(
        id=env_id,
        name=env_id,
        base_url="https://example.org",
        username="u",
        api_version=ApiVersion.V2,
        query_concurrency=2,
        insert_concurrency=insert_concurrency,
    )


class _ConcurrencyProbe:
    def __init__(self, delay: float = 0.01) -> None:
        self.delay = delay
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def __call__(self, item: int) -> int:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
        return item * 10


class TestEnvironmentLimits:
    def test_slots_shared_per_environment(self) -> None:
        limits = EnvironmentLimits()

        assert limits.insert_slots(_env()) is limits.insert_slots(_env())
        assert limits.insert_slots(_env()) is not limits.insert_slots(_env("other"))
        assert limits.query_slots(_env()) is not limits.insert_slots(_env())

    def test_slot_count_matches_limit(self) -> None:
        slots = EnvironmentLimits().insert_slots(_env(insert_concurrency=2))

        assert slots.acquire(blocking=False)
        assert slots.acquire(blocking=False)
        assert not slots.acquire(blocking=False)


class TestBoundedDispatcher:
    def test_results_in_dispatch_order(self) -> None:
        dispatcher = BoundedDispatcher(threading.Semaphore(4), 4)
        try:
            assert dispatcher.run(range(10), _ConcurrencyProbe(delay=0)) == [i * 10 for i in range(10)]
        finally:
            dispatcher.shutdown()

    def test_never_exceeds_slot_count(self) -> None:
        probe = _ConcurrencyProbe()
        dispatcher = BoundedDispatcher(threading.Semaphore(3), 8)
        try:
            dispatcher.run(range(40), probe)
        finally:
            dispatcher.shutdown()

        assert probe.max_active <= 3
        assert not dispatcher.stopped_early

    def test_shared_slots_bound_two_dispatchers(self) -> None:
        slots = threading.Semaphore(2)
        probe = _ConcurrencyProbe()
        first = BoundedDispatcher(slots, 4)
        second = BoundedDispatcher(slots, 4)
        threads = [threading.Thread(target=d.run, args=(range(15), probe)) for d in (first, second)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        first.shutdown()
        second.shutdown()

        assert probe.max_active <= 2

    def test_stop_halts_dispatch(self) -> None:
        processed: list[int] = []
        stop = threading.Event()

        def process(item: int) -> None:
            processed.append(item)
            if item == 4:
                stop.set()

        dispatcher = BoundedDispatcher(threading.Semaphore(1), 1)
        try:
            dispatcher.run(range(20), process, should_stop=stop.is_set)
        finally:
            dispatcher.shutdown()

        assert processed == [0, 1, 2, 3, 4]
        assert dispatcher.stopped_early

    def test_stop_after_last_dispatch_is_not_early(self) -> None:
        stop = threading.Event()

        def process(item: int) -> int:
            if item == 4:
                stop.set()
            return item

        dispatcher = BoundedDispatcher(threading.Semaphore(1), 1)
        try:
            results = dispatcher.run(range(5), process, should_stop=stop.is_set)
        finally:
            dispatcher.shutdown()

        assert results == [0, 1, 2, 3, 4]
        assert not dispatcher.stopped_early

    def test_error_raised_after_all_dispatched_finish(self) -> None:
        finished: list[int] = []

        def process(item: int) -> None:
            if item == 1:
                raise RuntimeError("row 1 exploded")
            time.sleep(0.01)
            finished.append(item)

        slots = threading.Semaphore(2)
        dispatcher = BoundedDispatcher(slots, 2)
        try:
            with pytest.raises(RuntimeError, match="row 1 exploded"):
                dispatcher.run(range(5), process)
        finally:
            dispatcher.shutdown()

        assert sorted(finished) == [0, 2, 3, 4]
        # Every slot was returned
        assert slots.acquire(blocking=False)
        assert slots.acquire(blocking=False)
