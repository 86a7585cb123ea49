# src/imigrate/engine/pool.py
"""Bounded dispatch of per-row work onto a thread pool.

Two knobs per environment bound outbound traffic: page-fetch concurrency
on the source and insert concurrency on the destination. The slots are
semaphores shared by every job in the process, so two jobs writing to the
same destination together never exceed its insert limit.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import Lock, Semaphore
from typing import Generic, TypeVar

from imigrate.contracts import Environment

T = TypeVar("T")
R = TypeVar("R")


class EnvironmentLimits:
    """Per-environment semaphores for query and insert concurrency.

    Slots are created on first use with the environment's configured
    limit; later changes to that limit apply after a restart.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._query: dict[str, Semaphore] = {}
        self._insert: dict[str, Semaphore] = {}

    def query_slots(self, environment: Environment) -> Semaphore:
        with self._lock:
            if environment.id not in self._query:
                self._query[environment.id] = Semaphore(environment.query_concurrency)
            return self._query[environment.id]

    def insert_slots(self, environment: Environment) -> Semaphore:
        with self._lock:
            if environment.id not in self._insert:
                self._insert[environment.id] = Semaphore(environment.insert_concurrency)
            return self._insert[environment.id]


class BoundedDispatcher(Generic[T, R]):
    """Runs ``process_fn`` over items with at most ``limit`` in flight.

    A slot is taken from the semaphore *before* each dispatch, and the stop
    check happens after the slot is granted, so once ``should_stop``
    returns True nothing further is dispatched while already-running work
    completes normally.

    Usage:
        dispatcher = BoundedDispatcher(limits.insert_slots(env), env.insert_concurrency)
        results = dispatcher.run(rows, process_row, should_stop=cancel_event.is_set)
        dispatcher.shutdown()
    """

    def __init__(self, slots: Semaphore, max_workers: int, *, name: str = "imigrate-insert") -> None:
        self._slots = slots
        self._thread_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._stopped_early = False

    @property
    def stopped_early(self) -> bool:
        """True if the last ``run`` stopped before dispatching every item."""
        return self._stopped_early

    def _execute(self, process_fn: Callable[[T], R], item: T) -> R:
        try:
            return process_fn(item)
        finally:
            self._slots.release()

    def run(
        self,
        items: Iterable[T],
        process_fn: Callable[[T], R],
        *,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> list[R]:
        """Dispatch items until exhausted or stopped, then wait for all of them.

        Returns:
            Results of every dispatched item, in dispatch order

        Raises:
            Exception: The first error raised by ``process_fn``, after every
                dispatched item has finished
        """
        self._stopped_early = False
        futures: list[Future[R]] = []
        for item in items:
            self._slots.acquire()
            if should_stop():
                self._slots.release()
                self._stopped_early = True
                break
            try:
                futures.append(self._thread_pool.submit(self._execute, process_fn, item))
            except RuntimeError:
                # Pool shut down underneath us; give the slot back
                self._slots.release()
                raise

        wait(futures)
        return [future.result() for future in futures]

    def shutdown(self, wait: bool = True) -> None:
        self._thread_pool.shutdown(wait=wait)
