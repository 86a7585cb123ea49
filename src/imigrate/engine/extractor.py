# src/imigrate/engine/extractor.py
"""Batch extractor: pages through a query or business-object feed.

The first page fixes the total row count for the job. Remaining pages are
fetched with bounded prefetch; a page that still fails after the client's
own retries is reported through ``on_page_failed`` and skipped, so one
unreachable page never aborts the whole extraction.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from threading import Semaphore
from typing import TYPE_CHECKING

import structlog

from imigrate.contracts import Environment, ImigrateError, JobMode, Page

if TYPE_CHECKING:
    from imigrate.imis import ImisClient

logger = structlog.get_logger(__name__)

PAGE_SIZE = 500


def generate_offsets(total_count: int, page_size: int = PAGE_SIZE) -> list[int]:
    """Offsets of every page: ⌈total/page_size⌉ entries starting at 0."""
    if page_size < 1:
        raise ValueError("page_size must be >= 1")
    return [index * page_size for index in range(math.ceil(max(total_count, 0) / page_size))]


class BatchExtractor:
    """Fetches pages of one job's source.

    Example:
        extractor = BatchExtractor(client, source_env, JobMode.QUERY, "$/Contacts/All")
        first = extractor.next_page(0)
        for offset, page in extractor.iter_pages(generate_offsets(first.total_count)[1:]):
            ...
    """

    def __init__(
        self,
        client: ImisClient,
        environment: Environment,
        mode: JobMode,
        source: str,
        *,
        page_size: int = PAGE_SIZE,
        slots: Semaphore | None = None,
        on_page_failed: Callable[[int, ImigrateError], None] | None = None,
    ) -> None:
        self._client = client
        self._environment = environment
        self._mode = mode
        self._source = source
        self._page_size = min(page_size, PAGE_SIZE)
        self._slots = slots or Semaphore(environment.query_concurrency)
        self._on_page_failed = on_page_failed
        self._failed_offsets: list[int] = []
        self._stopped_early = False

    @property
    def page_size(self) -> int:
        return self._page_size

    @property
    def failed_offsets(self) -> list[int]:
        return sorted(self._failed_offsets)

    @property
    def stopped_early(self) -> bool:
        """True if ``iter_pages`` stopped with offsets still unfetched."""
        return self._stopped_early

    def next_page(self, offset: int) -> Page:
        """Fetch one page. Errors propagate; callers decide what a failure means."""
        with self._slots:
            if self._mode == JobMode.QUERY:
                return self._client.fetch_query_page(self._environment, self._source, offset=offset, limit=self._page_size)
            return self._client.fetch_entity_page(self._environment, self._source, offset=offset, limit=self._page_size)

    def _record_failure(self, offset: int, error: ImigrateError) -> None:
        self._failed_offsets.append(offset)
        logger.warning(
            "Page fetch failed, continuing with next page",
            environment_id=self._environment.id,
            source=self._source,
            offset=offset,
            error=str(error),
        )
        if self._on_page_failed is not None:
            self._on_page_failed(offset, error)

    def iter_pages(
        self,
        offsets: Iterable[int],
        *,
        concurrency: int | None = None,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> Iterator[tuple[int, Page]]:
        """Yield ``(offset, page)`` as pages arrive, at most ``concurrency`` in flight.

        Pages are yielded in completion order. No new fetch starts once
        ``should_stop`` returns True; fetches already in flight still finish.
        """
        workers = concurrency or self._environment.query_concurrency
        remaining = iter(offsets)
        pending: dict[Future[Page], int] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="imigrate-page") as pool:

            def _fill() -> None:
                while len(pending) < workers:
                    offset = next(remaining, None)
                    if offset is None:
                        return
                    if should_stop():
                        self._stopped_early = True
                        return
                    pending[pool.submit(self.next_page, offset)] = offset

            _fill()
            while pending:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=pending.__getitem__):
                    offset = pending.pop(future)
                    try:
                        page = future.result()
                    except ImigrateError as e:
                        self._record_failure(offset, e)
                        continue
                    yield offset, page
                _fill()
