# src/imigrate/engine/supervisor.py
"""Supervised background execution of job runs.

Each run is a task on a bounded thread pool. The task wrapper is the
run's completion channel: an exception escaping the run is logged and
handed to the caller-supplied error handler (which records it on the
job), and the job's slot is released only after that handler has run.
Callers observe progress by polling the store, never through callbacks.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field

import structlog

from imigrate.contracts import JobAlreadyRunningError

logger = structlog.get_logger(__name__)


@dataclass
class _ActiveRun:
    cancel_requested: threading.Event = field(default_factory=threading.Event)
    finished: threading.Event = field(default_factory=threading.Event)
    future: Future[None] | None = None


class JobSupervisor:
    """Tracks which jobs run in this process and runs them in the background.

    Usage:
        cancel = supervisor.claim(job_id)          # JobAlreadyRunningError if taken
        supervisor.submit(job_id, run_fn, on_error=mark_failed)
        supervisor.cancel(job_id)                  # cooperative
        supervisor.wait(job_id)
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="imigrate-job")
        self._lock = threading.Lock()
        self._active: dict[str, _ActiveRun] = {}
        self._finished: dict[str, threading.Event] = {}

    def claim(self, job_id: str) -> threading.Event:
        """Reserve the job for a run; returns its cancellation flag."""
        with self._lock:
            if job_id in self._active:
                raise JobAlreadyRunningError(job_id)
            run = _ActiveRun()
            self._active[job_id] = run
            self._finished[job_id] = run.finished
            return run.cancel_requested

    def release(self, job_id: str) -> None:
        """Give up a claim that was never submitted, or finish a run."""
        with self._lock:
            run = self._active.pop(job_id, None)
        if run is not None:
            run.finished.set()

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    def submit(
        self,
        job_id: str,
        run_fn: Callable[[], None],
        *,
        on_error: Callable[[BaseException], None],
    ) -> Future[None]:
        with self._lock:
            run = self._active.get(job_id)
            if run is None:
                raise RuntimeError(f"Job {job_id} must be claimed before it is submitted")
            future = self._pool.submit(self._run, job_id, run_fn, on_error)
            run.future = future
        return future

    def _run(self, job_id: str, run_fn: Callable[[], None], on_error: Callable[[BaseException], None]) -> None:
        log = logger.bind(job_id=job_id)
        try:
            run_fn()
        except Exception as e:
            log.exception("Job run failed")
            try:
                on_error(e)
            except Exception:
                log.exception("Could not record job failure")
        finally:
            self.release(job_id)

    def cancel(self, job_id: str) -> bool:
        """Request cooperative cancellation. False if the job isn't running here."""
        with self._lock:
            run = self._active.get(job_id)
        if run is None:
            return False
        run.cancel_requested.set()
        return True

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until the job's run (if any) has finished. False on timeout."""
        with self._lock:
            finished = self._finished.get(job_id)
        if finished is None:
            return True
        return finished.wait(timeout)

    def shutdown(self, wait: bool = True, *, cancel_running: bool = False) -> None:
        if cancel_running:
            with self._lock:
                runs = list(self._active.values())
            for run in runs:
                run.cancel_requested.set()
        self._pool.shutdown(wait=wait)
