"""Run a batch of worker tasks concurrently, bounded by ``max_workers``."""

import asyncio
import functools
import logging
import sys
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from worker import TIMEOUT_ERROR, Worker, WorkerOptions, WorkerResult, WorkerTask

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[WorkerTask, str], Worker]


class WorkerPool:
    """Execute :class:`WorkerTask` batches on a thread pool.

    Results come back in input order, one per task.  A task that exceeds
    ``timeout_seconds`` has its worker cancelled (which kills the agent
    process) and is reported as ``error="timeout"``.  Its slot is released once
    the worker stops, or after ``cancel_grace_seconds`` if it does not.
    """

    cancel_grace_seconds = 30.0

    def __init__(
        self,
        max_workers: int,
        options: WorkerOptions,
        gateway=None,
        worker_factory: WorkerFactory | None = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.options = options
        self.gateway = gateway
        self.timeout_seconds = options.timeout_seconds
        self._worker_factory = worker_factory or self._default_factory
        self._lock = threading.Lock()
        self._active = 0
        self.peak_active = 0

    def _default_factory(self, task: WorkerTask, worker_id: str) -> Worker:
        return Worker(task, self.options, gateway=self.gateway, worker_id=worker_id)

    async def execute_tasks(self, tasks: list[WorkerTask], ctx=None) -> list[WorkerResult]:
        log = ctx.logger(__name__) if ctx else logger
        if not tasks:
            return []
        branches = [t.branch_name for t in tasks]
        if len(set(branches)) != len(branches):
            dupes = sorted({b for b in branches if branches.count(b) > 1})
            raise ValueError(f"Duplicate branch names in batch: {', '.join(dupes)}")

        log.info("Executing %d tasks with up to %d workers", len(tasks), self.max_workers)
        semaphore = asyncio.Semaphore(self.max_workers)
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="autodev-worker")
        try:
            return list(
                await asyncio.gather(
                    *(
                        self._run_one(executor, semaphore, task, f"worker-{n}", ctx)
                        for n, task in enumerate(tasks, start=1)
                    )
                )
            )
        finally:
            # abandoned workers finish in the background
            executor.shutdown(wait=False, cancel_futures=True)

    async def _run_one(
        self,
        executor: ThreadPoolExecutor,
        semaphore: asyncio.Semaphore,
        task: WorkerTask,
        worker_id: str,
        ctx,
    ) -> WorkerResult:
        log = ctx.logger(__name__) if ctx else logger
        async with semaphore:
            loop = asyncio.get_running_loop()
            started_at = datetime.now(timezone.utc)
            try:
                worker = self._worker_factory(task, worker_id)
                future = loop.run_in_executor(executor, functools.partial(self._tracked_run, worker, ctx))
                done, _ = await asyncio.wait({future}, timeout=self.timeout_seconds)
                if future in done:
                    return future.result()
                log.warning(
                    "Issue #%d exceeded %ds, cancelling worker", task.issue.id, self.timeout_seconds
                )
                worker.cancel()
                done, _ = await asyncio.wait({future}, timeout=self.cancel_grace_seconds)
                if not done:
                    log.error(
                        "Worker for issue #%d still running %ss after cancel, abandoning it",
                        task.issue.id,
                        self.cancel_grace_seconds,
                    )
                return WorkerResult(
                    issue=task.issue,
                    branch_name=task.branch_name,
                    success=False,
                    error=TIMEOUT_ERROR,
                    started_at=started_at,
                    finished_at=datetime.now(timezone.utc),
                )
            except Exception as exc:
                log.exception("Worker for issue #%d crashed", task.issue.id)
                return WorkerResult(
                    issue=task.issue,
                    branch_name=task.branch_name,
                    success=False,
                    error=f"{type(exc).__name__}: {exc}",
                    started_at=started_at,
                    finished_at=datetime.now(timezone.utc),
                )

    def _tracked_run(self, worker: Worker, ctx) -> WorkerResult:
        with self._lock:
            self._active += 1
            self.peak_active = max(self.peak_active, self._active)
        try:
            return worker.run(ctx)
        finally:
            with self._lock:
                self._active -= 1
