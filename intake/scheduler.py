"""
Batch Scheduler
===============
Drains a project's pending pages strictly one at a time.

Architecture:
    - One scheduler per project, registered while running
    - Exactly one page in flight; pages dispatched in pool order
    - After each page: counters advance, project persisted by the reconciler
    - Stop flag checked between pages (never mid-analysis)
    - Per-page failures mark the page ``error`` and the batch continues
    - Nothing is dispatched until the project has a rubric
    - Pages left ``processing`` by an interrupted run are reset to pending

Usage:
    scheduler = BatchScheduler(reconciler, dispatcher)
    progress = await scheduler.run()       # run to completion
    scheduler.start()                      # or in the background
    scheduler.request_stop()               # halt after the current page
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Optional

from .dispatcher import AnalysisDispatcher
from .exceptions import IntakeError, QuotaExhaustedError
from .models import (
    BatchProgress,
    BatchState,
    Page,
    PageStatus,
    ProjectStatus,
)
from .reconciler import CandidateReconciler

logger = logging.getLogger(__name__)

# ─── Active Scheduler Registry ───────────────────────────────────────────────

_active_schedulers: dict[str, "BatchScheduler"] = {}
_schedulers_lock = threading.Lock()


def get_scheduler(project_id: str) -> Optional["BatchScheduler"]:
    """Get the running scheduler for a project, if any."""
    with _schedulers_lock:
        return _active_schedulers.get(project_id)


class BatchScheduler:
    """
    Sequential page processor for one project.

    Args:
        reconciler: Owner of the live project.
        dispatcher: Page analysis front end.
        halt_on_quota: Stop the batch after a quota failure.
        slow_call_warning_seconds: Log (never cancel) analyses running
            longer than this. None disables the watchdog.
        progress_callback: Callback(completed, total) after each page.
    """

    def __init__(
        self,
        reconciler: CandidateReconciler,
        dispatcher: AnalysisDispatcher,
        halt_on_quota: bool = False,
        slow_call_warning_seconds: Optional[float] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ):
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.halt_on_quota = halt_on_quota
        self.slow_call_warning_seconds = slow_call_warning_seconds
        self.progress_callback = progress_callback

        self.state = BatchState.IDLE
        self.total = 0
        self.completed = 0
        self.errors = 0
        self.current_page_id: Optional[str] = None
        self.last_run_stopped = False

        self._stop_requested = False
        self._queued: set[str] = set()
        self._stuck: set[str] = set()
        self._task: Optional[asyncio.Task] = None

    @property
    def project(self):
        return self.reconciler.project

    def progress(self) -> BatchProgress:
        return BatchProgress(
            state=self.state,
            total=self.total,
            completed=self.completed,
            errors=self.errors,
            current_page_id=self.current_page_id,
        )

    def request_stop(self):
        """Signal the scheduler to stop after the current page."""
        if self.state == BatchState.RUNNING:
            self._stop_requested = True

    def start(self) -> Optional[asyncio.Task]:
        """
        Start a background run on the current event loop.

        If a run is already active, newly pending pages are counted in and
        picked up by that same loop; no second loop is spawned.

        Returns:
            The new run task, or None if a run was already active.
        """
        if self.state == BatchState.RUNNING or (
            self._task is not None and not self._task.done()
        ):
            self._count_pending()
            return None
        self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def wait(self) -> BatchProgress:
        if self._task is not None:
            await self._task
        return self.progress()

    # ─── Core Loop ────────────────────────────────────────────────────────

    async def run(self) -> BatchProgress:
        """
        Process pending pages until the pool is drained or a stop is
        requested.

        Returns:
            Progress snapshot at the end of the run.
        """
        if self.state == BatchState.RUNNING:
            self._count_pending()
            return self.progress()

        if self.project.rubric is None:
            pending = len(self.project.pending_pages())
            logger.info(
                f"Project {self.project.id}: no rubric yet, "
                f"{pending} page(s) left pending"
            )
            return self.progress()

        if get_scheduler(self.project.id) is None:
            await self.reconciler.reset_interrupted()

        self.state = BatchState.RUNNING
        self.total = 0
        self.completed = 0
        self.errors = 0
        self.last_run_stopped = False
        self._stop_requested = False
        self._queued.clear()
        self._stuck.clear()

        project_id = self.project.id
        with _schedulers_lock:
            _active_schedulers[project_id] = self

        started = time.time()
        try:
            await self.reconciler.set_status(ProjectStatus.PROCESSING)
            self._count_pending()
            logger.info(
                f"Project {project_id}: batch started, {self.total} page(s)"
            )

            while True:
                if self._stop_requested:
                    self.state = BatchState.STOPPED
                    self.last_run_stopped = True
                    logger.info(
                        f"Project {project_id}: stopped after "
                        f"{self.completed}/{self.total} page(s)"
                    )
                    break

                self._count_pending()
                page = self._next_page()
                if page is None:
                    break

                await self._process(page)
                self._queued.discard(page.id)
                still = self.project.find_unprocessed(page.id)
                if still is not None and still.status == PageStatus.PENDING:
                    # status could not be recorded; do not pick it again
                    self._stuck.add(page.id)
                self.completed += 1
                self.current_page_id = None

                if self.progress_callback:
                    self.progress_callback(self.completed, self.total)

            if not self.project.pending_pages():
                await self.reconciler.set_status(ProjectStatus.REVIEW)

            logger.info(
                f"Project {project_id}: batch finished in "
                f"{time.time() - started:.1f}s, {self.completed} processed, "
                f"{self.errors} error(s)"
            )
        finally:
            with _schedulers_lock:
                _active_schedulers.pop(project_id, None)
            self.state = BatchState.IDLE
            self._stop_requested = False
            self.current_page_id = None

        return self.progress()

    async def _process(self, page: Page):
        """Analyze and integrate one page. Never raises IntakeError."""
        self.current_page_id = page.id
        try:
            await self.reconciler.mark_page(page.id, PageStatus.PROCESSING)
            page = self.project.find_unprocessed(page.id) or page
            results = await self._watch(
                self.dispatcher.analyze(page, self.project.rubric), page.id
            )
            await self.reconciler.integrate(page, results)
        except QuotaExhaustedError as e:
            await self._fail(page, e.label, e)
            if self.halt_on_quota:
                logger.warning(
                    f"Project {self.project.id}: quota exhausted, halting batch"
                )
                self._stop_requested = True
        except IntakeError as e:
            await self._fail(page, e.label, e)
        except Exception as e:
            logger.exception(f"Page {page.id}: unexpected failure")
            await self._fail(page, IntakeError.label, e)

    async def _fail(self, page: Page, label: str, error: Exception):
        self.errors += 1
        logger.error(f"Page {page.id}: {label}: {error}")
        try:
            await self.reconciler.mark_page(page.id, PageStatus.ERROR, label)
        except Exception as e:
            logger.error(f"Page {page.id}: could not record error status: {e}")

    async def _watch(self, coro, page_id: str):
        """Await ``coro``, logging while it runs past the warning threshold."""
        if not self.slow_call_warning_seconds:
            return await coro

        task = asyncio.ensure_future(coro)
        started = time.monotonic()
        try:
            while True:
                done, _ = await asyncio.wait(
                    {task}, timeout=self.slow_call_warning_seconds
                )
                if done:
                    return task.result()
                logger.warning(
                    f"Page {page_id}: analysis still running after "
                    f"{time.monotonic() - started:.0f}s"
                )
        except asyncio.CancelledError:
            task.cancel()
            raise

    # ─── Queue Helpers ────────────────────────────────────────────────────

    def _count_pending(self):
        """Add newly pending pages to ``total`` (never decreases)."""
        for page in self.project.pending_pages():
            if page.id not in self._queued and page.id not in self._stuck:
                self._queued.add(page.id)
                self.total += 1

    def _next_page(self) -> Optional[Page]:
        for page in self.project.pending_pages():
            if page.id not in self._stuck:
                return page
        return None
