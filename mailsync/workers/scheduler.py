"""
Background job dispatch.

``JobScheduler`` is the seam the orchestrator and retry logic dispatch
through: trigger a named job with a payload, get back a run id.
``AsyncioJobScheduler`` runs registered handlers as asyncio tasks and also
drives the recurring maintenance jobs.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

SYNC_JOB = "mail/sync.run"
SCHEDULED_SYNC_JOB = "mail/sync.scheduled-sweep"
WATCHDOG_JOB = "mail/sync.watchdog"

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class SchedulingError(Exception):
    """The job could not be scheduled."""
    pass


class JobScheduler(ABC):
    """Schedules named background jobs."""

    @abstractmethod
    async def schedule(
        self,
        job_name: str,
        payload: Dict[str, Any],
        delay_seconds: float = 0
    ) -> str:
        """
        Schedule a one-shot job.

        Args:
            job_name: Registered job name
            payload: JSON-serializable job payload
            delay_seconds: Wait before the job starts

        Returns:
            Run identifier

        Raises:
            SchedulingError: If the job cannot be scheduled
        """
        pass


class AsyncioJobScheduler(JobScheduler):
    """In-process scheduler backed by asyncio tasks."""

    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closed = False

    def register(self, job_name: str, handler: JobHandler):
        self._handlers[job_name] = handler
        logger.debug(f"Registered job handler: {job_name}")

    async def schedule(
        self,
        job_name: str,
        payload: Dict[str, Any],
        delay_seconds: float = 0
    ) -> str:
        if self._closed:
            raise SchedulingError("Scheduler is shut down")
        handler = self._handlers.get(job_name)
        if handler is None:
            raise SchedulingError(f"No handler registered for job: {job_name}")

        run_id = uuid.uuid4().hex
        self._track(run_id, self._run_once(run_id, job_name, handler, dict(payload), delay_seconds))
        logger.info(f"Scheduled {job_name} run {run_id} (delay {delay_seconds}s)")
        return run_id

    def schedule_recurring(
        self,
        job_name: str,
        interval_seconds: float,
        payload: Optional[Dict[str, Any]] = None
    ) -> str:
        """Run a registered job every ``interval_seconds`` until shutdown."""
        handler = self._handlers.get(job_name)
        if handler is None:
            raise SchedulingError(f"No handler registered for job: {job_name}")
        run_id = f"{job_name}:recurring"
        self._track(run_id, self._run_recurring(job_name, handler, payload or {}, interval_seconds))
        return run_id

    def _track(self, run_id: str, coro):
        task = asyncio.create_task(coro)
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run_id, None))

    async def _run_once(
        self,
        run_id: str,
        job_name: str,
        handler: JobHandler,
        payload: Dict[str, Any],
        delay_seconds: float
    ):
        if delay_seconds > 0:
            await asyncio.sleep(delay_seconds)
        try:
            await handler(payload)
        except Exception:
            logger.exception(f"Job {job_name} run {run_id} failed")

    async def _run_recurring(
        self,
        job_name: str,
        handler: JobHandler,
        payload: Dict[str, Any],
        interval_seconds: float
    ):
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await handler(dict(payload))
            except Exception:
                logger.exception(f"Recurring job {job_name} failed")

    @property
    def active_runs(self) -> int:
        return len(self._tasks)

    async def shutdown(self):
        """Cancel outstanding runs."""
        self._closed = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Scheduler stopped ({len(tasks)} runs cancelled)")
