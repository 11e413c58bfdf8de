"""APScheduler-backed timers for the delivery gates and maintenance jobs."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger


logger = structlog.get_logger(__name__)


class ScheduledJob:
    """Handle returned for every scheduled callback; `cancel()` is idempotent."""

    def __init__(self, owner: RelayScheduler, job_id: str) -> None:
        self._owner = owner
        self.job_id = job_id

    def cancel(self) -> None:
        self._owner.remove_job(self.job_id)


class RelayScheduler:
    """Thin wrapper over AsyncIOScheduler that satisfies the gate's `Timers` protocol."""

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.running = False

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.start()
        self.running = True
        logger.info("Scheduler started")

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        self.jobs.clear()
        logger.info("Scheduler stopped")

    def _job_id(self, name: str) -> str:
        return f"{name}-{uuid.uuid4().hex[:8]}"

    def every(self, seconds: float, fn: Callable[[], Awaitable[None]], *, name: str) -> ScheduledJob:
        job_id = self._job_id(name)
        self.scheduler.add_job(
            fn,
            trigger=IntervalTrigger(seconds=max(0.001, float(seconds))),
            id=job_id,
            name=name,
            max_instances=1,
            coalesce=True,
        )
        self.jobs[job_id] = {"type": "interval", "name": name, "seconds": seconds, "added_at": datetime.now(timezone.utc)}
        return ScheduledJob(self, job_id)

    def later(self, seconds: float, fn: Callable[[], Awaitable[None]], *, name: str) -> ScheduledJob:
        job_id = self._job_id(name)

        async def _once() -> None:
            self.jobs.pop(job_id, None)
            await fn()

        run_date = datetime.now(timezone.utc) + timedelta(seconds=max(0.0, float(seconds)))
        self.scheduler.add_job(
            _once,
            trigger=DateTrigger(run_date=run_date),
            id=job_id,
            name=name,
            misfire_grace_time=None,
        )
        self.jobs[job_id] = {"type": "once", "name": name, "run_at": run_date}
        return ScheduledJob(self, job_id)

    def remove_job(self, job_id: str) -> None:
        self.jobs.pop(job_id, None)
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def job_names(self) -> list[str]:
        return sorted(str(j["name"]) for j in self.jobs.values())
