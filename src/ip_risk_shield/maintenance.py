"""Periodic maintenance.

Maintenance jobs run independently of request traffic, each in its own
asyncio task. A failing job is logged and retried at its next interval; it
never stops the other jobs.

The engine registers four jobs:

- expire_blocks: release blocks whose expiry has passed
- refresh_threat_feeds: re-pull threat feeds and bust the reputation cache
- emit_report: build a BlockingReport and hand it to the report sink
- reap_activity: drop activity records idle for too long
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ip_risk_shield.block_store import BlockStore
from ip_risk_shield.models import BlockingReport, HistoryAction, utcnow

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledJob:
    """A named coroutine run at a fixed interval."""
    name: str
    func: JobFunc
    interval: float
    runs: int = 0
    failures: int = 0
    last_run: Optional[datetime] = None
    last_result: Any = None
    last_error: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval": self.interval,
            "runs": self.runs,
            "failures": self.failures,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            "running": self.task is not None and not self.task.done(),
        }


class MaintenanceScheduler:
    """Runs registered jobs on their own intervals."""

    def __init__(self):
        self.jobs: Dict[str, ScheduledJob] = {}
        self._shutdown_event: Optional[asyncio.Event] = None

    def add_job(self, name: str, func: JobFunc, interval: float) -> ScheduledJob:
        if name in self.jobs:
            raise ValueError(f"Job {name!r} is already registered")
        job = ScheduledJob(name=name, func=func, interval=interval)
        self.jobs[name] = job
        return job

    @property
    def running(self) -> bool:
        return any(job.task is not None and not job.task.done() for job in self.jobs.values())

    async def start(self) -> None:
        """Start one background task per job."""
        if self.running:
            return
        self._shutdown_event = asyncio.Event()
        for job in self.jobs.values():
            job.task = asyncio.create_task(self._job_loop(job), name=f"maintenance:{job.name}")
        logger.info(f"Maintenance scheduler started with {len(self.jobs)} jobs")

    async def stop(self) -> None:
        """Stop every job task."""
        if self._shutdown_event is None:
            return
        self._shutdown_event.set()
        tasks = [job.task for job in self.jobs.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        for job in self.jobs.values():
            job.task = None
        self._shutdown_event = None
        logger.info("Maintenance scheduler stopped")

    async def _job_loop(self, job: ScheduledJob) -> None:
        shutdown = self._shutdown_event
        while not shutdown.is_set():
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=job.interval)
                break
            except asyncio.TimeoutError:
                await self.run_job(job.name)

    async def run_job(self, name: str) -> Any:
        """Run a job once; failures are logged and recorded, never raised."""
        job = self.jobs.get(name)
        if job is None:
            raise KeyError(f"Unknown maintenance job: {name}")

        job.runs += 1
        job.last_run = utcnow()
        try:
            result = await job.func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            logger.error(f"Maintenance job {name} failed: {e}", exc_info=True)
            return None

        job.last_error = None
        job.last_result = result
        logger.info(f"Maintenance job {name} completed: {result}")
        return result

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {name: job.to_dict() for name, job in self.jobs.items()}


def build_blocking_report(
    block_store: BlockStore,
    stats: Dict[str, int],
    period: timedelta = timedelta(days=1),
    now: Optional[datetime] = None,
    recent_limit: int = 50,
    top_limit: int = 10,
) -> BlockingReport:
    """Summarize the current block list and recent blocking history."""
    now = now or utcnow()
    active = block_store.list_active()

    categories = Counter(record.category or "unknown" for record in active)
    countries = Counter(record.country or "Unknown" for record in active)

    recent = [
        entry.to_dict()
        for entry in reversed(block_store.history())
        if entry.action == HistoryAction.BLOCKED
    ][:recent_limit]

    report = BlockingReport(
        generated_at=now,
        period_start=now - period,
        total_blocked=stats.get("total_blocked", 0),
        auto_blocked=stats.get("auto_blocked", 0),
        manual_blocked=stats.get("manual_blocked", 0),
        active_blocks=len(active),
        false_positives=stats.get("false_positives", 0),
        review_queue=stats.get("review_queue", 0),
        top_categories=categories.most_common(top_limit),
        top_countries=countries.most_common(top_limit),
        recent_blocks=recent,
    )
    report.recommendations = recommendations_for(report)
    return report


def recommendations_for(report: BlockingReport) -> List[str]:
    recommendations = []
    if report.false_positives > report.auto_blocked * 0.1:
        recommendations.append("Consider adjusting auto-block threshold to reduce false positives")
    if report.review_queue > 50:
        recommendations.append("Review queue is growing, consider lowering review threshold")
    return recommendations
