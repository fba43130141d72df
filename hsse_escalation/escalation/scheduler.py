"""Escalation scheduler for periodic sweeps and delayed actions."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from apscheduler.jobstores.base import ConflictingIdError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from hsse_escalation.config import settings
from hsse_escalation.escalation.engine import EscalationEngine, SweepResult
from hsse_escalation.interfaces import IncidentSnapshotProvider
from hsse_escalation.utils.logging import CorrelationContextManager, get_logger

logger = get_logger(__name__)

SWEEP_JOB_ID = "escalation_sweep"


class EscalationScheduler:
    """Runs the periodic escalation sweep and one-off delayed actions.

    Implements the ActionScheduler interface the engine uses for actions
    with a delay. The engine is attached after construction because the
    two reference each other.
    """

    def __init__(
        self,
        incident_provider: IncidentSnapshotProvider,
        engine: Optional[EscalationEngine] = None,
        interval_seconds: Optional[int] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.incident_provider = incident_provider
        self.engine = engine
        self.interval_seconds = interval_seconds or settings.SWEEP_INTERVAL_SECONDS
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.last_sweep: Optional[Dict[str, Any]] = None
        self._cancel_handlers: Dict[str, Tuple[Callable[..., Awaitable[Any]], Tuple[Any, ...]]] = {}
        self._running: Dict[str, asyncio.Task] = {}

    @property
    def is_running(self) -> bool:
        return bool(self.scheduler.running)

    async def start(self) -> None:
        """Start the escalation scheduler."""
        if self.is_running:
            logger.warning("Escalation scheduler already running")
            return

        try:
            if settings.ENABLE_ESCALATION:
                self.scheduler.add_job(
                    self._sweep_job,
                    trigger=IntervalTrigger(seconds=self.interval_seconds),
                    id=SWEEP_JOB_ID,
                    name="Sweep Open Incidents",
                    max_instances=1,
                    coalesce=True,
                    misfire_grace_time=30,
                    replace_existing=True
                )
            else:
                logger.info("Automatic escalation sweeps disabled")

            self.scheduler.start()
            logger.info("Escalation scheduler started", interval_seconds=self.interval_seconds)

        except Exception as e:
            logger.error("Error starting escalation scheduler", error=str(e))
            raise

    async def stop(self) -> None:
        """Stop the escalation scheduler.

        Delayed actions still waiting are removed and handed to their
        ``on_cancel`` callback; running ones are cancelled and awaited so
        they can record the interruption before the scheduler shuts down.
        """
        if self.is_running:
            self.scheduler.pause()

        dropped = [job.id for job in self.scheduler.get_jobs() if job.id != SWEEP_JOB_ID]
        for job_id in dropped:
            self.scheduler.remove_job(job_id)

        running = list(self._running.values())
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

        if self.is_running:
            self.scheduler.shutdown(wait=False)

        for job_id in dropped:
            await self._cancel(job_id, "Delayed action dropped at shutdown")

        logger.info(
            "Escalation scheduler stopped",
            dropped_delayed_actions=len(dropped),
            interrupted_delayed_actions=len(running)
        )

    def schedule(
        self,
        job_id: str,
        run_at: datetime,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        on_cancel: Optional[Callable[..., Awaitable[Any]]] = None,
    ) -> bool:
        """Run ``func(*args)`` once at ``run_at``. False if the job already exists."""
        if self.scheduler.get_job(job_id) is not None or job_id in self._running:
            logger.debug("Delayed action already scheduled", job_id=job_id)
            return False

        try:
            self.scheduler.add_job(
                self._run_delayed,
                trigger=DateTrigger(run_date=run_at),
                args=(job_id, func) + args,
                id=job_id,
                name=f"Delayed action {job_id}",
                misfire_grace_time=None,
            )
        except ConflictingIdError:
            return False

        if on_cancel is not None:
            self._cancel_handlers[job_id] = (on_cancel, args)
        logger.info("Delayed action scheduled", job_id=job_id, run_at=run_at.isoformat())
        return True

    async def _cancel(self, job_id: str, reason: str) -> None:
        handler = self._cancel_handlers.pop(job_id, None)
        if handler is None:
            return
        on_cancel, args = handler
        with CorrelationContextManager(job_id=job_id):
            try:
                await on_cancel(*args, reason=reason)
            except Exception as e:
                logger.error("Could not record dropped delayed action", job_id=job_id, error=str(e))

    async def _run_delayed(self, job_id: str, func: Callable[..., Awaitable[Any]], *args: Any) -> None:
        # Once started, the job records its own outcome, including cancellation
        self._cancel_handlers.pop(job_id, None)
        task = asyncio.current_task()
        if task is not None:
            self._running[job_id] = task

        with CorrelationContextManager(job_id=job_id):
            try:
                await func(*args)
            except Exception as e:
                logger.error("Delayed action failed", job_id=job_id, error=str(e))
            finally:
                self._running.pop(job_id, None)

    async def _sweep_job(self) -> None:
        with CorrelationContextManager(job_id=SWEEP_JOB_ID):
            try:
                await self.trigger_sweep()
            except Exception as e:
                logger.error("Escalation sweep failed", error=str(e))

    async def trigger_sweep(self) -> SweepResult:
        """Evaluate every open incident now."""
        if self.engine is None:
            raise RuntimeError("Escalation scheduler has no engine attached")

        started_at = datetime.now(timezone.utc)
        incidents = await self.incident_provider.get_open_incident_snapshots()
        result = await self.engine.evaluate_many(incidents)

        self.last_sweep = {
            "started_at": started_at.isoformat(),
            "incident_count": len(incidents),
            "evaluated": result.evaluated,
            "failed": result.failed,
            "actions": result.fired,
        }
        logger.info("Escalation sweep completed", **self.last_sweep)
        return result

    def get_job_status(self) -> dict:
        """Get status of scheduled jobs."""
        if not self.is_running:
            return {"status": "stopped", "jobs": [], "last_sweep": self.last_sweep}

        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger)
            })

        return {
            "status": "running",
            "jobs": jobs,
            "last_sweep": self.last_sweep
        }
