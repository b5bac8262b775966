"""Background scheduler for subscription lifecycle sweeps and queue maintenance"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session, sessionmaker

from subsync.core.config import settings, Settings
from subsync.core.logging import scheduler_logger
from subsync.core.metrics import scheduler_runs_counter
from subsync.db.session import SessionLocal
from subsync.services.lifecycle_service import SubscriptionLifecycle
from subsync.tasks.task_queue import TaskQueue
from subsync.utils.dates import utcnow


@dataclass(frozen=True)
class Cadence:
    """Wall-clock schedule: every hour at ``minute``, or daily at ``hour``, or monthly on ``day``"""
    minute: int = 0
    hour: Optional[int] = None
    day: Optional[int] = None


def next_run_time(cadence: Cadence, now: datetime, tz: ZoneInfo) -> datetime:
    """Next fire time strictly after ``now``, returned in UTC"""
    local = now.astimezone(tz)
    candidate = local.replace(minute=cadence.minute, second=0, microsecond=0)
    if cadence.hour is not None:
        candidate = candidate.replace(hour=cadence.hour)
    if cadence.day is not None:
        candidate = candidate.replace(day=cadence.day)

    while candidate <= local:
        if cadence.day is not None:
            candidate += relativedelta(months=1)
        elif cadence.hour is not None:
            candidate += timedelta(days=1)
        else:
            candidate += timedelta(hours=1)
    return candidate.astimezone(timezone.utc)


def _format_hour(hour: int) -> str:
    if hour == 0:
        return "12 AM"
    if hour < 12:
        return f"{hour} AM"
    if hour == 12:
        return "12 PM"
    return f"{hour - 12} PM"


@dataclass
class ScheduledJob:
    name: str
    description: str
    cadence: Cadence
    run: Callable[[Session], object]


class BillingScheduler:
    """Runs each job in its own asyncio loop; a failing run is logged and the loop carries on"""

    def __init__(
        self,
        lifecycle: SubscriptionLifecycle,
        task_queue: Optional[TaskQueue] = None,
        session_factory: sessionmaker = SessionLocal,
        config: Settings = settings,
    ):
        self.lifecycle = lifecycle
        self.task_queue = task_queue
        self.session_factory = session_factory
        self.tz = ZoneInfo(config.SCHEDULER_TIMEZONE)
        self.initialized = False
        self._tasks: List[asyncio.Task] = []

        tz_name = config.SCHEDULER_TIMEZONE
        self.jobs: Dict[str, ScheduledJob] = {
            "expiration_check": ScheduledJob(
                "expiration_check",
                "Subscription expiration check - Every hour",
                Cadence(minute=0),
                self._expiration_check,
            ),
            "expiration_alerts": ScheduledJob(
                "expiration_alerts",
                f"Expiration alerts - Daily at {_format_hour(config.ALERT_HOUR)} ({tz_name})",
                Cadence(minute=0, hour=config.ALERT_HOUR),
                self._expiration_alerts,
            ),
            "payment_cleanup": ScheduledJob(
                "payment_cleanup",
                f"Payment records cleanup - Monthly on 1st at {_format_hour(config.RETENTION_HOUR)} ({tz_name})",
                Cadence(minute=0, hour=config.RETENTION_HOUR, day=1),
                self._payment_cleanup,
            ),
        }
        if task_queue is not None:
            self.jobs["task_queue_maintenance"] = ScheduledJob(
                "task_queue_maintenance",
                f"Task queue cleanup - Daily at {_format_hour(config.RETENTION_HOUR)} ({tz_name})",
                Cadence(minute=30, hour=config.RETENTION_HOUR),
                self._task_queue_maintenance,
            )

    # ========================================================================
    # JOBS
    # ========================================================================

    def _expiration_check(self, db: Session) -> int:
        return self.lifecycle.expire_subscriptions(db)

    def _expiration_alerts(self, db: Session) -> Dict[str, object]:
        marked = self.lifecycle.mark_grace_period(db)
        expiring = self.lifecycle.find_expiring(db)
        scheduler_logger.info(
            f"Found {len(expiring['expiring_in_3_days'])} subscriptions expiring in 3 days, "
            f"{len(expiring['expiring_in_7_days'])} in 7 days"
        )
        return {"past_due": marked, **expiring}

    def _payment_cleanup(self, db: Session) -> int:
        return self.lifecycle.cleanup_old_payments(db)

    def _task_queue_maintenance(self, db: Session) -> Dict[str, int]:
        return {
            "requeued": self.task_queue.requeue_stale_tasks(),
            "deleted": self.task_queue.cleanup(),
        }

    def run_job(self, name: str) -> object:
        """Run one job now in a fresh session. Errors propagate to the caller."""
        job = self.jobs[name]
        db = self.session_factory()
        try:
            scheduler_logger.info(f"Running scheduled job: {job.description}")
            result = job.run(db)
            scheduler_runs_counter.labels(job=name, status="success").inc()
            scheduler_logger.info(f"Scheduled job {name} completed: {result}")
            return result
        except Exception:
            db.rollback()
            scheduler_runs_counter.labels(job=name, status="error").inc()
            raise
        finally:
            db.close()

    async def _job_loop(self, job: ScheduledJob) -> None:
        while True:
            now = utcnow()
            fire_at = next_run_time(job.cadence, now, self.tz)
            await asyncio.sleep(max((fire_at - now).total_seconds(), 0))
            try:
                self.run_job(job.name)
            except Exception as e:
                scheduler_logger.error(f"Scheduled job {job.name} failed: {e}", exc_info=True)

    # ========================================================================
    # CONTROL
    # ========================================================================

    def start(self) -> None:
        if self.initialized:
            scheduler_logger.warning("Scheduler already initialized")
            return

        scheduler_logger.info("Initializing scheduled jobs...")
        self._tasks = [asyncio.create_task(self._job_loop(job)) for job in self.jobs.values()]
        self.initialized = True
        scheduler_logger.info("Scheduled jobs initialized successfully")

    async def shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self.initialized = False
        scheduler_logger.info("Scheduler stopped")

    def trigger_expiration_check(self) -> int:
        scheduler_logger.info("Manual trigger: Running subscription expiration check")
        return self.run_job("expiration_check")

    def get_status(self) -> Dict[str, object]:
        now = utcnow()
        return {
            "initialized": self.initialized,
            "jobs": [job.description for job in self.jobs.values()],
            "next_runs": {
                name: next_run_time(job.cadence, now, self.tz).isoformat()
                for name, job in self.jobs.items()
            },
        }
