"""Database-backed task queue for deferred background work

Tasks are rows in ``queued_tasks``. A single poller claims one due task per
tick (highest priority first, then oldest ``scheduled_at``), runs its handler
and records the outcome. Failed tasks are rescheduled with exponential
backoff until ``max_retries`` is exhausted.
"""
import asyncio
import inspect
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from subsync.core.config import settings
from subsync.core.logging import task_queue_logger
from subsync.core.metrics import pending_tasks_gauge, tasks_processed_counter
from subsync.db.session import SessionLocal
from subsync.models.queued_task import QueuedTask
from subsync.utils.dates import as_utc, utcnow

TaskHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]

HIGH_PRIORITY = 5
DEFAULT_PRIORITY = 1
DEFAULT_MAX_RETRIES = 3


def _task_to_dict(task: QueuedTask) -> Dict[str, Any]:
    def _iso(value: Optional[datetime]) -> Optional[str]:
        value = as_utc(value)
        return value.isoformat() if value else None

    return {
        "id": task.id,
        "task_type": task.task_type,
        "status": task.status,
        "priority": task.priority,
        "payload": task.payload,
        "result": task.result,
        "error_message": task.error_message,
        "scheduled_at": _iso(task.scheduled_at),
        "started_at": _iso(task.started_at),
        "completed_at": _iso(task.completed_at),
        "retry_count": task.retry_count,
        "max_retries": task.max_retries,
    }


class TaskQueue:
    """Persisted priority queue with retry/backoff and a single async poller"""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory
        self.handlers: Dict[str, TaskHandler] = {}
        self._poller: Optional[asyncio.Task] = None

    def register_handler(self, task_type: str, handler: TaskHandler) -> None:
        self.handlers[task_type] = handler
        task_queue_logger.info(f"Registered task handler for: {task_type}")

    # ========================================================================
    # ENQUEUE
    # ========================================================================

    def enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any],
        priority: int = DEFAULT_PRIORITY,
        scheduled_at: Optional[datetime] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> str:
        """Persist a pending task and return its id"""
        task_id = str(uuid.uuid4())
        db = self.session_factory()
        try:
            db.add(QueuedTask(
                id=task_id,
                task_type=task_type,
                payload=payload,
                status="pending",
                priority=priority,
                scheduled_at=scheduled_at or utcnow(),
                max_retries=max_retries,
            ))
            db.commit()
        except Exception:
            db.rollback()
            task_queue_logger.error(f"Failed to enqueue task of type {task_type}", exc_info=True)
            raise
        finally:
            db.close()

        task_queue_logger.debug(f"Enqueued task {task_id} of type {task_type} (priority={priority})")
        return task_id

    def enqueue_high_priority(self, task_type: str, payload: Dict[str, Any]) -> str:
        return self.enqueue(task_type, payload, priority=HIGH_PRIORITY)

    def enqueue_bulk(self, tasks: List[Dict[str, Any]]) -> List[str]:
        """Persist several tasks in one transaction.

        Each item takes ``task_type`` and ``payload`` plus optional
        ``priority``, ``scheduled_at`` and ``max_retries``.
        """
        now = utcnow()
        rows = [
            QueuedTask(
                id=str(uuid.uuid4()),
                task_type=task["task_type"],
                payload=task.get("payload") or {},
                status="pending",
                priority=task.get("priority") or DEFAULT_PRIORITY,
                scheduled_at=task.get("scheduled_at") or now,
                max_retries=task.get("max_retries", DEFAULT_MAX_RETRIES),
            )
            for task in tasks
        ]
        db = self.session_factory()
        try:
            db.add_all(rows)
            db.commit()
        except Exception:
            db.rollback()
            task_queue_logger.error("Failed to enqueue bulk tasks", exc_info=True)
            raise
        finally:
            db.close()

        task_queue_logger.info(f"Enqueued {len(rows)} bulk tasks")
        return [row.id for row in rows]

    # ========================================================================
    # PROCESSING
    # ========================================================================

    def _claim_next(self, db: Session, now: datetime) -> Optional[QueuedTask]:
        """Pick the next due task and flip it to processing.

        The flip is a conditional UPDATE, so a task already claimed elsewhere
        is skipped instead of being run twice.
        """
        candidate = db.query(QueuedTask).filter(
            QueuedTask.status == "pending",
            QueuedTask.scheduled_at <= now,
        ).order_by(QueuedTask.priority.desc(), QueuedTask.scheduled_at.asc()).first()
        if candidate is None:
            return None

        claimed = db.query(QueuedTask).filter(
            QueuedTask.id == candidate.id,
            QueuedTask.status == "pending",
        ).update({
            QueuedTask.status: "processing",
            QueuedTask.started_at: now,
        }, synchronize_session=False)
        db.commit()
        if not claimed:
            return None

        db.refresh(candidate)
        return candidate

    async def process_next_task(self, now: Optional[datetime] = None) -> Optional[str]:
        """Run at most one due task. Returns the id of the task handled, if any.

        Handler failures are recorded on the task row and never propagate.
        """
        now = now or utcnow()
        db = self.session_factory()
        try:
            task = self._claim_next(db, now)
            if task is None:
                return None

            handler = self.handlers.get(task.task_type)
            if handler is None:
                self._mark_failed(db, task, f"No handler found for task type: {task.task_type}", now)
                return task.id

            task_queue_logger.debug(f"Processing task {task.task_type} ({task.id})")
            try:
                result = handler(dict(task.payload or {}))
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                task_queue_logger.error(f"Task execution failed: {task.task_type} ({task.id}): {e}", exc_info=True)
                self._handle_failure(db, task, str(e) or type(e).__name__, now)
                return task.id

            task.status = "completed"
            task.result = result
            task.completed_at = utcnow()
            task.error_message = None
            db.commit()
            tasks_processed_counter.labels(task_type=task.task_type, status="completed").inc()
            task_queue_logger.debug(f"Completed task {task.task_type} ({task.id})")
            return task.id
        except Exception as e:
            db.rollback()
            task_queue_logger.error(f"Error in process_next_task: {e}", exc_info=True)
            return None
        finally:
            db.close()

    def _handle_failure(self, db: Session, task: QueuedTask, error_message: str, now: datetime) -> None:
        if task.retry_count < task.max_retries:
            retry_count = task.retry_count + 1
            delay = timedelta(seconds=2 ** retry_count)
            task.status = "pending"
            task.retry_count = retry_count
            task.scheduled_at = now + delay
            task.started_at = None
            task.error_message = error_message
            db.commit()
            tasks_processed_counter.labels(task_type=task.task_type, status="retried").inc()
            task_queue_logger.info(
                f"Scheduled retry {retry_count}/{task.max_retries} for task {task.id} in {delay.total_seconds():.0f}s"
            )
            return

        self._mark_failed(db, task, error_message, now)

    def _mark_failed(self, db: Session, task: QueuedTask, error_message: str, now: datetime) -> None:
        task.status = "failed"
        task.error_message = error_message
        task.completed_at = now
        db.commit()
        tasks_processed_counter.labels(task_type=task.task_type, status="failed").inc()
        task_queue_logger.error(f"Task {task.id} failed permanently: {error_message}")

    async def _poll(self, interval: float) -> None:
        while True:
            await self.process_next_task()
            await asyncio.sleep(interval)

    def start_processing(self, interval: float = settings.TASK_QUEUE_POLL_INTERVAL) -> None:
        """Start the poller on the running event loop (no-op if already running)"""
        if self._poller is not None and not self._poller.done():
            task_queue_logger.warning("Task processing already started")
            return
        self._poller = asyncio.create_task(self._poll(interval))
        task_queue_logger.info(f"Task queue processing started with {interval}s interval")

    async def stop_processing(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        task_queue_logger.info("Task queue processing stopped")

    @property
    def is_processing(self) -> bool:
        return self._poller is not None and not self._poller.done()

    # ========================================================================
    # INSPECTION & MAINTENANCE
    # ========================================================================

    def get_task_status(self, task_id: str) -> Optional[Dict[str, Any]]:
        db = self.session_factory()
        try:
            task = db.get(QueuedTask, task_id)
            return _task_to_dict(task) if task else None
        finally:
            db.close()

    def get_queue_stats(self) -> Dict[str, int]:
        db = self.session_factory()
        try:
            counts = dict(db.query(QueuedTask.status, func.count(QueuedTask.id)).group_by(QueuedTask.status).all())
        finally:
            db.close()

        stats = {status: counts.get(status, 0) for status in ("pending", "processing", "completed", "failed")}
        pending_tasks_gauge.set(stats["pending"])
        return stats

    def cleanup(self, older_than_days: int = settings.TASK_RETENTION_DAYS, now: Optional[datetime] = None) -> int:
        """Delete completed and failed tasks finished before the cutoff"""
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        db = self.session_factory()
        try:
            deleted = db.query(QueuedTask).filter(
                QueuedTask.status.in_(("completed", "failed")),
                QueuedTask.completed_at < cutoff,
            ).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        task_queue_logger.info(f"Cleaned up {deleted} finished tasks older than {older_than_days} days")
        return deleted

    def requeue_stale_tasks(self, older_than_minutes: int = settings.TASK_STALE_AFTER_MINUTES, now: Optional[datetime] = None) -> int:
        """Return tasks stuck in processing (crashed worker) to pending; counts as a retry"""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=older_than_minutes)
        db = self.session_factory()
        try:
            requeued = db.query(QueuedTask).filter(
                QueuedTask.status == "processing",
                QueuedTask.started_at < cutoff,
                QueuedTask.retry_count < QueuedTask.max_retries,
            ).update({
                QueuedTask.status: "pending",
                QueuedTask.retry_count: QueuedTask.retry_count + 1,
                QueuedTask.scheduled_at: now,
                QueuedTask.started_at: None,
                QueuedTask.error_message: "Task lease expired while processing",
            }, synchronize_session=False)
            exhausted = db.query(QueuedTask).filter(
                QueuedTask.status == "processing",
                QueuedTask.started_at < cutoff,
            ).update({
                QueuedTask.status: "failed",
                QueuedTask.completed_at: now,
                QueuedTask.error_message: "Task lease expired while processing",
            }, synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if requeued or exhausted:
            task_queue_logger.warning(f"Requeued {requeued} stale tasks, failed {exhausted} with no retries left")
        return requeued
