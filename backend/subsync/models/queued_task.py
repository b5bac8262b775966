"""QueuedTask model"""
from sqlalchemy import Column, Integer, String, Text, JSON, Index, DateTime
from datetime import datetime, timezone
from subsync.models.base import Base


class QueuedTask(Base):
    """Persisted unit of deferred work for the task queue poller"""
    __tablename__ = "queued_tasks"

    id = Column(String(36), primary_key=True)  # uuid4
    task_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default="pending", index=True)  # 'pending', 'processing', 'completed', 'failed'
    priority = Column(Integer, nullable=False, default=1)  # higher runs first
    scheduled_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Index matching the poller's selection order
    __table_args__ = (
        Index('ix_queued_tasks_dispatch', 'status', 'priority', 'scheduled_at'),
    )
