"""WebhookEvent model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, JSON, DateTime, UniqueConstraint
from datetime import datetime, timezone
from subsync.models.base import Base


class WebhookEvent(Base):
    """Gateway webhook event log for idempotency and audit"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    gateway = Column(String(50), nullable=False, index=True)
    event_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint('gateway', 'event_id', name='uq_webhook_events_gateway_event'),
    )
