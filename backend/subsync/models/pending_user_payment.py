"""PendingUserPayment model"""
from sqlalchemy import Column, Integer, String, Boolean, JSON, DateTime
from datetime import datetime, timezone
from subsync.models.base import Base


class PendingUserPayment(Base):
    """Approved purchase for an email that has no account yet; claimed at registration"""
    __tablename__ = "pending_user_payments"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String(3), nullable=False, default="BRL")
    gateway = Column(String(50), nullable=False, default="kiwify")
    gateway_data = Column(JSON, default=dict)
    expiration_date = Column(DateTime(timezone=True), nullable=False)
    is_processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
