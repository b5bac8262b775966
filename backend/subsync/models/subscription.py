"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from subsync.models.base import Base


class Subscription(Base):
    """Per-user entitlement, reconciled against whichever gateway billed it"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    plan_id = Column(String(50), nullable=False, default="free")  # 'free', 'pro'
    status = Column(String(50), nullable=False, default="active")  # 'active', 'past_due', 'canceled'
    gateway = Column(String(50), nullable=True)  # 'stripe', 'mercado_pago', 'kiwify'; None if never paid

    # Per-gateway external identifiers (only the assigned gateway's pair is populated)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    mercado_pago_customer_id = Column(String(255), nullable=True, index=True)
    mercado_pago_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    kiwify_customer_id = Column(String(255), nullable=True, index=True)
    kiwify_subscription_id = Column(String(255), nullable=True, unique=True, index=True)

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True, index=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    user = relationship("User", back_populates="subscription")
    payments = relationship("Payment", back_populates="subscription")
