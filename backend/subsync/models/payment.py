"""Payment model"""
from sqlalchemy import Column, Integer, String, ForeignKey, JSON, Index, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from subsync.models.base import Base


class Payment(Base):
    """Append-mostly payment ledger, including zero-amount lifecycle audit rows"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    amount = Column(Integer, nullable=False, default=0)  # minor units
    currency = Column(String(3), nullable=False, default="BRL")
    status = Column(String(50), nullable=False)  # 'pending', 'checkout_created', 'succeeded', 'failed', 'refunded', 'disputed'
    type = Column(String(50), nullable=False)  # 'subscription', 'one_time', 'refund', 'chargeback', 'system_event'
    gateway = Column(String(50), nullable=False)  # gateway name or 'system'
    description = Column(String(255), nullable=True)

    # Gateway transaction ids (sparse, one per gateway)
    stripe_payment_id = Column(String(255), nullable=True, unique=True, index=True)
    mercado_pago_payment_id = Column(String(255), nullable=True, unique=True, index=True)
    kiwify_transaction_id = Column(String(255), nullable=True, unique=True, index=True)

    payment_metadata = Column(JSON, default=dict)  # normalized event or lifecycle details
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    user = relationship("User", back_populates="payments")
    subscription = relationship("Subscription", back_populates="payments")

    # Index for renewal detection and retention cleanup
    __table_args__ = (
        Index('ix_payments_subscription_status_created', 'subscription_id', 'status', 'created_at'),
    )
