"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from subsync.models.base import Base
from subsync.models.user import User
from subsync.models.subscription import Subscription
from subsync.models.payment import Payment
from subsync.models.webhook_event import WebhookEvent
from subsync.models.pending_user_payment import PendingUserPayment
from subsync.models.queued_task import QueuedTask
from subsync.models.usage import DailyUsage, MonthlyUsage, SystemDailyStats

# Export all for convenience
__all__ = [
    "Base", "User", "Subscription", "Payment", "WebhookEvent",
    "PendingUserPayment", "QueuedTask", "DailyUsage", "MonthlyUsage", "SystemDailyStats"
]
