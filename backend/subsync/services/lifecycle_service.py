"""Subscription lifecycle: grace period, expiry, renewal and manual reactivation.

State machine::

    active --(period end passed)--> past_due --(grace window passed)--> canceled (plan=free)
    past_due/canceled --(renewal payment or manual reactivation)--> active

The sweeps in this module never talk to a gateway. They only act on local
period bounds, so a renewal that arrives after expiry is reconciled by the
next webhook for that subscription.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subsync.core.config import settings, FREE_PLAN
from subsync.core.exceptions import NotFound
from subsync.core.metrics import subscriptions_expired_counter, subscriptions_past_due_counter
from subsync.models.payment import Payment
from subsync.models.subscription import Subscription
from subsync.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)

# Lifecycle audit event types written as system_event payments
EVENT_EXPIRED = "subscription_expired"
EVENT_PAST_DUE = "subscription_past_due"
EVENT_RENEWED = "subscription_renewed"
EVENT_REACTIVATED = "subscription_reactivated"

# Payment statuses the retention pass may delete
RETENTION_DELETABLE_STATUSES = ("failed", "canceled", "checkout_created", "pending")


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


class SubscriptionLifecycle:
    """Stateless lifecycle procedures; every method takes the session and clock it acts on"""

    def __init__(
        self,
        grace_period_days: int = settings.GRACE_PERIOD_DAYS,
        renewal_window_hours: int = settings.RENEWAL_WINDOW_HOURS,
        payment_retention_days: int = settings.PAYMENT_RETENTION_DAYS,
    ):
        self.grace_period = timedelta(days=grace_period_days)
        self.renewal_window = timedelta(hours=renewal_window_hours)
        self.payment_retention = timedelta(days=payment_retention_days)

    # ========================================================================
    # SWEEPS
    # ========================================================================

    def expire_subscriptions(self, db: Session, now: Optional[datetime] = None) -> int:
        """Revert paid subscriptions whose period ended more than the grace window ago.

        Returns the number of subscriptions reverted to the free plan.
        """
        now = now or utcnow()
        cutoff = now - self.grace_period
        candidates = db.query(Subscription).filter(
            Subscription.status.in_(("active", "past_due")),
            Subscription.plan_id != FREE_PLAN,
            Subscription.current_period_end < cutoff,
        ).all()
        logger.info(f"Found {len(candidates)} expired subscriptions to process")

        expired = 0
        for subscription in candidates:
            previous_plan = subscription.plan_id
            period_end = subscription.current_period_end

            # Re-check the predicate in the UPDATE so a renewal that landed meanwhile wins
            updated = db.query(Subscription).filter(
                Subscription.id == subscription.id,
                Subscription.status.in_(("active", "past_due")),
                Subscription.plan_id != FREE_PLAN,
                Subscription.current_period_end < cutoff,
            ).update({
                Subscription.plan_id: FREE_PLAN,
                Subscription.status: "canceled",
                Subscription.canceled_at: now,
                Subscription.cancel_at_period_end: False,
                Subscription.updated_at: now,
            }, synchronize_session=False)
            if not updated:
                logger.info(f"Subscription {subscription.id} changed during expiry pass, skipping")
                continue

            expired += 1
            subscriptions_expired_counter.inc()
            self.log_subscription_event(db, subscription.user_id, EVENT_EXPIRED, {
                "previous_plan_id": previous_plan,
                "expired_at": _iso(period_end),
                "reverted_at": now.isoformat(),
                "grace_period_days": self.grace_period.days,
            }, subscription_id=subscription.id, now=now)
            logger.info(f"Reverted subscription {subscription.id} (user {subscription.user_id}) to free plan")

        db.commit()
        return expired

    def mark_grace_period(self, db: Session, now: Optional[datetime] = None) -> int:
        """Move active paid subscriptions whose period just ended to past_due.

        Returns the number of subscriptions marked.
        """
        now = now or utcnow()
        window_start = now - self.grace_period
        candidates = db.query(Subscription).filter(
            Subscription.status == "active",
            Subscription.plan_id != FREE_PLAN,
            Subscription.current_period_end < now,
            Subscription.current_period_end >= window_start,
        ).all()
        logger.info(f"Found {len(candidates)} subscriptions in grace period")

        marked = 0
        for subscription in candidates:
            period_end = subscription.current_period_end
            updated = db.query(Subscription).filter(
                Subscription.id == subscription.id,
                Subscription.status == "active",
                Subscription.current_period_end < now,
            ).update({
                Subscription.status: "past_due",
                Subscription.updated_at: now,
            }, synchronize_session=False)
            if not updated:
                continue

            marked += 1
            subscriptions_past_due_counter.inc()
            self.log_subscription_event(db, subscription.user_id, EVENT_PAST_DUE, {
                "plan_id": subscription.plan_id,
                "expired_at": _iso(period_end),
                "grace_period_ends_at": _iso(as_utc(period_end) + self.grace_period),
            }, subscription_id=subscription.id, now=now)
            logger.info(f"Marked subscription {subscription.id} as past_due (grace period)")

        db.commit()
        return marked

    def find_expiring(self, db: Session, now: Optional[datetime] = None) -> Dict[str, List[int]]:
        """Log upcoming expiries in two buckets (within 3 days, within 3-7 days)"""
        now = now or utcnow()
        three_days = now + timedelta(days=3)
        seven_days = now + timedelta(days=7)

        def _expiring(start: datetime, end: datetime) -> List[Subscription]:
            return db.query(Subscription).filter(
                Subscription.status == "active",
                Subscription.plan_id != FREE_PLAN,
                Subscription.cancel_at_period_end.is_(False),
                Subscription.current_period_end >= start,
                Subscription.current_period_end < end,
            ).all()

        soon = _expiring(now, three_days)
        later = _expiring(three_days, seven_days)

        for subscription in soon:
            logger.warning(
                f"Subscription {subscription.id} (user {subscription.user_id}) expires within 3 days: "
                f"{_iso(subscription.current_period_end)}"
            )
        for subscription in later:
            logger.info(
                f"Subscription {subscription.id} (user {subscription.user_id}) expires within 7 days: "
                f"{_iso(subscription.current_period_end)}"
            )

        return {
            "expiring_in_3_days": [s.id for s in soon],
            "expiring_in_7_days": [s.id for s in later],
        }

    def cleanup_old_payments(self, db: Session, now: Optional[datetime] = None) -> int:
        """Delete stale non-succeeded payment rows; system_event rows are always kept"""
        now = now or utcnow()
        cutoff = now - self.payment_retention
        deleted = db.query(Payment).filter(
            Payment.created_at < cutoff,
            Payment.status.in_(RETENTION_DELETABLE_STATUSES),
            Payment.type != "system_event",
        ).delete(synchronize_session=False)
        db.commit()
        logger.info(f"Deleted {deleted} payment records older than {cutoff.date()}")
        return deleted

    # ========================================================================
    # RENEWAL & REACTIVATION
    # ========================================================================

    def is_renewal_in_progress(self, subscription_id: int, db: Session, now: Optional[datetime] = None) -> bool:
        """A pending payment for this subscription inside the renewal window"""
        now = now or utcnow()
        pending = db.query(Payment.id).filter(
            Payment.subscription_id == subscription_id,
            Payment.status == "pending",
            Payment.created_at >= now - self.renewal_window,
        ).first()
        return pending is not None

    def handle_renewal_payment(self, subscription_id: int, payment: Any, db: Session, now: Optional[datetime] = None) -> Subscription:
        """Extend the period by one month from max(current period end, now).

        Does not commit; the caller owns the transaction.
        """
        now = now or utcnow()
        subscription = db.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found")

        previous_end = as_utc(subscription.current_period_end)
        new_start = previous_end if previous_end and previous_end > now else now
        new_end = new_start + relativedelta(months=1)

        subscription.status = "active"
        subscription.current_period_start = new_start
        subscription.current_period_end = new_end
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        subscription.updated_at = now
        db.flush()

        self.log_subscription_event(db, subscription.user_id, EVENT_RENEWED, {
            "plan_id": subscription.plan_id,
            "previous_period_end": _iso(previous_end),
            "new_period_start": new_start.isoformat(),
            "new_period_end": new_end.isoformat(),
            "payment_id": getattr(payment, "id", None),
            "amount": getattr(payment, "amount", None),
        }, subscription_id=subscription.id, now=now)
        logger.info(f"Renewed subscription {subscription_id} until {new_end.isoformat()}")
        return subscription

    def reactivate_subscription(
        self,
        subscription_id: int,
        new_period_end: datetime,
        db: Session,
        plan_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Operator escape hatch: force status=active with an explicit period end"""
        now = now or utcnow()
        subscription = db.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found")

        subscription.status = "active"
        if plan_id:
            subscription.plan_id = plan_id
        subscription.current_period_start = now
        subscription.current_period_end = as_utc(new_period_end)
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        subscription.updated_at = now
        db.flush()

        self.log_subscription_event(db, subscription.user_id, EVENT_REACTIVATED, {
            "plan_id": subscription.plan_id,
            "reactivated_at": now.isoformat(),
            "new_period_end": _iso(new_period_end),
            "method": "manual",
        }, subscription_id=subscription.id, now=now)
        db.commit()
        logger.info(f"Manually reactivated subscription {subscription_id}")
        return subscription

    # ========================================================================
    # AUDIT
    # ========================================================================

    def log_subscription_event(
        self,
        db: Session,
        user_id: int,
        event_type: str,
        details: Dict[str, Any],
        subscription_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Payment]:
        """Append a zero-amount system_event payment row.

        Audit rows are best effort: a failure is logged and the lifecycle
        transition that triggered it still stands.
        """
        now = now or utcnow()
        event = Payment(
            user_id=user_id,
            subscription_id=subscription_id,
            amount=0,
            currency=settings.PRO_CURRENCY,
            status="succeeded",
            type="system_event",
            gateway="system",
            description=f"Subscription event: {event_type}",
            payment_metadata={"event_type": event_type, **details, "timestamp": now.isoformat()},
            created_at=now,
        )
        try:
            with db.begin_nested():
                db.add(event)
        except SQLAlchemyError as e:
            logger.error(f"Error logging subscription event {event_type} for user {user_id}: {e}")
            return None
        return event
