"""Billing orchestrator - the only component that mutates Subscription and Payment for gateway traffic"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from subsync.core.config import settings, Settings, FREE_PLAN
from subsync.core.exceptions import AlreadySubscribed, BillingError, NotFound, UnsupportedGateway
from subsync.core.logging import billing_logger, webhook_logger
from subsync.core.metrics import (
    checkout_sessions_counter, webhook_failures_counter, webhooks_received_counter
)
from subsync.models.payment import Payment
from subsync.models.pending_user_payment import PendingUserPayment
from subsync.models.subscription import Subscription
from subsync.models.user import User
from subsync.models.webhook_event import WebhookEvent
from subsync.services.gateways.base import (
    PaymentGateway, PaymentSnapshot, RemoteSubscriptionSnapshot, TranslatedEvent, WebhookAction
)
from subsync.services.gateways.kiwify import subscription_period_for_amount
from subsync.services.lifecycle_service import SubscriptionLifecycle
from subsync.services.user_service import (
    create_user, get_or_create_free_subscription, get_user_by_email, get_user_by_id
)
from subsync.utils.dates import as_utc, utcnow


@dataclass(frozen=True)
class GatewayColumns:
    """Names of the sparse per-gateway id columns on Subscription and Payment"""
    customer: str
    subscription: str
    payment: str


GATEWAY_COLUMNS = {
    "stripe": GatewayColumns("stripe_customer_id", "stripe_subscription_id", "stripe_payment_id"),
    "mercado_pago": GatewayColumns("mercado_pago_customer_id", "mercado_pago_subscription_id", "mercado_pago_payment_id"),
    "kiwify": GatewayColumns("kiwify_customer_id", "kiwify_subscription_id", "kiwify_transaction_id"),
}

# Later webhooks never move a payment back to an earlier state
PAYMENT_STATUS_RANK = {
    "checkout_created": 0,
    "pending": 1,
    "failed": 2,
    "succeeded": 3,
    "refunded": 4,
    "disputed": 4,
}

CANCEL_MESSAGE = "Subscription will be canceled at the end of the current period"


def _metadata_user_id(metadata: Dict[str, Any]) -> Optional[int]:
    value = (metadata or {}).get("userId")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


class BillingOrchestrator:
    """Routes user intents and webhooks to the right gateway and reconciles local state"""

    def __init__(
        self,
        gateways: Dict[str, PaymentGateway],
        lifecycle: SubscriptionLifecycle,
        config: Settings = settings,
    ):
        self.gateways = gateways
        self.lifecycle = lifecycle
        self.config = config

    def get_gateway(self, gateway_name: str) -> PaymentGateway:
        gateway = self.gateways.get(gateway_name)
        if gateway is None:
            raise UnsupportedGateway(f"Unsupported payment gateway: {gateway_name}")
        return gateway

    # ========================================================================
    # CHECKOUT & PORTAL
    # ========================================================================

    def create_checkout_session(
        self,
        user_id: int,
        plan_id: str,
        gateway_name: str,
        success_url: str,
        cancel_url: str,
        db: Session,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Start a hosted checkout and record a checkout_created payment.

        The Subscription row is never touched here; activation only happens
        when the gateway confirms payment through a webhook.

        Raises:
            NotFound: unknown user
            AlreadySubscribed: user already has an active paid plan
            UnsupportedGateway / InvalidPlan / UpstreamError: from the gateway
        """
        user = get_user_by_id(user_id, db)
        if not user:
            raise NotFound("User not found")

        subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
        if subscription and subscription.status == "active" and subscription.plan_id != FREE_PLAN:
            raise AlreadySubscribed("User already has an active subscription")

        gateway = self.get_gateway(gateway_name)
        price = gateway.get_plan_price(plan_id)
        result = gateway.start_checkout(user.id, plan_id, success_url, cancel_url, user.email, metadata)

        db.add(Payment(
            user_id=user.id,
            subscription_id=subscription.id if subscription else None,
            amount=price.amount,
            currency=price.currency,
            status="checkout_created",
            type="subscription",
            gateway=gateway_name,
            description=f"Checkout session for plan {plan_id}",
            payment_metadata={
                "session_id": result.session_id,
                "plan_id": plan_id,
                "gateway_data": result.gateway_data,
            },
        ))
        db.commit()

        checkout_sessions_counter.labels(gateway=gateway_name).inc()
        billing_logger.info(f"Checkout session {result.session_id} created for user {user_id} via {gateway_name}")
        return {"checkout_url": result.url, "session_id": result.session_id, "gateway": gateway_name}

    def open_management_session(self, user_id: int, return_url: str, db: Session) -> Dict[str, str]:
        subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
        if not subscription or not subscription.gateway:
            raise NotFound("No subscription found")
        return self.get_gateway(subscription.gateway).open_management_session(user_id, return_url)

    # ========================================================================
    # WEBHOOKS
    # ========================================================================

    def handle_webhook(
        self,
        gateway_name: str,
        raw_body: bytes,
        signature: Optional[str],
        headers: Optional[Dict[str, str]],
        db: Session,
    ) -> Dict[str, Any]:
        """Authenticate, de-duplicate and apply a gateway webhook.

        Processing errors are recorded on the WebhookEvent row and re-raised
        so the processor retries the delivery.
        """
        gateway = self.get_gateway(gateway_name)
        try:
            event = gateway.parse_webhook(raw_body, signature, headers)
        except BillingError as e:
            webhook_failures_counter.labels(gateway=gateway_name, reason=type(e).__name__).inc()
            webhook_logger.warning(f"Rejected {gateway_name} webhook: {e.message}")
            raise

        record = self._log_webhook_event(gateway_name, event.id, event.type, event.data, db)
        if record.processed:
            webhook_logger.info(f"Webhook event {gateway_name}:{event.id} already processed")
            return {"received": True}

        try:
            translated = gateway.translate_event(event)
            self.apply_event(gateway_name, translated, db)
            record.processed = True
            record.processed_at = utcnow()
            record.error_message = None
            db.commit()
        except Exception as e:
            db.rollback()
            self._record_webhook_error(gateway_name, event.id, str(e), db)
            webhook_failures_counter.labels(gateway=gateway_name, reason=type(e).__name__).inc()
            webhook_logger.error(f"Error processing {gateway_name} webhook {event.id} ({event.type}): {e}", exc_info=True)
            raise

        webhooks_received_counter.labels(gateway=gateway_name, action=translated.action.value).inc()
        webhook_logger.info(f"Processed {gateway_name} webhook {event.id} ({event.type}) -> {translated.action.value}")
        return {"received": True}

    def _log_webhook_event(self, gateway_name: str, event_id: str, event_type: str, payload: dict, db: Session) -> WebhookEvent:
        record = db.query(WebhookEvent).filter(
            WebhookEvent.gateway == gateway_name,
            WebhookEvent.event_id == event_id,
        ).first()
        if record:
            return record

        record = WebhookEvent(
            gateway=gateway_name,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            processed=False,
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event inserted first
            db.rollback()
            return db.query(WebhookEvent).filter(
                WebhookEvent.gateway == gateway_name,
                WebhookEvent.event_id == event_id,
            ).one()
        db.refresh(record)
        return record

    def _record_webhook_error(self, gateway_name: str, event_id: str, error_message: str, db: Session) -> None:
        record = db.query(WebhookEvent).filter(
            WebhookEvent.gateway == gateway_name,
            WebhookEvent.event_id == event_id,
        ).first()
        if record:
            record.error_message = error_message[:2000]
            db.commit()

    def apply_event(self, gateway_name: str, translated: TranslatedEvent, db: Session, now: Optional[datetime] = None) -> None:
        """Reconcile a translated event into Subscription/Payment rows (no commit)"""
        now = now or utcnow()

        if self._is_direct_purchase(gateway_name, translated):
            self._apply_purchase(gateway_name, translated, db, now)
            return

        renewal_subscription = None
        payment = translated.payment
        if translated.action == WebhookAction.PAYMENT_SUCCEEDED and payment and payment.type == "subscription":
            candidate = self.find_subscription(
                gateway_name, db,
                customer_id=payment.customer_id,
                subscription_id=payment.subscription_id,
                email=payment.customer_email,
            )
            # Checked before the payment row is written: that write may resolve the pending row
            if candidate and self.lifecycle.is_renewal_in_progress(candidate.id, db, now):
                renewal_subscription = candidate

        subscription = None
        if translated.subscription:
            subscription = self.upsert_subscription(
                gateway_name, translated.subscription, db, now,
                update_period=renewal_subscription is None,
            )

        if payment:
            self.record_payment(gateway_name, payment, db, subscription=subscription or renewal_subscription)

        if renewal_subscription:
            self.lifecycle.handle_renewal_payment(renewal_subscription.id, payment, db, now)

    # ========================================================================
    # RECONCILIATION
    # ========================================================================

    def find_subscription(
        self,
        gateway_name: str,
        db: Session,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        email: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> Optional[Subscription]:
        """Find the local row matching any of the given keys.

        Keys are tried from most to least specific so an ambiguous match
        resolves to the external subscription id first.
        """
        columns = GATEWAY_COLUMNS[gateway_name]
        conditions = []
        if subscription_id:
            conditions.append(getattr(Subscription, columns.subscription) == subscription_id)
        if customer_id:
            conditions.append(getattr(Subscription, columns.customer) == customer_id)
        if email:
            conditions.append(Subscription.user_id.in_(
                select(User.id).where(func.lower(User.email) == email.strip().lower())
            ))
        if user_id:
            conditions.append(Subscription.user_id == user_id)

        for condition in conditions:
            subscription = db.query(Subscription).filter(condition).first()
            if subscription:
                return subscription
        return None

    def _resolve_user(self, db: Session, user_id: Optional[int], email: Optional[str]) -> Optional[User]:
        user = get_user_by_id(user_id, db) if user_id else None
        if user is None and email:
            user = get_user_by_email(email, db)
        return user

    def upsert_subscription(
        self,
        gateway_name: str,
        snapshot: RemoteSubscriptionSnapshot,
        db: Session,
        now: Optional[datetime] = None,
        update_period: bool = True,
    ) -> Optional[Subscription]:
        """Apply a remote snapshot to the matching local row, creating it if the user is known"""
        now = now or utcnow()
        columns = GATEWAY_COLUMNS[gateway_name]
        metadata_user_id = _metadata_user_id(snapshot.metadata)

        subscription = self.find_subscription(
            gateway_name, db,
            customer_id=snapshot.customer_id,
            subscription_id=snapshot.id,
            email=snapshot.customer_email,
            user_id=metadata_user_id,
        )
        if subscription is None:
            user = self._resolve_user(db, metadata_user_id, snapshot.customer_email)
            if user is None:
                billing_logger.warning(f"No local user for {gateway_name} subscription {snapshot.id}, skipping")
                return None
            subscription = get_or_create_free_subscription(user.id, db)

        if (
            snapshot.status == "canceled"
            and subscription.gateway not in (None, gateway_name)
            and getattr(subscription, columns.subscription) != snapshot.id
        ):
            billing_logger.warning(
                f"Ignoring {gateway_name} cancellation for subscription {subscription.id} now billed by {subscription.gateway}"
            )
            return subscription

        # Only the assigned gateway's id pair stays populated
        for other_name, other_columns in GATEWAY_COLUMNS.items():
            if other_name != gateway_name:
                setattr(subscription, other_columns.customer, None)
                setattr(subscription, other_columns.subscription, None)

        subscription.gateway = gateway_name
        setattr(subscription, columns.subscription, snapshot.id)
        if snapshot.customer_id:
            setattr(subscription, columns.customer, snapshot.customer_id)

        period_end = as_utc(subscription.current_period_end)
        paid_time_left = (
            snapshot.status == "canceled"
            and subscription.plan_id != FREE_PLAN
            and period_end is not None
            and period_end > now
        )
        if paid_time_left:
            # Plan and status stay until the expiration sweep reverts the row
            subscription.cancel_at_period_end = True
            subscription.canceled_at = subscription.canceled_at or now
            update_period = False
        elif snapshot.status == "canceled":
            subscription.status = "canceled"
            subscription.cancel_at_period_end = snapshot.cancel_at_period_end
            subscription.plan_id = FREE_PLAN
            subscription.canceled_at = subscription.canceled_at or now
        else:
            subscription.status = snapshot.status
            subscription.cancel_at_period_end = snapshot.cancel_at_period_end
            subscription.plan_id = snapshot.plan_id
            if not snapshot.cancel_at_period_end:
                subscription.canceled_at = None

        if update_period:
            if snapshot.current_period_start:
                subscription.current_period_start = snapshot.current_period_start
            if snapshot.current_period_end:
                subscription.current_period_end = snapshot.current_period_end

        subscription.updated_at = now
        db.flush()
        billing_logger.info(
            f"Reconciled subscription {subscription.id} (user {subscription.user_id}) from {gateway_name}: "
            f"plan={subscription.plan_id} status={subscription.status} period_end={_iso(subscription.current_period_end)}"
        )
        return subscription

    def record_payment(
        self,
        gateway_name: str,
        snapshot: PaymentSnapshot,
        db: Session,
        subscription: Optional[Subscription] = None,
    ) -> Optional[Payment]:
        """Upsert a payment keyed by the gateway's own transaction id"""
        columns = GATEWAY_COLUMNS[gateway_name]
        if subscription is None and snapshot.type == "subscription":
            subscription = self.find_subscription(
                gateway_name, db,
                customer_id=snapshot.customer_id,
                subscription_id=snapshot.subscription_id,
                email=snapshot.customer_email,
            )

        user_id = subscription.user_id if subscription else None
        if user_id is None:
            user = self._resolve_user(db, _metadata_user_id(snapshot.metadata), snapshot.customer_email)
            user_id = user.id if user else None
        if user_id is None:
            billing_logger.warning(f"No local user for {gateway_name} payment {snapshot.id}, skipping")
            return None

        existing = db.query(Payment).filter(getattr(Payment, columns.payment) == snapshot.id).first()
        if existing is None:
            payment = Payment(
                user_id=user_id,
                subscription_id=subscription.id if subscription else None,
                amount=snapshot.amount,
                currency=snapshot.currency,
                status=snapshot.status,
                type=snapshot.type,
                gateway=gateway_name,
                description=f"{gateway_name} {snapshot.type} payment",
                payment_metadata=dict(snapshot.metadata),
            )
            setattr(payment, columns.payment, snapshot.id)
            try:
                with db.begin_nested():
                    db.add(payment)
                billing_logger.info(f"Recorded {gateway_name} payment {snapshot.id} ({snapshot.status}) for user {user_id}")
                return payment
            except IntegrityError:
                existing = db.query(Payment).filter(getattr(Payment, columns.payment) == snapshot.id).one()

        if PAYMENT_STATUS_RANK.get(snapshot.status, 0) >= PAYMENT_STATUS_RANK.get(existing.status, 0):
            existing.status = snapshot.status
        existing.amount = snapshot.amount
        existing.payment_metadata = {**(existing.payment_metadata or {}), **snapshot.metadata}
        if subscription and existing.subscription_id is None:
            existing.subscription_id = subscription.id
        db.flush()
        billing_logger.info(f"Updated {gateway_name} payment {snapshot.id} -> {existing.status}")
        return existing

    # ========================================================================
    # PURCHASES WITHOUT A PRIOR CHECKOUT (Kiwify)
    # ========================================================================

    @staticmethod
    def _is_direct_purchase(gateway_name: str, translated: TranslatedEvent) -> bool:
        return (
            gateway_name == "kiwify"
            and translated.action == WebhookAction.SUBSCRIPTION_CREATED
            and translated.payment is not None
            and translated.payment.status == "succeeded"
        )

    def _apply_purchase(self, gateway_name: str, translated: TranslatedEvent, db: Session, now: datetime) -> None:
        """Activate a paid plan for a known email, or park the purchase until the email registers"""
        payment = translated.payment
        snapshot = translated.subscription
        user = self._resolve_user(db, _metadata_user_id(payment.metadata), payment.customer_email)
        period_end = (snapshot.current_period_end if snapshot else None) or now + subscription_period_for_amount(payment.amount)

        if user is None:
            self._store_pending_payment(gateway_name, translated, period_end, db, now)
            return

        subscription = get_or_create_free_subscription(user.id, db)
        if snapshot:
            snapshot.current_period_start = snapshot.current_period_start or now
            snapshot.current_period_end = period_end
            subscription = self.upsert_subscription(gateway_name, snapshot, db, now)
        self.record_payment(gateway_name, payment, db, subscription=subscription)
        billing_logger.info(f"Activated {gateway_name} purchase for user {user.id} until {_iso(period_end)}")

    def _store_pending_payment(
        self,
        gateway_name: str,
        translated: TranslatedEvent,
        expiration_date: datetime,
        db: Session,
        now: datetime,
    ) -> Optional[PendingUserPayment]:
        payment = translated.payment
        if not payment.customer_email:
            billing_logger.warning(f"{gateway_name} purchase {payment.id} has no customer email, skipping")
            return None

        gateway_data = {
            "payment_id": payment.id,
            "subscription_id": translated.subscription.id if translated.subscription else payment.subscription_id,
            "plan_id": translated.subscription.plan_id if translated.subscription else None,
            "customer_id": payment.customer_id,
            "metadata": payment.metadata,
        }
        pending = db.query(PendingUserPayment).filter(PendingUserPayment.email == payment.customer_email).first()
        if pending is None:
            pending = PendingUserPayment(email=payment.customer_email)
            db.add(pending)

        pending.name = payment.metadata.get("customer_name")
        pending.amount = payment.amount
        pending.currency = payment.currency
        pending.gateway = gateway_name
        pending.gateway_data = gateway_data
        pending.expiration_date = expiration_date
        pending.is_processed = False
        pending.processed_at = None
        db.flush()
        billing_logger.info(f"Stored pending {gateway_name} payment {payment.id} until the buyer registers")
        return pending

    def register_user(self, email: str, db: Session, name: Optional[str] = None) -> User:
        """Create an account and run the registration hook for it"""
        user = create_user(email, name=name, db=db)
        self.on_user_registered(user, db)
        return user

    def on_user_registered(self, user: User, db: Session, now: Optional[datetime] = None) -> Subscription:
        """Registration hook: create the free subscription and claim any parked purchase"""
        now = now or utcnow()
        subscription = get_or_create_free_subscription(user.id, db)

        pending = db.query(PendingUserPayment).filter(
            func.lower(PendingUserPayment.email) == user.email.strip().lower(),
            PendingUserPayment.is_processed.is_(False),
        ).first()
        if pending is None:
            db.commit()
            return subscription

        if as_utc(pending.expiration_date) <= now:
            billing_logger.info(f"Pending payment for user {user.id} expired on {_iso(pending.expiration_date)}, not applied")
            db.commit()
            return subscription

        data = pending.gateway_data or {}
        columns = GATEWAY_COLUMNS[pending.gateway]
        for other_name, other_columns in GATEWAY_COLUMNS.items():
            if other_name != pending.gateway:
                setattr(subscription, other_columns.customer, None)
                setattr(subscription, other_columns.subscription, None)
        subscription.gateway = pending.gateway
        subscription.plan_id = data.get("plan_id") or "pro"
        subscription.status = "active"
        subscription.current_period_start = now
        subscription.current_period_end = pending.expiration_date
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        setattr(subscription, columns.customer, data.get("customer_id") or user.email)
        if data.get("subscription_id"):
            setattr(subscription, columns.subscription, data["subscription_id"])
        db.flush()

        if data.get("payment_id"):
            self.record_payment(pending.gateway, PaymentSnapshot(
                id=data["payment_id"],
                amount=pending.amount,
                currency=pending.currency,
                status="succeeded",
                type="subscription" if data.get("subscription_id") else "one_time",
                subscription_id=data.get("subscription_id"),
                customer_id=data.get("customer_id"),
                customer_email=user.email,
                metadata=data.get("metadata") or {},
            ), db, subscription=subscription)

        pending.is_processed = True
        pending.processed_at = now
        db.commit()
        billing_logger.info(f"Applied pending {pending.gateway} payment to new user {user.id}")
        return subscription

    # ========================================================================
    # USER INTENTS & QUERIES
    # ========================================================================

    def cancel_subscription(self, user_id: int, db: Session, now: Optional[datetime] = None) -> Dict[str, str]:
        """Cancel at period end on the gateway, then mirror the flag locally"""
        now = now or utcnow()
        subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
        if not subscription or not subscription.gateway:
            raise NotFound("No subscription found")

        external_id = getattr(subscription, GATEWAY_COLUMNS[subscription.gateway].subscription)
        if not external_id:
            raise NotFound("No gateway subscription to cancel")

        self.get_gateway(subscription.gateway).cancel_remote_subscription(external_id)

        subscription.cancel_at_period_end = True
        subscription.canceled_at = now
        subscription.updated_at = now
        db.commit()
        billing_logger.info(f"Subscription {subscription.id} for user {user_id} set to cancel at period end")
        return {"message": CANCEL_MESSAGE}

    def get_subscription_status(self, user_id: int, db: Session) -> Dict[str, Any]:
        subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
        if not subscription:
            return {
                "user_id": user_id,
                "plan_id": FREE_PLAN,
                "status": "active",
                "gateway": None,
                "current_period_start": None,
                "current_period_end": None,
                "cancel_at_period_end": False,
                "canceled_at": None,
            }
        return {
            "user_id": user_id,
            "plan_id": subscription.plan_id,
            "status": subscription.status,
            "gateway": subscription.gateway,
            "current_period_start": _iso(subscription.current_period_start),
            "current_period_end": _iso(subscription.current_period_end),
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "canceled_at": _iso(subscription.canceled_at),
        }

    def get_expiration_status(self, user_id: int, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
        if not subscription or subscription.plan_id == FREE_PLAN or not subscription.current_period_end:
            return {
                "is_expired": False,
                "is_in_grace_period": False,
                "days_until_expiry": 0,
                "expiry_date": None,
            }

        period_end = as_utc(subscription.current_period_end)
        days_diff = math.ceil((period_end - now).total_seconds() / 86400)
        is_expired = period_end < now
        return {
            "is_expired": is_expired,
            "is_in_grace_period": is_expired and now - period_end <= self.lifecycle.grace_period,
            "days_until_expiry": max(0, days_diff),
            "expiry_date": period_end.isoformat(),
        }

    def check_expired_subscriptions(self, db: Session, now: Optional[datetime] = None) -> int:
        return self.lifecycle.expire_subscriptions(db, now)
