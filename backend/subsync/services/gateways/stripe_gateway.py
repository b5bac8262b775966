"""Stripe payment gateway"""
import json
import logging
from typing import Any, Dict, Optional

import stripe

from subsync.core.config import settings, Settings, FREE_PLAN, PRO_PLAN
from subsync.core.exceptions import InvalidPayload, InvalidSignature, NotFound, UpstreamError
from subsync.services.gateways.base import (
    CheckoutResult, NormalizedWebhookEvent, PaymentGateway, PaymentSnapshot, PlanPrice,
    RemoteSubscriptionSnapshot, TranslatedEvent, WebhookAction
)
from subsync.utils.dates import from_timestamp

logger = logging.getLogger(__name__)

# Stripe subscription statuses collapsed onto the local lifecycle
STRIPE_STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "paused": "past_due",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}

SUBSCRIPTION_STATE_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.paused",
    "customer.subscription.resumed",
    "customer.subscription.pending_update_applied",
    "customer.subscription.pending_update_expired",
    "customer.subscription.trial_will_end",
}
INVOICE_SUCCEEDED_EVENTS = {"invoice.payment_succeeded", "invoice.paid"}
INVOICE_FAILED_EVENTS = {
    "invoice.payment_failed",
    "invoice.payment_action_required",
    "invoice.marked_uncollectible",
}


# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
    else:
        # Item access first: attribute access on "items" hits the mapping method
        try:
            value = obj[key]
        except (KeyError, TypeError):
            value = getattr(obj, key, default)
    return default if value is None else value


def _stripe_id(value: Any) -> Optional[str]:
    """Expandable fields arrive either as an id string or as the expanded object"""
    if value is None or isinstance(value, str):
        return value
    return _get_stripe_value(value, "id")


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return {}


class StripeGateway(PaymentGateway):
    """Card subscriptions through Stripe Checkout and the Billing portal"""

    gateway_name = "stripe"

    def __init__(self, config: Settings = settings):
        self.config = config
        # Configure Stripe
        stripe.api_key = config.STRIPE_SECRET_KEY
        stripe.max_network_retries = config.STRIPE_MAX_NETWORK_RETRIES
        stripe.default_http_client = stripe.RequestsClient(timeout=config.GATEWAY_TIMEOUT_SECONDS)

    @property
    def pricing_table(self) -> Dict[str, PlanPrice]:
        return {
            PRO_PLAN: PlanPrice(
                amount=self.config.PRO_PRICE_MINOR,
                currency=self.config.PRO_CURRENCY,
                reference=self.config.STRIPE_PRICE_PRO,
            ),
        }

    def _plan_for_price(self, price_id: Optional[str]) -> str:
        for plan_id, price in self.pricing_table.items():
            if price.reference and price.reference == price_id:
                return plan_id
        return FREE_PLAN

    # ========================================================================
    # CHECKOUT & PORTAL
    # ========================================================================

    def start_checkout(self, user_id, plan_id, success_url, cancel_url, user_email, metadata=None) -> CheckoutResult:
        price = self.get_plan_price(plan_id)
        session_metadata = {
            **{k: str(v) for k, v in (metadata or {}).items()},
            "userId": str(user_id),
            "planId": plan_id,
            "gateway": self.gateway_name,
        }

        try:
            existing = stripe.Customer.search(query=f"email:'{user_email}'", limit=1)
            if existing.data:
                customer = existing.data[0]
            else:
                customer = stripe.Customer.create(
                    email=user_email,
                    metadata={"userId": str(user_id)},
                )

            session = stripe.checkout.Session.create(
                customer=customer.id,
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{"price": price.reference, "quantity": 1}],
                success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=cancel_url,
                metadata=session_metadata,
                subscription_data={"metadata": {"userId": str(user_id), "planId": plan_id}},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout creation failed for user {user_id}: {e}")
            raise UpstreamError(f"Stripe checkout failed: {e}") from e

        return CheckoutResult(
            session_id=session.id,
            url=session.url,
            gateway_data={"customer_id": customer.id},
        )

    def open_management_session(self, user_id, return_url) -> Dict[str, str]:
        try:
            customers = stripe.Customer.search(query=f"metadata['userId']:'{user_id}'", limit=1)
        except stripe.StripeError as e:
            raise UpstreamError(f"Stripe customer search failed: {e}") from e
        if not customers.data:
            raise NotFound("No Stripe customer found for this user")

        try:
            session = stripe.billing_portal.Session.create(
                customer=customers.data[0].id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            logger.error(f"Error creating portal session: {e}")
            raise UpstreamError(f"Stripe portal failed: {e}") from e
        return {"url": session.url}

    # ========================================================================
    # WEBHOOKS
    # ========================================================================

    def parse_webhook(self, raw_body, signature=None, headers=None) -> NormalizedWebhookEvent:
        if not self.config.STRIPE_WEBHOOK_SECRET:
            logger.error("Webhook secret not configured")
            raise InvalidSignature("Stripe webhook secret not configured")

        signature = signature or (headers or {}).get("stripe-signature")
        if not signature:
            raise InvalidSignature("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(raw_body, signature, self.config.STRIPE_WEBHOOK_SECRET)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise InvalidPayload("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise InvalidSignature("Invalid signature") from e

        # Signature verified; work from plain JSON so SDK object shapes don't leak further
        try:
            payload = json.loads(raw_body)
            return NormalizedWebhookEvent(
                id=payload["id"],
                type=payload["type"],
                data=payload.get("data", {}).get("object") or {},
                signature=signature,
            )
        except (ValueError, KeyError, AttributeError) as e:
            raise InvalidPayload("Invalid payload") from e

    def translate_event(self, event: NormalizedWebhookEvent) -> TranslatedEvent:
        obj = event.data
        event_type = event.type

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            return self._translate_checkout_completed(obj)
        if event_type == "checkout.session.async_payment_failed":
            return TranslatedEvent(
                action=WebhookAction.PAYMENT_FAILED,
                payment=self._payment_from_checkout(obj, "failed"),
            )
        if event_type in SUBSCRIPTION_STATE_EVENTS:
            snapshot = self.fetch_remote_subscription(obj["id"])
            return TranslatedEvent(action=WebhookAction.SUBSCRIPTION_UPDATED, subscription=snapshot)
        if event_type == "customer.subscription.deleted":
            snapshot = self._snapshot_from_subscription(obj)
            snapshot.status = "canceled"
            return TranslatedEvent(action=WebhookAction.SUBSCRIPTION_CANCELED, subscription=snapshot)
        if event_type in INVOICE_SUCCEEDED_EVENTS:
            return TranslatedEvent(
                action=WebhookAction.PAYMENT_SUCCEEDED,
                payment=self._payment_from_invoice(obj, "succeeded"),
            )
        if event_type in INVOICE_FAILED_EVENTS:
            return TranslatedEvent(
                action=WebhookAction.PAYMENT_FAILED,
                payment=self._payment_from_invoice(obj, "failed"),
            )
        if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
            # Invoice-backed intents are recorded through the invoice events
            if obj.get("invoice"):
                return TranslatedEvent(action=WebhookAction.UNKNOWN)
            succeeded = event_type == "payment_intent.succeeded"
            return TranslatedEvent(
                action=WebhookAction.PAYMENT_SUCCEEDED if succeeded else WebhookAction.PAYMENT_FAILED,
                payment=PaymentSnapshot(
                    id=obj["id"],
                    amount=obj.get("amount_received") if succeeded else obj.get("amount", 0),
                    currency=(obj.get("currency") or self.config.PRO_CURRENCY).upper(),
                    status="succeeded" if succeeded else "failed",
                    type="one_time",
                    customer_id=_stripe_id(obj.get("customer")),
                    customer_email=obj.get("receipt_email"),
                    metadata={"event_type": event_type, **(obj.get("metadata") or {})},
                ),
            )
        if event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            refund_id = refunds[0]["id"] if refunds else f"{obj['id']}_refund"
            return TranslatedEvent(
                action=WebhookAction.PAYMENT_FAILED,
                payment=PaymentSnapshot(
                    id=refund_id,
                    amount=obj.get("amount_refunded", 0),
                    currency=(obj.get("currency") or self.config.PRO_CURRENCY).upper(),
                    status="refunded",
                    type="refund",
                    customer_id=_stripe_id(obj.get("customer")),
                    customer_email=(obj.get("billing_details") or {}).get("email"),
                    metadata={"event_type": event_type, "charge_id": obj["id"]},
                ),
            )
        if event_type == "charge.dispute.created":
            return TranslatedEvent(
                action=WebhookAction.PAYMENT_FAILED,
                payment=PaymentSnapshot(
                    id=obj["id"],
                    amount=obj.get("amount", 0),
                    currency=(obj.get("currency") or self.config.PRO_CURRENCY).upper(),
                    status="disputed",
                    type="chargeback",
                    metadata={
                        "event_type": event_type,
                        "charge_id": _stripe_id(obj.get("charge")),
                        "reason": obj.get("reason"),
                    },
                ),
            )

        logger.info(f"Unhandled Stripe event type: {event_type}")
        return TranslatedEvent(action=WebhookAction.UNKNOWN)

    def _translate_checkout_completed(self, session: Dict[str, Any]) -> TranslatedEvent:
        subscription_id = _stripe_id(session.get("subscription"))
        if not subscription_id:
            return TranslatedEvent(action=WebhookAction.UNKNOWN)

        snapshot = self.fetch_remote_subscription(subscription_id)
        # Session metadata carries the local user id even when the subscription's does not
        snapshot.metadata = {**(session.get("metadata") or {}), **snapshot.metadata}
        snapshot.customer_email = snapshot.customer_email or (
            (session.get("customer_details") or {}).get("email") or session.get("customer_email")
        )
        return TranslatedEvent(action=WebhookAction.SUBSCRIPTION_CREATED, subscription=snapshot)

    def _payment_from_checkout(self, session: Dict[str, Any], status: str) -> PaymentSnapshot:
        return PaymentSnapshot(
            id=_stripe_id(session.get("payment_intent")) or session["id"],
            amount=session.get("amount_total") or 0,
            currency=(session.get("currency") or self.config.PRO_CURRENCY).upper(),
            status=status,
            type="subscription" if session.get("subscription") else "one_time",
            subscription_id=_stripe_id(session.get("subscription")),
            customer_id=_stripe_id(session.get("customer")),
            customer_email=(session.get("customer_details") or {}).get("email"),
            metadata=dict(session.get("metadata") or {}),
        )

    def _payment_from_invoice(self, invoice: Dict[str, Any], status: str) -> PaymentSnapshot:
        subscription_id = _stripe_id(invoice.get("subscription"))
        if not subscription_id:
            # Newer API versions nest the subscription under parent.subscription_details
            details = (invoice.get("parent") or {}).get("subscription_details") or {}
            subscription_id = _stripe_id(details.get("subscription"))

        amount = invoice.get("amount_paid") if status == "succeeded" else invoice.get("amount_due")
        return PaymentSnapshot(
            # invoice.paid and invoice.payment_succeeded share the invoice id, so they land on one row
            id=invoice["id"],
            amount=amount or 0,
            currency=(invoice.get("currency") or self.config.PRO_CURRENCY).upper(),
            status=status,
            type="subscription" if subscription_id else "one_time",
            subscription_id=subscription_id,
            customer_id=_stripe_id(invoice.get("customer")),
            customer_email=invoice.get("customer_email"),
            metadata={
                "invoice_id": invoice["id"],
                "billing_reason": invoice.get("billing_reason"),
                "attempt_count": invoice.get("attempt_count"),
            },
        )

    # ========================================================================
    # REMOTE SUBSCRIPTIONS
    # ========================================================================

    def cancel_remote_subscription(self, external_subscription_id: str) -> None:
        try:
            stripe.Subscription.modify(external_subscription_id, cancel_at_period_end=True)
        except stripe.InvalidRequestError as e:
            raise NotFound(f"Stripe subscription {external_subscription_id} not found") from e
        except stripe.StripeError as e:
            raise UpstreamError(f"Stripe cancel failed: {e}") from e
        logger.info(f"Stripe subscription {external_subscription_id} set to cancel at period end")

    def fetch_remote_subscription(self, external_subscription_id: str) -> RemoteSubscriptionSnapshot:
        try:
            subscription = stripe.Subscription.retrieve(external_subscription_id)
        except stripe.InvalidRequestError as e:
            raise NotFound(f"Stripe subscription {external_subscription_id} not found") from e
        except stripe.StripeError as e:
            raise UpstreamError(f"Stripe subscription fetch failed: {e}") from e
        return self._snapshot_from_subscription(subscription)

    def _snapshot_from_subscription(self, subscription: Any) -> RemoteSubscriptionSnapshot:
        items = _get_stripe_value(_get_stripe_value(subscription, "items"), "data", [])
        first_item = items[0] if items else None
        price_id = _stripe_id(_get_stripe_value(first_item, "price"))

        # Period bounds moved from the subscription to its items in newer API versions
        period_start = _get_stripe_value(subscription, "current_period_start") or _get_stripe_value(first_item, "current_period_start")
        period_end = _get_stripe_value(subscription, "current_period_end") or _get_stripe_value(first_item, "current_period_end")

        status = STRIPE_STATUS_MAP.get(_get_stripe_value(subscription, "status"), "past_due")
        return RemoteSubscriptionSnapshot(
            id=_get_stripe_value(subscription, "id"),
            status=status,
            customer_id=_stripe_id(_get_stripe_value(subscription, "customer")),
            plan_id=self._plan_for_price(price_id),
            current_period_start=from_timestamp(period_start),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=bool(_get_stripe_value(subscription, "cancel_at_period_end", False)),
            metadata=_as_dict(_get_stripe_value(subscription, "metadata")),
        )
