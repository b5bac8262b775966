"""Kiwify payment gateway (hosted product checkout, email-keyed customers)"""
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from dateutil.relativedelta import relativedelta

from subsync.core.config import settings, Settings, FREE_PLAN, PRO_PLAN
from subsync.core.exceptions import InvalidPayload, InvalidSignature
from subsync.services.gateways.base import (
    CheckoutResult, NormalizedWebhookEvent, PaymentGateway, PaymentSnapshot, PlanPrice,
    RemoteSubscriptionSnapshot, TranslatedEvent, WebhookAction
)
from subsync.services.gateways.http import request_json
from subsync.utils.dates import parse_iso, utcnow

logger = logging.getLogger(__name__)

KIWIFY_STATUS_MAP = {
    "active": "active",
    "approved": "active",
    "paid": "active",
    "canceled": "canceled",
    "cancelled": "canceled",
    "late": "past_due",
    "overdue": "past_due",
    "paused": "past_due",
}

# English webhook names mapped onto the Portuguese ones older accounts still send
EVENT_ALIASES = {
    "order_approved": "compra_aprovada",
    "order_rejected": "compra_recusada",
    "order_refunded": "compra_reembolsada",
    "billet_created": "boleto_gerado",
    "pix_created": "pix_gerado",
    "cart_abandoned": "carrinho_abandonado",
}

PENDING_PAYMENT_EVENTS = {"boleto_gerado", "pix_gerado"}

# Amount (centavos) -> access period bought; anything else is a monthly plan
PERIODS_BY_AMOUNT = {
    19700: relativedelta(months=1),
    6790: relativedelta(days=10),
}

MANAGEMENT_MESSAGE = "Please check your email for subscription management or contact support"


def subscription_period_for_amount(amount: int) -> relativedelta:
    return PERIODS_BY_AMOUNT.get(amount, relativedelta(months=1))


class KiwifyGateway(PaymentGateway):
    """Kiwify product checkout; customers are identified only by email"""

    gateway_name = "kiwify"

    def __init__(self, config: Settings = settings):
        self.config = config

    @property
    def pricing_table(self) -> Dict[str, PlanPrice]:
        return {
            PRO_PLAN: PlanPrice(
                amount=self.config.PRO_PRICE_MINOR,
                currency=self.config.PRO_CURRENCY,
                reference=self.config.KIWIFY_PRO_PRODUCT_ID,
            ),
        }

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.KIWIFY_API_TOKEN}",
            "x-kiwify-account-id": self.config.KIWIFY_ACCOUNT_ID,
            "Content-Type": "application/json",
        }

    def _plan_for_product(self, product_id: Optional[str]) -> str:
        if product_id and product_id == self.config.KIWIFY_PRO_PRODUCT_ID:
            return PRO_PLAN
        return FREE_PLAN

    # ========================================================================
    # CHECKOUT & PORTAL
    # ========================================================================

    def start_checkout(self, user_id, plan_id, success_url, cancel_url, user_email, metadata=None) -> CheckoutResult:
        price = self.get_plan_price(plan_id)
        query = urlencode({"email": user_email, "external_id": str(user_id)})
        checkout_url = f"{self.config.KIWIFY_CHECKOUT_BASE_URL}/{price.reference}?{query}"

        return CheckoutResult(
            session_id=f"kiwify_{int(time.time() * 1000)}",
            url=checkout_url,
            gateway_data={"product_id": price.reference, "customer_id": user_email},
        )

    def open_management_session(self, user_id, return_url) -> Dict[str, str]:
        # Kiwify has no hosted customer portal
        return {"url": self.management_fallback_url(return_url, MANAGEMENT_MESSAGE)}

    # ========================================================================
    # WEBHOOKS
    # ========================================================================

    def parse_webhook(self, raw_body, signature=None, headers=None) -> NormalizedWebhookEvent:
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        try:
            event = json.loads(raw_body)
        except ValueError as e:
            logger.error(f"Kiwify webhook validation error: {e}")
            raise InvalidPayload("Invalid webhook payload") from e
        if not isinstance(event, dict):
            raise InvalidPayload("Invalid webhook payload")

        self._verify(raw_body, signature, headers.get("x-kiwify-webhook-token") or event.get("token"))

        data = event.get("data") if isinstance(event.get("data"), dict) else event
        raw_type = event.get("webhook_event_type") or event.get("type") or data.get("webhook_event_type")
        if not raw_type:
            raise InvalidPayload("Webhook is missing its event type")
        event_type = EVENT_ALIASES.get(raw_type, raw_type)

        reference = self._charge_reference(data)
        if reference is None:
            subscription_id = self._subscription_id(data)
            if not subscription_id:
                raise InvalidPayload("Webhook carries no order or subscription id")
            # No per-charge key: only byte-identical redeliveries share an id
            body = raw_body if isinstance(raw_body, bytes) else raw_body.encode()
            reference = f"{subscription_id}@{hashlib.sha1(body).hexdigest()[:16]}"

        return NormalizedWebhookEvent(
            id=f"{reference}:{event_type}",
            type=event_type,
            data=data,
            signature=signature,
        )

    def _verify(self, raw_body: bytes, signature: Optional[str], token: Optional[str]) -> None:
        """Accept either the HMAC-SHA1 ``signature`` query parameter or the shared token"""
        secret = self.config.KIWIFY_WEBHOOK_TOKEN
        if not secret:
            logger.error("Kiwify webhook token not configured")
            raise InvalidSignature("Kiwify webhook token not configured")

        body = raw_body if isinstance(raw_body, bytes) else raw_body.encode()
        if signature:
            expected = hmac.new(secret.encode(), body, hashlib.sha1).hexdigest()
            if not hmac.compare_digest(expected, signature):
                raise InvalidSignature("Invalid signature")
            return

        if not token or not hmac.compare_digest(str(token), secret):
            raise InvalidSignature("Invalid webhook token")

    @classmethod
    def _charge_reference(cls, data: Dict[str, Any]) -> Optional[str]:
        """Identifier of the individual charge an event describes.

        Order events carry an order id. Subscription events that only name the
        subscription are keyed by subscription and charge date, so each billing
        cycle gets its own payment row. Returns None when neither is present.
        """
        order_ref = data.get("order_id") or data.get("payment_id") or data.get("id")
        if order_ref:
            return str(order_ref)
        subscription_id = cls._subscription_id(data)
        charged_on = (
            data.get("approved_date")
            or (data.get("Subscription") or {}).get("next_payment")
            or data.get("created_at")
        )
        if subscription_id and charged_on:
            return f"{subscription_id}@{charged_on}"
        return None

    @staticmethod
    def _subscription_id(data: Dict[str, Any]) -> Optional[str]:
        return data.get("subscription_id") or (data.get("Subscription") or {}).get("id")

    @staticmethod
    def _customer_email(data: Dict[str, Any]) -> Optional[str]:
        customer = data.get("Customer") or data.get("customer") or {}
        email = customer.get("email") or data.get("customer_email")
        return email.strip().lower() if email else None

    def _amount(self, data: Dict[str, Any]) -> int:
        """Commissions.charge_amount is already centavos; a bare ``amount`` is in reais"""
        charge_amount = (data.get("Commissions") or {}).get("charge_amount")
        if charge_amount is not None:
            return int(charge_amount)
        if data.get("amount") is not None:
            return int((Decimal(str(data["amount"])) * 100).to_integral_value())
        return self.config.PRO_PRICE_MINOR

    def _payment(self, data: Dict[str, Any], status: str, payment_type: str) -> Optional[PaymentSnapshot]:
        reference = self._charge_reference(data)
        if reference is None:
            logger.warning(f"Kiwify {status} event for subscription {self._subscription_id(data)} has no charge reference, no payment recorded")
            return None
        email = self._customer_email(data)
        return PaymentSnapshot(
            id=reference,
            amount=self._amount(data),
            currency=(data.get("Commissions") or {}).get("currency") or self.config.PRO_CURRENCY,
            status=status,
            type=payment_type,
            subscription_id=self._subscription_id(data),
            customer_id=email,
            customer_email=email,
            metadata={
                "order_status": data.get("order_status"),
                "payment_method": data.get("payment_method"),
                "product_id": (data.get("Product") or {}).get("product_id"),
                "userId": data.get("external_id"),
                "customer_name": (data.get("Customer") or {}).get("full_name"),
            },
        )

    def _synthesized_subscription(self, data: Dict[str, Any], status: str, started_at: Optional[datetime] = None) -> RemoteSubscriptionSnapshot:
        """Kiwify order events describe a purchase, not a subscription object.

        The paid period is taken from Subscription.next_payment when sent and
        otherwise derived from the amount charged.
        """
        subscription = data.get("Subscription") or {}
        period_start = None
        period_end = None
        if started_at is not None:
            period_start = started_at
            period_end = parse_iso(subscription.get("next_payment")) or started_at + subscription_period_for_amount(self._amount(data))

        product_id = (data.get("Product") or {}).get("product_id")
        email = self._customer_email(data)
        return RemoteSubscriptionSnapshot(
            id=str(self._subscription_id(data)),
            status=status,
            customer_id=email,
            customer_email=email,
            plan_id=self._plan_for_product(product_id) if product_id else PRO_PLAN,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=status == "canceled",
            metadata={"userId": data.get("external_id")} if data.get("external_id") else {},
        )

    def translate_event(self, event: NormalizedWebhookEvent) -> TranslatedEvent:
        data = event.data
        has_subscription = bool(self._subscription_id(data))
        payment_type = "subscription" if has_subscription else "one_time"
        charged_at = parse_iso(data.get("approved_date")) or utcnow()

        if event.type == "compra_aprovada":
            payment = self._payment(data, "succeeded", payment_type)
            if has_subscription:
                return TranslatedEvent(
                    action=WebhookAction.SUBSCRIPTION_CREATED,
                    subscription=self._synthesized_subscription(data, "active", charged_at),
                    payment=payment,
                )
            return TranslatedEvent(action=WebhookAction.PAYMENT_SUCCEEDED, payment=payment)

        if event.type == "compra_recusada":
            return TranslatedEvent(action=WebhookAction.PAYMENT_FAILED, payment=self._payment(data, "failed", payment_type))

        if event.type == "compra_reembolsada":
            return TranslatedEvent(action=WebhookAction.PAYMENT_FAILED, payment=self._payment(data, "refunded", "refund"))

        if event.type == "chargeback":
            return TranslatedEvent(action=WebhookAction.PAYMENT_FAILED, payment=self._payment(data, "disputed", "chargeback"))

        if event.type == "subscription_renewed" and has_subscription:
            return TranslatedEvent(
                action=WebhookAction.PAYMENT_SUCCEEDED,
                subscription=self._synthesized_subscription(data, "active", charged_at),
                payment=self._payment(data, "succeeded", "subscription"),
            )

        if event.type == "subscription_late" and has_subscription:
            return TranslatedEvent(
                action=WebhookAction.PAYMENT_FAILED,
                subscription=self._synthesized_subscription(data, "past_due"),
                payment=self._payment(data, "failed", "subscription"),
            )

        if event.type == "subscription_canceled" and has_subscription:
            return TranslatedEvent(
                action=WebhookAction.SUBSCRIPTION_CANCELED,
                subscription=self._synthesized_subscription(data, "canceled"),
            )

        if event.type in PENDING_PAYMENT_EVENTS:
            # PIX/boleto issued but unpaid: recorded as pending, no entitlement change
            return TranslatedEvent(action=WebhookAction.UNKNOWN, payment=self._payment(data, "pending", payment_type))

        logger.info(f"Unhandled Kiwify event type: {event.type}")
        return TranslatedEvent(action=WebhookAction.UNKNOWN)

    # ========================================================================
    # REMOTE SUBSCRIPTIONS
    # ========================================================================

    def cancel_remote_subscription(self, external_subscription_id: str) -> None:
        request_json(
            "POST",
            f"{self.config.KIWIFY_API_BASE}/subscriptions/{external_subscription_id}/cancel",
            headers=self._headers(),
            timeout=self.config.GATEWAY_TIMEOUT_SECONDS,
        )
        logger.info(f"Kiwify subscription {external_subscription_id} canceled")

    def fetch_remote_subscription(self, external_subscription_id: str) -> RemoteSubscriptionSnapshot:
        subscription = request_json(
            "GET",
            f"{self.config.KIWIFY_API_BASE}/subscriptions/{external_subscription_id}",
            headers=self._headers(),
            timeout=self.config.GATEWAY_TIMEOUT_SECONDS,
        )
        email = (subscription.get("customer") or {}).get("email")
        status = KIWIFY_STATUS_MAP.get(subscription.get("status"), "past_due")
        period_start = parse_iso(subscription.get("current_period_start") or subscription.get("start_date"))
        period_end = parse_iso(subscription.get("current_period_end") or subscription.get("next_payment"))

        return RemoteSubscriptionSnapshot(
            id=str(subscription.get("id") or external_subscription_id),
            status=status,
            customer_id=email,
            customer_email=email,
            plan_id=self._plan_for_product(subscription.get("product_id") or (subscription.get("product") or {}).get("id")),
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=status == "canceled",
            metadata=subscription.get("metadata") or {},
        )
