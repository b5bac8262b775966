"""Mercado Pago payment gateway (recurring preapprovals)"""
import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

from dateutil.relativedelta import relativedelta

from subsync.core.config import settings, Settings, PRO_PLAN
from subsync.core.exceptions import InvalidPayload, InvalidSignature
from subsync.services.gateways.base import (
    CheckoutResult, NormalizedWebhookEvent, PaymentGateway, PaymentSnapshot, PlanPrice,
    RemoteSubscriptionSnapshot, TranslatedEvent, WebhookAction
)
from subsync.services.gateways.http import request_json
from subsync.utils.dates import parse_iso, utcnow

logger = logging.getLogger(__name__)

PREAPPROVAL_STATUS_MAP = {
    "authorized": "active",
    "cancelled": "canceled",
    "paused": "past_due",
}

PAYMENT_STATUS_MAP = {
    "approved": "succeeded",
    "authorized": "succeeded",
    "pending": "pending",
    "in_process": "pending",
    "in_mediation": "disputed",
    "rejected": "failed",
    "cancelled": "failed",
    "refunded": "refunded",
    "charged_back": "disputed",
}

PREAPPROVAL_EVENTS = {"preapproval", "subscription_preapproval"}
AUTHORIZED_PAYMENT_EVENTS = {"subscription_authorized_payment", "authorized_payment"}

MANAGEMENT_MESSAGE = "Please contact support to manage your subscription"


def to_minor_units(amount: Any) -> int:
    """Mercado Pago reports decimal amounts (197.00); the ledger stores centavos"""
    if amount is None:
        return 0
    return int((Decimal(str(amount)) * 100).to_integral_value())


def parse_external_reference(reference: Optional[str]) -> Dict[str, str]:
    """external_reference is '{user_id}_{plan_id}_{timestamp}' for preapprovals created here"""
    if not reference:
        return {}
    parts = str(reference).split("_")
    if len(parts) < 3:
        return {"external_reference": reference}
    return {"userId": parts[0], "planId": parts[1], "external_reference": reference}


class MercadoPagoGateway(PaymentGateway):
    """Monthly auto-recurring preapprovals through the Mercado Pago REST API"""

    gateway_name = "mercado_pago"

    def __init__(self, config: Settings = settings):
        self.config = config

    @property
    def pricing_table(self) -> Dict[str, PlanPrice]:
        return {
            PRO_PLAN: PlanPrice(amount=self.config.PRO_PRICE_MINOR, currency=self.config.PRO_CURRENCY),
        }

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.MERCADOPAGO_ACCESS_TOKEN}",
            "Content-Type": "application/json",
        }

    def _get(self, path: str) -> Dict[str, Any]:
        return request_json(
            "GET",
            f"{self.config.MERCADOPAGO_API_BASE}{path}",
            headers=self._headers(),
            timeout=self.config.GATEWAY_TIMEOUT_SECONDS,
        )

    # ========================================================================
    # CHECKOUT & PORTAL
    # ========================================================================

    def start_checkout(self, user_id, plan_id, success_url, cancel_url, user_email, metadata=None) -> CheckoutResult:
        price = self.get_plan_price(plan_id)
        now = utcnow()
        body = {
            "reason": f"Subscription - {plan_id.capitalize()} Plan",
            "external_reference": f"{user_id}_{plan_id}_{int(time.time() * 1000)}",
            "payer_email": user_email,
            "back_url": success_url,
            "auto_recurring": {
                "frequency": 1,
                "frequency_type": "months",
                "start_date": now.isoformat(),
                "end_date": (now + relativedelta(years=1)).isoformat(),
                "transaction_amount": float(Decimal(price.amount) / 100),
                "currency_id": price.currency,
            },
            "status": "pending",
        }
        preapproval = request_json(
            "POST",
            f"{self.config.MERCADOPAGO_API_BASE}/preapproval",
            headers=self._headers(),
            json=body,
            timeout=self.config.GATEWAY_TIMEOUT_SECONDS,
        )
        preapproval_id = preapproval["id"]
        logger.info(f"Mercado Pago preapproval created: {preapproval_id}")

        return CheckoutResult(
            session_id=preapproval_id,
            url=preapproval.get("init_point") or f"{self.config.MERCADOPAGO_CHECKOUT_URL}?preapproval_id={preapproval_id}",
            gateway_data={
                "preapproval_id": preapproval_id,
                "customer_id": user_email,
                "external_reference": body["external_reference"],
            },
        )

    def open_management_session(self, user_id, return_url) -> Dict[str, str]:
        # Mercado Pago has no hosted customer portal
        return {"url": self.management_fallback_url(return_url, MANAGEMENT_MESSAGE)}

    # ========================================================================
    # WEBHOOKS
    # ========================================================================

    def parse_webhook(self, raw_body, signature=None, headers=None) -> NormalizedWebhookEvent:
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        try:
            event = json.loads(raw_body)
        except ValueError as e:
            logger.error(f"Mercado Pago webhook validation error: {e}")
            raise InvalidPayload("Invalid webhook payload") from e
        if not isinstance(event, dict):
            raise InvalidPayload("Invalid webhook payload")

        data = event.get("data") or {}
        data_id = data.get("id")
        event_type = event.get("type") or event.get("topic") or event.get("action")
        if not event_type or data_id is None:
            raise InvalidPayload("Webhook is missing type or data.id")

        self._verify_signature(str(data_id), signature or headers.get("x-signature"), headers.get("x-request-id"))

        return NormalizedWebhookEvent(
            id=str(event.get("id") or f"{event_type}:{data_id}:{event.get('action', '')}"),
            type=event_type,
            data={**data, "action": event.get("action")},
            signature=signature or headers.get("x-signature"),
        )

    def _verify_signature(self, data_id: str, signature: Optional[str], request_id: Optional[str]) -> None:
        """Check the x-signature header ("ts=...,v1=...") against the webhook secret.

        The signed manifest is "id:{data.id};request-id:{x-request-id};ts:{ts};",
        leaving out any part whose value was not sent.
        """
        secret = self.config.MERCADOPAGO_WEBHOOK_SECRET
        if not secret:
            logger.error("Mercado Pago webhook secret not configured")
            raise InvalidSignature("Mercado Pago webhook secret not configured")
        if not signature:
            raise InvalidSignature("Missing x-signature header")

        parts = dict(
            item.strip().split("=", 1) for item in signature.split(",") if "=" in item
        )
        ts = parts.get("ts")
        received = parts.get("v1")
        if not ts or not received:
            raise InvalidSignature("Malformed x-signature header")

        manifest = f"id:{data_id.lower() if data_id.isalnum() else data_id};"
        if request_id:
            manifest += f"request-id:{request_id};"
        manifest += f"ts:{ts};"

        expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, received):
            raise InvalidSignature("Invalid signature")

    def translate_event(self, event: NormalizedWebhookEvent) -> TranslatedEvent:
        data_id = str(event.data.get("id"))

        if event.type in PREAPPROVAL_EVENTS:
            preapproval = self._get(f"/preapproval/{data_id}")
            if preapproval.get("status") == "pending":
                # Created but not yet authorized by the payer
                return TranslatedEvent(action=WebhookAction.UNKNOWN)
            snapshot = self._snapshot_from_preapproval(preapproval)
            if snapshot.status == "active":
                action = WebhookAction.SUBSCRIPTION_CREATED
            elif snapshot.status == "canceled":
                action = WebhookAction.SUBSCRIPTION_CANCELED
            else:
                action = WebhookAction.SUBSCRIPTION_UPDATED
            return TranslatedEvent(action=action, subscription=snapshot)

        if event.type in AUTHORIZED_PAYMENT_EVENTS:
            return self._translate_authorized_payment(data_id)

        if event.type == "payment":
            payment_data = self._get(f"/v1/payments/{data_id}")
            payment = self._payment_snapshot(payment_data)
            return TranslatedEvent(action=self._payment_action(payment.status), payment=payment)

        logger.info(f"Unhandled Mercado Pago event type: {event.type}")
        return TranslatedEvent(action=WebhookAction.UNKNOWN)

    def _translate_authorized_payment(self, data_id: str) -> TranslatedEvent:
        """Installment of a preapproval.

        The installment is not a subscription object, but a paid one implies the
        preapproval's period now runs one month past the charge date.
        """
        installment = self._get(f"/authorized_payments/{data_id}")
        payment_info = installment.get("payment") or {}
        status = PAYMENT_STATUS_MAP.get(payment_info.get("status") or installment.get("status"), "pending")
        preapproval_id = installment.get("preapproval_id")
        charged_at = parse_iso(installment.get("debit_date") or installment.get("date_created")) or utcnow()

        payment = PaymentSnapshot(
            id=str(payment_info.get("id") or installment.get("id")),
            amount=to_minor_units(installment.get("transaction_amount")),
            currency=installment.get("currency_id") or self.config.PRO_CURRENCY,
            status=status,
            type="subscription",
            subscription_id=preapproval_id,
            customer_id=installment.get("payer_email"),
            customer_email=installment.get("payer_email"),
            metadata={
                "authorized_payment_id": installment.get("id"),
                **parse_external_reference(installment.get("external_reference")),
            },
        )

        subscription = None
        if preapproval_id and status == "succeeded":
            subscription = RemoteSubscriptionSnapshot(
                id=preapproval_id,
                status="active",
                customer_id=installment.get("payer_email"),
                customer_email=installment.get("payer_email"),
                plan_id=payment.metadata.get("planId", PRO_PLAN),
                current_period_start=charged_at,
                current_period_end=charged_at + relativedelta(months=1),
                metadata=dict(payment.metadata),
            )
        return TranslatedEvent(action=self._payment_action(status), subscription=subscription, payment=payment)

    @staticmethod
    def _payment_action(status: str) -> WebhookAction:
        if status == "succeeded":
            return WebhookAction.PAYMENT_SUCCEEDED
        if status in ("failed", "refunded", "disputed"):
            return WebhookAction.PAYMENT_FAILED
        return WebhookAction.UNKNOWN

    def _payment_snapshot(self, payment_data: Dict[str, Any]) -> PaymentSnapshot:
        status = PAYMENT_STATUS_MAP.get(payment_data.get("status"), "failed")
        payer = payment_data.get("payer") or {}
        metadata = dict(payment_data.get("metadata") or {})
        metadata.update(parse_external_reference(payment_data.get("external_reference")))
        preapproval_id = (payment_data.get("point_of_interaction") or {}).get("transaction_data", {}).get("subscription_id")

        if status == "refunded":
            payment_type = "refund"
        elif status == "disputed":
            payment_type = "chargeback"
        else:
            payment_type = "subscription" if preapproval_id else "one_time"

        return PaymentSnapshot(
            id=str(payment_data["id"]),
            amount=to_minor_units(payment_data.get("transaction_amount")),
            currency=payment_data.get("currency_id") or self.config.PRO_CURRENCY,
            status=status,
            type=payment_type,
            subscription_id=preapproval_id,
            customer_id=payer.get("email"),
            customer_email=payer.get("email"),
            metadata=metadata,
        )

    # ========================================================================
    # REMOTE SUBSCRIPTIONS
    # ========================================================================

    def cancel_remote_subscription(self, external_subscription_id: str) -> None:
        request_json(
            "PUT",
            f"{self.config.MERCADOPAGO_API_BASE}/preapproval/{external_subscription_id}",
            headers=self._headers(),
            json={"status": "cancelled"},
            timeout=self.config.GATEWAY_TIMEOUT_SECONDS,
        )
        logger.info(f"Mercado Pago preapproval {external_subscription_id} cancelled")

    def fetch_remote_subscription(self, external_subscription_id: str) -> RemoteSubscriptionSnapshot:
        return self._snapshot_from_preapproval(self._get(f"/preapproval/{external_subscription_id}"))

    def _snapshot_from_preapproval(self, preapproval: Dict[str, Any]) -> RemoteSubscriptionSnapshot:
        reference = parse_external_reference(preapproval.get("external_reference"))
        auto_recurring = preapproval.get("auto_recurring") or {}

        period_start = None
        period_end = parse_iso(preapproval.get("next_payment_date"))
        if period_end is not None:
            # next_payment_date is the next charge; the paid period is the month before it
            period_start = period_end - relativedelta(months=1)
        elif preapproval.get("status") != "cancelled":
            period_start = parse_iso(preapproval.get("date_created")) or parse_iso(auto_recurring.get("start_date"))
            if period_start is not None:
                period_end = period_start + relativedelta(months=1)
        # A cancelled preapproval without a next charge leaves the local bounds alone

        status = PREAPPROVAL_STATUS_MAP.get(preapproval.get("status"), "past_due")
        return RemoteSubscriptionSnapshot(
            id=str(preapproval["id"]),
            status=status,
            customer_id=preapproval.get("payer_email") or None,
            customer_email=preapproval.get("payer_email") or None,
            plan_id=reference.get("planId", PRO_PLAN),
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=preapproval.get("status") == "cancelled",
            metadata=reference,
        )
