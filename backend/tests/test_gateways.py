"""Gateway adapter tests: webhook authentication, event translation, outbound calls"""
import json
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest
import stripe as real_stripe

from conftest import (
    HTTPX_REQUEST, KIWIFY_PRO_PRODUCT_ID, KIWIFY_WEBHOOK_TOKEN, json_response, kiwify_body, kiwify_order,
    kiwify_signature, make_test_settings, mercado_pago_webhook, stripe_event_body, stripe_subscription
)
from subsync.core.exceptions import InvalidPayload, InvalidPlan, InvalidSignature, NotFound, UpstreamError
from subsync.services.gateways.base import NormalizedWebhookEvent, WebhookAction
from subsync.services.gateways.kiwify import KiwifyGateway
from subsync.services.gateways.mercado_pago import MercadoPagoGateway, parse_external_reference, to_minor_units
from subsync.services.gateways.registry import build_gateway_registry
from subsync.services.gateways.stripe_gateway import StripeGateway


@pytest.fixture
def stripe_gateway(test_settings):
    return StripeGateway(test_settings)


@pytest.fixture
def mp_gateway(test_settings):
    return MercadoPagoGateway(test_settings)


@pytest.fixture
def kiwify_gateway(test_settings):
    return KiwifyGateway(test_settings)


@pytest.mark.high
class TestGatewayRegistry:
    """Registry and shared gateway behaviour"""

    def test_registry_contains_all_gateways(self, test_settings):
        registry = build_gateway_registry(test_settings)
        assert set(registry) == {"stripe", "mercado_pago", "kiwify"}
        assert isinstance(registry["kiwify"], KiwifyGateway)

    def test_unknown_plan_raises_invalid_plan(self, stripe_gateway):
        with pytest.raises(InvalidPlan):
            stripe_gateway.get_plan_price("enterprise")

    def test_pro_price_in_minor_units(self, mp_gateway):
        price = mp_gateway.get_plan_price("pro")
        assert price.amount == 19700
        assert price.currency == "BRL"


# ============================================================================
# STRIPE
# ============================================================================

@pytest.mark.critical
class TestStripeWebhooks:
    """Stripe signature handling and event translation"""

    def test_parse_webhook_returns_normalized_event(self, stripe_gateway, auto_mock_stripe):
        body = stripe_event_body("invoice.paid", {"id": "in_123"}, event_id="evt_1")
        event = stripe_gateway.parse_webhook(body, "t=1,v1=abc")

        assert event.id == "evt_1"
        assert event.type == "invoice.paid"
        assert event.data == {"id": "in_123"}
        auto_mock_stripe.Webhook.construct_event.assert_called_once()

    def test_signature_read_from_header(self, stripe_gateway):
        body = stripe_event_body("invoice.paid", {"id": "in_123"})
        event = stripe_gateway.parse_webhook(body, None, {"stripe-signature": "t=1,v1=abc"})
        assert event.signature == "t=1,v1=abc"

    def test_missing_signature_rejected(self, stripe_gateway):
        with pytest.raises(InvalidSignature):
            stripe_gateway.parse_webhook(stripe_event_body("invoice.paid", {"id": "in_123"}), None, {})

    def test_bad_signature_rejected(self, stripe_gateway, auto_mock_stripe):
        auto_mock_stripe.Webhook.construct_event.side_effect = real_stripe.SignatureVerificationError("bad", "sig")
        with pytest.raises(InvalidSignature):
            stripe_gateway.parse_webhook(stripe_event_body("invoice.paid", {"id": "in_123"}), "t=1,v1=bad")

    def test_malformed_body_rejected(self, stripe_gateway, auto_mock_stripe):
        auto_mock_stripe.Webhook.construct_event.side_effect = ValueError("not json")
        with pytest.raises(InvalidPayload):
            stripe_gateway.parse_webhook(b"not json", "t=1,v1=abc")

    def test_missing_webhook_secret_rejects_everything(self):
        gateway = StripeGateway(make_test_settings(STRIPE_WEBHOOK_SECRET=""))
        with pytest.raises(InvalidSignature):
            gateway.parse_webhook(stripe_event_body("invoice.paid", {"id": "in_123"}), "t=1,v1=abc")

    def test_checkout_completed_fetches_subscription(self, stripe_gateway, auto_mock_stripe):
        event = NormalizedWebhookEvent(
            id="evt_1",
            type="checkout.session.completed",
            data={
                "id": "cs_test123",
                "subscription": "sub_test123",
                "metadata": {"userId": "7"},
                "customer_details": {"email": "buyer@example.com"},
            },
        )
        translated = stripe_gateway.translate_event(event)

        assert translated.action == WebhookAction.SUBSCRIPTION_CREATED
        snapshot = translated.subscription
        assert snapshot.id == "sub_test123"
        assert snapshot.customer_id == "cus_test123"
        assert snapshot.plan_id == "pro"
        assert snapshot.status == "active"
        assert snapshot.metadata["userId"] == "7"
        assert snapshot.customer_email == "buyer@example.com"
        assert snapshot.current_period_end == datetime(2025, 2, 1, tzinfo=timezone.utc)
        auto_mock_stripe.Subscription.retrieve.assert_called_once_with("sub_test123")

    def test_checkout_without_subscription_is_unknown(self, stripe_gateway):
        event = NormalizedWebhookEvent(id="evt_1", type="checkout.session.completed", data={"id": "cs_1"})
        assert stripe_gateway.translate_event(event).action == WebhookAction.UNKNOWN

    def test_unrecognized_price_maps_to_free(self, stripe_gateway, auto_mock_stripe):
        auto_mock_stripe.Subscription.retrieve.return_value = stripe_subscription(price_id="price_other")
        snapshot = stripe_gateway.fetch_remote_subscription("sub_test123")
        assert snapshot.plan_id == "free"

    def test_subscription_deleted_is_canceled(self, stripe_gateway):
        event = NormalizedWebhookEvent(
            id="evt_2",
            type="customer.subscription.deleted",
            data=stripe_subscription(status="active"),
        )
        translated = stripe_gateway.translate_event(event)
        assert translated.action == WebhookAction.SUBSCRIPTION_CANCELED
        assert translated.subscription.status == "canceled"

    def test_subscription_updated_maps_status(self, stripe_gateway, auto_mock_stripe):
        auto_mock_stripe.Subscription.retrieve.return_value = stripe_subscription(status="unpaid")
        event = NormalizedWebhookEvent(id="evt_3", type="customer.subscription.updated", data={"id": "sub_test123"})
        translated = stripe_gateway.translate_event(event)
        assert translated.action == WebhookAction.SUBSCRIPTION_UPDATED
        assert translated.subscription.status == "past_due"

    def test_invoice_paid_becomes_subscription_payment(self, stripe_gateway):
        event = NormalizedWebhookEvent(
            id="evt_4",
            type="invoice.paid",
            data={
                "id": "in_123",
                "subscription": "sub_test123",
                "customer": "cus_test123",
                "amount_paid": 19700,
                "currency": "brl",
                "billing_reason": "subscription_cycle",
            },
        )
        translated = stripe_gateway.translate_event(event)
        assert translated.action == WebhookAction.PAYMENT_SUCCEEDED
        payment = translated.payment
        assert payment.id == "in_123"
        assert payment.type == "subscription"
        assert payment.subscription_id == "sub_test123"
        assert payment.amount == 19700
        assert payment.currency == "BRL"

    def test_invoice_failed_becomes_failed_payment(self, stripe_gateway):
        event = NormalizedWebhookEvent(
            id="evt_5",
            type="invoice.payment_failed",
            data={"id": "in_124", "subscription": "sub_test123", "amount_due": 19700},
        )
        translated = stripe_gateway.translate_event(event)
        assert translated.action == WebhookAction.PAYMENT_FAILED
        assert translated.payment.status == "failed"
        assert translated.payment.amount == 19700

    def test_unhandled_event_is_unknown(self, stripe_gateway):
        event = NormalizedWebhookEvent(id="evt_6", type="customer.created", data={"id": "cus_1"})
        translated = stripe_gateway.translate_event(event)
        assert translated.action == WebhookAction.UNKNOWN
        assert translated.subscription is None
        assert translated.payment is None


@pytest.mark.high
class TestStripeOutbound:
    """Stripe checkout, portal, cancel and fetch"""

    def test_start_checkout_creates_customer_and_session(self, stripe_gateway, auto_mock_stripe):
        result = stripe_gateway.start_checkout(7, "pro", "https://app/success", "https://app/cancel", "buyer@example.com")

        assert result.session_id == "cs_test123"
        assert result.url == "https://checkout.stripe.com/test"
        auto_mock_stripe.Customer.create.assert_called_once()
        kwargs = auto_mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["line_items"] == [{"price": "price_pro_test", "quantity": 1}]
        assert kwargs["metadata"]["userId"] == "7"
        assert kwargs["mode"] == "subscription"

    def test_start_checkout_stripe_error_is_upstream(self, stripe_gateway, auto_mock_stripe):
        auto_mock_stripe.checkout.Session.create.side_effect = real_stripe.StripeError("boom")
        with pytest.raises(UpstreamError):
            stripe_gateway.start_checkout(7, "pro", "https://app/s", "https://app/c", "buyer@example.com")

    def test_cancel_sets_cancel_at_period_end(self, stripe_gateway, auto_mock_stripe):
        stripe_gateway.cancel_remote_subscription("sub_test123")
        auto_mock_stripe.Subscription.modify.assert_called_once_with("sub_test123", cancel_at_period_end=True)

    def test_fetch_missing_subscription_is_not_found(self, stripe_gateway, auto_mock_stripe):
        auto_mock_stripe.Subscription.retrieve.side_effect = real_stripe.InvalidRequestError("No such subscription", "id")
        with pytest.raises(NotFound):
            stripe_gateway.fetch_remote_subscription("sub_missing")

    def test_portal_requires_customer(self, stripe_gateway):
        with pytest.raises(NotFound):
            stripe_gateway.open_management_session(7, "https://app/settings")

    def test_portal_returns_url(self, stripe_gateway, auto_mock_stripe):
        auto_mock_stripe.Customer.search.return_value.data = [auto_mock_stripe.Customer.create.return_value]
        assert stripe_gateway.open_management_session(7, "https://app/settings") == {"url": "https://billing.stripe.com/test"}


# ============================================================================
# MERCADO PAGO
# ============================================================================

@pytest.mark.critical
class TestMercadoPagoWebhooks:
    """x-signature verification and preapproval/payment translation"""

    def test_valid_signature_parses(self, mp_gateway):
        body, headers = mercado_pago_webhook("preapproval", "pre123", event_id="evt_mp_1")
        event = mp_gateway.parse_webhook(body, None, headers)
        assert event.id == "evt_mp_1"
        assert event.type == "preapproval"
        assert event.data["id"] == "pre123"

    def test_event_id_derived_when_absent(self, mp_gateway):
        body, headers = mercado_pago_webhook("payment", "555", action="payment.created")
        event = mp_gateway.parse_webhook(body, None, headers)
        assert event.id == "payment:555:payment.created"

    def test_tampered_signature_rejected(self, mp_gateway):
        body, headers = mercado_pago_webhook("preapproval", "pre123", secret="wrong_secret")
        with pytest.raises(InvalidSignature):
            mp_gateway.parse_webhook(body, None, headers)

    def test_missing_signature_rejected(self, mp_gateway):
        body, _ = mercado_pago_webhook("preapproval", "pre123")
        with pytest.raises(InvalidSignature):
            mp_gateway.parse_webhook(body, None, {})

    def test_missing_secret_rejects(self):
        gateway = MercadoPagoGateway(make_test_settings(MERCADOPAGO_WEBHOOK_SECRET=""))
        body, headers = mercado_pago_webhook("preapproval", "pre123")
        with pytest.raises(InvalidSignature):
            gateway.parse_webhook(body, None, headers)

    def test_missing_data_id_is_invalid_payload(self, mp_gateway):
        with pytest.raises(InvalidPayload):
            mp_gateway.parse_webhook(json.dumps({"type": "payment", "data": {}}).encode(), None, {})

    @patch(HTTPX_REQUEST)
    def test_authorized_preapproval_is_created(self, mock_request, mp_gateway):
        mock_request.return_value = json_response({
            "id": "pre123",
            "status": "authorized",
            "payer_email": "buyer@example.com",
            "external_reference": "7_pro_1735689600000",
            "next_payment_date": "2025-02-01T00:00:00.000-03:00",
        })
        translated = mp_gateway.translate_event(
            NormalizedWebhookEvent(id="e1", type="preapproval", data={"id": "pre123"})
        )

        assert translated.action == WebhookAction.SUBSCRIPTION_CREATED
        snapshot = translated.subscription
        assert snapshot.customer_id == "buyer@example.com"
        assert snapshot.metadata["userId"] == "7"
        assert snapshot.plan_id == "pro"
        assert snapshot.current_period_end == datetime(2025, 2, 1, 3, 0, tzinfo=timezone.utc)
        assert snapshot.current_period_start == datetime(2025, 1, 1, 3, 0, tzinfo=timezone.utc)
        assert mock_request.call_args.args == ("GET", "https://api.mercadopago.com/preapproval/pre123")

    @patch(HTTPX_REQUEST)
    def test_pending_preapproval_is_unknown(self, mock_request, mp_gateway):
        mock_request.return_value = json_response({"id": "pre123", "status": "pending"})
        translated = mp_gateway.translate_event(
            NormalizedWebhookEvent(id="e1", type="preapproval", data={"id": "pre123"})
        )
        assert translated.action == WebhookAction.UNKNOWN

    @patch(HTTPX_REQUEST)
    def test_cancelled_preapproval_is_canceled(self, mock_request, mp_gateway):
        mock_request.return_value = json_response({"id": "pre123", "status": "cancelled", "payer_email": "buyer@example.com"})
        translated = mp_gateway.translate_event(
            NormalizedWebhookEvent(id="e1", type="preapproval", data={"id": "pre123"})
        )
        assert translated.action == WebhookAction.SUBSCRIPTION_CANCELED
        assert translated.subscription.status == "canceled"

    @patch(HTTPX_REQUEST)
    def test_approved_installment_extends_period(self, mock_request, mp_gateway):
        mock_request.return_value = json_response({
            "id": 9001,
            "preapproval_id": "pre123",
            "status": "processed",
            "transaction_amount": 197.0,
            "currency_id": "BRL",
            "payer_email": "buyer@example.com",
            "debit_date": "2025-03-01T10:00:00.000Z",
            "payment": {"id": 777, "status": "approved"},
        })
        translated = mp_gateway.translate_event(
            NormalizedWebhookEvent(id="e2", type="subscription_authorized_payment", data={"id": "9001"})
        )

        assert translated.action == WebhookAction.PAYMENT_SUCCEEDED
        assert translated.payment.id == "777"
        assert translated.payment.amount == 19700
        assert translated.payment.subscription_id == "pre123"
        assert translated.subscription.current_period_end == datetime(2025, 4, 1, 10, 0, tzinfo=timezone.utc)

    @patch(HTTPX_REQUEST)
    def test_rejected_payment_is_failed(self, mock_request, mp_gateway):
        mock_request.return_value = json_response({
            "id": 555,
            "status": "rejected",
            "transaction_amount": 197,
            "payer": {"email": "buyer@example.com"},
        })
        translated = mp_gateway.translate_event(NormalizedWebhookEvent(id="e3", type="payment", data={"id": "555"}))
        assert translated.action == WebhookAction.PAYMENT_FAILED
        assert translated.payment.status == "failed"
        assert translated.payment.type == "one_time"

    @patch(HTTPX_REQUEST)
    def test_remote_404_is_not_found(self, mock_request, mp_gateway):
        mock_request.return_value = json_response({"message": "not found"}, status_code=404)
        with pytest.raises(NotFound):
            mp_gateway.fetch_remote_subscription("pre_missing")

    @patch(HTTPX_REQUEST)
    def test_remote_timeout_is_upstream_error(self, mock_request, mp_gateway):
        mock_request.side_effect = httpx.ReadTimeout("timed out")
        with pytest.raises(UpstreamError):
            mp_gateway.fetch_remote_subscription("pre123")

    @patch(HTTPX_REQUEST)
    def test_remote_500_is_upstream_error(self, mock_request, mp_gateway):
        mock_request.return_value = json_response({"message": "boom"}, status_code=500)
        with pytest.raises(UpstreamError):
            mp_gateway.fetch_remote_subscription("pre123")


@pytest.mark.high
class TestMercadoPagoOutbound:
    """Preapproval checkout, cancel and helpers"""

    @patch(HTTPX_REQUEST)
    def test_start_checkout_creates_preapproval(self, mock_request, mp_gateway):
        mock_request.return_value = json_response(
            {"id": "pre123", "init_point": "https://mp.test/init/pre123"}, method="POST"
        )
        result = mp_gateway.start_checkout(7, "pro", "https://app/success", "https://app/cancel", "buyer@example.com")

        assert result.session_id == "pre123"
        assert result.url == "https://mp.test/init/pre123"
        assert result.gateway_data["customer_id"] == "buyer@example.com"
        body = mock_request.call_args.kwargs["json"]
        assert body["auto_recurring"]["transaction_amount"] == 197.0
        assert body["auto_recurring"]["frequency_type"] == "months"
        assert body["external_reference"].startswith("7_pro_")

    @patch(HTTPX_REQUEST)
    def test_cancel_puts_cancelled_status(self, mock_request, mp_gateway):
        mock_request.return_value = json_response({"id": "pre123", "status": "cancelled"}, method="PUT")
        mp_gateway.cancel_remote_subscription("pre123")
        assert mock_request.call_args.args[0] == "PUT"
        assert mock_request.call_args.kwargs["json"] == {"status": "cancelled"}

    def test_management_session_is_fallback_message(self, mp_gateway):
        result = mp_gateway.open_management_session(7, "https://app/settings")
        assert result["url"].startswith("https://app/settings?message=")

    def test_helpers(self):
        assert to_minor_units("197.00") == 19700
        assert to_minor_units(None) == 0
        assert parse_external_reference("7_pro_123")["userId"] == "7"
        assert "userId" not in parse_external_reference("legacy")


# ============================================================================
# KIWIFY
# ============================================================================

@pytest.mark.critical
class TestKiwifyWebhooks:
    """Token/HMAC verification and order translation"""

    def test_body_token_accepted(self, kiwify_gateway):
        event = kiwify_gateway.parse_webhook(kiwify_body(kiwify_order()))
        assert event.type == "compra_aprovada"
        assert event.id == "ord_123:compra_aprovada"

    def test_header_token_accepted(self, kiwify_gateway):
        raw = json.dumps(kiwify_order()).encode()
        event = kiwify_gateway.parse_webhook(raw, None, {"X-Kiwify-Webhook-Token": KIWIFY_WEBHOOK_TOKEN})
        assert event.type == "compra_aprovada"

    def test_hmac_signature_accepted(self, kiwify_gateway):
        raw = json.dumps(kiwify_order()).encode()
        event = kiwify_gateway.parse_webhook(raw, kiwify_signature(raw))
        assert event.data["order_id"] == "ord_123"

    def test_wrong_token_rejected(self, kiwify_gateway):
        with pytest.raises(InvalidSignature):
            kiwify_gateway.parse_webhook(kiwify_body(kiwify_order(), token="nope"))

    def test_wrong_signature_rejected(self, kiwify_gateway):
        raw = json.dumps(kiwify_order()).encode()
        with pytest.raises(InvalidSignature):
            kiwify_gateway.parse_webhook(raw, "0" * 40)

    def test_missing_event_type_is_invalid_payload(self, kiwify_gateway):
        order = kiwify_order()
        del order["webhook_event_type"]
        with pytest.raises(InvalidPayload):
            kiwify_gateway.parse_webhook(kiwify_body(order))

    def test_approved_subscription_order(self, kiwify_gateway):
        event = kiwify_gateway.parse_webhook(kiwify_body(kiwify_order()))
        translated = kiwify_gateway.translate_event(event)

        assert translated.action == WebhookAction.SUBSCRIPTION_CREATED
        snapshot = translated.subscription
        assert snapshot.id == "kw_sub_123"
        assert snapshot.plan_id == "pro"
        assert snapshot.customer_id == "buyer@example.com"
        assert snapshot.current_period_start == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert snapshot.current_period_end == datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)
        assert translated.payment.status == "succeeded"
        assert translated.payment.amount == 19700

    def test_short_plan_amount_buys_ten_days(self, kiwify_gateway):
        event = kiwify_gateway.parse_webhook(kiwify_body(kiwify_order(charge_amount=6790)))
        snapshot = kiwify_gateway.translate_event(event).subscription
        assert snapshot.current_period_end == datetime(2025, 1, 11, 12, 0, tzinfo=timezone.utc)

    def test_next_payment_overrides_amount_period(self, kiwify_gateway):
        order = kiwify_order(next_payment="2025-03-15T00:00:00Z")
        snapshot = kiwify_gateway.translate_event(kiwify_gateway.parse_webhook(kiwify_body(order))).subscription
        assert snapshot.current_period_end == datetime(2025, 3, 15, tzinfo=timezone.utc)

    def test_approved_one_time_order(self, kiwify_gateway):
        event = kiwify_gateway.parse_webhook(kiwify_body(kiwify_order(subscription_id=None)))
        translated = kiwify_gateway.translate_event(event)
        assert translated.action == WebhookAction.PAYMENT_SUCCEEDED
        assert translated.payment.type == "one_time"
        assert translated.subscription is None

    def test_subscription_canceled(self, kiwify_gateway):
        event = kiwify_gateway.parse_webhook(kiwify_body(kiwify_order(event_type="subscription_canceled")))
        translated = kiwify_gateway.translate_event(event)
        assert translated.action == WebhookAction.SUBSCRIPTION_CANCELED
        assert translated.subscription.status == "canceled"

    def test_pix_created_is_pending_only(self, kiwify_gateway):
        event = kiwify_gateway.parse_webhook(kiwify_body(kiwify_order(event_type="pix_created")))
        translated = kiwify_gateway.translate_event(event)
        assert translated.action == WebhookAction.UNKNOWN
        assert translated.payment.status == "pending"
        assert translated.subscription is None

    def test_unknown_product_is_free_plan(self, kiwify_gateway):
        event = kiwify_gateway.parse_webhook(kiwify_body(kiwify_order(product_id="other_product")))
        assert kiwify_gateway.translate_event(event).subscription.plan_id == "free"

    def test_subscription_event_without_order_keyed_by_charge_date(self, kiwify_gateway):
        order = kiwify_order(event_type="subscription_late", order_id=None, approved_date="2025-02-01 12:00")
        event = kiwify_gateway.parse_webhook(kiwify_body(order))
        translated = kiwify_gateway.translate_event(event)

        assert event.id == "kw_sub_123@2025-02-01 12:00:subscription_late"
        assert translated.payment.id == "kw_sub_123@2025-02-01 12:00"
        assert translated.payment.status == "failed"

    def test_next_cycle_gets_a_new_event_id(self, kiwify_gateway):
        january = kiwify_order(event_type="subscription_renewed", order_id=None, approved_date="2025-01-01 12:00")
        february = kiwify_order(event_type="subscription_renewed", order_id=None, approved_date="2025-02-01 12:00")
        first = kiwify_gateway.parse_webhook(kiwify_body(january))
        second = kiwify_gateway.parse_webhook(kiwify_body(february))
        assert first.id != second.id
        assert kiwify_gateway.translate_event(first).payment.id != kiwify_gateway.translate_event(second).payment.id

    def test_no_charge_reference_records_no_payment(self, kiwify_gateway):
        order = kiwify_order(event_type="subscription_late", order_id=None, approved_date=None)
        event = kiwify_gateway.parse_webhook(kiwify_body(order))
        translated = kiwify_gateway.translate_event(event)

        assert "None" not in event.id
        assert event.id.startswith("kw_sub_123@")
        assert translated.payment is None
        assert translated.subscription.status == "past_due"

    def test_no_charge_reference_ids_differ_per_subscription(self, kiwify_gateway):
        first = kiwify_gateway.parse_webhook(kiwify_body(
            kiwify_order(event_type="subscription_late", order_id=None, approved_date=None, subscription_id="kw_a")
        ))
        second = kiwify_gateway.parse_webhook(kiwify_body(
            kiwify_order(event_type="subscription_late", order_id=None, approved_date=None, subscription_id="kw_b")
        ))
        assert first.id != second.id

    def test_no_order_and_no_subscription_is_invalid_payload(self, kiwify_gateway):
        order = kiwify_order(order_id=None, subscription_id=None)
        with pytest.raises(InvalidPayload):
            kiwify_gateway.parse_webhook(kiwify_body(order))

    def test_email_is_lowercased(self, kiwify_gateway):
        event = kiwify_gateway.parse_webhook(kiwify_body(kiwify_order(email="Buyer@Example.COM")))
        assert kiwify_gateway.translate_event(event).payment.customer_email == "buyer@example.com"


@pytest.mark.high
class TestKiwifyOutbound:
    """Hosted checkout URL, fallback portal and REST cancel"""

    def test_checkout_url_carries_email_and_user(self, kiwify_gateway):
        result = kiwify_gateway.start_checkout(7, "pro", "https://app/s", "https://app/c", "buyer@example.com")
        assert result.url.startswith(f"https://pay.kiwify.com.br/{KIWIFY_PRO_PRODUCT_ID}?")
        assert "email=buyer%40example.com" in result.url
        assert "external_id=7" in result.url
        assert result.session_id.startswith("kiwify_")

    def test_management_session_is_fallback_message(self, kiwify_gateway):
        result = kiwify_gateway.open_management_session(7, "https://app/settings?tab=billing")
        assert result["url"].startswith("https://app/settings?tab=billing&message=")

    @patch(HTTPX_REQUEST)
    def test_cancel_calls_subscription_endpoint(self, mock_request, kiwify_gateway):
        mock_request.return_value = json_response({}, method="POST")
        kiwify_gateway.cancel_remote_subscription("kw_sub_123")
        assert mock_request.call_args.args == ("POST", "https://public-api.kiwify.com/v1/subscriptions/kw_sub_123/cancel")
