"""Payment gateway adapters"""
from subsync.services.gateways.base import (
    CheckoutResult, NormalizedWebhookEvent, PaymentGateway, PaymentSnapshot, PlanPrice,
    RemoteSubscriptionSnapshot, TranslatedEvent, WebhookAction
)
from subsync.services.gateways.registry import build_gateway_registry

__all__ = [
    "CheckoutResult", "NormalizedWebhookEvent", "PaymentGateway", "PaymentSnapshot", "PlanPrice",
    "RemoteSubscriptionSnapshot", "TranslatedEvent", "WebhookAction", "build_gateway_registry",
]
