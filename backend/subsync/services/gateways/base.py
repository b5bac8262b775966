"""Abstract base class and shared value types for payment gateways"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import quote

from subsync.core.exceptions import InvalidPlan


class WebhookAction(str, Enum):
    """Canonical, gateway-agnostic outcome of a webhook event"""
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    UNKNOWN = "unknown"


@dataclass
class PlanPrice:
    """One entry of a gateway's pricing table"""
    amount: int  # minor units
    currency: str
    reference: Optional[str] = None  # processor-side price/product id


@dataclass
class CheckoutResult:
    session_id: str
    url: str
    gateway_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NormalizedWebhookEvent:
    """Parsed, authenticated webhook; type stays in the gateway's own vocabulary"""
    id: str
    type: str
    data: Dict[str, Any]
    signature: Optional[str] = None


@dataclass
class RemoteSubscriptionSnapshot:
    id: str
    status: str  # 'active', 'past_due', 'canceled'
    customer_id: Optional[str]
    plan_id: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    customer_email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentSnapshot:
    id: str
    amount: int  # minor units
    currency: str
    status: str  # 'pending', 'succeeded', 'failed', 'refunded', 'disputed'
    type: str  # 'subscription', 'one_time', 'refund', 'chargeback'
    subscription_id: Optional[str] = None  # external subscription id
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TranslatedEvent:
    action: WebhookAction
    subscription: Optional[RemoteSubscriptionSnapshot] = None
    payment: Optional[PaymentSnapshot] = None


class PaymentGateway(ABC):
    """Abstract base class defining the capability contract for payment gateways.

    Implementations own their processor's wire format and vocabulary; nothing
    here touches the local database. The orchestrator keys adapters by
    ``gateway_name``, which also selects the sparse external-id columns on
    Subscription and Payment.
    """

    gateway_name: str = ""

    @property
    @abstractmethod
    def pricing_table(self) -> Dict[str, PlanPrice]:
        """Plan id -> price for plans this gateway can sell"""
        pass

    def get_plan_price(self, plan_id: str) -> PlanPrice:
        """Look up a plan, raising InvalidPlan for anything not sold here"""
        price = self.pricing_table.get(plan_id)
        if price is None:
            raise InvalidPlan(f"Plan '{plan_id}' is not available on {self.gateway_name}")
        return price

    @abstractmethod
    def start_checkout(
        self,
        user_id: int,
        plan_id: str,
        success_url: str,
        cancel_url: str,
        user_email: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CheckoutResult:
        """Start a hosted checkout.

        Raises:
            InvalidPlan: plan_id is not in the pricing table
            UpstreamError: the processor call failed
        """
        pass

    @abstractmethod
    def open_management_session(self, user_id: int, return_url: str) -> Dict[str, str]:
        """Return {"url": ...} for self-service subscription management"""
        pass

    @abstractmethod
    def parse_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> NormalizedWebhookEvent:
        """Verify and parse a webhook request.

        Raises:
            InvalidSignature: authenticity could not be established
            InvalidPayload: body is not a well-formed event
        """
        pass

    @abstractmethod
    def cancel_remote_subscription(self, external_subscription_id: str) -> None:
        """Cancel at the processor. Raises NotFound if it has no such subscription."""
        pass

    @abstractmethod
    def fetch_remote_subscription(self, external_subscription_id: str) -> RemoteSubscriptionSnapshot:
        """Fetch current processor state. Raises NotFound if it has no such subscription."""
        pass

    @abstractmethod
    def translate_event(self, event: NormalizedWebhookEvent) -> TranslatedEvent:
        """Map a gateway event onto a WebhookAction plus optional snapshots"""
        pass

    @staticmethod
    def management_fallback_url(return_url: str, message: str) -> str:
        """Portal-less processors send the user back with an instructional message"""
        separator = "&" if "?" in return_url else "?"
        return f"{return_url}{separator}message={quote(message)}"
