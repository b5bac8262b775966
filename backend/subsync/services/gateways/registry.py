"""Payment gateway registry"""
from typing import Dict

from subsync.core.config import settings, Settings
from subsync.services.gateways.base import PaymentGateway
from subsync.services.gateways.kiwify import KiwifyGateway
from subsync.services.gateways.mercado_pago import MercadoPagoGateway
from subsync.services.gateways.stripe_gateway import StripeGateway

GATEWAY_CLASSES = {
    StripeGateway.gateway_name: StripeGateway,
    MercadoPagoGateway.gateway_name: MercadoPagoGateway,
    KiwifyGateway.gateway_name: KiwifyGateway,
}


def build_gateway_registry(config: Settings = settings) -> Dict[str, PaymentGateway]:
    """Instantiate every supported gateway, keyed by gateway_name"""
    return {name: gateway_class(config) for name, gateway_class in GATEWAY_CLASSES.items()}
