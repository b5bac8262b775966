"""Billing API routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from subsync.api.deps import get_current_user_id, get_services
from subsync.core.config import settings
from subsync.core.exceptions import BillingError
from subsync.db.session import get_db
from subsync.schemas.billing import (
    CancelResponse, CheckoutRequest, CheckoutResponse, ExpirationStatusResponse, SubscriptionStatusResponse
)
from subsync.services.container import Services

router = APIRouter(prefix="/api/billing", tags=["billing"])
logger = logging.getLogger(__name__)


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    request_data: CheckoutRequest,
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
    db: Session = Depends(get_db)
):
    """Start a hosted checkout on the chosen gateway"""
    try:
        return services.billing.create_checkout_session(
            user_id,
            request_data.plan_id,
            request_data.gateway,
            request_data.return_url,
            request_data.cancel_url,
            db,
            metadata=request_data.metadata,
        )
    except BillingError as e:
        logger.warning(f"Checkout failed for user {user_id}: {e.message}")
        raise HTTPException(e.status_code, e.message)


@router.post("/webhooks/{gateway}")
async def gateway_webhook(
    gateway: str,
    request: Request,
    signature: Optional[str] = Query(None),
    services: Services = Depends(get_services),
    db: Session = Depends(get_db)
):
    """Receive a gateway webhook

    The body is read as raw bytes for signature verification. Client errors
    answer 4xx so the processor stops; anything else answers 5xx so it redelivers.
    """
    payload = await request.body()
    try:
        return services.billing.handle_webhook(gateway, payload, signature, dict(request.headers), db)
    except BillingError as e:
        raise HTTPException(e.status_code, e.message)
    except Exception as e:
        logger.error(f"Unexpected error processing {gateway} webhook: {e}", exc_info=True)
        raise HTTPException(500, "Webhook processing failed")


@router.post("/cancel", response_model=CancelResponse)
def cancel_subscription(
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
    db: Session = Depends(get_db)
):
    """Cancel the current subscription at the end of its period"""
    try:
        return services.billing.cancel_subscription(user_id, db)
    except BillingError as e:
        raise HTTPException(e.status_code, e.message)


@router.get("/status", response_model=SubscriptionStatusResponse)
def get_subscription_status(
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
    db: Session = Depends(get_db)
):
    return services.billing.get_subscription_status(user_id, db)


@router.get("/expiration", response_model=ExpirationStatusResponse)
def get_expiration_status(
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
    db: Session = Depends(get_db)
):
    return services.billing.get_expiration_status(user_id, db)


@router.get("/portal")
def get_portal_url(
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
    db: Session = Depends(get_db)
):
    """Get the gateway's self-service management URL (or a fallback message)"""
    return_url = f"{settings.FRONTEND_URL}/settings"
    try:
        return services.billing.open_management_session(user_id, return_url, db)
    except BillingError as e:
        raise HTTPException(e.status_code, e.message)
