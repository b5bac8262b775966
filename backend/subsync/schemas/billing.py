"""Pydantic schemas for billing routes"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, field_validator


class CheckoutRequest(BaseModel):
    plan_id: str
    gateway: str  # 'stripe', 'mercado_pago', 'kiwify'
    return_url: str
    cancel_url: str
    metadata: Optional[Dict[str, Any]] = None


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str
    gateway: str


class CancelResponse(BaseModel):
    message: str


class SubscriptionStatusResponse(BaseModel):
    user_id: int
    plan_id: str
    status: str
    gateway: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None


class ExpirationStatusResponse(BaseModel):
    is_expired: bool
    is_in_grace_period: bool
    days_until_expiry: int
    expiry_date: Optional[datetime] = None


class ReactivateRequest(BaseModel):
    new_period_end: datetime
    plan_id: Optional[str] = None

    @field_validator("new_period_end")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("new_period_end must include a timezone offset")
        return v
