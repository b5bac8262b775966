"""Shared FastAPI dependencies"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from subsync.core.config import settings
from subsync.services.container import Services


def get_services(request: Request) -> Services:
    """Dependency: the service graph built at startup"""
    return request.app.state.services


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> int:
    """Dependency: authenticated user id, set by the auth proxy in front of this service"""
    if not x_user_id:
        raise HTTPException(401, "Not authenticated")
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(401, "Invalid user id")


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    """Dependency: operator endpoints need the configured admin token"""
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(403, "Admin API disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        raise HTTPException(403, "Admin access required")
