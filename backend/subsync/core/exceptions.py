"""Billing error taxonomy.

Every error carries the HTTP status the API layer should answer with, so
routes can translate them without knowing which service raised.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for all billing errors"""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidPlan(BillingError):
    """Plan id is not in the selected gateway's pricing table"""
    status_code = 400


class InvalidSignature(BillingError):
    """Webhook authenticity check failed (or no secret is configured)"""
    status_code = 400


class InvalidPayload(BillingError):
    """Webhook body or request is malformed"""
    status_code = 400


class NotFound(BillingError):
    """No local or remote record matches"""
    status_code = 404


class AlreadySubscribed(BillingError):
    """User already holds an active paid subscription"""
    status_code = 409


class UnsupportedGateway(BillingError):
    """Gateway name is not registered"""
    status_code = 400


class UpstreamError(BillingError):
    """Payment processor call failed or timed out"""
    status_code = 502
