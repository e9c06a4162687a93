"""
Error taxonomy for the settlement engine.

Each error carries the HTTP status code it maps to so views can render
it without knowing which component raised it.
"""
from typing import Any, Dict, Optional

from rest_framework import status


class SettlementError(Exception):
    """Base error for settlement failures."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SettlementValidationError(SettlementError):
    """Raised when input is malformed or out of range."""

    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(SettlementError):
    """Bad or missing webhook signature or authorization token."""

    status_code = status.HTTP_401_UNAUTHORIZED


class OrderNotFound(SettlementError):
    status_code = status.HTTP_404_NOT_FOUND


class LiquidityError(SettlementError):
    """Custodial pool cannot cover the order. Callers should retry later."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str, result=None):
        super().__init__(message, details={'liquidity': result.as_dict() if result else None})
        self.result = result


class RailError(SettlementError):
    """A fiat, payout or ledger call failed."""

    def __init__(self, message: str, rail: str = '', details: Optional[Dict[str, Any]] = None):
        merged = {'rail': rail} if rail else {}
        merged.update(details or {})
        super().__init__(message, details=merged)
        self.rail = rail


class ReconciliationTimeout(SettlementError):
    """External settlement was never confirmed within the polling bound."""


class InvalidTransition(SettlementError):
    """An order was asked to move to a state its transition table forbids."""

    status_code = status.HTTP_409_CONFLICT
