"""
AP2 Exception Hierarchy

Every failure that crosses an agent boundary is one of these. Agents raise them
synchronously; the servers translate them into JSON-RPC errors and the
Shopping Agent decides what, if anything, gets retried.
"""

from typing import Any, Dict, Optional


class AP2Error(Exception):
    """Base exception for all AP2 protocol errors."""

    error_code = "ap2:error"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class UnauthorizedError(AP2Error):
    """
    Caller identity is not trusted.

    Fatal for the call and never retried automatically.
    """

    error_code = "ap2:agent:unauthorized"
    http_status = 401


class ValidationError(AP2Error):
    """A required data part is missing or a payload is malformed."""

    error_code = "ap2:request:invalid"
    http_status = 400


class StateTransitionError(ValidationError):
    """Operation is not allowed from the session's current stage."""

    error_code = "ap2:session:invalid_transition"


class ExpiredError(AP2Error):
    """
    Mandate or token past its expiry.

    An expired cart is unselectable; the Shopping Agent asks the merchant for
    fresh carts instead of retrying it.
    """

    error_code = "ap2:mandate:expired"
    http_status = 410


class IntegrityError(AP2Error):
    """
    Signature invalid or content digest mismatch.

    The transaction must be aborted.
    """

    error_code = "ap2:mandate:integrity"
    http_status = 422


class SettlementError(AP2Error):
    """
    External payment step failed.

    Recoverable: the user may retry, which signs a brand new PaymentMandate.
    """

    error_code = "ap2:payment:settlement_failed"
    http_status = 502
