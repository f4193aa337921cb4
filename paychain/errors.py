"""
Payment Chain Exception Hierarchy

Every hop raises these internally and converts them into its own
structured response at the boundary, so no exception crosses a network
call as a stack trace.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from .status import TransactionStatus


class PaymentChainError(Exception):
    """Base exception for all payment chain errors."""

    http_status = 500

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(PaymentChainError):
    """
    Malformed request. Raised before any side effect, no record is created.
    """

    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("ValidationError", message, details)


class RoutingError(PaymentChainError):
    """No issuer bank is configured for the card's BIN."""

    http_status = 404

    def __init__(self, message: str = "Issuer bank not found for this card", details: Optional[Dict[str, Any]] = None):
        super().__init__("IssuerNotFound", message, details)


class TransportError(PaymentChainError):
    """
    Downstream service unreachable, timed out, answered non-2xx, or sent a
    body that does not parse.
    """

    http_status = 502
    code = "ServiceUnavailable"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(self.code, message, details)


class IssuerUnavailableError(TransportError):
    """The PCC could not get a usable answer from the issuer bank."""

    code = "IssuerUnavailable"


class BusinessDecline(PaymentChainError):
    """The issuer explicitly refused the payment."""

    http_status = 402

    def __init__(
        self,
        message: str,
        status: TransactionStatus = TransactionStatus.FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__("IssuerRejected", message, details)
        self.status = status


class InternalError(PaymentChainError):
    """Unexpected failure; the message is always generic."""

    def __init__(self, message: str = "Internal error", details: Optional[Dict[str, Any]] = None):
        super().__init__("InternalError", message, details)


class NotFoundError(PaymentChainError):
    """A referenced payment, order or transaction does not exist."""

    http_status = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("NotFound", message, details)
