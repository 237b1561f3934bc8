"""
Error taxonomy shared by the pricing, payment and booking services.

Routes translate these into HTTP responses; services never raise HTTPException.
"""

from typing import Any, Dict, Optional


class JetsettersError(Exception):
    """Base class for every domain error raised by this package."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": type(self).__name__, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(JetsettersError, ValueError):
    """Bad input: amount mismatch, missing field, negative price. Raised before any gateway call."""

    status_code = 400


class NotFoundError(JetsettersError, LookupError):
    status_code = 404


class InconsistentState(JetsettersError):
    """Local records disagree with gateway truth, or a concurrent writer holds the payment."""

    status_code = 409


class GatewayError(JetsettersError):
    """Base for payment gateway failures."""

    status_code = 502

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        gateway_code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message, details)
        self.gateway_code = gateway_code
        self.http_status = http_status


class GatewayUnavailable(GatewayError):
    """Network error or 5xx from the gateway. Only reads are retried."""

    status_code = 502


class GatewayRejected(GatewayError):
    """Business rejection from the gateway (e.g. void after settlement). Never retried."""

    status_code = 422


class SupplierError(JetsettersError):
    """Upstream travel supplier (Amadeus) call failed."""

    status_code = 502
