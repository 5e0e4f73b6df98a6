"""
Error taxonomy for payment operations.

Expected rejections (validation, business rules, not found) travel as PaymentError
values. Gateway failures are raised as exceptions inside the adapters and converted
to PaymentError at the adapter boundary, after the ledger row has been marked Error.
"""
import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation_error"
    BUSINESS_RULE = "business_rule_violation"
    NOT_FOUND = "not_found"
    GATEWAY_TRANSPORT = "gateway_transport_error"
    GATEWAY_BUSINESS = "gateway_business_error"


DEFAULT_HTTP_STATUS = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.BUSINESS_RULE: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.GATEWAY_TRANSPORT: 500,
    ErrorKind.GATEWAY_BUSINESS: 400,
}


@dataclass(frozen=True)
class PaymentError:
    kind: ErrorKind
    message: str
    code: Optional[str] = None
    http_status: Optional[int] = None

    @property
    def status_code(self) -> int:
        return self.http_status or DEFAULT_HTTP_STATUS[self.kind]

    @property
    def error_code(self) -> str:
        return self.code or self.kind.value

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error_code": self.error_code,
            "error_message": self.message,
            "http_status": self.status_code,
        }


def validation_error(message: str, code: Optional[str] = None) -> PaymentError:
    return PaymentError(ErrorKind.VALIDATION, message, code)


def business_rule(message: str, code: Optional[str] = None) -> PaymentError:
    return PaymentError(ErrorKind.BUSINESS_RULE, message, code)


def not_found(message: str, code: Optional[str] = None) -> PaymentError:
    return PaymentError(ErrorKind.NOT_FOUND, message, code)


class GatewayError(Exception):
    """Base for failures talking to a remote gateway."""

    kind = ErrorKind.GATEWAY_BUSINESS

    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status

    def to_error(self) -> PaymentError:
        return PaymentError(self.kind, self.message, self.code, self.http_status)


class GatewayTransportError(GatewayError):
    """Network failure or timeout. Retryable once ledger state has been re-checked."""

    kind = ErrorKind.GATEWAY_TRANSPORT


class GatewayBusinessError(GatewayError):
    """The gateway answered and rejected the operation."""

    kind = ErrorKind.GATEWAY_BUSINESS


class SignatureVerificationError(Exception):
    def __init__(self, message: str, http_status: int = 401):
        super().__init__(message)
        self.message = message
        self.http_status = http_status


class WebhookConfigurationError(Exception):
    """No signing secret configured for the tenant; the request cannot be verified."""


class InvalidWebhookPayload(ValueError):
    """The delivery is not JSON or not shaped like the gateway's event envelope."""
