from typing import Optional

from pydantic import BaseModel, ConfigDict


class OperationResponse(BaseModel):
    """Adapter result as returned to the caller; gateway-specific keys pass through."""

    model_config = ConfigDict(extra="allow")

    success: bool
    transaction_id: Optional[str] = None
    charge_id: Optional[str] = None
    status: Optional[str] = None


class RefundVoidResponse(OperationResponse):
    refund_id: Optional[str] = None
    transaction_status: Optional[str] = None
    gateway: Optional[str] = None
    refunded_amount: Optional[float] = None
    remaining_refundable: Optional[float] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error_code: str
    error_message: str
    http_status: int


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
    attempt_id: Optional[int] = None


ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}
