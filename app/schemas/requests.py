from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

MIN_AMOUNT = Decimal("0.01")


class PaymentRequest(BaseModel):
    user_id: int
    store_id: Optional[str] = None
    amount: Decimal = Field(..., ge=MIN_AMOUNT, max_digits=10, decimal_places=2)
    member_email: str = Field(..., min_length=3, max_length=255)
    member_name: str = Field(..., min_length=1, max_length=255)
    payment_method_id: str = Field(..., min_length=1)
    descriptor: Optional[str] = None
    temp_order_number: Optional[str] = None

    @field_validator("member_email")
    @classmethod
    def validate_email(cls, v):
        if "@" not in v:
            raise ValueError("member_email must be a valid email address")
        return v.strip()


class TerminalIntentRequest(BaseModel):
    user_id: int
    store_id: Optional[str] = None
    amount: Decimal = Field(..., ge=MIN_AMOUNT, max_digits=10, decimal_places=2)
    member_email: Optional[str] = None
    member_name: Optional[str] = None
    temp_order_number: Optional[str] = None


class ConnectionTokenRequest(BaseModel):
    user_id: int


class VoidRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    user_id: int
    store_id: Optional[str] = None
    member_email: Optional[str] = None
    member_name: Optional[str] = None


class RefundRequest(VoidRequest):
    # Omitted amount refunds whatever is still refundable.
    amount: Optional[Decimal] = Field(None, ge=MIN_AMOUNT, max_digits=10, decimal_places=2)
