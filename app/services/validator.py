"""
Refund/void eligibility.

Runs before any adapter call and never raises for an expected rejection: the
outcome is an Eligibility carrying either the resolved original payment or a
PaymentError (400 business rule, 404 not found).

Pending reversal attempts (status Attempt) are counted as reservations, so a second
request cannot over-refund while the first is still awaiting its webhook.
"""
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from app.errors import (
    GatewayBusinessError, GatewayTransportError, PaymentError, business_rule, not_found,
)
from app.gateways.base import GatewayAdapter, OriginalPayment
from app.models import AttemptKind, PaymentAttempt, PaymentStatus
from app.services import ledger

logger = structlog.get_logger(__name__)

COUNTED_REFUND_STATUSES = (PaymentStatus.REFUND, PaymentStatus.ATTEMPT)


class Operation(str, enum.Enum):
    REFUND = "refund"
    VOID = "void"


@dataclass(frozen=True)
class ReversalRequest:
    transaction_id: str
    user_id: int
    amount: Optional[Decimal] = None
    store_id: Optional[str] = None
    member_email: Optional[str] = None
    member_name: Optional[str] = None


@dataclass(frozen=True)
class Eligibility:
    original: Optional[OriginalPayment] = None
    amount: Optional[Decimal] = None
    error: Optional[PaymentError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _reject(request: ReversalRequest, operation: Operation, error: PaymentError) -> Eligibility:
    logger.info(
        "reversal_rejected",
        tenant=request.user_id,
        transaction_id=request.transaction_id,
        operation=operation.value,
        error_code=error.error_code,
        reason=error.message,
    )
    return Eligibility(error=error)


def _history_error(db: Session, user_id: int, transaction_id: str,
                   operation: Operation) -> Optional[PaymentError]:
    """Void/refund exclusivity checks shared by the local and external paths."""
    if ledger.has_status(db, transaction_id, PaymentStatus.VOID, user_id=user_id):
        if operation == Operation.VOID:
            return business_rule("This transaction has already been voided.", "already_voided")
        return business_rule(
            f"Unable to process refund since the payment with transaction ID {transaction_id} "
            "has already been voided.",
            "already_voided",
        )
    if ledger.has_status(db, transaction_id, PaymentStatus.ATTEMPT, kind=AttemptKind.VOID, user_id=user_id):
        return business_rule(
            f"A void is already in progress for transaction ID {transaction_id}.", "void_in_progress"
        )
    return None


def _refunded(db: Session, user_id: int, transaction_id: str) -> Decimal:
    return abs(ledger.sum_amount_where(
        db, transaction_id, COUNTED_REFUND_STATUSES, kind=AttemptKind.REFUND, user_id=user_id
    ))


def _refund_amount(
    request: ReversalRequest, transaction_id: str, original_amount: Decimal, refunded: Decimal
):
    if refunded >= original_amount:
        return None, business_rule(
            f"Payment with transaction ID {transaction_id} has already been fully refunded.",
            "already_refunded",
        )
    remaining = ledger.to_money(original_amount - refunded)
    amount = ledger.to_money(request.amount) if request.amount is not None else remaining
    if amount > remaining:
        return None, business_rule(
            "Requested refund exceeds the remaining refundable amount.", "refund_exceeds_remaining"
        )
    return amount, None


def _check_local(db: Session, row: PaymentAttempt, request: ReversalRequest,
                 operation: Operation) -> Eligibility:
    transaction_id = row.transaction_id
    error = _history_error(db, request.user_id, transaction_id, operation)
    if error:
        return _reject(request, operation, error)

    original_amount = ledger.to_money(row.amount)
    refunded = _refunded(db, request.user_id, transaction_id)

    if operation == Operation.VOID:
        if row.status != int(PaymentStatus.PAID):
            return _reject(request, operation, business_rule(
                "Transaction cannot be voided. Only paid transactions can be voided. "
                f"Current status: {PaymentStatus(row.status).name.title()}",
                "not_voidable",
            ))
        if refunded > 0:
            return _reject(request, operation, business_rule(
                f"Payment with transaction ID {transaction_id} has refunds and cannot be voided.",
                "has_refunds",
            ))
        return Eligibility(original=OriginalPayment.from_attempt(row, refunded), amount=original_amount)

    if row.status == int(PaymentStatus.REFUND):
        return _reject(request, operation, business_rule(
            f"Payment with transaction ID {transaction_id} has already been refunded.", "already_refunded"
        ))
    amount, error = _refund_amount(request, transaction_id, original_amount, refunded)
    if error:
        return _reject(request, operation, error)
    return Eligibility(original=OriginalPayment.from_attempt(row, refunded), amount=amount)


async def _check_external(db: Session, adapter: GatewayAdapter, request: ReversalRequest,
                          operation: Operation) -> Eligibility:
    transaction_id = request.transaction_id
    try:
        remote = await adapter.fetch_remote_transaction(transaction_id)
    except GatewayTransportError as exc:
        return _reject(request, operation, exc.to_error())
    except GatewayBusinessError as exc:
        return _reject(request, operation, not_found(
            f"External transaction not found: {transaction_id}. {exc.message}", "transaction_not_found"
        ))

    allowed = (adapter.EXTERNAL_VOIDABLE_STATUSES if operation == Operation.VOID
               else adapter.EXTERNAL_REFUNDABLE_STATUSES)
    if remote.status not in allowed:
        verb = "voided" if operation == Operation.VOID else "refunded"
        return _reject(request, operation, business_rule(
            f"External transaction {transaction_id} cannot be {verb} while its gateway status is "
            f"'{remote.status}'.",
            "external_status_not_eligible",
        ))

    # Earlier reversals we submitted against this external transaction.
    error = _history_error(db, request.user_id, transaction_id, operation)
    if error:
        return _reject(request, operation, error)
    refunded = max(remote.already_refunded, _refunded(db, request.user_id, transaction_id))

    if operation == Operation.VOID:
        if refunded > 0:
            return _reject(request, operation, business_rule(
                f"Payment with transaction ID {transaction_id} has refunds and cannot be voided.",
                "has_refunds",
            ))
        amount = remote.amount
    else:
        amount, error = _refund_amount(request, transaction_id, remote.amount, refunded)
        if error:
            return _reject(request, operation, error)

    original = OriginalPayment(
        user_id=request.user_id,
        transaction_id=transaction_id,
        amount=remote.amount,
        gateway=adapter.display_name,
        charge_id=remote.charge_id,
        store_id=request.store_id,
        member_email=request.member_email or remote.member_email,
        member_name=request.member_name or remote.member_name,
        status=PaymentStatus.PAID,
        already_refunded=refunded,
        is_external=True,
    )
    logger.info("external_transaction_resolved", tenant=request.user_id, transaction_id=transaction_id,
                operation=operation.value, remote_status=remote.status)
    return Eligibility(original=original, amount=amount)


async def validate_reversal(
    db: Session,
    adapter: GatewayAdapter,
    request: ReversalRequest,
    operation: Operation,
) -> Eligibility:
    row = ledger.find_original_charge(db, request.transaction_id, request.user_id, lock=True)
    if row is not None:
        return _check_local(db, row, request, operation)
    return await _check_external(db, adapter, request, operation)
