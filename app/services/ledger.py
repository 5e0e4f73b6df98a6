"""
Attempt ledger: the only mutable shared state in the payment flow.

Every charge, refund and void is its own PaymentAttempt row. Status changes go
through update_status(), a conditional UPDATE that only touches rows whose current
status is in `allowed_from`, so concurrent or duplicate confirmations converge.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.models import AttemptKind, PaymentAttempt, PaymentStatus, utcnow

MONEY_QUANT = Decimal("0.01")

REVERSAL_KINDS = (AttemptKind.REFUND, AttemptKind.VOID)
# Statuses an original charge can hold and still be looked up for a reversal.
ORIGINAL_STATUSES = (PaymentStatus.PAID, PaymentStatus.HANDLED, PaymentStatus.REFUND)


def to_money(value) -> Decimal:
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value))
    return amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def _statuses(values: Iterable[PaymentStatus]):
    return [int(v) for v in values]


def create_attempt(
    db: Session,
    *,
    user_id: int,
    gateway: str,
    amount,
    kind: AttemptKind = AttemptKind.CHARGE,
    status: PaymentStatus = PaymentStatus.ATTEMPT,
    **fields,
) -> PaymentAttempt:
    """Insert and commit a new row. Reversal kinds are always stored negative."""
    amount = abs(to_money(amount))
    if kind in REVERSAL_KINDS:
        amount = -amount

    attempt = PaymentAttempt(
        user_id=user_id,
        gateway=gateway,
        kind=AttemptKind(kind).value,
        amount=amount,
        status=int(status),
        **fields,
    )
    db.add(attempt)
    db.commit()
    db.refresh(attempt)
    return attempt


def get_attempt(db: Session, attempt_id: int, user_id: Optional[int] = None) -> Optional[PaymentAttempt]:
    query = db.query(PaymentAttempt).filter(PaymentAttempt.id == attempt_id)
    if user_id is not None:
        query = query.filter(PaymentAttempt.user_id == user_id)
    return query.first()


def find_by_transaction_id(
    db: Session,
    transaction_id: str,
    user_id: Optional[int] = None,
    status: Optional[PaymentStatus] = None,
    kind: Optional[AttemptKind] = None,
    gateway: Optional[str] = None,
) -> Optional[PaymentAttempt]:
    query = db.query(PaymentAttempt).filter(PaymentAttempt.transaction_id == transaction_id)
    if user_id is not None:
        query = query.filter(PaymentAttempt.user_id == user_id)
    if status is not None:
        query = query.filter(PaymentAttempt.status == int(status))
    if kind is not None:
        query = query.filter(PaymentAttempt.kind == AttemptKind(kind).value)
    if gateway is not None:
        query = query.filter(PaymentAttempt.gateway == gateway)
    return query.order_by(PaymentAttempt.id.asc()).first()


def find_original_charge(
    db: Session, transaction_id: str, user_id: int, lock: bool = False
) -> Optional[PaymentAttempt]:
    """
    The charge row a refund/void would reverse. Paid rows win over Handled/Refund
    ones; `lock` takes a row lock for the duration of the caller's transaction.
    """
    query = db.query(PaymentAttempt).filter(
        PaymentAttempt.transaction_id == transaction_id,
        PaymentAttempt.user_id == user_id,
        PaymentAttempt.kind == AttemptKind.CHARGE.value,
        PaymentAttempt.status.in_(_statuses(ORIGINAL_STATUSES)),
    )
    if lock:
        query = query.with_for_update()
    rows = query.order_by(PaymentAttempt.id.asc()).all()
    for row in rows:
        if row.status == int(PaymentStatus.PAID):
            return row
    return rows[0] if rows else None


def sum_amount_where(
    db: Session,
    transaction_id: str,
    statuses: Iterable[PaymentStatus],
    kind: Optional[AttemptKind] = None,
    user_id: Optional[int] = None,
) -> Decimal:
    query = db.query(func.coalesce(func.sum(PaymentAttempt.amount), 0)).filter(
        PaymentAttempt.transaction_id == transaction_id,
        PaymentAttempt.status.in_(_statuses(statuses)),
    )
    if kind is not None:
        query = query.filter(PaymentAttempt.kind == AttemptKind(kind).value)
    if user_id is not None:
        query = query.filter(PaymentAttempt.user_id == user_id)
    return to_money(query.scalar() or 0)


def has_status(
    db: Session,
    transaction_id: str,
    status: PaymentStatus,
    kind: Optional[AttemptKind] = None,
    user_id: Optional[int] = None,
) -> bool:
    query = db.query(PaymentAttempt.id).filter(
        PaymentAttempt.transaction_id == transaction_id,
        PaymentAttempt.status == int(status),
    )
    if kind is not None:
        query = query.filter(PaymentAttempt.kind == AttemptKind(kind).value)
    if user_id is not None:
        query = query.filter(PaymentAttempt.user_id == user_id)
    return query.first() is not None


def update_status(
    db: Session,
    attempt_id: int,
    status: PaymentStatus,
    allowed_from: Iterable[PaymentStatus] = (PaymentStatus.ATTEMPT,),
    commit: bool = True,
    **fields,
) -> bool:
    """
    Compare-and-set transition. Returns False when the row was not in one of
    `allowed_from` (already resolved elsewhere). None-valued fields are left alone.
    """
    values: Dict[Any, Any] = {
        getattr(PaymentAttempt, key): value for key, value in fields.items() if value is not None
    }
    values[PaymentAttempt.status] = int(status)
    values[PaymentAttempt.updated_at] = utcnow()

    changed = (
        db.query(PaymentAttempt)
        .filter(
            PaymentAttempt.id == attempt_id,
            PaymentAttempt.status.in_(_statuses(allowed_from)),
        )
        .update(values, synchronize_session=False)
    )
    if commit:
        db.commit()
    return changed == 1


def set_fields(db: Session, attempt_id: int, commit: bool = True, **fields) -> None:
    """Stamp correlation fields without touching status."""
    values = {
        getattr(PaymentAttempt, key): value for key, value in fields.items() if value is not None
    }
    if not values:
        return
    values[PaymentAttempt.updated_at] = utcnow()
    db.query(PaymentAttempt).filter(PaymentAttempt.id == attempt_id).update(
        values, synchronize_session=False
    )
    if commit:
        db.commit()


def find_for_details(db: Session, user_id: int, transaction_id: str) -> Optional[PaymentAttempt]:
    return (
        db.query(PaymentAttempt)
        .filter(
            PaymentAttempt.user_id == user_id,
            or_(
                PaymentAttempt.transaction_id == transaction_id,
                PaymentAttempt.refund_void_transaction_id == transaction_id,
            ),
        )
        .order_by(PaymentAttempt.id.asc())
        .first()
    )


def find_reversal(
    db: Session,
    user_id: int,
    kind: AttemptKind,
    amount,
    references: Iterable[Optional[str]],
) -> Optional[PaymentAttempt]:
    """
    Reversal confirmations reference the charge, not our attempt. Match on any of the
    given charge/transaction references plus the exact reversed amount, preferring
    rows still in Attempt.
    """
    refs = [r for r in references if r]
    if not refs:
        return None
    rows = (
        db.query(PaymentAttempt)
        .filter(
            PaymentAttempt.user_id == user_id,
            PaymentAttempt.kind == AttemptKind(kind).value,
            PaymentAttempt.amount == -abs(to_money(amount)),
            or_(PaymentAttempt.transaction_id.in_(refs), PaymentAttempt.charge_id.in_(refs)),
        )
        .order_by(PaymentAttempt.id.asc())
        .all()
    )
    for row in rows:
        if row.status == int(PaymentStatus.ATTEMPT):
            return row
    return rows[0] if rows else None


def find_by_reversal_id(db: Session, user_id: int, reversal_id: str) -> Optional[PaymentAttempt]:
    return (
        db.query(PaymentAttempt)
        .filter(
            PaymentAttempt.user_id == user_id,
            PaymentAttempt.refund_void_transaction_id == reversal_id,
        )
        .first()
    )


def attempt_to_dict(attempt: PaymentAttempt) -> Dict[str, Any]:
    status = PaymentStatus(attempt.status)
    return {
        "id": attempt.id,
        "user_id": attempt.user_id,
        "store_id": attempt.store_id,
        "temp_order_number": attempt.temp_order_number,
        "member_email": attempt.member_email,
        "member_name": attempt.member_name,
        "gateway": attempt.gateway,
        "kind": attempt.kind,
        "amount": to_money(attempt.amount),
        "card_last_4_digit": attempt.card_last_4_digit,
        "card_expire_date": attempt.card_expire_date,
        "transaction_id": attempt.transaction_id,
        "charge_id": attempt.charge_id,
        "refund_void_transaction_id": attempt.refund_void_transaction_id,
        "status": int(status),
        "status_label": status.name.title(),
        "comment": attempt.comment,
        "payment_handle_comment": attempt.payment_handle_comment,
        "created_at": attempt.created_at.isoformat() if attempt.created_at else None,
        "updated_at": attempt.updated_at.isoformat() if attempt.updated_at else None,
    }
