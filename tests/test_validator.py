"""
Refund/void eligibility against the ledger and, for external transactions, the gateway.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from app.errors import GatewayBusinessError, GatewayTransportError
from app.gateways.base import RemoteTransaction
from app.models import AttemptKind, PaymentStatus
from app.services.validator import Operation, ReversalRequest, validate_reversal
from tests.conftest import make_attempt


def fake_adapter(remote=None, error=None):
    adapter = MagicMock()
    adapter.display_name = "Stripe"
    adapter.EXTERNAL_VOIDABLE_STATUSES = frozenset({"uncaptured"})
    adapter.EXTERNAL_REFUNDABLE_STATUSES = frozenset({"captured", "partially_refunded"})
    adapter.fetch_remote_transaction = AsyncMock(return_value=remote, side_effect=error)
    return adapter


def request(transaction_id="T1", amount=None, user_id=1):
    return ReversalRequest(
        transaction_id=transaction_id,
        user_id=user_id,
        amount=Decimal(amount) if amount is not None else None,
    )


# ---------------------------------------------------------------------------
# Local refunds
# ---------------------------------------------------------------------------
class TestLocalRefund:
    async def test_full_refund_defaults_to_remaining(self, db):
        make_attempt(db)
        result = await validate_reversal(db, fake_adapter(), request(), Operation.REFUND)
        assert result.ok
        assert result.amount == Decimal("100.00")
        assert result.original.is_external is False

    async def test_partial_refunds_sum_to_the_ceiling(self, db):
        make_attempt(db)
        make_attempt(db, amount="-60.00", status=PaymentStatus.REFUND, kind=AttemptKind.REFUND)

        ok = await validate_reversal(db, fake_adapter(), request(amount="40.00"), Operation.REFUND)
        too_much = await validate_reversal(db, fake_adapter(), request(amount="40.01"), Operation.REFUND)

        assert ok.ok
        assert ok.original.already_refunded == Decimal("60.00")
        assert too_much.error.error_code == "refund_exceeds_remaining"
        assert too_much.error.status_code == 400

    async def test_pending_refund_counts_toward_ceiling(self, db):
        make_attempt(db)
        make_attempt(db, amount="-40.00", status=PaymentStatus.ATTEMPT, kind=AttemptKind.REFUND)

        result = await validate_reversal(db, fake_adapter(), request(amount="70.00"), Operation.REFUND)
        assert result.error.message == "Requested refund exceeds the remaining refundable amount."

    async def test_failed_refunds_do_not_count(self, db):
        make_attempt(db)
        make_attempt(db, amount="-40.00", status=PaymentStatus.ERROR, kind=AttemptKind.REFUND)

        result = await validate_reversal(db, fake_adapter(), request(amount="100.00"), Operation.REFUND)
        assert result.ok

    async def test_fully_refunded(self, db):
        make_attempt(db)
        make_attempt(db, amount="-100.00", status=PaymentStatus.REFUND, kind=AttemptKind.REFUND)

        result = await validate_reversal(db, fake_adapter(), request(), Operation.REFUND)
        assert result.error.error_code == "already_refunded"
        assert "fully refunded" in result.error.message

    async def test_refund_after_void_rejected(self, db):
        make_attempt(db)
        make_attempt(db, amount="-100.00", status=PaymentStatus.VOID, kind=AttemptKind.VOID)

        result = await validate_reversal(db, fake_adapter(), request(), Operation.REFUND)
        assert result.error.message == (
            "Unable to process refund since the payment with transaction ID T1 has already been voided."
        )

    async def test_pending_void_blocks_refund(self, db):
        make_attempt(db)
        make_attempt(db, amount="-100.00", status=PaymentStatus.ATTEMPT, kind=AttemptKind.VOID)

        result = await validate_reversal(db, fake_adapter(), request(), Operation.REFUND)
        assert result.error.error_code == "void_in_progress"

    async def test_other_tenants_reversals_are_not_counted(self, db):
        make_attempt(db)
        make_attempt(db, amount="-100.00", status=PaymentStatus.REFUND, kind=AttemptKind.REFUND, user_id=2)
        make_attempt(db, amount="-100.00", status=PaymentStatus.ATTEMPT, kind=AttemptKind.VOID, user_id=2)

        result = await validate_reversal(db, fake_adapter(), request(), Operation.REFUND)
        assert result.ok
        assert result.amount == Decimal("100.00")


# ---------------------------------------------------------------------------
# Local voids
# ---------------------------------------------------------------------------
class TestLocalVoid:
    async def test_paid_transaction_is_voidable(self, db):
        make_attempt(db)
        result = await validate_reversal(db, fake_adapter(), request(), Operation.VOID)
        assert result.ok
        assert result.amount == Decimal("100.00")

    async def test_handled_transaction_is_not_voidable(self, db):
        make_attempt(db, status=PaymentStatus.HANDLED)
        result = await validate_reversal(db, fake_adapter(), request(), Operation.VOID)
        assert result.error.error_code == "not_voidable"
        assert result.error.message.endswith("Current status: Handled")

    async def test_void_after_refund_rejected(self, db):
        make_attempt(db)
        make_attempt(db, amount="-10.00", status=PaymentStatus.REFUND, kind=AttemptKind.REFUND)

        result = await validate_reversal(db, fake_adapter(), request(), Operation.VOID)
        assert result.error.error_code == "has_refunds"

    async def test_second_void_rejected(self, db):
        make_attempt(db)
        make_attempt(db, amount="-100.00", status=PaymentStatus.VOID, kind=AttemptKind.VOID)

        result = await validate_reversal(db, fake_adapter(), request(), Operation.VOID)
        assert result.error.message == "This transaction has already been voided."

    async def test_other_tenant_row_is_not_used(self, db):
        make_attempt(db, user_id=2)
        adapter = fake_adapter(error=GatewayBusinessError("No such charge", http_status=404))

        result = await validate_reversal(db, adapter, request(), Operation.VOID)
        assert result.error.status_code == 404
        adapter.fetch_remote_transaction.assert_awaited_once_with("T1")


# ---------------------------------------------------------------------------
# External transactions
# ---------------------------------------------------------------------------
class TestExternal:
    async def test_refund_uses_remote_amounts(self, db):
        remote = RemoteTransaction(transaction_id="pi_ext", status="partially_refunded",
                                   amount=Decimal("80.00"), charge_id="ch_ext",
                                   already_refunded=Decimal("30.00"), member_email="x@example.com")
        result = await validate_reversal(db, fake_adapter(remote), request("pi_ext"), Operation.REFUND)

        assert result.ok
        assert result.amount == Decimal("50.00")
        assert result.original.is_external is True
        assert result.original.charge_id == "ch_ext"
        assert result.original.member_email == "x@example.com"

    async def test_local_history_counts_for_external_refunds(self, db):
        make_attempt(db, transaction_id="pi_ext", amount="-50.00",
                     status=PaymentStatus.ATTEMPT, kind=AttemptKind.REFUND)
        remote = RemoteTransaction(transaction_id="pi_ext", status="captured", amount=Decimal("80.00"))

        result = await validate_reversal(db, fake_adapter(remote), request("pi_ext", "40.00"), Operation.REFUND)
        assert result.error.error_code == "refund_exceeds_remaining"

    async def test_status_outside_whitelist_rejected(self, db):
        remote = RemoteTransaction(transaction_id="pi_ext", status="captured", amount=Decimal("80.00"))
        result = await validate_reversal(db, fake_adapter(remote), request("pi_ext"), Operation.VOID)
        assert result.error.error_code == "external_status_not_eligible"
        assert result.error.status_code == 400

    async def test_unknown_external_transaction_is_404(self, db):
        adapter = fake_adapter(error=GatewayBusinessError("No such payment_intent", http_status=404))
        result = await validate_reversal(db, adapter, request("pi_missing"), Operation.REFUND)
        assert result.error.status_code == 404
        assert result.error.message.startswith("External transaction not found: pi_missing.")

    async def test_transport_error_is_surfaced(self, db):
        adapter = fake_adapter(error=GatewayTransportError("Failed to connect"))
        result = await validate_reversal(db, adapter, request("pi_ext"), Operation.REFUND)
        assert result.error.status_code == 500
        assert result.error.message == "Failed to connect"
