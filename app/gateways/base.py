import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from app.config import Settings
from app.errors import GatewayError, PaymentError, validation_error
from app.models import AttemptKind, PaymentAttempt, PaymentStatus
from app.services import ledger

logger = structlog.get_logger(__name__)


class GatewayName(str, enum.Enum):
    STRIPE = "stripe"
    AUTHORIZE_NET = "authorize.net"

    @property
    def slug(self) -> str:
        """Path segment used in webhook callback URLs."""
        return _SLUGS[self]

    @classmethod
    def from_label(cls, label: str) -> "GatewayName":
        key = (label or "").strip().lower().replace(" ", "").replace("_", "")
        try:
            return _ALIASES[key]
        except KeyError:
            raise ValueError(f"Unknown payment gateway: {label}") from None


_SLUGS = {
    GatewayName.STRIPE: "stripe",
    GatewayName.AUTHORIZE_NET: "authorize",
}

_ALIASES = {
    "stripe": GatewayName.STRIPE,
    "authorize.net": GatewayName.AUTHORIZE_NET,
    "authorizenet": GatewayName.AUTHORIZE_NET,
    "authorize": GatewayName.AUTHORIZE_NET,
}


@dataclass(frozen=True)
class PaymentContext:
    """Everything an adapter needs about the tenant it is acting for."""

    user_id: int
    gateway: GatewayName
    credentials: Mapping[str, str]
    settings: Settings
    is_live: bool = False


@dataclass(frozen=True)
class PaymentData:
    user_id: int
    amount: Decimal
    payment_method_id: str
    member_email: Optional[str] = None
    member_name: Optional[str] = None
    store_id: Optional[str] = None
    descriptor: Optional[str] = None
    temp_order_number: Optional[str] = None
    gateway_label: Optional[str] = None


@dataclass(frozen=True)
class OriginalPayment:
    """The payment a refund/void reverses: a ledger row or a synthetic external snapshot."""

    user_id: int
    transaction_id: str
    amount: Decimal
    gateway: str
    charge_id: Optional[str] = None
    store_id: Optional[str] = None
    member_email: Optional[str] = None
    member_name: Optional[str] = None
    temp_order_number: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PAID
    attempt_id: Optional[int] = None
    already_refunded: Decimal = Decimal("0.00")
    is_external: bool = False

    @property
    def remaining_refundable(self) -> Decimal:
        return ledger.to_money(self.amount - self.already_refunded)

    @classmethod
    def from_attempt(cls, attempt: PaymentAttempt, already_refunded: Decimal) -> "OriginalPayment":
        return cls(
            user_id=attempt.user_id,
            transaction_id=attempt.transaction_id,
            amount=ledger.to_money(attempt.amount),
            gateway=attempt.gateway,
            charge_id=attempt.charge_id,
            store_id=attempt.store_id,
            member_email=attempt.member_email,
            member_name=attempt.member_name,
            temp_order_number=attempt.temp_order_number,
            status=PaymentStatus(attempt.status),
            attempt_id=attempt.id,
            already_refunded=ledger.to_money(already_refunded),
        )


@dataclass(frozen=True)
class RemoteTransaction:
    """A transaction as the remote gateway reports it, in display units."""

    transaction_id: str
    status: str
    amount: Decimal
    charge_id: Optional[str] = None
    already_refunded: Decimal = Decimal("0.00")
    member_email: Optional[str] = None
    member_name: Optional[str] = None


@dataclass(frozen=True)
class WebhookRegistration:
    webhook_id: str
    url: Optional[str]
    status: Optional[str]
    events: Tuple[str, ...] = ()
    secret: Optional[str] = None


@dataclass(frozen=True)
class TransactionSnapshot:
    local: Dict[str, Any]
    live_details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.local)
        if self.live_details is not None:
            data["live_details"] = self.live_details
        return data


@dataclass(frozen=True)
class AttemptResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[PaymentError] = None
    attempt_id: Optional[int] = None

    @classmethod
    def ok(cls, data: Dict[str, Any], attempt_id: Optional[int] = None) -> "AttemptResult":
        return cls(success=True, data=data, attempt_id=attempt_id)

    @classmethod
    def failed(cls, error: PaymentError, attempt_id: Optional[int] = None) -> "AttemptResult":
        return cls(success=False, error=error, attempt_id=attempt_id)

    @property
    def http_status(self) -> int:
        return 200 if self.success else self.error.status_code

    def to_response(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        return self.error.to_response()


class GatewayAdapter(ABC):
    """
    Uniform contract every payment backend implements.

    Money-moving methods create their ledger row before calling the remote API and
    convert any GatewayError into a terminal Error row plus a failed AttemptResult.
    """

    name: GatewayName
    display_name: str = ""
    WEBHOOK_EVENTS: Tuple[str, ...] = ()
    WEBHOOK_ACTIVE_STATUSES = frozenset({"active", "enabled"})
    EXTERNAL_VOIDABLE_STATUSES = frozenset()
    EXTERNAL_REFUNDABLE_STATUSES = frozenset()

    def __init__(self, context: PaymentContext, db: Session):
        self.context = context
        self.db = db

    @property
    def settings(self) -> Settings:
        return self.context.settings

    @property
    def credentials(self) -> Mapping[str, str]:
        return self.context.credentials

    # -- money movement ---------------------------------------------------

    @abstractmethod
    async def initiate(self, payment: PaymentData) -> AttemptResult:
        pass

    @abstractmethod
    async def refund(self, original: OriginalPayment, amount: Decimal) -> AttemptResult:
        pass

    @abstractmethod
    async def void(self, original: OriginalPayment) -> AttemptResult:
        pass

    async def create_terminal_intent(self, payment: PaymentData) -> AttemptResult:
        return AttemptResult.failed(
            validation_error(f"{self.display_name} does not support in-person terminal payments.",
                             "terminal_not_supported")
        )

    async def create_connection_token(self) -> AttemptResult:
        return AttemptResult.failed(
            validation_error(f"{self.display_name} does not support terminal readers.", "terminal_not_supported")
        )

    # -- lookups ----------------------------------------------------------

    @abstractmethod
    async def fetch_remote_transaction(self, transaction_id: str) -> RemoteTransaction:
        """Raises GatewayBusinessError when the gateway does not know the transaction."""

    @abstractmethod
    async def live_details(self, transaction_id: str) -> Dict[str, Any]:
        pass

    async def query_details(self, transaction_id: str, live: bool = False) -> Optional[TransactionSnapshot]:
        attempt = ledger.find_for_details(self.db, self.context.user_id, transaction_id)
        if attempt is None:
            return None
        local = ledger.attempt_to_dict(attempt)
        if not live:
            return TransactionSnapshot(local=local)
        remote = await self.live_details(attempt.transaction_id or transaction_id)
        return TransactionSnapshot(local=local, live_details=remote)

    # -- webhooks ---------------------------------------------------------

    @abstractmethod
    async def get_webhook(self, webhook_id: str) -> Optional[WebhookRegistration]:
        pass

    @abstractmethod
    async def create_webhook(self, url: str, events: Tuple[str, ...]) -> WebhookRegistration:
        pass

    @abstractmethod
    async def delete_webhook(self, webhook_id: str) -> None:
        pass

    @abstractmethod
    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """Raises SignatureVerificationError or WebhookConfigurationError."""

    # -- shared ledger plumbing -------------------------------------------

    def _create_reversal_attempt(self, original: OriginalPayment, amount: Decimal,
                                 kind: AttemptKind) -> PaymentAttempt:
        label = "Refund" if kind == AttemptKind.REFUND else "Void"
        prefix = "External " if original.is_external else ""
        return ledger.create_attempt(
            self.db,
            user_id=original.user_id,
            store_id=original.store_id,
            temp_order_number=original.temp_order_number,
            member_email=original.member_email,
            member_name=original.member_name,
            gateway=original.gateway or self.display_name,
            amount=amount,
            kind=kind,
            transaction_id=original.transaction_id,
            charge_id=original.charge_id,
            comment=f"{prefix}{label} initiated, awaiting webhook confirmation",
            payment_handle_comment=f"{label} attempt",
        )

    def _fail(self, attempt: PaymentAttempt, exc: GatewayError) -> AttemptResult:
        ledger.update_status(
            self.db,
            attempt.id,
            PaymentStatus.ERROR,
            allowed_from=(PaymentStatus.ATTEMPT, PaymentStatus.ERROR),
            comment=exc.message,
            payment_handle_comment="Payment processing failed",
        )
        logger.warning(
            "gateway_call_failed",
            gateway=self.name.value,
            attempt_id=attempt.id,
            error_kind=exc.kind.value,
            error_code=exc.code,
            error_message=exc.message,
        )
        return AttemptResult.failed(exc.to_error(), attempt.id)

    def _record_reversal(self, attempt: PaymentAttempt, status: PaymentStatus,
                         reversal_id: Optional[str]) -> bool:
        """
        Stores the gateway's reversal id. In sync-authoritative mode the row is also
        moved to its terminal status; otherwise the webhook does that.
        """
        if self.settings.sync_authoritative_reversals:
            return ledger.update_status(
                self.db,
                attempt.id,
                status,
                allowed_from=(PaymentStatus.ATTEMPT, status),
                refund_void_transaction_id=reversal_id,
                comment=f"{status.name.title()} confirmed by gateway response",
            )
        ledger.set_fields(self.db, attempt.id, refund_void_transaction_id=reversal_id)
        return False

    def _reversal_result(
        self,
        original: OriginalPayment,
        attempt: PaymentAttempt,
        amount: Decimal,
        status: PaymentStatus,
        reversal_id: Optional[str],
        gateway_status: Optional[str],
    ) -> AttemptResult:
        data = {
            "refund_id": reversal_id or str(attempt.id),
            "charge_id": original.charge_id,
            "transaction_id": original.transaction_id,
            "transaction_status": str(int(status)),
            "gateway": self.display_name,
            "status": gateway_status,
            "refunded_amount": ledger.to_money(amount),
            "attempt_id": attempt.id,
            "is_external": original.is_external,
        }
        if status == PaymentStatus.REFUND:
            data["remaining_refundable"] = ledger.to_money(original.remaining_refundable - amount)
        if not self.settings.sync_authoritative_reversals:
            data["note"] = "Awaiting webhook confirmation"
        return AttemptResult.ok(data, attempt.id)
