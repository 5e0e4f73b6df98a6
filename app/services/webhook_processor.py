"""
Webhook event processor.

Orchestrates, per inbound delivery:
1. Parse the JSON body
2. Resolve the tenant embedded in the event; foreign tenants are acknowledged untouched
3. Verify the signature with the tenant's gateway secret
4. Resolve the ledger attempt the event refers to
5. Apply the status transition (compare-and-set) and record the event id
6. Acknowledge

Reconciliation misses, duplicates and unrecognized events are acknowledged with 200
so the gateway does not retry something that cannot self-heal.
"""
import json
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.errors import InvalidWebhookPayload, WebhookConfigurationError
from app.gateways.base import GatewayName, PaymentContext
from app.gateways.registry import ADAPTER_REGISTRY
from app.models import AttemptKind, PaymentAttempt, PaymentStatus, ProcessedWebhookEvent
from app.services import credentials, ledger
from app.services.normalizer import EventKind, NormalizedEvent, normalize_event

logger = structlog.get_logger(__name__)


# kind -> (target status, statuses the row may currently hold, attempt kind)
TRANSITIONS: Dict[EventKind, Tuple[PaymentStatus, Tuple[PaymentStatus, ...], AttemptKind]] = {
    EventKind.CHARGE_CREATED: (PaymentStatus.ATTEMPT, (PaymentStatus.ATTEMPT,), AttemptKind.CHARGE),
    EventKind.CHARGE_SUCCEEDED: (PaymentStatus.PAID, (PaymentStatus.ATTEMPT, PaymentStatus.PAID), AttemptKind.CHARGE),
    EventKind.CHARGE_FAILED: (PaymentStatus.ERROR, (PaymentStatus.ATTEMPT, PaymentStatus.ERROR), AttemptKind.CHARGE),
    EventKind.REFUND_PENDING: (PaymentStatus.ATTEMPT, (PaymentStatus.ATTEMPT,), AttemptKind.REFUND),
    EventKind.REFUND_CONFIRMED: (PaymentStatus.REFUND, (PaymentStatus.ATTEMPT, PaymentStatus.REFUND), AttemptKind.REFUND),
    EventKind.REFUND_FAILED: (PaymentStatus.ERROR, (PaymentStatus.ATTEMPT, PaymentStatus.ERROR), AttemptKind.REFUND),
    EventKind.VOID_PENDING: (PaymentStatus.ATTEMPT, (PaymentStatus.ATTEMPT,), AttemptKind.VOID),
    EventKind.VOID_CONFIRMED: (PaymentStatus.VOID, (PaymentStatus.ATTEMPT, PaymentStatus.VOID), AttemptKind.VOID),
    EventKind.VOID_FAILED: (PaymentStatus.ERROR, (PaymentStatus.ATTEMPT, PaymentStatus.ERROR), AttemptKind.VOID),
}


@dataclass(frozen=True)
class WebhookOutcome:
    outcome: str
    event_type: str = ""
    attempt_id: Optional[int] = None


def _transition_fields(event: NormalizedEvent) -> Dict[str, Any]:
    kind = event.kind
    if kind == EventKind.CHARGE_CREATED:
        return {"transaction_id": event.transaction_id, "comment": "Payment intent created"}
    if kind == EventKind.CHARGE_SUCCEEDED:
        return {
            "transaction_id": event.transaction_id,
            "charge_id": event.charge_id,
            "card_last_4_digit": event.card_last_4_digit,
            "card_expire_date": event.card_expire_date,
            "gateway": event.gateway_label,
            "comment": "Payment confirmed by webhook",
            "payment_handle_comment": "Payment successful",
        }
    if kind == EventKind.REFUND_PENDING:
        return {"refund_void_transaction_id": event.reversal_id,
                "comment": "Refund created, awaiting confirmation"}
    if kind == EventKind.VOID_PENDING:
        return {"refund_void_transaction_id": event.reversal_id, "comment": "Void in progress"}
    if kind == EventKind.REFUND_CONFIRMED:
        return {
            "refund_void_transaction_id": event.reversal_id,
            "comment": "Refund confirmed by webhook",
            "payment_handle_comment": "Refund successful",
        }
    if kind == EventKind.VOID_CONFIRMED:
        return {
            "refund_void_transaction_id": event.reversal_id,
            "comment": "Void confirmed by webhook",
            "payment_handle_comment": "Void successful",
        }
    # failures
    return {
        "comment": event.message or f"{event.event_type} reported a failure",
        "payment_handle_comment": "Payment processing failed",
    }


class WebhookEventProcessor:
    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    # -- steps ------------------------------------------------------------

    @staticmethod
    def parse(raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidWebhookPayload("Malformed JSON payload") from exc
        if not isinstance(payload, dict):
            raise InvalidWebhookPayload("Webhook payload must be a JSON object")
        return payload

    def verify(self, gateway: GatewayName, user_id: int, raw_body: bytes, headers: Mapping[str, str]) -> None:
        config = credentials.find_config_for_gateway(self.db, user_id, gateway)
        if config is None:
            raise WebhookConfigurationError(f"No {gateway.value} configuration for user {user_id}")
        context = PaymentContext(
            user_id=user_id,
            gateway=gateway,
            credentials=MappingProxyType(credentials.credentials_map(config)),
            settings=self.settings,
            is_live=config.is_live_mode,
        )
        adapter = ADAPTER_REGISTRY[gateway](context, self.db)
        adapter.verify_webhook(raw_body, headers)

    def resolve_attempt(self, user_id: int, event: NormalizedEvent) -> Optional[PaymentAttempt]:
        _, _, attempt_kind = TRANSITIONS[event.kind]

        if attempt_kind == AttemptKind.VOID and event.attempt_id is None:
            if event.amount is None:
                return None
            return ledger.find_reversal(
                self.db, user_id, AttemptKind.VOID, event.amount,
                (event.transaction_id, event.charge_id),
            )

        attempt = None
        if event.attempt_id is not None:
            attempt = ledger.get_attempt(self.db, event.attempt_id, user_id=user_id)
        elif attempt_kind == AttemptKind.CHARGE and event.transaction_id:
            attempt = ledger.find_by_transaction_id(
                self.db, event.transaction_id, user_id=user_id, kind=AttemptKind.CHARGE
            )
        elif attempt_kind == AttemptKind.REFUND and event.reversal_id:
            attempt = ledger.find_by_reversal_id(self.db, user_id, event.reversal_id)

        if attempt is not None and attempt.kind != attempt_kind.value:
            return None
        return attempt

    def _already_processed(self, gateway: GatewayName, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        return self.db.query(ProcessedWebhookEvent.id).filter(
            ProcessedWebhookEvent.gateway_name == gateway.value,
            ProcessedWebhookEvent.event_id == event_id,
        ).first() is not None

    def apply(self, gateway: GatewayName, user_id: int, event: NormalizedEvent,
              attempt: PaymentAttempt) -> str:
        """Applies the transition and records the event id in one commit."""
        target, allowed_from, _ = TRANSITIONS[event.kind]
        previous = PaymentStatus(attempt.status)
        changed = ledger.update_status(
            self.db, attempt.id, target, allowed_from=allowed_from, commit=False,
            **_transition_fields(event),
        )
        outcome = "applied" if changed else "already_resolved"
        if event.event_id:
            self.db.add(ProcessedWebhookEvent(
                gateway_name=gateway.value,
                event_id=event.event_id,
                event_type=event.event_type,
                user_id=user_id,
                attempt_id=attempt.id,
                outcome=outcome,
            ))
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event committed first.
            self.db.rollback()
            return "duplicate"
        if not changed and event.kind == EventKind.CHARGE_SUCCEEDED and previous == PaymentStatus.ERROR:
            # Error is terminal; the captured funds need manual reconciliation.
            logger.warning("charge_succeeded_after_error", tenant=user_id, attempt_id=attempt.id,
                           transaction_id=event.transaction_id, charge_id=event.charge_id,
                           event_id=event.event_id)
        return outcome

    # -- pipeline ---------------------------------------------------------

    async def handle(self, gateway: GatewayName, user_id: int, raw_body: bytes,
                     headers: Mapping[str, str]) -> WebhookOutcome:
        payload = self.parse(raw_body)
        event = normalize_event(gateway, payload)
        log = logger.bind(tenant=user_id, gateway=gateway.value, event_type=event.event_type,
                          event_id=event.event_id)

        if event.tenant_id is not None and event.tenant_id != user_id:
            log.info("webhook_processed", attempt_id=None, outcome="tenant_mismatch",
                     event_tenant=event.tenant_id)
            return WebhookOutcome("tenant_mismatch", event.event_type)

        self.verify(gateway, user_id, raw_body, headers)

        if event.kind == EventKind.UNHANDLED:
            log.info("webhook_processed", attempt_id=None, outcome="ignored")
            return WebhookOutcome("ignored", event.event_type)

        if self._already_processed(gateway, event.event_id):
            log.info("webhook_processed", attempt_id=None, outcome="duplicate")
            return WebhookOutcome("duplicate", event.event_type)

        attempt = self.resolve_attempt(user_id, event)
        if attempt is None:
            log.warning("webhook_processed", attempt_id=event.attempt_id, outcome="reconciliation_miss",
                        transaction_id=event.transaction_id, amount=str(event.amount) if event.amount else None)
            return WebhookOutcome("reconciliation_miss", event.event_type)

        outcome = self.apply(gateway, user_id, event, attempt)
        log.info("webhook_processed", attempt_id=attempt.id, outcome=outcome, kind=event.kind.value)
        return WebhookOutcome(outcome, event.event_type, attempt.id)
