"""
Normalizes heterogeneous gateway webhook payloads to a canonical event.

Stripe and Authorize.net name their events differently, carry the tenant in
different places (structured metadata vs. the invoice-number envelope) and express
money differently (cents vs. decimal). This module maps all of them to a
NormalizedEvent the webhook processor can apply to the ledger.
"""
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

from app.errors import InvalidWebhookPayload
from app.gateways.base import GatewayName
from app.services.invoice import parse_invoice_number
from app.services.ledger import to_money


class EventKind(str, enum.Enum):
    CHARGE_CREATED = "charge_created"
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    REFUND_PENDING = "refund_pending"
    REFUND_CONFIRMED = "refund_confirmed"
    REFUND_FAILED = "refund_failed"
    VOID_PENDING = "void_pending"
    VOID_CONFIRMED = "void_confirmed"
    VOID_FAILED = "void_failed"
    UNHANDLED = "unhandled"


@dataclass(frozen=True)
class NormalizedEvent:
    kind: EventKind
    event_type: str
    event_id: Optional[str] = None
    tenant_id: Optional[int] = None
    attempt_id: Optional[int] = None
    transaction_id: Optional[str] = None
    charge_id: Optional[str] = None
    reversal_id: Optional[str] = None
    amount: Optional[Decimal] = None
    card_last_4_digit: Optional[str] = None
    card_expire_date: Optional[str] = None
    gateway_label: Optional[str] = None
    message: Optional[str] = None


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _cents(value) -> Optional[Decimal]:
    if value is None:
        return None
    return to_money(Decimal(int(value)) / 100)


def _object(value, field: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise InvalidWebhookPayload(f"Webhook field '{field}' must be an object")
    return value


def _text(value, field: str) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise InvalidWebhookPayload(f"Webhook field '{field}' must be a string")


def _event_type(payload: Mapping[str, Any], field: str) -> str:
    value = payload.get(field) or ""
    if not isinstance(value, str):
        raise InvalidWebhookPayload(f"Webhook field '{field}' must be a string")
    return value


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------
# destination_details.card.type values that mean the charge was reversed (voided)
# rather than refunded to the card.
STRIPE_REVERSAL_TYPES = {"reversal", "pending"}

STRIPE_REFUND_STATUS_SUFFIX = {
    "succeeded": "CONFIRMED",
    "failed": "FAILED",
    "canceled": "FAILED",
}


def _stripe_refund_kind(event_type: str, refund: Mapping[str, Any]) -> EventKind:
    card = _object(_object(refund.get("destination_details"), "destination_details").get("card"), "card")
    metadata = _object(refund.get("metadata"), "metadata")
    is_void = card.get("type") in STRIPE_REVERSAL_TYPES and not metadata.get("refund_attempt_id")
    prefix = "VOID" if is_void else "REFUND"

    if event_type == "refund.failed":
        suffix = "FAILED"
    elif event_type == "refund.created":
        suffix = "PENDING"
    else:
        suffix = STRIPE_REFUND_STATUS_SUFFIX.get(refund.get("status"), "PENDING")
    return EventKind[f"{prefix}_{suffix}"]


def _stripe_card(charge: Mapping[str, Any]) -> Dict[str, Optional[str]]:
    card = _object(_object(charge.get("payment_method_details"), "payment_method_details").get("card"), "card")
    expiry = None
    if card.get("exp_month") and card.get("exp_year"):
        expiry = f"{card['exp_month']}/{card['exp_year']}"
    wallet = _text(_object(card.get("wallet"), "wallet").get("type"), "wallet.type")
    label = _text(_object(charge.get("metadata"), "metadata").get("payment_source"), "payment_source")
    if not label and wallet:
        label = "Stripe " + wallet.replace("_", " ").title()
    return {
        "card_last_4_digit": _text(card.get("last4"), "last4"),
        "card_expire_date": expiry,
        "gateway_label": label,
    }


def normalize_stripe(payload: Mapping[str, Any]) -> NormalizedEvent:
    event_type = _event_type(payload, "type")
    obj = _object(_object(payload.get("data"), "data").get("object"), "data.object")
    metadata = _object(obj.get("metadata"), "metadata")
    base = {
        "event_type": event_type,
        "event_id": _text(payload.get("id"), "id"),
        "tenant_id": _int_or_none(metadata.get("user_id")),
    }

    if event_type.startswith("payment_intent."):
        kind = {
            "payment_intent.created": EventKind.CHARGE_CREATED,
            "payment_intent.succeeded": EventKind.CHARGE_SUCCEEDED,
            "payment_intent.payment_failed": EventKind.CHARGE_FAILED,
        }.get(event_type, EventKind.UNHANDLED)
        error = _object(obj.get("last_payment_error"), "last_payment_error")
        return NormalizedEvent(
            kind=kind,
            attempt_id=_int_or_none(metadata.get("payment_attempt_id")),
            transaction_id=_text(obj.get("id"), "id"),
            charge_id=_text(obj.get("latest_charge"), "latest_charge"),
            amount=_cents(obj.get("amount")),
            message=_text(error.get("message"), "last_payment_error.message"),
            **base,
        )

    if event_type == "charge.succeeded":
        return NormalizedEvent(
            kind=EventKind.CHARGE_SUCCEEDED,
            attempt_id=_int_or_none(metadata.get("payment_attempt_id")),
            transaction_id=_text(obj.get("payment_intent"), "payment_intent"),
            charge_id=_text(obj.get("id"), "id"),
            amount=_cents(obj.get("amount")),
            **_stripe_card(obj),
            **base,
        )

    if event_type in ("refund.created", "refund.updated", "refund.failed"):
        return NormalizedEvent(
            kind=_stripe_refund_kind(event_type, obj),
            attempt_id=_int_or_none(metadata.get("refund_attempt_id")),
            transaction_id=_text(obj.get("payment_intent"), "payment_intent"),
            charge_id=_text(obj.get("charge"), "charge"),
            reversal_id=_text(obj.get("id"), "id"),
            amount=_cents(obj.get("amount")),
            message=_text(obj.get("failure_reason"), "failure_reason"),
            **base,
        )

    if event_type == "terminal.reader.action_succeeded":
        action = _object(obj.get("action"), "action")
        process = _object(action.get("process_payment_intent"), "process_payment_intent")
        intent = _text(process.get("payment_intent") or action.get("payment_intent"), "payment_intent")
        kind = EventKind.CHARGE_SUCCEEDED if action.get("type") == "process_payment_intent" else EventKind.UNHANDLED
        return NormalizedEvent(
            kind=kind,
            transaction_id=intent,
            gateway_label="Stripe POS Terminal",
            **base,
        )

    return NormalizedEvent(kind=EventKind.UNHANDLED, **base)


# ---------------------------------------------------------------------------
# Authorize.net
# ---------------------------------------------------------------------------
ANET_EVENT_KINDS = {
    "net.authorize.payment.authcapture.created": EventKind.CHARGE_SUCCEEDED,
    "net.authorize.payment.void.created": EventKind.VOID_CONFIRMED,
    "net.authorize.payment.refund.created": EventKind.REFUND_CONFIRMED,
}


def normalize_authorizenet(payload: Mapping[str, Any]) -> NormalizedEvent:
    event_type = _event_type(payload, "eventType")
    body = _object(payload.get("payload"), "payload")
    envelope = parse_invoice_number(body.get("invoiceNumber"))
    kind = ANET_EVENT_KINDS.get(event_type, EventKind.UNHANDLED)

    if kind == EventKind.CHARGE_SUCCEEDED and str(body.get("responseCode")) != "1":
        kind = EventKind.CHARGE_FAILED

    amount = body.get("authAmount")
    is_charge = kind in (EventKind.CHARGE_SUCCEEDED, EventKind.CHARGE_FAILED)
    transaction_id = _text(body.get("id"), "id")
    reversal_id = None
    if kind == EventKind.REFUND_CONFIRMED:
        # refund.created carries the refund's own transId; the original is only
        # reachable through the invoice envelope.
        reversal_id, transaction_id = transaction_id, None
    elif kind == EventKind.VOID_CONFIRMED:
        reversal_id = transaction_id

    return NormalizedEvent(
        kind=kind,
        event_type=event_type,
        event_id=_text(payload.get("notificationId"), "notificationId"),
        tenant_id=envelope.user_id if envelope else None,
        attempt_id=envelope.attempt_id if envelope and kind != EventKind.VOID_CONFIRMED else None,
        transaction_id=transaction_id,
        charge_id=_text(body.get("authCode"), "authCode") if is_charge else None,
        reversal_id=reversal_id,
        amount=to_money(amount) if amount is not None else None,
        message=None if kind != EventKind.CHARGE_FAILED else f"Authorize.net response code {body.get('responseCode')}",
    )


NORMALIZERS: Dict[GatewayName, Callable[[Mapping[str, Any]], NormalizedEvent]] = {
    GatewayName.STRIPE: normalize_stripe,
    GatewayName.AUTHORIZE_NET: normalize_authorizenet,
}


def normalize_event(gateway: GatewayName, payload: Mapping[str, Any]) -> NormalizedEvent:
    """
    Maps a gateway's raw webhook payload to a NormalizedEvent.

    Raises:
        ValueError: for a gateway without a normalizer
        InvalidWebhookPayload: when the payload is not shaped like the gateway's events
    """
    normalizer = NORMALIZERS.get(gateway)
    if normalizer is None:
        raise ValueError(f"Unknown gateway: {gateway}")
    try:
        return normalizer(payload)
    except InvalidWebhookPayload:
        raise
    except (TypeError, ValueError, ArithmeticError) as exc:
        raise InvalidWebhookPayload(f"Unreadable {gateway.value} event: {exc}") from exc
