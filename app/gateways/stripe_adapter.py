import asyncio
import base64
import binascii
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional, Tuple

import stripe
import structlog

from app.errors import GatewayBusinessError, GatewayError, GatewayTransportError, not_found, validation_error
from app.gateways.base import (
    AttemptResult, GatewayAdapter, GatewayName, OriginalPayment, PaymentData,
    RemoteTransaction, WebhookRegistration,
)
from app.models import AttemptKind, PaymentStatus
from app.services import ledger
from app.services.invoice import format_invoice_number
from app.services.signatures import STRIPE_SIGNATURE_HEADER, verify_stripe_signature

logger = structlog.get_logger(__name__)

WEBHOOK_EVENTS = (
    "payment_intent.created",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "charge.succeeded",
    "refund.created",
    "refund.failed",
    "refund.updated",
    "terminal.reader.action_succeeded",
)

POS_DESCRIPTOR = "POS_PAY"
POS_GATEWAY_LABEL = "Stripe POS Terminal"


def to_cents(amount) -> int:
    return int((ledger.to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents) -> Decimal:
    return ledger.to_money(Decimal(int(cents or 0)) / 100)


def charge_state(charge: Mapping[str, Any]) -> str:
    """Collapse a Stripe charge into the status vocabulary used for external reversals."""
    if not charge.get("paid"):
        return "unpaid"
    if not charge.get("captured"):
        return "uncaptured"
    amount = int(charge.get("amount") or 0)
    refunded = int(charge.get("amount_refunded") or 0)
    if charge.get("refunded") or (amount and refunded >= amount):
        return "refunded"
    if refunded:
        return "partially_refunded"
    return "captured"


class StripeAdapter(GatewayAdapter):
    """
    Stripe PaymentIntents.
    Money: integer cents on the wire, converted here only.
    Charges: create intent, then confirm. Refunds: Refund.create. Voids: cancel an
    uncaptured intent. Final status arrives by webhook.
    """

    name = GatewayName.STRIPE
    display_name = "Stripe"
    WEBHOOK_EVENTS = WEBHOOK_EVENTS
    EXTERNAL_VOIDABLE_STATUSES = frozenset({"uncaptured"})
    EXTERNAL_REFUNDABLE_STATUSES = frozenset({"captured", "partially_refunded"})

    async def _call(self, fn, *args, **params):
        params.setdefault("api_key", self.credentials.get("secret_key"))
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **params),
                timeout=self.settings.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise GatewayTransportError("Timed out waiting for Stripe.", code="timeout") from exc
        except stripe.CardError as exc:
            raise GatewayBusinessError(exc.user_message or str(exc), code=exc.code or "card_declined",
                                       http_status=402) from exc
        except stripe.InvalidRequestError as exc:
            status = 404 if exc.http_status == 404 else 400
            raise GatewayBusinessError(exc.user_message or str(exc), code=exc.code or "invalid_request",
                                       http_status=status) from exc
        except stripe.AuthenticationError as exc:
            raise GatewayBusinessError("Invalid Stripe credentials provided.", code="authentication_error",
                                       http_status=401) from exc
        except stripe.APIConnectionError as exc:
            raise GatewayTransportError("Failed to connect to Stripe. Please try again later.",
                                        code="api_connection_error") from exc
        except stripe.StripeError as exc:
            raise GatewayBusinessError(exc.user_message or str(exc), code=exc.code or "stripe_error",
                                       http_status=500) from exc

    def _metadata(self, attempt, payment: PaymentData, **extra) -> Dict[str, str]:
        metadata = {
            "payment_attempt_id": str(attempt.id),
            "user_id": str(payment.user_id),
            "store_id": str(payment.store_id or ""),
            "temp_order_number": str(payment.temp_order_number or ""),
            "invoice_number": format_invoice_number(
                payment.user_id, attempt.id, payment.temp_order_number, payment.store_id
            ),
        }
        metadata.update({k: str(v) for k, v in extra.items()})
        return metadata

    def _new_charge_attempt(self, payment: PaymentData, label: str, comment: str):
        return ledger.create_attempt(
            self.db,
            user_id=payment.user_id,
            store_id=payment.store_id,
            temp_order_number=payment.temp_order_number,
            member_email=payment.member_email,
            member_name=payment.member_name,
            gateway=label,
            amount=payment.amount,
            kind=AttemptKind.CHARGE,
            comment=comment,
            payment_handle_comment="Payment attempt",
        )

    async def initiate(self, payment: PaymentData) -> AttemptResult:
        if payment.descriptor == POS_DESCRIPTOR:
            return self._resume_terminal_payment(payment)

        attempt = self._new_charge_attempt(
            payment, payment.gateway_label or self.display_name, "Payment initiated"
        )
        try:
            intent = await self._call(
                stripe.PaymentIntent.create,
                amount=to_cents(payment.amount),
                currency=self.settings.currency,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata=self._metadata(attempt, payment),
                idempotency_key=f"payment-attempt-{attempt.id}",
            )
            ledger.set_fields(self.db, attempt.id, transaction_id=intent["id"])

            confirmed = await self._call(
                stripe.PaymentIntent.confirm,
                intent["id"],
                payment_method_data={"type": "card", "card": {"token": payment.payment_method_id}},
                error_on_requires_action=True,
            )
        except GatewayError as exc:
            return self._fail(attempt, exc)

        charge_id = confirmed.get("latest_charge")
        ledger.set_fields(self.db, attempt.id, transaction_id=confirmed["id"], charge_id=charge_id)
        logger.info(
            "stripe_payment_confirmed",
            attempt_id=attempt.id,
            transaction_id=confirmed["id"],
            status=confirmed.get("status"),
        )
        return AttemptResult.ok(
            {
                "transaction_id": confirmed["id"],
                "charge_id": charge_id,
                "status": confirmed.get("status"),
                "attempt_id": attempt.id,
            },
            attempt.id,
        )

    async def create_terminal_intent(self, payment: PaymentData) -> AttemptResult:
        attempt = self._new_charge_attempt(payment, POS_GATEWAY_LABEL, "Terminal payment initiated")
        try:
            intent = await self._call(
                stripe.PaymentIntent.create,
                amount=to_cents(payment.amount),
                currency=self.settings.currency,
                payment_method_types=["card_present"],
                capture_method="automatic",
                metadata=self._metadata(attempt, payment, payment_source=POS_GATEWAY_LABEL),
                idempotency_key=f"payment-attempt-{attempt.id}",
            )
        except GatewayError as exc:
            return self._fail(attempt, exc)

        ledger.set_fields(self.db, attempt.id, transaction_id=intent["id"])
        return AttemptResult.ok(
            {
                "transaction_id": intent["id"],
                "client_secret": intent.get("client_secret"),
                "pos_payment_method_id": base64.b64encode(intent["id"].encode()).decode(),
                "status": intent.get("status"),
                "attempt_id": attempt.id,
            },
            attempt.id,
        )

    async def create_connection_token(self) -> AttemptResult:
        """Short-lived secret a Stripe Terminal reader uses to connect to this account."""
        try:
            token = await self._call(stripe.terminal.ConnectionToken.create)
        except GatewayError as exc:
            logger.warning("stripe_connection_token_failed", tenant=self.context.user_id,
                           error_code=exc.code, error_message=exc.message)
            return AttemptResult.failed(exc.to_error())
        logger.info("stripe_connection_token_created", tenant=self.context.user_id)
        return AttemptResult.ok({"secret": token["secret"]})

    def _resume_terminal_payment(self, payment: PaymentData) -> AttemptResult:
        """POS payments were created by the terminal flow; return the existing attempt."""
        try:
            intent_id = base64.b64decode(payment.payment_method_id, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return AttemptResult.failed(validation_error("Invalid POS payment reference.", "invalid_pos_reference"))

        attempt = ledger.find_by_transaction_id(
            self.db, intent_id, user_id=payment.user_id, gateway=POS_GATEWAY_LABEL
        )
        if attempt is None:
            return AttemptResult.failed(not_found(f"No terminal payment found for {intent_id}.", "pos_not_found"))

        return AttemptResult.ok(
            {
                "transaction_id": attempt.transaction_id,
                "charge_id": attempt.charge_id,
                "status": PaymentStatus(attempt.status).name.lower(),
                "attempt_id": attempt.id,
            },
            attempt.id,
        )

    async def refund(self, original: OriginalPayment, amount: Decimal) -> AttemptResult:
        amount = ledger.to_money(amount)
        attempt = self._create_reversal_attempt(original, amount, AttemptKind.REFUND)
        target = {"charge": original.charge_id} if original.charge_id else {"payment_intent": original.transaction_id}
        try:
            refund = await self._call(
                stripe.Refund.create,
                amount=to_cents(amount),
                metadata={
                    "user_id": str(original.user_id),
                    "store_id": str(original.store_id or ""),
                    "original_transaction_id": original.transaction_id,
                    "refund_attempt_id": str(attempt.id),
                    "invoice_number": format_invoice_number(
                        original.user_id, attempt.id, original.temp_order_number
                    ),
                    "is_external": "1" if original.is_external else "0",
                },
                idempotency_key=f"refund-attempt-{attempt.id}",
                **target,
            )
        except GatewayError as exc:
            return self._fail(attempt, exc)

        self._record_reversal(attempt, PaymentStatus.REFUND, refund["id"])
        logger.info("stripe_refund_created", attempt_id=attempt.id, refund_id=refund["id"],
                    transaction_id=original.transaction_id, external=original.is_external)
        return self._reversal_result(original, attempt, amount, PaymentStatus.REFUND,
                                     refund["id"], refund.get("status"))

    async def void(self, original: OriginalPayment) -> AttemptResult:
        attempt = self._create_reversal_attempt(original, original.amount, AttemptKind.VOID)
        try:
            charge = await self._charge_for(original)
            if charge.get("captured"):
                raise GatewayBusinessError("Transaction is already captured, cannot void.",
                                           code="Void_failed", http_status=409)
            intent = await self._call(
                stripe.PaymentIntent.cancel,
                charge.get("payment_intent") or original.transaction_id,
            )
        except GatewayError as exc:
            return self._fail(attempt, exc)

        ledger.set_fields(self.db, attempt.id, charge_id=charge.get("id"))
        self._record_reversal(attempt, PaymentStatus.VOID, None)
        logger.info("stripe_void_requested", attempt_id=attempt.id, transaction_id=original.transaction_id)
        return self._reversal_result(original, attempt, original.amount, PaymentStatus.VOID,
                                     None, intent.get("status"))

    async def _charge_for(self, original: OriginalPayment) -> Mapping[str, Any]:
        if original.charge_id:
            return await self._call(stripe.Charge.retrieve, original.charge_id)
        return await self._charge_for_reference(original.transaction_id)

    async def _charge_for_reference(self, transaction_id: str) -> Mapping[str, Any]:
        if transaction_id.startswith("ch_"):
            return await self._call(stripe.Charge.retrieve, transaction_id)
        intent = await self._call(stripe.PaymentIntent.retrieve, transaction_id)
        if not intent.get("latest_charge"):
            raise GatewayBusinessError(
                f"No charge found for PaymentIntent: {transaction_id}, "
                "make sure transaction id belongs to this user",
                code="charge_missing",
                http_status=404,
            )
        return await self._call(stripe.Charge.retrieve, intent["latest_charge"])

    async def fetch_remote_transaction(self, transaction_id: str) -> RemoteTransaction:
        charge = await self._charge_for_reference(transaction_id)
        billing = charge.get("billing_details") or {}
        remote = RemoteTransaction(
            transaction_id=transaction_id,
            status=charge_state(charge),
            amount=from_cents(charge.get("amount")),
            charge_id=charge.get("id"),
            already_refunded=from_cents(charge.get("amount_refunded")),
            member_email=billing.get("email"),
            member_name=billing.get("name"),
        )
        logger.info("stripe_external_transaction_resolved", transaction_id=transaction_id,
                    charge_id=remote.charge_id, status=remote.status)
        return remote

    async def live_details(self, transaction_id: str) -> Dict[str, Any]:
        if transaction_id.startswith("ch_"):
            charge = await self._call(stripe.Charge.retrieve, transaction_id)
            return {
                "id": charge.get("id"),
                "status": charge.get("status"),
                "amount": from_cents(charge.get("amount")),
                "amount_refunded": from_cents(charge.get("amount_refunded")),
                "captured": charge.get("captured"),
                "currency": charge.get("currency"),
            }
        intent = await self._call(stripe.PaymentIntent.retrieve, transaction_id)
        return {
            "id": intent.get("id"),
            "status": intent.get("status"),
            "amount": from_cents(intent.get("amount")),
            "amount_received": from_cents(intent.get("amount_received")),
            "currency": intent.get("currency"),
            "latest_charge": intent.get("latest_charge"),
        }

    # -- webhooks ---------------------------------------------------------

    @staticmethod
    def _registration(endpoint: Mapping[str, Any]) -> WebhookRegistration:
        return WebhookRegistration(
            webhook_id=endpoint["id"],
            url=endpoint.get("url"),
            status=endpoint.get("status"),
            events=tuple(endpoint.get("enabled_events") or ()),
            secret=endpoint.get("secret"),
        )

    async def get_webhook(self, webhook_id: str) -> Optional[WebhookRegistration]:
        try:
            endpoint = await self._call(stripe.WebhookEndpoint.retrieve, webhook_id)
        except GatewayBusinessError as exc:
            logger.info("stripe_webhook_lookup_failed", webhook_id=webhook_id, error_message=exc.message)
            return None
        return self._registration(endpoint)

    async def create_webhook(self, url: str, events: Tuple[str, ...]) -> WebhookRegistration:
        endpoint = await self._call(
            stripe.WebhookEndpoint.create,
            url=url,
            enabled_events=list(events),
            description=f"Webhook for user {self.context.user_id}",
            metadata={"user_id": str(self.context.user_id)},
        )
        return self._registration(endpoint)

    async def delete_webhook(self, webhook_id: str) -> None:
        await self._call(stripe.WebhookEndpoint.delete, webhook_id)

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        verify_stripe_signature(
            raw_body, headers.get(STRIPE_SIGNATURE_HEADER), self.credentials.get("webhook_secret")
        )
