import base64
import binascii
import json
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
import structlog

from app.errors import (
    GatewayBusinessError, GatewayError, GatewayTransportError, validation_error,
)
from app.gateways.base import (
    AttemptResult, GatewayAdapter, GatewayName, OriginalPayment, PaymentContext,
    PaymentData, RemoteTransaction, WebhookRegistration,
)
from app.models import AttemptKind, PaymentStatus
from app.services import ledger
from app.services.invoice import format_invoice_number
from app.services.signatures import ANET_SIGNATURE_HEADER, verify_anet_signature

logger = structlog.get_logger(__name__)

WEBHOOK_EVENTS = (
    "net.authorize.payment.authcapture.created",
    "net.authorize.payment.refund.created",
    "net.authorize.payment.void.created",
)

SETTLED_STATUSES = frozenset({"settledSuccessfully", "refundSettledSuccessfully"})

CONNECTION_ERROR = "Failed to connect to Authorize.net. Please try again later."

# Transaction error codes that get a hint appended to the gateway's text.
ERROR_HINTS = {
    "54": " Transaction may not be settled yet. Consider voiding instead.",
    "16": " Unable to void. Transaction has already been settled.",
}


def decode_nonce(value: str) -> str:
    return base64.b64decode(value, validate=True).decode("utf-8")


class AuthorizeNetAdapter(GatewayAdapter):
    """
    Authorize.net JSON API (transactions) and REST API (webhooks).
    Transaction responses are synchronous but provisional: the charge, refund and
    void are confirmed by net.authorize.payment.* webhooks.
    Transaction statuses: authorizedPendingCapture / capturedPendingSettlement /
    settledSuccessfully / refundSettledSuccessfully / voided / declined
    """

    name = GatewayName.AUTHORIZE_NET
    display_name = "Authorize.net"
    WEBHOOK_EVENTS = WEBHOOK_EVENTS
    EXTERNAL_VOIDABLE_STATUSES = frozenset({"authorizedPendingCapture", "capturedPendingSettlement"})
    EXTERNAL_REFUNDABLE_STATUSES = frozenset({"settledSuccessfully", "capturedPendingSettlement"})

    def __init__(self, context: PaymentContext, db, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(context, db)
        self._http_client = http_client

    @property
    def api_url(self) -> str:
        if self.context.is_live:
            return self.settings.authorizenet_api_url_live
        return self.settings.authorizenet_api_url_sandbox

    @property
    def webhook_url(self) -> str:
        if self.context.is_live:
            return self.settings.authorizenet_webhook_url_live
        return self.settings.authorizenet_webhook_url_sandbox

    @property
    def merchant_authentication(self) -> Dict[str, str]:
        return {
            "name": self.credentials.get("login_id"),
            "transactionKey": self.credentials.get("transaction_key"),
        }

    @asynccontextmanager
    async def _client(self):
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self.settings.gateway_timeout_seconds) as client:
                yield client

    # -- transport --------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(
                    method, url, timeout=self.settings.gateway_timeout_seconds, **kwargs
                )
        except httpx.TimeoutException as exc:
            raise GatewayTransportError("Timed out waiting for Authorize.net.", code="E00001") from exc
        except httpx.HTTPError as exc:
            raise GatewayTransportError(CONNECTION_ERROR, code="E00001") from exc

    async def _api(self, request_name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        payload = {request_name: {"merchantAuthentication": self.merchant_authentication, **body}}
        response = await self._send("POST", self.api_url, json=payload)
        if response.status_code >= 500:
            raise GatewayTransportError(CONNECTION_ERROR, code="E00001")
        try:
            # The API prefixes its JSON with a UTF-8 BOM.
            data = json.loads(response.content.decode("utf-8-sig"))
        except ValueError as exc:
            raise GatewayTransportError(CONNECTION_ERROR, code="E00001") from exc

        if (data.get("messages") or {}).get("resultCode") != "Ok":
            raise self._api_error(data)
        return data

    async def _transaction(self, transaction_request: Dict[str, Any], ref_id: Optional[int] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if ref_id is not None:
            body["refId"] = str(ref_id)
        body["transactionRequest"] = transaction_request
        data = await self._api("createTransactionRequest", body)
        result = data.get("transactionResponse") or {}
        if str(result.get("responseCode")) != "1":
            raise self._api_error(data)
        return result

    @staticmethod
    def _api_error(data: Mapping[str, Any]) -> GatewayError:
        result = data.get("transactionResponse") or {}
        errors = result.get("errors") or []
        if errors:
            code = str(errors[0].get("errorCode"))
            text = (errors[0].get("errorText") or "Transaction failed.") + ERROR_HINTS.get(code, "")
            # responseCode 2 is a decline
            status = 402 if str(result.get("responseCode")) == "2" else 400
            return GatewayBusinessError(text, code=code, http_status=status)

        messages = (data.get("messages") or {}).get("message") or [{}]
        code = messages[0].get("code")
        text = messages[0].get("text") or "Authorize.net rejected the request."
        if code == "E00007":
            return GatewayBusinessError("Invalid Authorize.net credentials provided.", code=code, http_status=401)
        return GatewayBusinessError(text, code=code, http_status=400)

    async def _transaction_details(self, transaction_id: str) -> Dict[str, Any]:
        data = await self._api("getTransactionDetailsRequest", {"transId": transaction_id})
        return data.get("transaction") or {}

    # -- money movement ---------------------------------------------------

    async def initiate(self, payment: PaymentData) -> AttemptResult:
        try:
            nonce = decode_nonce(payment.payment_method_id)
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return AttemptResult.failed(validation_error("payment_method_id is not a valid payment nonce.",
                                                         "invalid_payment_method"))

        attempt = ledger.create_attempt(
            self.db,
            user_id=payment.user_id,
            store_id=payment.store_id,
            temp_order_number=payment.temp_order_number,
            member_email=payment.member_email,
            member_name=payment.member_name,
            gateway=payment.gateway_label or self.display_name,
            amount=payment.amount,
            kind=AttemptKind.CHARGE,
            comment="Payment initiated",
            payment_handle_comment="Payment attempt",
        )
        request = {
            "transactionType": "authCaptureTransaction",
            "amount": str(ledger.to_money(payment.amount)),
            "payment": {"opaqueData": {"dataDescriptor": payment.descriptor, "dataValue": nonce}},
            "order": {
                "invoiceNumber": format_invoice_number(
                    payment.user_id, attempt.id, payment.temp_order_number, payment.store_id
                ),
                "description": f"Payment attempt {attempt.id}",
            },
        }
        if payment.member_email:
            request["customer"] = {"email": payment.member_email}

        try:
            result = await self._transaction(request, ref_id=attempt.id)
        except GatewayError as exc:
            return self._fail(attempt, exc)

        last4 = (result.get("accountNumber") or "")[-4:] or None
        ledger.set_fields(
            self.db,
            attempt.id,
            transaction_id=result.get("transId"),
            charge_id=result.get("authCode"),
            card_last_4_digit=last4,
        )
        logger.info("authorizenet_payment_submitted", attempt_id=attempt.id, transaction_id=result.get("transId"))
        return AttemptResult.ok(
            {
                "transaction_id": result.get("transId"),
                "charge_id": result.get("authCode"),
                "status": int(PaymentStatus.ATTEMPT),
                "message": "Payment initiated, awaiting webhook confirmation",
                "card_last_4_digit": last4,
                "attempt_id": attempt.id,
            },
            attempt.id,
        )

    @staticmethod
    def _reversal_payment(details: Mapping[str, Any]) -> Dict[str, Any]:
        payment = details.get("payment") or {}
        card = payment.get("creditCard")
        if card:
            return {
                "creditCard": {
                    "cardNumber": (card.get("cardNumber") or "")[-4:],
                    "expirationDate": card.get("expirationDate") or "XXXX",
                }
            }
        if payment.get("opaqueData"):
            return {"opaqueData": payment["opaqueData"]}
        raise GatewayBusinessError("Unable to determine the original payment method for this refund.",
                                   code="payment_method_missing")

    async def refund(self, original: OriginalPayment, amount: Decimal) -> AttemptResult:
        amount = ledger.to_money(amount)
        attempt = self._create_reversal_attempt(original, amount, AttemptKind.REFUND)
        try:
            details = await self._transaction_details(original.transaction_id)
            result = await self._transaction(
                {
                    "transactionType": "refundTransaction",
                    "amount": str(amount),
                    "payment": self._reversal_payment(details),
                    "refTransId": original.transaction_id,
                    "order": {
                        "invoiceNumber": format_invoice_number(
                            original.user_id, attempt.id, original.temp_order_number
                        ),
                    },
                },
                ref_id=attempt.id,
            )
        except GatewayError as exc:
            return self._fail(attempt, exc)

        refund_id = result.get("transId")
        self._record_reversal(attempt, PaymentStatus.REFUND, refund_id)
        logger.info("authorizenet_refund_submitted", attempt_id=attempt.id, refund_id=refund_id,
                    transaction_id=original.transaction_id, external=original.is_external)
        return self._reversal_result(original, attempt, amount, PaymentStatus.REFUND, refund_id, "succeeded")

    async def void(self, original: OriginalPayment) -> AttemptResult:
        attempt = self._create_reversal_attempt(original, original.amount, AttemptKind.VOID)
        try:
            details = await self._transaction_details(original.transaction_id)
            if details.get("transactionStatus") in SETTLED_STATUSES:
                raise GatewayBusinessError(
                    "Transaction is already settled. Cannot void, try refund instead.",
                    code="E00027",
                )
            result = await self._transaction(
                {
                    "transactionType": "voidTransaction",
                    "refTransId": original.transaction_id,
                    "order": {
                        "invoiceNumber": format_invoice_number(
                            original.user_id, attempt.id, original.temp_order_number
                        ),
                    },
                },
                ref_id=attempt.id,
            )
        except GatewayError as exc:
            return self._fail(attempt, exc)

        void_id = result.get("transId")
        self._record_reversal(attempt, PaymentStatus.VOID, void_id)
        logger.info("authorizenet_void_submitted", attempt_id=attempt.id, transaction_id=original.transaction_id)
        return self._reversal_result(original, attempt, original.amount, PaymentStatus.VOID, void_id, "succeeded")

    # -- lookups ----------------------------------------------------------

    async def fetch_remote_transaction(self, transaction_id: str) -> RemoteTransaction:
        details = await self._transaction_details(transaction_id)
        bill_to = details.get("billTo") or {}
        name = " ".join(p for p in (bill_to.get("firstName"), bill_to.get("lastName")) if p) or None
        amount = details.get("settleAmount")
        if amount is None:
            amount = details.get("authAmount") or 0
        return RemoteTransaction(
            transaction_id=transaction_id,
            status=details.get("transactionStatus") or "unknown",
            amount=ledger.to_money(amount),
            charge_id=details.get("authCode"),
            member_email=(details.get("customer") or {}).get("email"),
            member_name=name,
        )

    async def live_details(self, transaction_id: str) -> Dict[str, Any]:
        details = await self._transaction_details(transaction_id)
        return {
            "id": details.get("transId"),
            "status": details.get("transactionStatus"),
            "response_code": details.get("responseCode"),
            "auth_amount": details.get("authAmount"),
            "settle_amount": details.get("settleAmount"),
            "submitted_at": details.get("submitTimeUTC"),
            "invoice_number": (details.get("order") or {}).get("invoiceNumber"),
        }

    # -- webhooks ---------------------------------------------------------

    async def _rest(self, method: str, path: str = "", **kwargs) -> httpx.Response:
        auth = httpx.BasicAuth(self.credentials.get("login_id") or "",
                               self.credentials.get("transaction_key") or "")
        response = await self._send(method, f"{self.webhook_url}{path}", auth=auth, **kwargs)
        if response.status_code >= 500:
            raise GatewayTransportError(CONNECTION_ERROR, code="E00001")
        return response

    @staticmethod
    def _registration(body: Mapping[str, Any]) -> WebhookRegistration:
        return WebhookRegistration(
            webhook_id=body.get("webhookId"),
            url=body.get("url"),
            status=body.get("status"),
            events=tuple(body.get("eventTypes") or ()),
        )

    async def get_webhook(self, webhook_id: str) -> Optional[WebhookRegistration]:
        response = await self._rest("GET", f"/{webhook_id}")
        if response.status_code != 200:
            logger.info("authorizenet_webhook_lookup_failed", webhook_id=webhook_id,
                        status_code=response.status_code)
            return None
        return self._registration(response.json())

    async def create_webhook(self, url: str, events: Tuple[str, ...]) -> WebhookRegistration:
        response = await self._rest(
            "POST",
            json={
                "name": f"Webhook for user {self.context.user_id}",
                "url": url,
                "eventTypes": list(events),
                "status": "active",
            },
        )
        if response.status_code not in (200, 201):
            raise GatewayBusinessError(
                f"Failed to create Authorize.net webhook: {response.text}",
                code="webhook_create_failed",
                http_status=response.status_code,
            )
        return self._registration(response.json())

    async def delete_webhook(self, webhook_id: str) -> None:
        response = await self._rest("DELETE", f"/{webhook_id}")
        if response.status_code not in (200, 204, 404):
            raise GatewayBusinessError(
                f"Failed to delete Authorize.net webhook {webhook_id}",
                code="webhook_delete_failed",
                http_status=response.status_code,
            )

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        verify_anet_signature(raw_body, headers.get(ANET_SIGNATURE_HEADER), self.credentials.get("signing_key"))
