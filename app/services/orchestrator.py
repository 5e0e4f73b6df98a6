"""
Payment orchestration service.

Orchestrates, per HTTP-triggered operation:
1. Resolve the tenant's gateway config and credentials
2. Select the adapter from the registry (POS payments always go to Stripe)
3. Validate refund/void eligibility against the ledger or the remote gateway
4. Call the adapter and hand its AttemptResult back to the router
"""
import random
from types import MappingProxyType
from typing import Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.errors import GatewayError, PaymentError, not_found, validation_error
from app.gateways import registry
from app.gateways.base import AttemptResult, GatewayAdapter, GatewayName, PaymentContext, PaymentData
from app.gateways.stripe_adapter import POS_DESCRIPTOR, POS_GATEWAY_LABEL
from app.models import GatewayConfig
from app.schemas.requests import (
    ConnectionTokenRequest, PaymentRequest, RefundRequest, TerminalIntentRequest, VoidRequest,
)
from app.services import credentials
from app.services.validator import Operation, ReversalRequest, validate_reversal
from app.services.webhook_endpoints import WebhookEndpointManager
from app.utils.logging import mask_secret

logger = structlog.get_logger(__name__)


def generate_temp_order_number() -> str:
    return str(random.randint(100, 10000))


class PaymentOrchestrator:
    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def _resolve(
        self, user_id: int, force_gateway: Optional[GatewayName] = None
    ) -> Tuple[Optional[GatewayAdapter], Optional[GatewayConfig], Optional[PaymentError]]:
        if force_gateway is not None:
            config = credentials.find_config_for_gateway(self.db, user_id, force_gateway)
            if config is None:
                return None, None, validation_error(
                    "In-person terminal payments require Stripe credentials.", "terminal_requires_stripe"
                )
        else:
            config = credentials.get_active_config(self.db, user_id)
            if config is None:
                return None, None, not_found("No active payment gateway found for this user.",
                                             "gateway_not_configured")

        try:
            gateway = GatewayName.from_label(config.gateway_name)
        except ValueError as e:
            return None, None, validation_error(str(e), "unsupported_gateway")

        values = credentials.credentials_map(config)
        missing = registry.missing_credentials(gateway, values)
        if missing:
            return None, None, validation_error(
                f"Missing required credentials: {', '.join(missing)}", "missing_credentials"
            )

        context = PaymentContext(
            user_id=user_id,
            gateway=gateway,
            credentials=MappingProxyType(values),
            settings=self.settings,
            is_live=bool(config.is_live_mode),
        )
        logger.debug("gateway_resolved", tenant=user_id, gateway=gateway.value, live=context.is_live,
                     credential=mask_secret(values.get("secret_key") or values.get("login_id")))
        return registry.build_adapter(context, self.db), config, None

    async def process_payment(self, request: PaymentRequest) -> AttemptResult:
        is_pos = request.descriptor == POS_DESCRIPTOR
        adapter, _, error = self._resolve(request.user_id, GatewayName.STRIPE if is_pos else None)
        if error:
            return AttemptResult.failed(error)

        payment = PaymentData(
            user_id=request.user_id,
            amount=request.amount,
            payment_method_id=request.payment_method_id,
            member_email=request.member_email,
            member_name=request.member_name,
            store_id=request.store_id,
            descriptor=request.descriptor,
            temp_order_number=request.temp_order_number or generate_temp_order_number(),
            gateway_label=POS_GATEWAY_LABEL if is_pos else None,
        )
        logger.info("payment_requested", tenant=request.user_id, gateway=adapter.name.value,
                    amount=str(payment.amount), pos=is_pos)
        return await adapter.initiate(payment)

    async def create_terminal_intent(self, request: TerminalIntentRequest) -> AttemptResult:
        adapter, _, error = self._resolve(request.user_id, GatewayName.STRIPE)
        if error:
            return AttemptResult.failed(error)
        payment = PaymentData(
            user_id=request.user_id,
            amount=request.amount,
            payment_method_id="",
            member_email=request.member_email,
            member_name=request.member_name,
            store_id=request.store_id,
            descriptor=POS_DESCRIPTOR,
            temp_order_number=request.temp_order_number or generate_temp_order_number(),
            gateway_label=POS_GATEWAY_LABEL,
        )
        return await adapter.create_terminal_intent(payment)

    async def create_connection_token(self, request: ConnectionTokenRequest) -> AttemptResult:
        adapter, _, error = self._resolve(request.user_id, GatewayName.STRIPE)
        if error:
            return AttemptResult.failed(error)
        return await adapter.create_connection_token()

    async def _reverse(self, request: VoidRequest, operation: Operation) -> AttemptResult:
        adapter, _, error = self._resolve(request.user_id)
        if error:
            return AttemptResult.failed(error)

        reversal = ReversalRequest(
            transaction_id=request.transaction_id,
            user_id=request.user_id,
            amount=getattr(request, "amount", None),
            store_id=request.store_id,
            member_email=request.member_email,
            member_name=request.member_name,
        )
        eligibility = await validate_reversal(self.db, adapter, reversal, operation)
        if not eligibility.ok:
            # release the row lock taken during validation
            self.db.rollback()
            return AttemptResult.failed(eligibility.error)

        logger.info("reversal_requested", tenant=request.user_id, operation=operation.value,
                    transaction_id=request.transaction_id, amount=str(eligibility.amount),
                    external=eligibility.original.is_external)
        if operation == Operation.VOID:
            return await adapter.void(eligibility.original)
        return await adapter.refund(eligibility.original, eligibility.amount)

    async def process_refund(self, request: RefundRequest) -> AttemptResult:
        return await self._reverse(request, Operation.REFUND)

    async def process_void(self, request: VoidRequest) -> AttemptResult:
        return await self._reverse(request, Operation.VOID)

    async def transaction_details(self, user_id: int, transaction_id: str, live: bool = False) -> AttemptResult:
        adapter, _, error = self._resolve(user_id)
        if error:
            return AttemptResult.failed(error)
        try:
            snapshot = await adapter.query_details(transaction_id, live=live)
        except GatewayError as exc:
            return AttemptResult.failed(exc.to_error())
        if snapshot is None:
            return AttemptResult.failed(not_found(f"Transaction {transaction_id} not found.",
                                                  "transaction_not_found"))
        return AttemptResult.ok({"transaction": snapshot.to_dict()})

    async def ensure_webhook(self, user_id: int) -> AttemptResult:
        adapter, config, error = self._resolve(user_id)
        if error:
            return AttemptResult.failed(error)
        try:
            result = await WebhookEndpointManager(self.db, self.settings).ensure_webhook(config, adapter)
        except GatewayError as exc:
            return AttemptResult.failed(exc.to_error())
        return AttemptResult.ok({"action": result.action, "webhook_id": result.webhook_id, "url": result.url})
