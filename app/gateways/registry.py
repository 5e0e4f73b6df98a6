from typing import Dict, List, Mapping, Type

from sqlalchemy.orm import Session

from app.gateways.authorizenet_adapter import AuthorizeNetAdapter
from app.gateways.base import GatewayAdapter, GatewayName, PaymentContext
from app.gateways.stripe_adapter import StripeAdapter


ADAPTER_REGISTRY: Dict[GatewayName, Type[GatewayAdapter]] = {
    GatewayName.STRIPE: StripeAdapter,
    GatewayName.AUTHORIZE_NET: AuthorizeNetAdapter,
}

REQUIRED_CREDENTIALS = {
    GatewayName.STRIPE: ("publishable_key", "secret_key"),
    GatewayName.AUTHORIZE_NET: ("login_id", "transaction_key", "client_key"),
}


def missing_credentials(gateway: GatewayName, credentials: Mapping[str, str]) -> List[str]:
    return [key for key in REQUIRED_CREDENTIALS.get(gateway, ()) if not credentials.get(key)]


def build_adapter(context: PaymentContext, db: Session) -> GatewayAdapter:
    adapter_class = ADAPTER_REGISTRY.get(context.gateway)
    if adapter_class is None:
        raise ValueError(f"No adapter registered for gateway: {context.gateway.value}")
    return adapter_class(context, db)
