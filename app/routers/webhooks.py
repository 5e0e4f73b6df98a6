from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.database import get_db
from app.errors import InvalidWebhookPayload, SignatureVerificationError, WebhookConfigurationError
from app.gateways.base import GatewayName
from app.routers.payments import render
from app.schemas.responses import ERROR_RESPONSES, WebhookAck
from app.services.orchestrator import PaymentOrchestrator
from app.services.webhook_processor import WebhookEventProcessor

router = APIRouter()


@router.post("/webhook/{gateway}/user/{user_id}", response_model=WebhookAck)
async def receive_webhook(
    gateway: str,
    user_id: int,
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Gateway callback.

    Always 200 once the payload is parsed and trusted, including events for other
    tenants, duplicates and events with no matching attempt. 400 malformed JSON,
    400/401 bad signature, 500 when the tenant has no signing secret.
    """
    try:
        gateway_name = GatewayName.from_label(gateway)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    raw_body = await request.body()
    try:
        outcome = await WebhookEventProcessor(db, settings).handle(
            gateway_name, user_id, raw_body, request.headers
        )
    except InvalidWebhookPayload as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SignatureVerificationError as e:
        raise HTTPException(status_code=e.http_status, detail=e.message)
    except WebhookConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return WebhookAck(outcome=outcome.outcome, attempt_id=outcome.attempt_id)


@router.post("/api/v1/webhooks/{user_id}/ensure", responses=ERROR_RESPONSES)
async def ensure_webhook(
    user_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Create, validate or migrate the tenant's webhook registration on its active gateway."""
    result = await PaymentOrchestrator(db, settings).ensure_webhook(user_id)
    return render(result)
