from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.database import get_db
from app.gateways.base import AttemptResult
from app.schemas.requests import (
    ConnectionTokenRequest, PaymentRequest, RefundRequest, TerminalIntentRequest, VoidRequest,
)
from app.schemas.responses import ERROR_RESPONSES, OperationResponse, RefundVoidResponse
from app.services.orchestrator import PaymentOrchestrator

router = APIRouter()


def render(result: AttemptResult) -> JSONResponse:
    return JSONResponse(status_code=result.http_status, content=jsonable_encoder(result.to_response()))


@router.post("/process", response_model=OperationResponse, responses=ERROR_RESPONSES)
async def process_payment(
    request: PaymentRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Charge a tokenized card through the tenant's active gateway.

    - Creates the ledger attempt before calling the gateway
    - descriptor=POS_PAY resumes a Stripe terminal payment regardless of the active gateway
    - Final status arrives by webhook
    """
    result = await PaymentOrchestrator(db, settings).process_payment(request)
    return render(result)


@router.post("/terminal-intent", response_model=OperationResponse, responses=ERROR_RESPONSES)
async def create_terminal_intent(
    request: TerminalIntentRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    result = await PaymentOrchestrator(db, settings).create_terminal_intent(request)
    return render(result)


@router.post("/terminal/connection-token", response_model=OperationResponse, responses=ERROR_RESPONSES)
async def create_connection_token(
    request: ConnectionTokenRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Connection token for a Stripe Terminal reader. Always uses the tenant's Stripe credentials."""
    result = await PaymentOrchestrator(db, settings).create_connection_token(request)
    return render(result)


@router.post("/refund", response_model=RefundVoidResponse, responses=ERROR_RESPONSES)
async def refund(
    request: RefundRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Refund all or part of a paid transaction.

    Rejected with 400 when the transaction was voided, is fully refunded, or the
    amount exceeds what remains refundable; 404 when neither the ledger nor the
    gateway knows the transaction.
    """
    result = await PaymentOrchestrator(db, settings).process_refund(request)
    return render(result)


@router.post("/void", response_model=RefundVoidResponse, responses=ERROR_RESPONSES)
async def void(
    request: VoidRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    result = await PaymentOrchestrator(db, settings).process_void(request)
    return render(result)


@router.get("/{transaction_id}", responses=ERROR_RESPONSES)
async def transaction_details(
    transaction_id: str,
    user_id: int,
    is_live: bool = False,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Local ledger snapshot, merged with the gateway's live view when is_live=true."""
    result = await PaymentOrchestrator(db, settings).transaction_details(user_id, transaction_id, live=is_live)
    return render(result)
