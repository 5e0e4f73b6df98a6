from fastapi import FastAPI
from contextlib import asynccontextmanager

from app.config import get_settings
from app.database import engine
from app import models
from app.utils.logging import configure_logging

settings = get_settings()
configure_logging(settings.log_level, settings.log_json)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables
    models.Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="Payment Attempt Reconciliation API",
    description="Charges, refunds and voids through interchangeable gateways, reconciled by webhook",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
def health_check():
    return {"status": "ok", "service": settings.app_name, "environment": settings.environment}


from app.routers import payments, webhooks  # noqa: E402
app.include_router(payments.router, prefix="/api/v1/payments", tags=["payments"])
app.include_router(webhooks.router, tags=["webhooks"])
