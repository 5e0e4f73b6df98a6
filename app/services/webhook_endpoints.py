"""
Keeps exactly one valid remote webhook registration per tenant per gateway.

ensure_webhook():
1. Validate the registration recorded on the active config (URL, status, event set).
2. Otherwise reuse a still-valid registration from a previous config of the same gateway.
3. Otherwise delete stale registrations and create a new one.

Remote deletions are claimed through the webhook_deletions table first, so an id is
deleted at most once no matter how many requests or processes run the migration.
"""
from dataclasses import dataclass
from typing import Iterable, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.errors import GatewayBusinessError, GatewayTransportError
from app.gateways.base import GatewayAdapter, WebhookRegistration
from app.models import GatewayConfig, WebhookDeletion
from app.services import credentials

logger = structlog.get_logger(__name__)

WEBHOOK_KEYS = ("webhook_id", "webhook_secret")


@dataclass(frozen=True)
class EnsureResult:
    action: str  # "unchanged" | "reused" | "created"
    webhook_id: str
    url: str


def is_valid_registration(
    registration: Optional[WebhookRegistration],
    expected_url: str,
    desired_events: Iterable[str],
    active_statuses: Iterable[str],
) -> bool:
    if registration is None:
        return False
    if registration.url != expected_url:
        return False
    if (registration.status or "").lower() not in active_statuses:
        return False
    return sorted(registration.events) == sorted(desired_events)


def claim_deletion(db: Session, gateway_name: str, webhook_id: str, user_id: Optional[int] = None) -> bool:
    """Atomically records that `webhook_id` is being deleted. False if already claimed."""
    db.add(WebhookDeletion(gateway_name=gateway_name, webhook_id=webhook_id, user_id=user_id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def release_deletion(db: Session, gateway_name: str, webhook_id: str) -> None:
    db.query(WebhookDeletion).filter(
        WebhookDeletion.gateway_name == gateway_name,
        WebhookDeletion.webhook_id == webhook_id,
    ).delete(synchronize_session=False)
    db.commit()


class WebhookEndpointManager:
    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def _valid(self, adapter: GatewayAdapter, registration, expected_url: str) -> bool:
        return is_valid_registration(
            registration, expected_url, adapter.WEBHOOK_EVENTS, adapter.WEBHOOK_ACTIVE_STATUSES
        )

    async def delete_remote(self, adapter: GatewayAdapter, webhook_id: str) -> bool:
        gateway = adapter.name.value
        if not claim_deletion(self.db, gateway, webhook_id, adapter.context.user_id):
            logger.info("webhook_delete_skipped", gateway=gateway, webhook_id=webhook_id)
            return False
        try:
            await adapter.delete_webhook(webhook_id)
        except GatewayTransportError:
            # Let a later pass retry the deletion.
            release_deletion(self.db, gateway, webhook_id)
            raise
        except GatewayBusinessError as exc:
            logger.warning("webhook_delete_failed", gateway=gateway, webhook_id=webhook_id,
                           error_message=exc.message)
            return False
        logger.info("webhook_deleted", gateway=gateway, webhook_id=webhook_id)
        return True

    async def ensure_webhook(self, config: GatewayConfig, adapter: GatewayAdapter) -> EnsureResult:
        expected_url = self.settings.webhook_callback_url(adapter.name.slug, config.user_id)
        log = logger.bind(tenant=config.user_id, gateway=adapter.name.value)

        current_id = credentials.get_credential(config, "webhook_id")
        if current_id:
            registration = await adapter.get_webhook(current_id)
            if self._valid(adapter, registration, expected_url):
                log.info("webhook_valid", webhook_id=current_id)
                return EnsureResult("unchanged", current_id, expected_url)

        stale_ids = [current_id] if current_id else []
        for previous in credentials.previous_configs(self.db, config):
            previous_id = credentials.get_credential(previous, "webhook_id")
            if not previous_id or previous_id in stale_ids:
                continue
            registration = await adapter.get_webhook(previous_id)
            if self._valid(adapter, registration, expected_url):
                secret = credentials.get_credential(previous, "webhook_secret")
                credentials.set_credential(self.db, config, "webhook_id", previous_id)
                if secret:
                    credentials.set_credential(self.db, config, "webhook_secret", secret)
                credentials.delete_credentials(self.db, previous, WEBHOOK_KEYS)
                self.db.commit()
                for webhook_id in stale_ids:
                    await self.delete_remote(adapter, webhook_id)
                log.info("webhook_reused", webhook_id=previous_id, previous_config_id=previous.id)
                return EnsureResult("reused", previous_id, expected_url)
            stale_ids.append(previous_id)
            credentials.delete_credentials(self.db, previous, WEBHOOK_KEYS)
            self.db.commit()

        for webhook_id in stale_ids:
            await self.delete_remote(adapter, webhook_id)
        credentials.delete_credentials(self.db, config, WEBHOOK_KEYS)

        registration = await adapter.create_webhook(expected_url, adapter.WEBHOOK_EVENTS)
        credentials.set_credential(self.db, config, "webhook_id", registration.webhook_id)
        if registration.secret:
            credentials.set_credential(self.db, config, "webhook_secret", registration.secret)
        self.db.commit()
        log.info("webhook_created", webhook_id=registration.webhook_id, url=expected_url)
        return EnsureResult("created", registration.webhook_id, expected_url)
