"""
Read/write access to a tenant's gateway configuration and credential key/values.

Credential values are secrets: nothing here logs them.
"""
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.gateways.base import GatewayName
from app.models import GatewayConfig, GatewayCredential


def _matches(config: GatewayConfig, gateway: GatewayName) -> bool:
    try:
        return GatewayName.from_label(config.gateway_name) == gateway
    except ValueError:
        return False


def get_active_config(db: Session, user_id: int) -> Optional[GatewayConfig]:
    return (
        db.query(GatewayConfig)
        .filter(GatewayConfig.user_id == user_id, GatewayConfig.is_active.is_(True))
        .order_by(GatewayConfig.updated_at.desc(), GatewayConfig.id.desc())
        .first()
    )


def find_config_for_gateway(db: Session, user_id: int, gateway: GatewayName) -> Optional[GatewayConfig]:
    """The active config for `gateway` if there is one, else the most recently used."""
    configs = (
        db.query(GatewayConfig)
        .filter(GatewayConfig.user_id == user_id)
        .order_by(GatewayConfig.is_active.desc(), GatewayConfig.updated_at.desc(), GatewayConfig.id.desc())
        .all()
    )
    for config in configs:
        if _matches(config, gateway):
            return config
    return None


def previous_configs(db: Session, config: GatewayConfig) -> List[GatewayConfig]:
    gateway = GatewayName.from_label(config.gateway_name)
    configs = (
        db.query(GatewayConfig)
        .filter(
            GatewayConfig.user_id == config.user_id,
            GatewayConfig.id != config.id,
            GatewayConfig.is_active.is_(False),
        )
        .order_by(GatewayConfig.updated_at.desc(), GatewayConfig.id.desc())
        .all()
    )
    return [c for c in configs if _matches(c, gateway)]


def credentials_map(config: GatewayConfig) -> Dict[str, str]:
    return {c.key: c.value for c in config.credentials}


def get_credential(config: GatewayConfig, key: str) -> Optional[str]:
    for credential in config.credentials:
        if credential.key == key:
            return credential.value
    return None


def set_credential(db: Session, config: GatewayConfig, key: str, value: Optional[str]) -> None:
    for credential in config.credentials:
        if credential.key == key:
            credential.value = value
            return
    config.credentials.append(GatewayCredential(key=key, value=value))
    db.flush()


def delete_credentials(db: Session, config: GatewayConfig, keys: Iterable[str]) -> None:
    keys = set(keys)
    for credential in list(config.credentials):
        if credential.key in keys:
            config.credentials.remove(credential)
    db.flush()
