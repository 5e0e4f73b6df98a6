"""
Application settings loaded from the environment (prefix ``PAYRECON_``) or a local .env file.
"""
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PAYRECON_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = Field("payment-reconciliation-api", description="Service name reported by /health")
    environment: str = Field("development", description="development | staging | production")
    database_url: str = Field("sqlite:///./payments.db", description="SQLAlchemy database URL")
    app_url: str = Field(
        "http://localhost:8000",
        description="Public base URL used to build webhook callback URLs",
    )

    log_level: str = Field("INFO", description="Root log level")
    log_json: bool = Field(False, description="Render logs as JSON instead of console output")

    currency: str = Field("usd", description="Display currency sent to gateways")
    gateway_timeout_seconds: float = Field(30.0, gt=0, description="Timeout for every remote gateway call")
    sync_authoritative_reversals: bool = Field(
        False,
        description="Mark refunds/voids terminal from the synchronous gateway response "
                    "instead of waiting for the webhook",
    )

    authorizenet_api_url_live: str = "https://api.authorize.net/xml/v1/request.api"
    authorizenet_api_url_sandbox: str = "https://apitest.authorize.net/xml/v1/request.api"
    authorizenet_webhook_url_live: str = "https://api.authorize.net/rest/v1/webhooks"
    authorizenet_webhook_url_sandbox: str = "https://apitest.authorize.net/rest/v1/webhooks"

    def webhook_callback_url(self, gateway_slug: str, user_id: int) -> str:
        return f"{self.app_url.rstrip('/')}/webhook/{gateway_slug}/user/{user_id}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
