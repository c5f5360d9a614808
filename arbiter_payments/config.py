from __future__ import annotations

from dataclasses import dataclass

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class GatewayConfig:
    """Explicit per-gateway configuration injected into a gateway client."""

    name: str
    api_base_url: str = ""
    api_key: str = ""
    api_secret: str = ""
    merchant_id: str = ""
    webhook_secret: str = ""
    timeout_seconds: float = 15.0
    return_url: str = ""
    cancel_url: str = ""
    failure_url: str = ""
    notify_url: str = ""
    webhook_tolerance_seconds: int = 300


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # General
    api_bearer_token: str = "testtoken"
    app_env: str = "local"
    app_version: str = "1.0.0"
    # Comma-separated toggle list, e.g. "gcash,stripe,paypal"
    enabled_gateways: str = ""
    default_gateway: str = "gcash"
    frontend_url: str = "http://localhost:3000"
    app_url: str = "http://localhost:8000"
    gateway_timeout_seconds: float = 15.0
    verify_retry_attempts: int = 3
    verify_retry_backoff_seconds: float = 0.5

    # GCash config
    gcash_api_url: str = "https://api.gcash.com/v1"
    gcash_api_key: str = ""
    gcash_merchant_id: str = ""
    gcash_webhook_secret: str = ""

    # Maya config
    maya_api_url: str = "https://pg-sandbox.paymaya.com"
    maya_public_key: str = ""
    maya_secret_key: str = ""
    maya_webhook_secret: str = ""

    # Stripe config
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300

    # PayPal config
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_webhook_id: str = ""  # PayPal Webhook ID for signature verification

    # Collaborator callbacks (empty = log only)
    order_callback_url: str = ""
    notification_callback_url: str = ""

    # Database (PostgreSQL)
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "payments"

    # Pydantic v2 settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def enabled_gateway_names(self) -> list[str]:
        names = [part.strip().lower() for part in self.enabled_gateways.split(",")]
        return [name for name in names if name]

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    @property
    def db_dsn(self) -> str:
        if not self.db_enabled:
            return ""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    def gateway_config(self, name: str) -> GatewayConfig:
        """Build the configuration handed to the ``name`` gateway client."""
        normalized = name.lower()
        common = {
            "name": normalized,
            "timeout_seconds": self.gateway_timeout_seconds,
            "return_url": f"{self.frontend_url}/payment/success",
            "cancel_url": f"{self.frontend_url}/payment/cancelled",
            "failure_url": f"{self.frontend_url}/payment/failed",
            "notify_url": f"{self.app_url}/api/v1/webhooks/{normalized}",
        }
        if normalized == "gcash":
            return GatewayConfig(
                api_base_url=self.gcash_api_url,
                api_key=self.gcash_api_key,
                merchant_id=self.gcash_merchant_id,
                webhook_secret=self.gcash_webhook_secret,
                **{**common, "return_url": f"{self.frontend_url}/payment/callback"},
            )
        if normalized == "maya":
            return GatewayConfig(
                api_base_url=self.maya_api_url,
                api_key=self.maya_public_key,
                api_secret=self.maya_secret_key,
                webhook_secret=self.maya_webhook_secret,
                **common,
            )
        if normalized == "stripe":
            return GatewayConfig(
                api_secret=self.stripe_secret_key,
                webhook_secret=self.stripe_webhook_secret,
                webhook_tolerance_seconds=self.stripe_webhook_tolerance,
                **common,
            )
        if normalized == "paypal":
            return GatewayConfig(
                api_base_url=self.paypal_base_url,
                api_key=self.paypal_client_id,
                api_secret=self.paypal_client_secret,
                webhook_secret=self.paypal_webhook_id,
                **common,
            )
        msg = f"Unknown gateway {name}"
        raise ValueError(msg)


settings = Settings()
