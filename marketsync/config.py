"""Application configuration management."""

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

from marketsync.errors import ConfigurationFault


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="marketsync", alias="APP_NAME")
    app_env: str = Field(default="development", alias="APP_ENV")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Backend store
    database_url: str = Field(default="sqlite:///./marketsync.db", alias="DATABASE_URL")

    # Login with Amazon (LWA)
    lwa_client_id: Optional[str] = Field(default=None, alias="AMZ_LWA_CLIENT_ID")
    lwa_client_secret: Optional[str] = Field(default=None, alias="AMZ_LWA_CLIENT_SECRET")
    lwa_refresh_token: Optional[str] = Field(default=None, alias="AMZ_LWA_REFRESH_TOKEN")
    lwa_token_url: str = Field(default="https://api.amazon.com/auth/o2/token", alias="LWA_TOKEN_URL")

    # SP-API / SigV4
    aws_access_key_id: Optional[str] = Field(default=None, alias="AMZ_AWS_ACCESS_KEY_ID")
    aws_secret_access_key: Optional[str] = Field(default=None, alias="AMZ_AWS_SECRET_ACCESS_KEY")
    aws_region: Optional[str] = Field(default=None, alias="AMZ_AWS_REGION")
    spapi_endpoint: Optional[str] = Field(default=None, alias="AMZ_SPAPI_ENDPOINT")
    default_marketplace_id: str = Field(default="A21TJRUUN4KGV", alias="DEFAULT_MARKETPLACE_ID")

    # AWS Secrets Manager
    secrets_manager_enabled: bool = Field(default=False, alias="SECRETS_MANAGER_ENABLED")
    secrets_region: str = Field(default="us-east-1", alias="SECRETS_REGION")
    spapi_secrets_arn: Optional[str] = Field(default=None, alias="SPAPI_SECRETS_ARN")

    # Report polling
    report_poll_initial_delay_seconds: float = Field(default=2.5, alias="REPORT_POLL_INITIAL_DELAY_SECONDS")
    report_poll_backoff_factor: float = Field(default=1.6, alias="REPORT_POLL_BACKOFF_FACTOR")
    report_poll_max_delay_seconds: float = Field(default=20.0, alias="REPORT_POLL_MAX_DELAY_SECONDS")
    report_poll_max_attempts: int = Field(default=12, alias="REPORT_POLL_MAX_ATTEMPTS")

    # Timeouts and concurrency
    spapi_request_timeout_seconds: float = Field(default=30.0, alias="SPAPI_REQUEST_TIMEOUT_SECONDS")
    financial_events_timeout_seconds: float = Field(default=20.0, alias="FINANCIAL_EVENTS_TIMEOUT_SECONDS")
    order_items_concurrency: int = Field(default=3, alias="ORDER_ITEMS_CONCURRENCY")
    settlement_preview_rows: int = Field(default=200, alias="SETTLEMENT_PREVIEW_ROWS")

    # Celery
    celery_broker_url: str = Field(default="redis://localhost:6379/0", alias="CELERY_BROKER_URL")
    celery_result_backend: str = Field(default="redis://localhost:6379/0", alias="CELERY_RESULT_BACKEND")
    job_timeout_seconds: int = Field(default=3600, alias="JOB_TIMEOUT_SECONDS")

    # Monitoring
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")


@dataclass(frozen=True)
class Credentials:
    """SP-API credentials, built once per process and passed by injection."""

    lwa_client_id: str
    lwa_client_secret: str
    lwa_refresh_token: str
    aws_access_key_id: str
    aws_secret_access_key: str
    aws_region: str
    spapi_endpoint: str
    lwa_token_url: str = "https://api.amazon.com/auth/o2/token"

    @property
    def host(self) -> str:
        """Host of the SP-API endpoint."""
        return urlparse(self.spapi_endpoint).netloc


# Credential field -> environment key, in the order missing keys are reported
CREDENTIAL_ENV_KEYS = {
    "lwa_client_id": "AMZ_LWA_CLIENT_ID",
    "lwa_client_secret": "AMZ_LWA_CLIENT_SECRET",
    "lwa_refresh_token": "AMZ_LWA_REFRESH_TOKEN",
    "aws_access_key_id": "AMZ_AWS_ACCESS_KEY_ID",
    "aws_secret_access_key": "AMZ_AWS_SECRET_ACCESS_KEY",
    "aws_region": "AMZ_AWS_REGION",
    "spapi_endpoint": "AMZ_SPAPI_ENDPOINT",
}


def load_credentials(config: Optional[Settings] = None, overrides: Optional[Dict[str, Any]] = None) -> Credentials:
    """
    Build Credentials from settings, failing on every missing key at once.

    Args:
        config: Settings instance (defaults to the process settings)
        overrides: Optional values keyed by field name or env key, e.g. a
            Secrets Manager payload; non-empty values win over settings

    Returns:
        Immutable Credentials

    Raises:
        ConfigurationFault: If any required value is absent
    """
    config = config or settings
    overrides = dict(overrides or {})

    if overrides == {} and config.secrets_manager_enabled and config.spapi_secrets_arn:
        from marketsync.secrets import secrets_manager

        overrides = secrets_manager.get_spapi_credentials(config.spapi_secrets_arn)

    values: Dict[str, str] = {}
    missing = []
    for field_name, env_key in CREDENTIAL_ENV_KEYS.items():
        value = overrides.get(field_name) or overrides.get(env_key) or getattr(config, field_name)
        if not value:
            missing.append(env_key)
            continue
        values[field_name] = str(value).strip()

    if missing:
        raise ConfigurationFault(missing)

    return Credentials(lwa_token_url=config.lwa_token_url, **values)


# Global settings instance
settings = Settings()
