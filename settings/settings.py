import logging

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.environment import EnvironmentName
from settings.log import LoggingSettings


class DatabaseSettings(BaseSettings):
    host: str = Field(alias="DATABASE_HOST", default="postgresql://localhost:5432")
    name: str = Field(alias="DATABASE_NAME", default="mailsync")
    min_pool_size: int = Field(alias="DATABASE_MIN_POOL_SIZE", default=5)
    max_pool_size: int = Field(alias="DATABASE_MAX_POOL_SIZE", default=20)

    @property
    def async_host(self) -> str:
        """Return the host URL with async driver for SQLAlchemy async engine."""
        return self.host.replace("postgresql://", "postgresql+asyncpg://", 1)

    @property
    def url(self) -> str:
        return f"{self.async_host}/{self.name}"


class SyncSettings(BaseSettings):
    """Cadence, backoff and heuristic windows of the sync engine. All durations are seconds."""

    model_config = SettingsConfigDict(populate_by_name=True)

    poll_interval: int = Field(alias="SYNC_POLL_INTERVAL", default=300)
    account_delay: float = Field(alias="SYNC_ACCOUNT_DELAY", default=1.0)
    error_cooldown: int = Field(alias="SYNC_ERROR_COOLDOWN", default=3600)
    max_sync_duration: int = Field(alias="SYNC_MAX_DURATION", default=1800)
    maintenance_interval: int = Field(alias="SYNC_MAINTENANCE_INTERVAL", default=3600)
    push_staleness: int = Field(alias="SYNC_PUSH_STALENESS", default=21600)
    fetch_limit: int = Field(alias="SYNC_FETCH_LIMIT", default=50)
    max_pages_per_pass: int = Field(alias="SYNC_MAX_PAGES", default=20)
    adapter_timeout: float = Field(alias="SYNC_ADAPTER_TIMEOUT", default=60)
    store_timeout: float = Field(alias="SYNC_STORE_TIMEOUT", default=30)
    dedup_window: int = Field(alias="DEDUP_WINDOW", default=300)
    thread_recency_window: int = Field(alias="THREAD_RECENCY_WINDOW", default=30 * 24 * 3600)


class ChannelSettings(BaseSettings):
    model_config = SettingsConfigDict(populate_by_name=True)

    renewal_check_interval: int = Field(alias="CHANNEL_RENEWAL_CHECK_INTERVAL", default=6 * 3600)
    gmail_renewal_threshold: int = Field(alias="GMAIL_RENEWAL_THRESHOLD", default=24 * 3600)
    outlook_renewal_threshold: int = Field(alias="OUTLOOK_RENEWAL_THRESHOLD", default=12 * 3600)
    outlook_subscription_lifetime: int = Field(alias="OUTLOOK_SUBSCRIPTION_LIFETIME", default=3 * 24 * 3600)
    gmail_pubsub_topic: str = Field(alias="GMAIL_PUBSUB_TOPIC", default="")
    public_base_url: str = Field(alias="WEBHOOK_PUBLIC_BASE_URL", default="http://localhost:8001")


class OAuthSettings(BaseSettings):
    model_config = SettingsConfigDict(populate_by_name=True)

    environment: str = Field(alias="OAUTH_ENVIRONMENT", default="production")
    refresh_margin: int = Field(alias="TOKEN_REFRESH_MARGIN", default=300)
    timeout: int = Field(alias="OAUTH_TIMEOUT", default=30)
    google_client_id: str = Field(alias="GOOGLE_CLIENT_ID", default="")
    google_client_secret: str = Field(alias="GOOGLE_CLIENT_SECRET", default="")
    google_token_url: str = Field(alias="GOOGLE_TOKEN_URL", default="https://oauth2.googleapis.com/token")
    microsoft_client_id: str = Field(alias="MICROSOFT_CLIENT_ID", default="")
    microsoft_client_secret: str = Field(alias="MICROSOFT_CLIENT_SECRET", default="")
    microsoft_tenant: str = Field(alias="MICROSOFT_TENANT", default="common")

    @property
    def microsoft_token_url(self) -> str:
        return f"https://login.microsoftonline.com/{self.microsoft_tenant}/oauth2/v2.0/token"


class IMAPSettings(BaseSettings):
    timeout: int = Field(alias="IMAP_TIMEOUT", default=300)
    port: int = Field(alias="IMAP_PORT", default=993)
    max_connections_per_host: int = Field(alias="IMAP_MAX_CONNECTIONS_PER_HOST", default=10)


class WebhookSettings(BaseSettings):
    model_config = SettingsConfigDict(populate_by_name=True)

    max_retries: int = Field(alias="WEBHOOK_MAX_RETRIES", default=3)
    timeout: int = Field(alias="WEBHOOK_TIMEOUT", default=10)


class SentrySettings(BaseSettings):
    dsn: str | None = Field(alias="SENTRY_DSN", default=None)

    @property
    def is_enabled(self) -> bool:
        return bool(self.dsn)


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "extra": "allow"}

    environment: EnvironmentName = Field(alias="ENVIRONMENT")
    password_encryption_key: str = Field(alias="PASSWORD_ENCRYPTION_KEY")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    channels: ChannelSettings = Field(default_factory=ChannelSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    imap: IMAPSettings = Field(default_factory=IMAPSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    sentry: SentrySettings = Field(default_factory=SentrySettings)

    @field_validator("environment", mode="before")
    def set_environment(cls, value: str, info: ValidationInfo) -> EnvironmentName:
        try:
            return EnvironmentName(value)
        except ValueError:
            logging.getLogger(__name__).warning(f"Invalid environment: {value}")
            return EnvironmentName.DEVELOPMENT
