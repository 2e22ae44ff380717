"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache

APP_VERSION = "1.0.0"


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Sentry
    sentry_dsn: str = ""

    # SafeHaven webhook ingress
    safehaven_webhook_secret: str = ""  # Empty = every signature is rejected
    safehaven_webhook_path: str = "/api/v1/safehaven/webhooks"
    safehaven_event_id_header: str = "X-Provider-Event-Id"
    safehaven_signature_header: str = "X-Provider-Signature"

    # Webhook dispatcher pool
    webhook_dispatcher_core_workers: int = 5
    webhook_dispatcher_max_workers: int = 10
    webhook_dispatcher_queue_capacity: int = 100
    webhook_dispatcher_keepalive_seconds: float = 60.0
    webhook_shutdown_grace_seconds: float = 60.0

    # Out-of-band retry sweep
    webhook_retry_enabled: bool = True
    webhook_retry_max_attempts: int = 3
    webhook_retry_after_minutes: int = 5
    webhook_retry_poll_seconds: int = 60
    webhook_retry_batch_size: int = 25
    webhook_stale_processing_minutes: int = 15
    webhook_pending_grace_minutes: int = 5

    # Event log inspection / replay endpoints (empty = disabled)
    admin_api_key: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
