"""Application settings and environment configuration."""

from typing import Optional
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[2]
ENV_FILE = BASE_DIR / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = "AssetFlow"
    debug: bool = False
    worker_mode: bool = False
    environment: str = "dev"  # 'dev' or 'prod'

    # Database
    database_url: str = "postgresql://localhost/assetflow"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800
    db_pool_pre_ping: bool = True
    db_connect_timeout: int = 10
    db_pool_use_lifo: bool = True

    # Object storage (versions and processed outputs)
    gcp_project_id: str = "assetflow-dev"
    storage_bucket_name: str = "assetflow-dev-assets"

    # Processing queue
    queue_max_attempts: int = 3
    queue_batch_size: int = 10
    worker_poll_seconds: float = 60.0
    ffmpeg_binary: str = "ffmpeg"
    ffmpeg_timeout_seconds: int = 3600

    # Video distribution (stream stage)
    distribution_api_url: Optional[str] = None
    distribution_api_token: Optional[str] = None
    distribution_timeout_seconds: float = 30.0

    # Workflow
    # 'creation_order' gates advance on the chain's step creation order;
    # 'graph' requires a path through the chain's transitions.
    workflow_transition_mode: str = "creation_order"

    # Notifications
    slack_webhook_url: Optional[str] = None
    teams_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 5.0

    # Scheduler trigger (Authorization: Bearer <cron_secret>)
    cron_secret: Optional[str] = None

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_workers: int = 4

    app_url: str = "http://localhost:8080"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "prod"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "dev"

    @property
    def notifications_enabled(self) -> bool:
        return bool(self.slack_webhook_url or self.teams_webhook_url)


settings = Settings()
