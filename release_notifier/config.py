from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class NotifierSettings(BaseSettings):
    """Configuration options for the release notifier."""

    # Product identity
    app_name: str = "Tzurot"
    app_version: Optional[str] = None  # Overrides version_file when set
    version_file: str = "package.json"

    # Storage configuration
    storage_backend: str = "file"  # file | minio
    data_dir: str = "data"
    version_marker_key: str = "lastNotifiedVersion.json"
    preferences_key: str = "releaseNotificationPreferences.json"
    minio_endpoint: str = "minio-service.release-notifier.svc.cluster.local"
    minio_access_key: str = ""
    minio_secret_key: str = ""
    minio_bucket: str = "release-notifier"
    minio_prefix: str = "state/"

    # GitHub Releases API
    github_owner: str = "lbds137"
    github_repo: str = "tzurot"
    github_token: Optional[str] = None  # Unauthenticated calls are rate limited
    github_api_url: str = "https://api.github.com"
    release_cache_ttl_seconds: float = 3600
    releases_page_size: int = 100
    http_timeout_seconds: float = 30

    # Preferences
    preferences_save_delay_seconds: float = 5.0

    # Notification composition
    first_run_release_limit: int = 5
    field_value_limit: int = 1024
    max_items_per_field: int = 5
    command_prefix: str = "!tz"

    # Delivery
    delivery_concurrency: int = 1
    delivery_delay_seconds: float = 1.0
    discord_bot_token: Optional[str] = None
    discord_api_url: str = "https://discord.com/api/v10"

    # Observability
    metrics_pushgateway_url: Optional[str] = None
    metrics_job_name: str = "release_notifier"
    log_level: str = "INFO"
    log_format: str = "text"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def repository(self) -> str:
        return f"{self.github_owner}/{self.github_repo}"
