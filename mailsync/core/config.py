"""Mail sync configuration settings."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Dict, List


class SyncSettings(BaseSettings):
    """Sync engine and API server configuration."""

    # API Settings
    api_port: int = Field(default=8000, description="API server port")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # CORS Settings
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed CORS origins"
    )

    # MongoDB Settings
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017/?directConnection=true",
        description="MongoDB connection string"
    )
    mongodb_database: str = Field(default="mailsync", description="Database name")
    mongodb_collection_accounts: str = Field(default="mail_accounts")
    mongodb_collection_folders: str = Field(default="mail_folders")
    mongodb_collection_messages: str = Field(default="mail_messages")

    # OAuth client settings (used to refresh access tokens)
    google_client_id: str = Field(default="")
    google_client_secret: str = Field(default="")
    microsoft_client_id: str = Field(default="")
    microsoft_client_secret: str = Field(default="")
    microsoft_tenant: str = Field(default="common")
    token_refresh_margin_seconds: int = Field(
        default=300,
        description="Refresh access tokens expiring within this window"
    )

    # Provider settings
    graph_base_url: str = Field(default="https://graph.microsoft.com/v1.0")
    graph_page_size: int = Field(default=50, description="Messages per Graph delta page")
    gmail_page_size: int = Field(default=100, description="Messages per Gmail list page")
    provider_timeout_seconds: float = Field(default=60.0)
    imap_batch_size: int = Field(default=100, description="Messages per IMAP fetch range")
    imap_recent_window: int = Field(
        default=50,
        description="Messages fetched per folder on automatic IMAP runs"
    )
    outlook_excluded_folders: List[str] = Field(
        default=[
            "Deleted Items",
            "Junk Email",
            "Conversation History",
            "Sync Issues",
            "Conflicts",
            "Local Failures",
            "Server Failures",
            "Outbox",
        ],
        description="Graph folders never synced, matched by display name"
    )

    # Ingestion
    progress_interval: int = Field(
        default=10,
        description="Persist account progress every N ingested messages"
    )
    categorization_policy: Dict[str, str] = Field(
        default={
            "oauth": "folder",
            "manual": "folder",
            "scheduled": "classifier",
            "webhook": "classifier",
        },
        description="Trigger reason -> 'folder' (no classifier call) or 'classifier'"
    )

    # Downstream hooks
    classification_url: str = Field(
        default="",
        description="Classification service endpoint; empty keeps folder categories"
    )
    classification_timeout_seconds: float = Field(default=30.0)
    mongodb_collection_embedding_jobs: str = Field(default="embedding_jobs")
    mongodb_collection_contacts: str = Field(default="contacts")
    mongodb_collection_contact_timeline: str = Field(default="contact_timeline")

    # Retry policy
    retry_delays_seconds: List[int] = Field(default=[5, 15, 30])
    max_attempts: int = Field(default=3, description="Attempts for retryable errors")
    unknown_error_max_attempts: int = Field(default=2, description="Unknown errors retry once")
    rate_limit_backoff_minutes: int = Field(default=15)
    rate_limit_backoff_max_minutes: int = Field(default=240)

    # Orchestration
    watchdog_timeout_minutes: int = Field(default=10)
    watchdog_interval_seconds: int = Field(default=60)
    scheduled_sync_interval_minutes: int = Field(default=15)
    dispatch_claim_timeout_seconds: int = Field(default=60)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


def get_settings() -> SyncSettings:
    """Load settings from the environment and .env file."""
    return SyncSettings()


settings = get_settings()
