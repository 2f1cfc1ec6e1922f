from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .schemas import RetryPolicy


class Settings(BaseSettings):
    """Configuration settings for the group chat push service"""

    # Application settings
    service_name: str = "groupchat-push"
    log_level: str = "INFO"
    environment: str = "dev"

    # Firebase settings
    firebase_secret: Optional[str] = None
    firebase_db_url: str = "https://zalophake-bf746-default-rtdb.firebaseio.com/"

    # FCM gateway settings
    fcm_project_id: Optional[str] = None  # falls back to the service account's project_id
    fcm_endpoint: str = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
    fcm_server_key: Optional[str] = None  # pre-issued bearer token, skips the service account
    fcm_request_timeout_seconds: float = Field(default=10.0, gt=0)

    # Retry settings
    max_retry_attempts: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)

    # Rate limiting
    requests_per_second: float = Field(default=100.0, gt=0)

    # FCM batching settings
    fcm_batch_size: int = Field(default=500, ge=1)  # FCM multicast limit

    # Fan-out settings
    fanout_timeout_seconds: float = Field(default=30.0, gt=0)
    dispatcher_workers: int = Field(default=4, ge=1)
    dispatcher_queue_size: int = Field(default=100, ge=1)
    badge_lookup_concurrency: int = Field(default=10, ge=1)

    # Notification content settings
    max_notification_content_length: int = 100
    android_channel_id: str = "support_group_messages"
    android_click_action: str = "OPEN_GROUP_CHAT"
    notification_sound: str = "default"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_retry_attempts,
            base_backoff=self.retry_backoff_seconds,
        )


# Create settings instance
settings = Settings()
