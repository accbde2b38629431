from __future__ import annotations

import os
from dataclasses import dataclass

from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


@dataclass(frozen=True)
class ChatConfig:
    """Typed configuration for the chat platform REST API."""

    api_url: str | None
    bot_token: str | None
    bot_user_id: str | None

    @classmethod
    def from_env(cls) -> ChatConfig:
        """Create a ChatConfig from environment variables."""
        return cls(
            api_url=os.environ.get("CHAT_API_URL"),
            bot_token=os.environ.get("CHAT_BOT_TOKEN"),
            bot_user_id=os.environ.get("CHAT_BOT_USER_ID"),
        )

    @property
    def is_valid(self) -> bool:
        """Check if the configuration is valid."""
        return all([self.api_url, self.bot_token])


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    ENV: str = "development"
    GCP_PROJECT_ID: str | None = None
    ADMIN_USER_IDS: str = ""

    KV_BACKEND: str = "memory"
    FIRESTORE_KV_COLLECTION: str = "link_archiver_kv"
    OBJECT_STORE: str = "local"
    GCS_BUCKET: str | None = None
    LOCAL_STORAGE_DIR: str = "instance/archives"

    PROBE_TIMEOUT_SECONDS: float = 10.0
    DOWNLOAD_TIMEOUT_SECONDS: float = 30.0
    DOWNLOAD_MAX_BYTES: int = 100 * MIB
    SNAPSHOT_TIMEOUT_SECONDS: float = 60.0
    SNAPSHOT_MAX_BYTES: int = 50 * MIB
    SNAPSHOT_MAX_CONCURRENT_DOWNLOADS: int = 5
    SNAPSHOT_DISABLE_JS: bool = False
    SNAPSHOT_DISABLE_CSS: bool = False
    SNAPSHOT_DISABLE_EMBEDS: bool = False
    SNAPSHOT_DISABLE_MEDIAS: bool = False

    ARCHIVE_CONCURRENCY: int = 4
    RULES_CACHE_SECONDS: float = 5.0

    @property
    def admin_user_ids(self) -> set[str]:
        return {
            value.strip() for value in self.ADMIN_USER_IDS.split(",") if value.strip()
        }


settings = AppSettings()
