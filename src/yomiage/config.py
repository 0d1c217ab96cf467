"""Application configuration using environment variables."""

from __future__ import annotations

import base64
import binascii
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import CredentialError

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    voicevox_api_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("http://127.0.0.1:50021"),
        validation_alias=AliasChoices("VOICEVOX_API_URL", "voicevox_api_url"),
    )
    voicevox_timeout: float = Field(
        default=30.0,
        ge=1,
        validation_alias=AliasChoices("VOICEVOX_TIMEOUT", "voicevox_timeout"),
    )
    database_path: Path = Field(
        default_factory=lambda: Path("data/yomiage.db"),
        validation_alias=AliasChoices("DATABASE_PATH", "database_path"),
    )

    # base64-encoded 32 byte key used for AES-256-GCM credential encryption
    llm_master_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("LLM_MASTER_KEY", "llm_master_key"),
    )
    admin_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("ADMIN_API_KEY", "API_KEY", "admin_api_key"),
    )

    default_speaker_id: int = Field(
        default=1,
        ge=0,
        validation_alias=AliasChoices("DEFAULT_SPEAKER_ID", "default_speaker_id"),
    )
    default_pitch: float = Field(
        default=0.0,
        validation_alias=AliasChoices("DEFAULT_PITCH", "default_pitch"),
    )
    default_speed: float = Field(
        default=1.0,
        gt=0,
        validation_alias=AliasChoices("DEFAULT_SPEED", "default_speed"),
    )
    max_utterance_length: int = Field(
        default=140,
        ge=1,
        validation_alias=AliasChoices("MAX_UTTERANCE_LENGTH", "max_utterance_length"),
    )

    voice_connect_timeout: float = Field(
        default=10.0,
        gt=0,
        validation_alias=AliasChoices("VOICE_CONNECT_TIMEOUT", "voice_connect_timeout"),
    )
    playback_start_timeout: float = Field(
        default=5.0,
        gt=0,
        validation_alias=AliasChoices(
            "PLAYBACK_START_TIMEOUT", "playback_start_timeout"
        ),
    )
    llm_request_timeout: float = Field(
        default=6.0,
        gt=0,
        validation_alias=AliasChoices("LLM_REQUEST_TIMEOUT", "llm_request_timeout"),
    )

    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("LOG_LEVEL", "log_level"),
    )
    log_dir: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices("LOG_DIR", "log_dir"),
    )
    log_retention_hours: int = Field(
        default=48,
        ge=0,
        validation_alias=AliasChoices("LOG_RETENTION_HOURS", "log_retention_hours"),
    )
    log_timezone: str = Field(
        default="Asia/Tokyo",
        validation_alias=AliasChoices("LOG_TIMEZONE", "log_timezone"),
    )

    @property
    def master_key_bytes(self) -> bytes:
        """Decode the credential master key, failing closed on bad input."""

        if self.llm_master_key is None:
            raise CredentialError("LLM_MASTER_KEY is not configured")
        raw = self.llm_master_key.get_secret_value().strip()
        try:
            key = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CredentialError("LLM_MASTER_KEY must be base64 encoded") from exc
        if len(key) != 32:
            raise CredentialError("LLM_MASTER_KEY must decode to exactly 32 bytes")
        return key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "get_settings"]
