"""Pydantic schemas for per-user and per-community settings."""

from typing import Optional

from pydantic import BaseModel, Field

from ..llm.types import LlmProvider


class UserVoicePreferences(BaseModel):
    """Per (community, user) synthesis parameters."""

    speaker_id: Optional[int] = Field(
        default=None,
        description="Configured speaker; unset resolves through the speaker resolver",
    )
    pitch: float = Field(default=0.0, allow_inf_nan=False)
    speed: float = Field(default=1.0, allow_inf_nan=False)


class UserLlmPreferences(BaseModel):
    """Per (community, user) assist pipeline settings."""

    enabled: bool = False
    provider: Optional[LlmProvider] = None
    api_key_id: Optional[str] = None
    model: Optional[str] = None


class CommunitySettings(BaseModel):
    auto_join: bool = True
    text_channel_id: Optional[str] = None


class CommunitySettingsUpdate(BaseModel):
    auto_join: Optional[bool] = None
    text_channel_id: Optional[str] = Field(default=None, min_length=1)


class UserSettingsUpdate(BaseModel):
    """Partial update; only fields present in the payload are applied.

    Explicit ``null`` clears the optional LLM fields.
    """

    speaker_id: Optional[int] = None
    pitch: Optional[float] = Field(default=None, allow_inf_nan=False)
    speed: Optional[float] = Field(default=None, allow_inf_nan=False)
    llm_assist_enabled: Optional[bool] = None
    llm_assist_provider: Optional[str] = None
    llm_assist_api_key_id: Optional[str] = None
    llm_assist_model: Optional[str] = None


class EffectiveUserSettings(BaseModel):
    speaker_id: int
    pitch: float
    speed: float
    llm_assist_enabled: bool
    llm_assist_provider: Optional[LlmProvider]
    llm_assist_api_key_id: Optional[str]
    llm_assist_model: Optional[str]


class UserSettingsResponse(BaseModel):
    ok: bool = True
    updated_fields: list[str]
    settings: EffectiveUserSettings


class SpeechRequest(BaseModel):
    """Speak a line as a given user in the voice channel they share with the bot."""

    user_id: str = Field(min_length=1)
    text: str
    community_id: Optional[str] = None
    text_channel_id: Optional[str] = None
    speaker_id: Optional[int] = Field(default=None, ge=0)
    pitch: Optional[float] = Field(default=None, allow_inf_nan=False)
    speed: Optional[float] = Field(default=None, allow_inf_nan=False)


class SpeechResponse(BaseModel):
    ok: bool = True
    community_id: str
    voice_channel_id: str
    text_channel_id: str
    speaker_id: int
    pitch: float
    speed: float


__all__ = [
    "CommunitySettings",
    "CommunitySettingsUpdate",
    "EffectiveUserSettings",
    "SpeechRequest",
    "SpeechResponse",
    "UserLlmPreferences",
    "UserSettingsResponse",
    "UserSettingsUpdate",
    "UserVoicePreferences",
]
