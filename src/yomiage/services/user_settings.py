"""Validated read/write access to per-user and per-community settings."""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..errors import SettingsValidationError
from ..llm.types import LlmProvider, is_llm_provider
from ..repository import SettingsRepository
from ..schemas.settings import (
    CommunitySettings,
    CommunitySettingsUpdate,
    EffectiveUserSettings,
    UserLlmPreferences,
    UserSettingsResponse,
    UserSettingsUpdate,
    UserVoicePreferences,
)
from .speaker_resolver import StyleCatalog, resolve_speaker_id

logger = logging.getLogger(__name__)

_VOICE_FIELDS = ("speaker_id", "pitch", "speed")
_LLM_FIELDS = (
    "llm_assist_enabled",
    "llm_assist_provider",
    "llm_assist_api_key_id",
    "llm_assist_model",
)


def _optional_non_empty(value: Any, field_name: str, errors: list[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = str(value).strip()
    if not trimmed:
        errors.append(f"{field_name} must not be empty")
        return None
    return trimmed


class UserSettingsService:
    """Apply partial settings updates all-or-nothing."""

    def __init__(
        self,
        repository: SettingsRepository,
        catalog: StyleCatalog,
        *,
        default_speaker_id: int,
        default_pitch: float = 0.0,
        default_speed: float = 1.0,
    ):
        self._repository = repository
        self._catalog = catalog
        self._default_speaker_id = default_speaker_id
        self._default_pitch = default_pitch
        self._default_speed = default_speed

    async def apply_update(
        self, community_id: str, user_id: str, update: UserSettingsUpdate
    ) -> UserSettingsResponse:
        """Validate every provided field, then persist them together.

        Raises :class:`SettingsValidationError` listing every rejected field;
        nothing is written in that case. A synthesis engine failure while
        checking ``speaker_id`` propagates as ``SynthesisError``.
        """

        provided = [
            name
            for name in (*_VOICE_FIELDS, *_LLM_FIELDS)
            if name in update.model_fields_set
        ]
        if not provided:
            raise SettingsValidationError(["No supported fields were provided"])

        errors: list[str] = []

        if "speaker_id" in provided:
            await self._validate_speaker(update.speaker_id, errors)
        for name in ("pitch", "speed"):
            if name in provided and getattr(update, name) is None:
                errors.append(f"{name} must be a finite number")

        next_llm: Optional[UserLlmPreferences] = None
        if any(name in provided for name in _LLM_FIELDS):
            next_llm = await self._build_llm_preferences(
                community_id, user_id, update, errors
            )

        if errors:
            raise SettingsValidationError(errors)

        if "speaker_id" in provided:
            assert update.speaker_id is not None
            await self._repository.set_user_speaker(community_id, user_id, update.speaker_id)
        if "pitch" in provided:
            assert update.pitch is not None
            await self._repository.set_user_pitch(community_id, user_id, update.pitch)
        if "speed" in provided:
            assert update.speed is not None
            await self._repository.set_user_speed(community_id, user_id, update.speed)
        if next_llm is not None:
            await self._repository.set_user_llm_prefs(community_id, user_id, next_llm)

        logger.info(
            "Updated settings for user %s in community %s: %s",
            user_id,
            community_id,
            ", ".join(provided),
        )
        settings = await self.effective_settings(community_id, user_id)
        return UserSettingsResponse(updated_fields=provided, settings=settings)

    async def _validate_speaker(self, speaker_id: Optional[int], errors: list[str]) -> None:
        if speaker_id is None or speaker_id < 0:
            errors.append("speaker_id must be a non-negative integer")
            return
        styles = await self._catalog.list_speaker_styles()
        if not any(style.style_id == speaker_id for style in styles):
            errors.append(f"speaker_id {speaker_id} was not found")

    async def _build_llm_preferences(
        self,
        community_id: str,
        user_id: str,
        update: UserSettingsUpdate,
        errors: list[str],
    ) -> UserLlmPreferences:
        current = await self._repository.get_user_llm_prefs(community_id, user_id)
        values = (current or UserLlmPreferences()).model_dump()
        provided = update.model_fields_set

        if "llm_assist_enabled" in provided:
            values["enabled"] = bool(update.llm_assist_enabled)

        if "llm_assist_provider" in provided:
            raw_provider = update.llm_assist_provider
            if raw_provider is None:
                values["provider"] = None
            elif is_llm_provider(raw_provider):
                values["provider"] = LlmProvider(raw_provider)
            else:
                options = ", ".join(p.value for p in LlmProvider)
                errors.append(f"llm_assist_provider must be one of: {options}, or null")

        if "llm_assist_api_key_id" in provided:
            values["api_key_id"] = _optional_non_empty(
                update.llm_assist_api_key_id, "llm_assist_api_key_id", errors
            )
        if "llm_assist_model" in provided:
            values["model"] = _optional_non_empty(
                update.llm_assist_model, "llm_assist_model", errors
            )

        prefs = UserLlmPreferences(**values)
        if prefs.api_key_id and prefs.provider is None:
            errors.append("llm_assist_api_key_id requires llm_assist_provider")
        elif prefs.api_key_id and prefs.provider is not None:
            key = await self._repository.find_accessible_credential(
                community_id, user_id, prefs.provider, prefs.api_key_id
            )
            if key is None:
                errors.append(
                    f"LLM assist API key {prefs.provider.value}/{prefs.api_key_id} "
                    "is not accessible"
                )
        return prefs

    async def effective_settings(
        self, community_id: str, user_id: str
    ) -> EffectiveUserSettings:
        voice = await self._repository.get_user_voice_prefs(community_id, user_id)
        voice = voice or UserVoicePreferences(
            pitch=self._default_pitch, speed=self._default_speed
        )
        llm = await self._repository.get_user_llm_prefs(community_id, user_id)
        llm = llm or UserLlmPreferences()
        speaker_id = await resolve_speaker_id(
            community_id,
            user_id,
            catalog=self._catalog,
            default_speaker_id=self._default_speaker_id,
            configured_speaker_id=voice.speaker_id,
        )
        return EffectiveUserSettings(
            speaker_id=speaker_id,
            pitch=voice.pitch,
            speed=voice.speed,
            llm_assist_enabled=llm.enabled,
            llm_assist_provider=llm.provider,
            llm_assist_api_key_id=llm.api_key_id,
            llm_assist_model=llm.model,
        )

    async def get_community_settings(self, community_id: str) -> CommunitySettings:
        return await self._repository.get_community_settings(community_id)

    async def update_community_settings(
        self, community_id: str, update: CommunitySettingsUpdate
    ) -> CommunitySettings:
        provided = update.model_fields_set
        if not provided:
            raise SettingsValidationError(["No supported fields were provided"])
        errors: list[str] = []
        if "auto_join" in provided and update.auto_join is None:
            errors.append("auto_join must be a boolean")
        if "text_channel_id" in provided and not (update.text_channel_id or "").strip():
            errors.append("text_channel_id must not be empty")
        if errors:
            raise SettingsValidationError(errors)

        if update.auto_join is not None:
            await self._repository.set_community_auto_join(community_id, update.auto_join)
        if update.text_channel_id is not None:
            await self._repository.set_community_preferred_text_channel(
                community_id, update.text_channel_id.strip()
            )
        return await self._repository.get_community_settings(community_id)


__all__ = ["UserSettingsService"]
