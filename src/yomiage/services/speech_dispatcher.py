"""Route gateway events and admin requests into voice sessions."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from fastapi import status

from ..errors import SpeechRequestError, VoiceConnectionError
from ..llm.assist import AssistResult
from ..repository import SettingsRepository
from ..schemas.events import MessageCreated, VoiceStateChanged
from ..schemas.settings import SpeechRequest, SpeechResponse, UserVoicePreferences
from ..voice.gateway import VoiceGateway
from ..voice.registry import SessionRegistry
from ..voice.session import SpeechTask
from .speaker_resolver import StyleCatalog, resolve_speaker_id
from .text_shaping import format_message_content

logger = logging.getLogger(__name__)


class Assistant(Protocol):
    async def assist(
        self, community_id: str, user_id: str, text: str, speaker_id: int
    ) -> AssistResult: ...


class SpeechDispatcher:
    """Glue between inbound events, settings, the assist pipeline and the registry."""

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        gateway: VoiceGateway,
        repository: SettingsRepository,
        catalog: StyleCatalog,
        assistant: Assistant,
        default_speaker_id: int,
        default_pitch: float = 0.0,
        default_speed: float = 1.0,
        max_utterance_length: int = 140,
    ):
        self._registry = registry
        self._gateway = gateway
        self._repository = repository
        self._catalog = catalog
        self._assistant = assistant
        self._default_speaker_id = default_speaker_id
        self._default_pitch = default_pitch
        self._default_speed = default_speed
        self._max_utterance_length = max_utterance_length
        # Held from assist through enqueue so tasks reach the queue in arrival order
        self._community_locks: dict[str, asyncio.Lock] = {}

    def _community_lock(self, community_id: str) -> asyncio.Lock:
        return self._community_locks.setdefault(community_id, asyncio.Lock())

    async def on_message_created(self, message: MessageCreated) -> bool:
        """Read a chat message aloud. Returns whether a task was queued."""

        if message.author_is_bot or not message.community_id:
            return False

        text = format_message_content(message, self._max_utterance_length)
        if not text:
            return False

        community_id = message.community_id
        async with self._community_lock(community_id):
            await self._repository.set_community_preferred_text_channel(
                community_id, message.channel_id
            )
            if not self._registry.is_connected(community_id):
                logger.debug(
                    "Message from channel %s in community %s skipped (no voice session)",
                    message.channel_id,
                    community_id,
                )
                return False

            task = await self._build_task(community_id, message.author_id, text)
            accepted = self._registry.dispatch(community_id, message.channel_id, task)
        if not accepted:
            logger.debug(
                "Message from channel %s in community %s skipped (session not accepting)",
                message.channel_id,
                community_id,
            )
        return accepted

    async def on_voice_state_changed(self, event: VoiceStateChanged) -> None:
        community_id = event.community_id
        joined = event.new_channel_id
        left = event.previous_channel_id

        if (
            not event.is_bot
            and joined
            and joined != left
            and not self._registry.is_connected(community_id)
        ):
            await self._auto_join(community_id, joined)

        active = self._registry.voice_channel_id(community_id)
        if not active or active not in (joined, left):
            return

        remaining = await self._gateway.count_human_members(community_id, active)
        if remaining == 0:
            self._registry.leave(community_id)
            logger.info(
                "Left voice channel %s in community %s because only the bot remained",
                active,
                community_id,
            )

    async def _auto_join(self, community_id: str, voice_channel_id: str) -> None:
        settings = await self._repository.get_community_settings(community_id)
        if not settings.auto_join:
            return

        text_channel_id = await self.resolve_text_channel(
            community_id, settings.text_channel_id
        )
        if text_channel_id is None:
            logger.warning(
                "Auto-join skipped for community %s because no suitable text channel was found",
                community_id,
            )
            return

        try:
            await self._registry.join(community_id, voice_channel_id, text_channel_id)
        except VoiceConnectionError:
            logger.exception("Failed to auto-join voice channel %s", voice_channel_id)
            return

        await self._repository.set_community_preferred_text_channel(
            community_id, text_channel_id
        )
        logger.info(
            "Auto-joined voice channel %s in community %s because a member joined",
            voice_channel_id,
            community_id,
        )

    async def resolve_text_channel(
        self, community_id: str, preferred: Optional[str]
    ) -> Optional[str]:
        if preferred and await self._gateway.is_text_channel(community_id, preferred):
            return preferred
        return await self._gateway.fallback_text_channel(community_id)

    async def speak(self, request: SpeechRequest) -> SpeechResponse:
        """Speak ``request.text`` as ``request.user_id`` in the bot's voice channel."""

        text = request.text.strip()
        if not text:
            raise SpeechRequestError("text must not be empty", status.HTTP_400_BAD_REQUEST)
        if len(text) > self._max_utterance_length:
            raise SpeechRequestError(
                f"text exceeds maximum length of {self._max_utterance_length}",
                status.HTTP_400_BAD_REQUEST,
            )

        community_id, user_channel_id = await self._locate_user(
            request.user_id, request.community_id
        )

        bot_channel_id = self._registry.voice_channel_id(community_id)
        if not bot_channel_id:
            raise VoiceConnectionError(
                "Bot is not connected to any voice channel in this community"
            )
        if user_channel_id != bot_channel_id:
            raise SpeechRequestError(
                "User is not in the same voice channel as the bot",
                status.HTTP_409_CONFLICT,
            )

        text_channel_id = request.text_channel_id or self._registry.text_channel_id(
            community_id
        )
        if not text_channel_id:
            raise SpeechRequestError(
                "No text channel is currently associated with the voice session",
                status.HTTP_409_CONFLICT,
            )

        async with self._community_lock(community_id):
            task = await self._build_task(
                community_id,
                request.user_id,
                text,
                speaker_id=request.speaker_id,
                pitch=request.pitch,
                speed=request.speed,
            )
            if not self._registry.dispatch(community_id, text_channel_id, task):
                raise VoiceConnectionError("Voice session rejected the speech request")

        return SpeechResponse(
            community_id=community_id,
            voice_channel_id=bot_channel_id,
            text_channel_id=text_channel_id,
            speaker_id=task.speaker_id,
            pitch=task.pitch,
            speed=task.speed,
        )

    async def _locate_user(
        self, user_id: str, community_hint: Optional[str]
    ) -> tuple[str, str]:
        candidates = [community_hint] if community_hint else list(self._gateway.community_ids())
        for community_id in candidates:
            channel_id = await self._gateway.member_voice_channel(community_id, user_id)
            if channel_id:
                return community_id, channel_id
        raise SpeechRequestError(
            "User is not in a voice channel accessible to the bot",
            status.HTTP_404_NOT_FOUND,
        )

    async def _build_task(
        self,
        community_id: str,
        user_id: str,
        text: str,
        *,
        speaker_id: Optional[int] = None,
        pitch: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> SpeechTask:
        prefs = await self._repository.get_user_voice_prefs(community_id, user_id)
        prefs = prefs or UserVoicePreferences(
            pitch=self._default_pitch, speed=self._default_speed
        )
        resolved_speaker = await resolve_speaker_id(
            community_id,
            user_id,
            catalog=self._catalog,
            default_speaker_id=self._default_speaker_id,
            configured_speaker_id=speaker_id if speaker_id is not None else prefs.speaker_id,
        )
        assisted = await self._assistant.assist(
            community_id, user_id, text, resolved_speaker
        )
        return SpeechTask(
            text=assisted.text,
            speaker_id=resolved_speaker,
            pitch=pitch if pitch is not None else prefs.pitch,
            speed=speed if speed is not None else prefs.speed,
            audio_query=assisted.audio_query,
        )


__all__ = ["Assistant", "SpeechDispatcher"]
