"""Contracts for the chat-platform voice primitives the core depends on."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

Listener = Callable[..., None]


class VoiceEvent(str, Enum):
    """Signals emitted by a voice connection and its audio player."""

    READY = "ready"
    ERROR = "error"
    DISCONNECTED = "disconnected"
    PLAYING = "playing"
    IDLE = "idle"
    PLAYER_ERROR = "player_error"


class VoiceConnection(ABC):
    """A live voice connection handle, owned by exactly one session.

    Adapters for a concrete chat platform subclass this and call
    :meth:`emit` from their platform callbacks. The player signals
    ``PLAYING``/``IDLE``/``PLAYER_ERROR`` follow each :meth:`play` call.
    """

    def __init__(self) -> None:
        self._listeners: dict[VoiceEvent, list[Listener]] = defaultdict(list)

    def on(self, event: VoiceEvent, callback: Listener) -> None:
        self._listeners[event].append(callback)

    def off(self, event: VoiceEvent, callback: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and callback in listeners:
            listeners.remove(callback)

    def listener_count(self, event: VoiceEvent) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: VoiceEvent, *args: Any) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception:
                logger.exception("Voice listener for %s failed", event.value)

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """Whether the connection has already reached the ready state."""

    @abstractmethod
    def play(self, audio: bytes) -> None:
        """Start playing an encoded audio stream."""

    @abstractmethod
    def stop(self) -> None:
        """Stop any in-flight playback."""


class VoiceGateway(Protocol):
    """Voice and lookup primitives provided by the chat-platform client."""

    def join(self, community_id: str, voice_channel_id: str) -> VoiceConnection:
        """Open a connection; readiness is signalled through ``VoiceEvent.READY``."""
        ...

    def leave(self, connection: VoiceConnection) -> None:
        """Release a connection previously returned by :meth:`join`."""
        ...

    async def count_human_members(
        self, community_id: str, voice_channel_id: str
    ) -> Optional[int]:
        """Non-bot members in a voice channel, or ``None`` if it is unknown."""
        ...

    async def is_text_channel(self, community_id: str, channel_id: str) -> bool:
        ...

    async def fallback_text_channel(self, community_id: str) -> Optional[str]:
        """System channel or first text channel of the community."""
        ...

    async def member_voice_channel(
        self, community_id: str, user_id: str
    ) -> Optional[str]:
        ...

    def community_ids(self) -> Sequence[str]:
        ...


__all__ = ["Listener", "VoiceConnection", "VoiceEvent", "VoiceGateway"]
