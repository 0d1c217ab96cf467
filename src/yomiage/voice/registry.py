"""Community -> voice session registry; single entry point for join/leave/dispatch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .gateway import VoiceGateway
from .session import SpeechTask, Synthesizer, VoiceSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Holds at most one live :class:`VoiceSession` per community."""

    def __init__(
        self,
        gateway: VoiceGateway,
        synthesizer: Synthesizer,
        *,
        connect_timeout: float = 10.0,
        playback_start_timeout: float = 5.0,
    ):
        self._gateway = gateway
        self._synthesizer = synthesizer
        self._connect_timeout = connect_timeout
        self._playback_start_timeout = playback_start_timeout
        self._sessions: dict[str, VoiceSession] = {}
        self._pending_joins: dict[str, asyncio.Task[VoiceSession]] = {}

    async def join(
        self, community_id: str, voice_channel_id: str, text_channel_id: str
    ) -> VoiceSession:
        """Join a voice channel, or retarget the text channel of an existing session.

        Raises :class:`~yomiage.errors.VoiceConnectionError` when the connection
        cannot be made ready; nothing is registered in that case.
        """

        existing = self._sessions.get(community_id)
        if existing is not None:
            existing.update_text_channel(text_channel_id)
            return existing

        pending = self._pending_joins.get(community_id)
        if pending is not None:
            session = await asyncio.shield(pending)
            session.update_text_channel(text_channel_id)
            return session

        task = asyncio.ensure_future(
            self._connect(community_id, voice_channel_id, text_channel_id)
        )
        self._pending_joins[community_id] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._pending_joins.get(community_id) is task:
                del self._pending_joins[community_id]

    async def _connect(
        self, community_id: str, voice_channel_id: str, text_channel_id: str
    ) -> VoiceSession:
        session = VoiceSession(
            community_id,
            voice_channel_id,
            text_channel_id,
            self._gateway,
            self._synthesizer,
            on_destroyed=self._forget,
            connect_timeout=self._connect_timeout,
            playback_start_timeout=self._playback_start_timeout,
        )
        await session.connect()
        self._sessions[community_id] = session
        logger.info(
            "Joined voice channel %s in community %s", voice_channel_id, community_id
        )
        return session

    def _forget(self, session: VoiceSession) -> None:
        if self._sessions.get(session.community_id) is session:
            del self._sessions[session.community_id]

    def leave(self, community_id: str) -> bool:
        session = self._sessions.pop(community_id, None)
        if session is None:
            return False
        session.destroy()
        logger.info("Left voice channel in community %s", community_id)
        return True

    def dispatch(
        self, community_id: str, text_channel_id: str, task: SpeechTask
    ) -> bool:
        """Queue a task on the community's session; False if there is none."""

        session = self._sessions.get(community_id)
        if session is None:
            logger.debug("No active voice session for community %s", community_id)
            return False

        if session.text_channel_id != text_channel_id:
            logger.debug(
                "Switching tracked text channel from %s to %s for community %s",
                session.text_channel_id,
                text_channel_id,
                community_id,
            )
            session.update_text_channel(text_channel_id)

        return session.enqueue(task)

    def get(self, community_id: str) -> Optional[VoiceSession]:
        return self._sessions.get(community_id)

    def is_connected(self, community_id: str) -> bool:
        return community_id in self._sessions

    def update_text_channel(self, community_id: str, text_channel_id: str) -> None:
        session = self._sessions.get(community_id)
        if session is not None:
            session.update_text_channel(text_channel_id)

    def voice_channel_id(self, community_id: str) -> Optional[str]:
        session = self._sessions.get(community_id)
        return session.voice_channel_id if session else None

    def text_channel_id(self, community_id: str) -> Optional[str]:
        session = self._sessions.get(community_id)
        return session.text_channel_id if session else None

    def snapshot(self) -> list[dict[str, Any]]:
        return [session.to_dict() for session in self._sessions.values()]

    def destroy_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session.destroy()


__all__ = ["SessionRegistry"]
