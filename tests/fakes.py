"""In-memory doubles for the voice gateway and synthesis engine."""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Sequence

from yomiage.errors import SynthesisError
from yomiage.voice.gateway import VoiceConnection, VoiceEvent


class FakeConnection(VoiceConnection):
    """Voice connection whose player finishes each clip on the next loop turns."""

    def __init__(self, *, auto_ready: bool = True, auto_play: bool = True) -> None:
        super().__init__()
        self.ready = False
        self.auto_play = auto_play
        self.played: list[bytes] = []
        self.stop_calls = 0
        if auto_ready:
            asyncio.get_running_loop().call_soon(self.become_ready)

    def become_ready(self) -> None:
        self.ready = True
        self.emit(VoiceEvent.READY)

    @property
    def is_ready(self) -> bool:
        return self.ready

    def play(self, audio: bytes) -> None:
        self.played.append(audio)
        if self.auto_play:
            loop = asyncio.get_running_loop()
            loop.call_soon(self.emit, VoiceEvent.PLAYING)
            loop.call_soon(lambda: loop.call_soon(self.emit, VoiceEvent.IDLE))

    def stop(self) -> None:
        self.stop_calls += 1


class FakeGateway:
    def __init__(
        self,
        *,
        auto_ready: bool = True,
        auto_play: bool = True,
        text_channels: Optional[dict[str, set[str]]] = None,
        fallback_channels: Optional[dict[str, str]] = None,
    ) -> None:
        self.auto_ready = auto_ready
        self.auto_play = auto_play
        self.connections: list[FakeConnection] = []
        self.joins: list[tuple[str, str]] = []
        self.left: list[FakeConnection] = []
        self.human_members: dict[tuple[str, str], int] = {}
        self.member_channels: dict[tuple[str, str], str] = {}
        self.text_channels = text_channels or {}
        self.fallback_channels = fallback_channels or {}

    def join(self, community_id: str, voice_channel_id: str) -> FakeConnection:
        self.joins.append((community_id, voice_channel_id))
        connection = FakeConnection(auto_ready=self.auto_ready, auto_play=self.auto_play)
        self.connections.append(connection)
        return connection

    def leave(self, connection: VoiceConnection) -> None:
        assert isinstance(connection, FakeConnection)
        self.left.append(connection)

    async def count_human_members(
        self, community_id: str, voice_channel_id: str
    ) -> Optional[int]:
        return self.human_members.get((community_id, voice_channel_id))

    async def is_text_channel(self, community_id: str, channel_id: str) -> bool:
        return channel_id in self.text_channels.get(community_id, set())

    async def fallback_text_channel(self, community_id: str) -> Optional[str]:
        return self.fallback_channels.get(community_id)

    async def member_voice_channel(self, community_id: str, user_id: str) -> Optional[str]:
        return self.member_channels.get((community_id, user_id))

    def community_ids(self) -> Sequence[str]:
        ids = {community for community, _ in self.member_channels}
        ids.update(community for community, _ in self.human_members)
        return sorted(ids)


class RecordingSynthesizer:
    """Returns ``text`` encoded as audio; raises for texts listed in ``fail_on``."""

    def __init__(self, *, fail_on: Sequence[str] = (), delay: float = 0.0) -> None:
        self.fail_on = set(fail_on)
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def synthesize(
        self,
        text: str,
        speaker_id: int,
        *,
        pitch: float = 0.0,
        speed: float = 1.0,
        audio_query: Optional[dict[str, Any]] = None,
    ) -> bytes:
        self.calls.append(
            {
                "text": text,
                "speaker_id": speaker_id,
                "pitch": pitch,
                "speed": speed,
                "audio_query": audio_query,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if text in self.fail_on:
            raise SynthesisError(f"engine rejected {text!r}", status_code=500)
        return text.encode("utf-8")
