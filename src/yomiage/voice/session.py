"""Per-community voice session and its ordered speech queue.

A session owns one voice connection and plays queued utterances strictly
one at a time. Synthesis of the next task only starts after playback of the
previous one has fully resolved, so synthesis and playback are serialized
together rather than pipelined.

States::

    IDLE -> CONNECTING -> READY <-> PLAYING
    (any) -> DESTROYED
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from ..errors import VoiceConnectionError
from .gateway import VoiceConnection, VoiceEvent, VoiceGateway

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    PLAYING = "playing"
    DESTROYED = "destroyed"


@dataclass
class SpeechTask:
    """One utterance waiting for synthesis and playback."""

    text: str
    speaker_id: int
    pitch: float = 0.0
    speed: float = 1.0
    # Precomputed synthesis query, set when the assist pipeline rebuilt the accent phrases
    audio_query: Optional[dict[str, Any]] = None


class Synthesizer(Protocol):
    async def synthesize(
        self,
        text: str,
        speaker_id: int,
        *,
        pitch: float = 0.0,
        speed: float = 1.0,
        audio_query: Optional[dict[str, Any]] = None,
    ) -> bytes: ...


class VoiceSession:
    """The live binding between a community, its voice channel, and its queue."""

    def __init__(
        self,
        community_id: str,
        voice_channel_id: str,
        text_channel_id: str,
        gateway: VoiceGateway,
        synthesizer: Synthesizer,
        *,
        on_destroyed: Optional[Callable[["VoiceSession"], None]] = None,
        connect_timeout: float = 10.0,
        playback_start_timeout: float = 5.0,
    ):
        self.community_id = community_id
        self.voice_channel_id = voice_channel_id
        self.text_channel_id = text_channel_id
        self.state = SessionState.IDLE
        self.created_at = datetime.now(timezone.utc)

        self._gateway = gateway
        self._synthesizer = synthesizer
        self._on_destroyed = on_destroyed
        self._connect_timeout = connect_timeout
        self._playback_start_timeout = playback_start_timeout

        self._connection: Optional[VoiceConnection] = None
        self._queue: deque[SpeechTask] = deque()
        self._processing = False
        self._worker: Optional[asyncio.Task[None]] = None
        self._playback_done: Optional[asyncio.Future[None]] = None

    @property
    def destroyed(self) -> bool:
        return self.state is SessionState.DESTROYED

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def pending(self) -> int:
        return len(self._queue)

    def update_text_channel(self, text_channel_id: str) -> None:
        self.text_channel_id = text_channel_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "community_id": self.community_id,
            "voice_channel_id": self.voice_channel_id,
            "text_channel_id": self.text_channel_id,
            "state": self.state.value,
            "pending": self.pending,
            "created_at": self.created_at.isoformat(),
        }

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the voice connection and wait, bounded, until it is ready."""

        if self.state is not SessionState.IDLE:
            raise VoiceConnectionError(
                f"Session for community {self.community_id} is {self.state.value}"
            )

        self.state = SessionState.CONNECTING
        try:
            connection = self._gateway.join(self.community_id, self.voice_channel_id)
        except Exception as exc:
            self.state = SessionState.DESTROYED
            raise VoiceConnectionError(
                f"Failed to join voice channel {self.voice_channel_id}: {exc}"
            ) from exc
        self._connection = connection

        loop = asyncio.get_running_loop()
        ready: asyncio.Future[None] = loop.create_future()

        def _on_ready(*_: Any) -> None:
            if not ready.done():
                ready.set_result(None)

        def _on_failure(error: Any = None) -> None:
            if not ready.done():
                ready.set_exception(
                    VoiceConnectionError(f"Voice connection failed before ready: {error}")
                )

        connection.on(VoiceEvent.READY, _on_ready)
        connection.on(VoiceEvent.ERROR, _on_failure)
        connection.on(VoiceEvent.DISCONNECTED, _on_failure)
        try:
            if connection.is_ready:
                _on_ready()
            await asyncio.wait_for(ready, timeout=self._connect_timeout)
        except (asyncio.TimeoutError, VoiceConnectionError) as exc:
            self._abort_connection()
            if isinstance(exc, VoiceConnectionError):
                raise
            raise VoiceConnectionError(
                f"Voice connection to {self.voice_channel_id} was not ready "
                f"within {self._connect_timeout:.0f}s"
            ) from exc
        finally:
            connection.off(VoiceEvent.READY, _on_ready)
            connection.off(VoiceEvent.ERROR, _on_failure)
            connection.off(VoiceEvent.DISCONNECTED, _on_failure)

        connection.on(VoiceEvent.ERROR, self._handle_connection_error)
        connection.on(VoiceEvent.DISCONNECTED, self._handle_disconnected)
        self.state = SessionState.READY

    def _abort_connection(self) -> None:
        self.state = SessionState.DESTROYED
        if self._connection is None:
            return
        try:
            self._gateway.leave(self._connection)
        except Exception:
            logger.exception(
                "Failed to release voice connection for community %s",
                self.community_id,
            )

    def _handle_connection_error(self, error: Any = None) -> None:
        logger.error(
            "Voice connection error in community %s: %s", self.community_id, error
        )
        self.destroy()

    def _handle_disconnected(self, *_: Any) -> None:
        logger.info("Voice connection dropped in community %s", self.community_id)
        self.destroy()

    def destroy(self) -> None:
        """Stop playback, drop the queue, and release the connection. Idempotent."""

        if self.state is SessionState.DESTROYED:
            return
        self.state = SessionState.DESTROYED

        dropped = len(self._queue)
        self._queue.clear()
        if self._playback_done is not None and not self._playback_done.done():
            self._playback_done.set_result(None)

        connection = self._connection
        if connection is not None:
            connection.off(VoiceEvent.ERROR, self._handle_connection_error)
            connection.off(VoiceEvent.DISCONNECTED, self._handle_disconnected)
            try:
                connection.stop()
                self._gateway.leave(connection)
            except Exception:
                logger.exception(
                    "Error while destroying voice session for community %s",
                    self.community_id,
                )

        if self._on_destroyed is not None:
            self._on_destroyed(self)
        logger.debug(
            "Destroyed voice session for community %s (%d queued task(s) dropped)",
            self.community_id,
            dropped,
        )

    # ------------------------------------------------------------------
    # Speech queue
    # ------------------------------------------------------------------

    def enqueue(self, task: SpeechTask) -> bool:
        """Append a task; start the processing loop if it is not running."""

        if self.destroyed:
            return False
        self._queue.append(task)
        if not self._processing:
            self._processing = True
            self._worker = asyncio.create_task(self._process_queue())
        return True

    async def wait_idle(self) -> None:
        """Wait until the processing loop has drained the queue."""

        worker = self._worker
        if worker is not None:
            await asyncio.shield(worker)

    async def _process_queue(self) -> None:
        try:
            while self._queue and not self.destroyed:
                task = self._queue.popleft()
                try:
                    audio = await self._synthesizer.synthesize(
                        task.text,
                        task.speaker_id,
                        pitch=task.pitch,
                        speed=task.speed,
                        audio_query=task.audio_query,
                    )
                except Exception as exc:
                    logger.error(
                        "Failed to synthesize speech in community %s: %s",
                        self.community_id,
                        exc,
                    )
                    continue

                # Result of a request that outlived the session is discarded
                if self.destroyed:
                    break
                try:
                    await self._play(audio)
                except Exception:
                    logger.exception(
                        "Playback failed in community %s; skipping task", self.community_id
                    )
        finally:
            self._processing = False
            self._worker = None

    async def _play(self, audio: bytes) -> None:
        connection = self._connection
        if connection is None:
            return

        loop = asyncio.get_running_loop()
        started: asyncio.Future[None] = loop.create_future()
        finished: asyncio.Future[None] = loop.create_future()

        def _on_playing(*_: Any) -> None:
            if not started.done():
                started.set_result(None)

        def _on_idle(*_: Any) -> None:
            if not finished.done():
                finished.set_result(None)

        def _on_error(error: Any = None) -> None:
            logger.error(
                "Audio playback error in community %s: %s", self.community_id, error
            )
            if not finished.done():
                finished.set_result(None)

        connection.on(VoiceEvent.PLAYING, _on_playing)
        connection.on(VoiceEvent.IDLE, _on_idle)
        connection.on(VoiceEvent.PLAYER_ERROR, _on_error)
        self._playback_done = finished
        self.state = SessionState.PLAYING
        try:
            try:
                connection.play(audio)
            except Exception:
                logger.exception("Failed to start playback in community %s", self.community_id)
                return
            await asyncio.wait(
                {started, finished},
                timeout=self._playback_start_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not started.done() and not finished.done():
                logger.error(
                    "Playback did not start within %.0fs in community %s",
                    self._playback_start_timeout,
                    self.community_id,
                )
                try:
                    connection.stop()
                except Exception:
                    logger.exception(
                        "Failed to stop stalled playback in community %s", self.community_id
                    )
                return
            await finished
        finally:
            connection.off(VoiceEvent.PLAYING, _on_playing)
            connection.off(VoiceEvent.IDLE, _on_idle)
            connection.off(VoiceEvent.PLAYER_ERROR, _on_error)
            self._playback_done = None
            if not self.destroyed:
                self.state = SessionState.READY


__all__ = ["SessionState", "SpeechTask", "Synthesizer", "VoiceSession"]
