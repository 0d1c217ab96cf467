"""Voice sessions, their speech queues, and the per-community registry."""

from .gateway import VoiceConnection, VoiceEvent, VoiceGateway
from .registry import SessionRegistry
from .session import SessionState, SpeechTask, Synthesizer, VoiceSession

__all__ = [
    "SessionRegistry",
    "SessionState",
    "SpeechTask",
    "Synthesizer",
    "VoiceConnection",
    "VoiceEvent",
    "VoiceGateway",
    "VoiceSession",
]
