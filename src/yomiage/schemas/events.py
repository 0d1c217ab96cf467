"""Inbound gateway events, already decoupled from any chat-platform SDK."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class Attachment:
    name: Optional[str] = None
    content_type: Optional[str] = None


@dataclass
class MessageCreated:
    """A text message posted in a community text channel.

    The mention maps resolve raw ``<@id>``, ``<@&id>`` and ``<#id>`` tokens
    to the names that should be read aloud.
    """

    community_id: Optional[str]
    channel_id: str
    author_id: str
    text: str
    attachments: list[Attachment] = field(default_factory=list)
    author_is_bot: bool = False
    user_mentions: dict[str, str] = field(default_factory=dict)
    role_mentions: dict[str, str] = field(default_factory=dict)
    channel_mentions: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VoiceStateChanged:
    community_id: str
    user_id: str
    previous_channel_id: Optional[str]
    new_channel_id: Optional[str]
    is_bot: bool = False


__all__ = ["Attachment", "MessageCreated", "VoiceStateChanged"]
