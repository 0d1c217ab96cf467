"""Deterministic default voice for users without a configured speaker."""

from __future__ import annotations

import hashlib
import logging
from typing import Optional, Protocol

from .voicevox import SpeakerStyle

logger = logging.getLogger(__name__)


class StyleCatalog(Protocol):
    async def list_speaker_styles(self, force_refresh: bool = False) -> list[SpeakerStyle]: ...


def hashed_index(community_id: str, user_id: str, size: int) -> int:
    digest = hashlib.sha256(f"{community_id}:{user_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % size


async def resolve_speaker_id(
    community_id: str,
    user_id: str,
    *,
    catalog: StyleCatalog,
    default_speaker_id: int,
    configured_speaker_id: Optional[int] = None,
) -> int:
    """Return the configured speaker, else a stable pick among "normal" styles.

    Falls back to ``default_speaker_id`` when the catalog is unavailable,
    empty, or offers no normal-style voices.
    """

    if configured_speaker_id is not None and configured_speaker_id >= 0:
        return configured_speaker_id

    try:
        styles = await catalog.list_speaker_styles()
    except Exception as exc:
        logger.warning(
            "Failed to resolve hashed speaker for community=%s user=%s: %s",
            community_id,
            user_id,
            exc,
        )
        return default_speaker_id

    if not styles:
        return default_speaker_id

    normal_styles = [style for style in styles if style.is_normal]
    if not normal_styles:
        logger.warning(
            "No normal styles found in the voice catalog; falling back to default speaker"
        )
        return default_speaker_id

    return normal_styles[hashed_index(community_id, user_id, len(normal_styles))].style_id


__all__ = ["StyleCatalog", "hashed_index", "resolve_speaker_id"]
