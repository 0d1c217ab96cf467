"""Helpers that turn chat text into something pleasant to read aloud."""

from __future__ import annotations

import re

from ..schemas.events import Attachment, MessageCreated

TRUNCATION_SUFFIX = " 以下略"
MAX_CLAUSE_SEPARATORS_PER_SENTENCE = 2

_SENTENCE_TERMINATORS = frozenset("。!！?？")
_URL_PATTERN = re.compile(r"https?://\S+", re.IGNORECASE)
_CUSTOM_EMOJI_PATTERN = re.compile(r"<a?:(\w+):\d+>", re.IGNORECASE)
_IMAGE_EXTENSION_PATTERN = re.compile(
    r"\.(apng|avif|bmp|gif|jpe?g|jfif|png|svg|webp|heic|heif)$", re.IGNORECASE
)
_WHITESPACE_RUN = re.compile(r"\s{2,}")


def apply_max_length(text: str, max_length: int) -> str:
    """Clamp ``text`` to ``max_length`` characters, marking the cut."""

    if len(text) <= max_length:
        return text
    return f"{text[:max_length]}{TRUNCATION_SUFFIX}"


def soften_punctuation(text: str) -> str:
    """Keep at most two ``、`` per sentence so synthesis does not over-pause."""

    separators_in_sentence = 0
    chars: list[str] = []
    for char in text:
        if char == "、":
            if separators_in_sentence < MAX_CLAUSE_SEPARATORS_PER_SENTENCE:
                chars.append(char)
                separators_in_sentence += 1
            continue
        chars.append(char)
        if char in _SENTENCE_TERMINATORS:
            separators_in_sentence = 0

    result = "".join(chars)
    result = re.sub(r"、{2,}", "、", result)
    result = re.sub(r"、([。！？!?])", r"\1", result)
    result = _WHITESPACE_RUN.sub(" ", result)
    return result.strip()


def normalize_kana(text: str) -> str:
    return re.sub(r"\s+", "", text.strip())


def is_image_attachment(attachment: Attachment) -> bool:
    content_type = (attachment.content_type or "").lower()
    if content_type.startswith("image/"):
        return True
    return bool(_IMAGE_EXTENSION_PATTERN.search(attachment.name or ""))


def _replace_mentions(message: MessageCreated, content: str) -> str:
    for user_id, display_name in message.user_mentions.items():
        content = content.replace(f"<@{user_id}>", display_name)
        content = content.replace(f"<@!{user_id}>", display_name)
    for role_id, role_name in message.role_mentions.items():
        content = content.replace(f"<@&{role_id}>", role_name)
    for channel_id, channel_name in message.channel_mentions.items():
        content = content.replace(f"<#{channel_id}>", channel_name or "チャンネル")
    return content


def format_message_content(message: MessageCreated, max_length: int) -> str:
    """Shape an inbound message into one utterance; empty means nothing to say."""

    content = _replace_mentions(message, message.text or "")

    content = re.sub("@everyone", "みんな", content, flags=re.IGNORECASE)
    content = re.sub("@here", "その場にいるみんな", content, flags=re.IGNORECASE)
    content = _URL_PATTERN.sub("URLリンク", content)
    content = _CUSTOM_EMOJI_PATTERN.sub(
        lambda match: f"カスタム絵文字 {match.group(1)}", content
    )
    content = re.sub(r"[\r\n]+", "、", content)
    content = _WHITESPACE_RUN.sub(" ", content).strip()

    files = [a for a in message.attachments if not is_image_attachment(a)]
    if files:
        summary = "、".join(a.name or "ファイル" for a in files)
        content = f"{content}、添付: {summary}" if content else f"添付: {summary}"

    return apply_max_length(content, max_length)


__all__ = [
    "TRUNCATION_SUFFIX",
    "apply_max_length",
    "format_message_content",
    "is_image_attachment",
    "normalize_kana",
    "soften_punctuation",
]
