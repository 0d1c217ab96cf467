"""Shared enums and static configuration for the completion providers."""

from __future__ import annotations

from enum import Enum


class LlmProvider(str, Enum):
    """Completion providers that can back the assist pipeline."""

    GEMINI = "gemini"
    OPENAI = "openai"


class PipelineStage(str, Enum):
    """The two ordered transforms of the assist pipeline."""

    REWRITE = "stage1"
    PROSODY = "stage2"


# Tried in this order when the user has not pinned a provider.
PROVIDER_PRIORITY: tuple[LlmProvider, ...] = (LlmProvider.GEMINI, LlmProvider.OPENAI)

DEFAULT_MODELS: dict[LlmProvider, str] = {
    LlmProvider.GEMINI: "gemini-2.5-flash-lite",
    LlmProvider.OPENAI: "gpt-4o-mini",
}


def is_llm_provider(value: object) -> bool:
    if isinstance(value, LlmProvider):
        return True
    return isinstance(value, str) and value in {p.value for p in LlmProvider}


__all__ = [
    "DEFAULT_MODELS",
    "LlmProvider",
    "PROVIDER_PRIORITY",
    "PipelineStage",
    "is_llm_provider",
]
