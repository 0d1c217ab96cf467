"""Completion providers and the two-stage assist pipeline."""

from .providers import (
    PROVIDER_CLASSES,
    CompletionProvider,
    GeminiProvider,
    OpenAIProvider,
    build_providers,
)
from .types import DEFAULT_MODELS, PROVIDER_PRIORITY, LlmProvider, PipelineStage

__all__ = [
    "CompletionProvider",
    "DEFAULT_MODELS",
    "GeminiProvider",
    "LlmProvider",
    "OpenAIProvider",
    "PROVIDER_CLASSES",
    "PROVIDER_PRIORITY",
    "PipelineStage",
    "build_providers",
]
