"""Two-stage LLM assist: text rewrite, then kana prosody touch-up.

The pipeline never blocks speech. Every failure degrades: stage 1 falls
back to the raw text, stage 2 falls back to the stage 1 text, and anything
unexpected falls back to the raw input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence, TypeVar

from ..errors import CredentialError, ProviderError, SynthesisError
from ..schemas.credentials import CredentialRecord
from ..schemas.settings import UserLlmPreferences
from ..services.credential_vault import CredentialVault
from ..services.text_shaping import apply_max_length, normalize_kana, soften_punctuation
from .providers import CompletionProvider
from .types import DEFAULT_MODELS, PROVIDER_PRIORITY, LlmProvider, PipelineStage

logger = logging.getLogger(__name__)

T = TypeVar("T")

REWRITE_INSTRUCTION = """You are a Japanese speech-text assistant.
Rewrite user input into natural Japanese for TTS while preserving the intent.
Prioritize:
- Expand abbreviations into readable Japanese words (e.g., MTG -> ミーティング).
- Normalize time/number expressions into spoken form (e.g., 10:30 -> 10時半 or 10時30分).
- Fix obvious typos only when highly confident from context.
- Keep sentence meaning and tone.
Return only the rewritten Japanese text. No explanations.

Examples:
Input: 明日10:30にMTG、場所はShibuyaです!
Output: 明日10時30分にミーティング、場所は渋谷です！

Input: APIのレスポンスが404だったのでretryした
Output: APIのレスポンスが404だったのでリトライした"""

PROSODY_INSTRUCTION = """You are a VOICEVOX kana accent editor.
You will receive VOICEVOX kana notation and must adjust only accent/prosody markers.
Rules:
- Keep lexical readings as-is whenever possible.
- Prefer minimal edits.
- You may adjust only punctuation/prosody markers such as ', /, 、, +, ;, _.
- Do not add explanations.
Return only the corrected kana string."""


@dataclass
class AssistResult:
    text: str
    audio_query: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class LlmCandidate:
    provider: LlmProvider
    key: CredentialRecord
    model: str


class LlmPreferencesSource(Protocol):
    async def get_user_llm_prefs(
        self, community_id: str, user_id: str
    ) -> Optional[UserLlmPreferences]: ...


class AccessibleCredentialSource(Protocol):
    async def find_accessible_credential(
        self, community_id: str, user_id: str, provider: LlmProvider, key_id: str
    ) -> Optional[CredentialRecord]: ...

    async def find_accessible_credentials_by_provider(
        self, community_id: str, user_id: str, provider: LlmProvider
    ) -> list[CredentialRecord]: ...


class AccentEngine(Protocol):
    async def build_audio_query(self, text: str, speaker_id: int) -> dict[str, Any]: ...

    async def build_accent_phrases_from_kana(
        self, kana: str, speaker_id: int
    ) -> list[dict[str, Any]]: ...


RotationKey = tuple[str, str, LlmProvider, PipelineStage]


class RotationCursor:
    """Round-robin cursors keyed by (community, user, provider, stage).

    Each :meth:`rotate` is a single read-modify-write with no suspension
    point, so concurrent invocations on the event loop never interleave.
    Cursors live in memory only and reset on restart.
    """

    def __init__(self) -> None:
        self._cursors: dict[RotationKey, int] = {}

    def rotate(self, key: RotationKey, items: Sequence[T]) -> list[T]:
        if not items:
            return []
        start = self._cursors.get(key, 0) % len(items)
        self._cursors[key] = (start + 1) % len(items)
        return [*items[start:], *items[:start]]


class LlmAssistPipeline:
    """Optionally improve an utterance before synthesis."""

    def __init__(
        self,
        *,
        preferences: LlmPreferencesSource,
        credentials: AccessibleCredentialSource,
        vault: CredentialVault,
        engine: AccentEngine,
        providers: Mapping[LlmProvider, CompletionProvider],
        max_utterance_length: int,
        provider_priority: Sequence[LlmProvider] = PROVIDER_PRIORITY,
    ):
        self._preferences = preferences
        self._credentials = credentials
        self._vault = vault
        self._engine = engine
        self._providers = dict(providers)
        self._max_utterance_length = max_utterance_length
        self._provider_priority = tuple(provider_priority)
        self._rotation = RotationCursor()

    async def assist(
        self, community_id: str, user_id: str, text: str, speaker_id: int
    ) -> AssistResult:
        try:
            return await self._assist(community_id, user_id, text, speaker_id)
        except Exception:
            logger.warning(
                "LLM assist failed; fallback to original text (community=%s user=%s)",
                community_id,
                user_id,
                exc_info=True,
            )
            return AssistResult(text=text)

    async def _assist(
        self, community_id: str, user_id: str, text: str, speaker_id: int
    ) -> AssistResult:
        prefs = await self._preferences.get_user_llm_prefs(community_id, user_id)
        if prefs is None or not prefs.enabled:
            return AssistResult(text=text)

        if prefs.api_key_id and prefs.provider is None:
            logger.warning(
                "LLM assist invalid for community=%s user=%s: api_key_id requires provider",
                community_id,
                user_id,
            )
            return AssistResult(text=text)

        rewritten = await self.rewrite(community_id, user_id, text, prefs)
        if rewritten is None:
            return AssistResult(text=text)

        return await self.touch_up_prosody(
            community_id, user_id, rewritten, speaker_id, prefs
        )

    async def rewrite(
        self,
        community_id: str,
        user_id: str,
        text: str,
        prefs: UserLlmPreferences,
    ) -> Optional[str]:
        """Stage 1. ``None`` means no candidate produced usable output."""

        candidates = await self.build_candidates(
            community_id, user_id, prefs, PipelineStage.REWRITE
        )
        if not candidates:
            logger.warning(
                "No available LLM API key for %s community=%s user=%s",
                PipelineStage.REWRITE.value,
                community_id,
                user_id,
            )
            return None

        output = await self._run_stage(
            candidates, REWRITE_INSTRUCTION, text, user_id, PipelineStage.REWRITE
        )
        if output is None:
            return None
        return apply_max_length(soften_punctuation(output), self._max_utterance_length)

    async def touch_up_prosody(
        self,
        community_id: str,
        user_id: str,
        text: str,
        speaker_id: int,
        prefs: UserLlmPreferences,
    ) -> AssistResult:
        """Stage 2. Always returns at least the stage 1 text."""

        try:
            base_query = await self._engine.build_audio_query(text, speaker_id)
        except SynthesisError as exc:
            logger.warning(
                "LLM assist %s skipped (audio_query failed) community=%s user=%s: %s",
                PipelineStage.PROSODY.value,
                community_id,
                user_id,
                exc,
            )
            return AssistResult(text=text)

        source_kana = base_query.get("kana")
        source_kana = source_kana.strip() if isinstance(source_kana, str) else ""
        if not source_kana:
            return AssistResult(text=text)

        candidates = await self.build_candidates(
            community_id, user_id, prefs, PipelineStage.PROSODY
        )
        if not candidates:
            logger.warning(
                "No available LLM API key for %s community=%s user=%s",
                PipelineStage.PROSODY.value,
                community_id,
                user_id,
            )
            return AssistResult(text=text)

        stage_input = f"Original text:\n{text}\n\nKana:\n{source_kana}"
        raw_kana = await self._run_stage(
            candidates, PROSODY_INSTRUCTION, stage_input, user_id, PipelineStage.PROSODY
        )
        kana = normalize_kana(raw_kana) if raw_kana else ""
        if not kana:
            return AssistResult(text=text)

        try:
            accent_phrases = await self._engine.build_accent_phrases_from_kana(
                kana, speaker_id
            )
        except SynthesisError as exc:
            logger.warning(
                "LLM assist %s skipped (accent parse failed) community=%s user=%s: %s",
                PipelineStage.PROSODY.value,
                community_id,
                user_id,
                exc,
            )
            return AssistResult(text=text)

        return AssistResult(
            text=text,
            audio_query={**base_query, "kana": kana, "accent_phrases": accent_phrases},
        )

    async def _run_stage(
        self,
        candidates: Sequence[LlmCandidate],
        instruction: str,
        input_text: str,
        user_id: str,
        stage: PipelineStage,
    ) -> Optional[str]:
        last_error: Optional[str] = None
        for candidate in candidates:
            provider = self._providers.get(candidate.provider)
            if provider is None:
                last_error = f"provider {candidate.provider.value} is not configured"
                continue
            try:
                api_key = self._vault.decrypt_for_use(candidate.key, user_id)
                return await provider.generate(
                    instruction, input_text, model=candidate.model, api_key=api_key
                )
            except ProviderError as exc:
                last_error = exc.summary()
            except CredentialError as exc:
                last_error = str(exc)
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "LLM assist %s attempt raised unexpectedly provider=%s keyId=%s",
                    stage.value,
                    candidate.provider.value,
                    candidate.key.key_id,
                    exc_info=True,
                )
                continue
            logger.warning(
                "LLM assist %s attempt failed provider=%s keyId=%s: %s",
                stage.value,
                candidate.provider.value,
                candidate.key.key_id,
                last_error,
            )

        logger.warning(
            "LLM assist %s failed after %d attempt(s): %s",
            stage.value,
            len(candidates),
            last_error,
        )
        return None

    async def build_candidates(
        self,
        community_id: str,
        user_id: str,
        prefs: UserLlmPreferences,
        stage: PipelineStage,
    ) -> list[LlmCandidate]:
        model_override = prefs.model.strip() if prefs.model else ""

        def _model(provider: LlmProvider) -> str:
            return model_override or DEFAULT_MODELS[provider]

        if prefs.provider is not None and prefs.api_key_id:
            key = await self._credentials.find_accessible_credential(
                community_id, user_id, prefs.provider, prefs.api_key_id
            )
            if key is None:
                logger.warning(
                    "LLM assist %s key not accessible for community=%s user=%s "
                    "provider=%s keyId=%s",
                    stage.value,
                    community_id,
                    user_id,
                    prefs.provider.value,
                    prefs.api_key_id,
                )
                return []
            return [LlmCandidate(prefs.provider, key, _model(prefs.provider))]

        providers = (
            (prefs.provider,) if prefs.provider is not None else self._provider_priority
        )
        candidates: list[LlmCandidate] = []
        for provider in providers:
            keys = await self._select_by_rotation(community_id, user_id, provider, stage)
            candidates.extend(LlmCandidate(provider, key, _model(provider)) for key in keys)
        return candidates

    async def _select_by_rotation(
        self,
        community_id: str,
        user_id: str,
        provider: LlmProvider,
        stage: PipelineStage,
    ) -> list[CredentialRecord]:
        keys = await self._credentials.find_accessible_credentials_by_provider(
            community_id, user_id, provider
        )
        return self._rotation.rotate((community_id, user_id, provider, stage), keys)


class PassthroughAssist:
    """Stand-in used when no credential master key is configured."""

    async def assist(
        self, community_id: str, user_id: str, text: str, speaker_id: int
    ) -> AssistResult:
        return AssistResult(text=text)


__all__ = [
    "AssistResult",
    "LlmAssistPipeline",
    "LlmCandidate",
    "PROSODY_INSTRUCTION",
    "PassthroughAssist",
    "REWRITE_INSTRUCTION",
    "RotationCursor",
]
