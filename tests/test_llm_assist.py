from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Optional

import pytest

from yomiage.errors import ProviderError, SynthesisError
from yomiage.llm.assist import (
    PROSODY_INSTRUCTION,
    REWRITE_INSTRUCTION,
    LlmAssistPipeline,
    RotationCursor,
)
from yomiage.llm.types import DEFAULT_MODELS, LlmProvider, PipelineStage
from yomiage.schemas.credentials import CredentialRecord, CredentialScope
from yomiage.schemas.settings import UserLlmPreferences
from yomiage.services.credential_vault import CredentialVault, encrypt_secret

MASTER_KEY = bytes(range(32))
COMMUNITY = "guild-1"
USER = "user-1"


def make_record(
    pk: int,
    provider: LlmProvider,
    key_id: str,
    plaintext: str,
    users: tuple[str, ...] = (USER,),
) -> CredentialRecord:
    secret = encrypt_secret(plaintext, MASTER_KEY)
    return CredentialRecord(
        id=pk,
        scope=CredentialScope.COMMUNITY,
        community_id=COMMUNITY,
        provider=provider,
        key_id=key_id,
        ciphertext=secret.ciphertext,
        nonce=secret.nonce,
        tag=secret.tag,
        created_by_user_id="owner",
        allowed_user_ids=frozenset(users),
    )


class MemoryStore:
    def __init__(self, prefs: Optional[UserLlmPreferences], records: list[CredentialRecord]):
        self.prefs = prefs
        self.records = records

    async def get_user_llm_prefs(self, community_id, user_id):
        return self.prefs

    async def find_accessible_credential(self, community_id, user_id, provider, key_id):
        for record in self.records:
            if (
                record.provider is provider
                and record.key_id == key_id
                and user_id in record.allowed_user_ids
            ):
                return record
        return None

    async def find_accessible_credentials_by_provider(self, community_id, user_id, provider):
        return [
            record
            for record in self.records
            if record.provider is provider and user_id in record.allowed_user_ids
        ]


class ScriptedProvider:
    def __init__(self, handler: Callable[[str, str, str], str]):
        self.handler = handler
        self.calls: list[dict[str, Any]] = []

    async def generate(self, instruction: str, text: str, *, model: str, api_key: str) -> str:
        self.calls.append(
            {"instruction": instruction, "text": text, "model": model, "api_key": api_key}
        )
        return self.handler(api_key, instruction, text)

    def keys_for(self, instruction: str) -> list[str]:
        return [call["api_key"] for call in self.calls if call["instruction"] == instruction]


class StubEngine:
    def __init__(
        self,
        *,
        kana: str = "",
        fail_query: bool = False,
        fail_accent: bool = False,
    ):
        self.kana = kana
        self.fail_query = fail_query
        self.fail_accent = fail_accent
        self.accent_requests: list[tuple[str, int]] = []

    async def build_audio_query(self, text: str, speaker_id: int) -> dict[str, Any]:
        if self.fail_query:
            raise SynthesisError("engine down", status_code=503)
        return {"kana": self.kana, "accent_phrases": [], "speedScale": 1.0, "text": text}

    async def build_accent_phrases_from_kana(self, kana: str, speaker_id: int):
        self.accent_requests.append((kana, speaker_id))
        if self.fail_accent:
            raise SynthesisError("bad kana", status_code=400)
        return [{"moras": [], "accent": 1, "source": kana}]


def make_pipeline(
    prefs: Optional[UserLlmPreferences],
    records: list[CredentialRecord],
    providers: dict[LlmProvider, ScriptedProvider],
    engine: Optional[StubEngine] = None,
    max_utterance_length: int = 140,
) -> LlmAssistPipeline:
    store = MemoryStore(prefs, records)
    return LlmAssistPipeline(
        preferences=store,
        credentials=store,
        vault=CredentialVault(store, MASTER_KEY),  # type: ignore[arg-type]
        engine=engine or StubEngine(),
        providers=providers,  # type: ignore[arg-type]
        max_utterance_length=max_utterance_length,
    )


def always(text: str) -> Callable[[str, str, str], str]:
    return lambda api_key, instruction, source: text


def failing(api_key: str, instruction: str, text: str) -> str:
    raise ProviderError(503, {"message": "unavailable"})


@pytest.mark.anyio
async def test_disabled_assist_returns_input_untouched() -> None:
    provider = ScriptedProvider(always("rewritten"))
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=False),
        [make_record(1, LlmProvider.GEMINI, "a", "key-a")],
        {LlmProvider.GEMINI: provider},
    )

    result = await pipeline.assist(COMMUNITY, USER, "明日MTG", 3)

    assert result.text == "明日MTG"
    assert result.audio_query is None
    assert provider.calls == []


@pytest.mark.anyio
async def test_rate_limited_candidate_falls_through_to_next_key() -> None:
    def handler(api_key: str, instruction: str, text: str) -> str:
        if api_key == "key-a":
            raise ProviderError(429, {"message": "Resource has been exhausted"})
        return "こんにちは！"

    provider = ScriptedProvider(handler)
    prefs = UserLlmPreferences(enabled=True)
    pipeline = make_pipeline(
        prefs,
        [
            make_record(1, LlmProvider.GEMINI, "a", "key-a"),
            make_record(2, LlmProvider.GEMINI, "b", "key-b"),
        ],
        {LlmProvider.GEMINI: provider},
    )

    rewritten = await pipeline.rewrite(COMMUNITY, USER, "こんにちは", prefs)

    assert rewritten == "こんにちは！"
    assert provider.keys_for(REWRITE_INSTRUCTION) == ["key-a", "key-b"]


@pytest.mark.anyio
async def test_all_candidates_failing_returns_original_text() -> None:
    gemini = ScriptedProvider(failing)
    openai = ScriptedProvider(failing)
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True),
        [
            make_record(1, LlmProvider.GEMINI, "a", "key-a"),
            make_record(2, LlmProvider.OPENAI, "b", "key-b"),
        ],
        {LlmProvider.GEMINI: gemini, LlmProvider.OPENAI: openai},
    )

    result = await pipeline.assist(COMMUNITY, USER, "10:30にMTG", 1)

    assert result.text == "10:30にMTG"
    assert result.audio_query is None
    assert len(gemini.calls) == 1
    assert len(openai.calls) == 1


@pytest.mark.anyio
async def test_rotation_uses_each_key_once_before_repeating() -> None:
    provider = ScriptedProvider(always("ok"))
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True),
        [
            make_record(1, LlmProvider.GEMINI, "a", "key-a"),
            make_record(2, LlmProvider.GEMINI, "b", "key-b"),
            make_record(3, LlmProvider.GEMINI, "c", "key-c"),
        ],
        {LlmProvider.GEMINI: provider},
    )

    for _ in range(3):
        await pipeline.assist(COMMUNITY, USER, "text", 1)
    first_round = provider.keys_for(REWRITE_INSTRUCTION)
    await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert sorted(first_round) == ["key-a", "key-b", "key-c"]
    assert provider.keys_for(REWRITE_INSTRUCTION)[3] == first_round[0]


def test_rotation_cursor_keys_are_independent() -> None:
    cursor = RotationCursor()
    key_one = ("guild-1", "user-1", LlmProvider.GEMINI, PipelineStage.REWRITE)
    key_two = ("guild-1", "user-1", LlmProvider.GEMINI, PipelineStage.PROSODY)

    assert cursor.rotate(key_one, ["a", "b"]) == ["a", "b"]
    assert cursor.rotate(key_one, ["a", "b"]) == ["b", "a"]
    assert cursor.rotate(key_two, ["a", "b"]) == ["a", "b"]
    assert cursor.rotate(key_one, []) == []


@pytest.mark.anyio
async def test_pinned_key_is_the_only_candidate() -> None:
    provider = ScriptedProvider(always("pinned"))
    other = ScriptedProvider(always("other"))
    pipeline = make_pipeline(
        UserLlmPreferences(
            enabled=True,
            provider=LlmProvider.OPENAI,
            api_key_id="team",
            model="gpt-4.1-mini",
        ),
        [
            make_record(1, LlmProvider.OPENAI, "personal", "key-personal"),
            make_record(2, LlmProvider.OPENAI, "team", "key-team"),
            make_record(3, LlmProvider.GEMINI, "g", "key-g"),
        ],
        {LlmProvider.OPENAI: provider, LlmProvider.GEMINI: other},
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "pinned"
    assert provider.calls[0]["api_key"] == "key-team"
    assert provider.calls[0]["model"] == "gpt-4.1-mini"
    assert other.calls == []


@pytest.mark.anyio
async def test_pinned_provider_rotates_over_its_own_keys_only() -> None:
    openai = ScriptedProvider(always("openai"))
    gemini = ScriptedProvider(always("gemini"))
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True, provider=LlmProvider.OPENAI),
        [
            make_record(1, LlmProvider.GEMINI, "g", "key-g"),
            make_record(2, LlmProvider.OPENAI, "o1", "key-o1"),
            make_record(3, LlmProvider.OPENAI, "o2", "key-o2"),
        ],
        {LlmProvider.OPENAI: openai, LlmProvider.GEMINI: gemini},
    )

    for _ in range(3):
        result = await pipeline.assist(COMMUNITY, USER, "text", 1)
        assert result.text == "openai"

    assert openai.keys_for(REWRITE_INSTRUCTION) == ["key-o1", "key-o2", "key-o1"]
    assert gemini.calls == []


@pytest.mark.anyio
async def test_pinned_provider_never_falls_through_to_priority_list() -> None:
    openai = ScriptedProvider(failing)
    gemini = ScriptedProvider(always("gemini"))
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True, provider=LlmProvider.OPENAI),
        [
            make_record(1, LlmProvider.GEMINI, "g", "key-g"),
            make_record(2, LlmProvider.OPENAI, "o1", "key-o1"),
            make_record(3, LlmProvider.OPENAI, "o2", "key-o2"),
        ],
        {LlmProvider.OPENAI: openai, LlmProvider.GEMINI: gemini},
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "text"
    assert sorted(openai.keys_for(REWRITE_INSTRUCTION)) == ["key-o1", "key-o2"]
    assert gemini.calls == []


@pytest.mark.anyio
async def test_inaccessible_pinned_key_degrades_to_original() -> None:
    provider = ScriptedProvider(always("never"))
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True, provider=LlmProvider.OPENAI, api_key_id="team"),
        [make_record(1, LlmProvider.OPENAI, "team", "key-team", users=("someone-else",))],
        {LlmProvider.OPENAI: provider},
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "text"
    assert provider.calls == []


@pytest.mark.anyio
async def test_key_id_without_provider_is_rejected() -> None:
    provider = ScriptedProvider(always("never"))
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True, api_key_id="team"),
        [make_record(1, LlmProvider.GEMINI, "team", "key-team")],
        {LlmProvider.GEMINI: provider},
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "text"
    assert provider.calls == []


@pytest.mark.anyio
async def test_priority_falls_back_to_openai_when_gemini_has_no_keys() -> None:
    gemini = ScriptedProvider(always("gemini"))
    openai = ScriptedProvider(always("openai"))
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True),
        [make_record(1, LlmProvider.OPENAI, "o", "key-o")],
        {LlmProvider.GEMINI: gemini, LlmProvider.OPENAI: openai},
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "openai"
    assert openai.calls[0]["model"] == DEFAULT_MODELS[LlmProvider.OPENAI]


@pytest.mark.anyio
async def test_undecryptable_key_is_skipped() -> None:
    good = make_record(2, LlmProvider.GEMINI, "good", "key-good")
    broken = replace(make_record(1, LlmProvider.GEMINI, "broken", "key-broken"), tag=good.tag)
    provider = ScriptedProvider(always("fixed"))
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True),
        [broken, good],
        {LlmProvider.GEMINI: provider},
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "fixed"
    assert provider.keys_for(REWRITE_INSTRUCTION) == ["key-good"]


@pytest.mark.anyio
async def test_stage_one_output_is_softened_and_clamped() -> None:
    provider = ScriptedProvider(always("あ、い、う、え、お" + "か" * 20))
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True),
        [make_record(1, LlmProvider.GEMINI, "a", "key-a")],
        {LlmProvider.GEMINI: provider},
        max_utterance_length=10,
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "あ、い、うえおかかか 以下略"


@pytest.mark.anyio
async def test_stage_two_rebuilds_accent_phrases_from_corrected_kana() -> None:
    def handler(api_key: str, instruction: str, text: str) -> str:
        if instruction == PROSODY_INSTRUCTION:
            return " コンニチ'ワ \n"
        return "こんにちは"

    provider = ScriptedProvider(handler)
    engine = StubEngine(kana="コ'ンニチワ")
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True),
        [make_record(1, LlmProvider.GEMINI, "a", "key-a")],
        {LlmProvider.GEMINI: provider},
        engine=engine,
    )

    result = await pipeline.assist(COMMUNITY, USER, "こんにちわ", 3)

    assert result.text == "こんにちは"
    assert result.audio_query is not None
    assert result.audio_query["kana"] == "コンニチ'ワ"
    assert result.audio_query["accent_phrases"] == [
        {"moras": [], "accent": 1, "source": "コンニチ'ワ"}
    ]
    assert result.audio_query["speedScale"] == 1.0
    assert engine.accent_requests == [("コンニチ'ワ", 3)]
    prosody_call = provider.calls[1]
    assert prosody_call["text"] == "Original text:\nこんにちは\n\nKana:\nコ'ンニチワ"


@pytest.mark.anyio
async def test_stage_two_failures_keep_stage_one_text() -> None:
    def handler(api_key: str, instruction: str, text: str) -> str:
        if instruction == PROSODY_INSTRUCTION:
            raise ProviderError(500, "boom")
        return "書き換え"

    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True),
        [make_record(1, LlmProvider.GEMINI, "a", "key-a")],
        {LlmProvider.GEMINI: ScriptedProvider(handler)},
        engine=StubEngine(kana="カキカエ"),
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "書き換え"
    assert result.audio_query is None


@pytest.mark.anyio
@pytest.mark.parametrize(
    "engine",
    [StubEngine(fail_query=True), StubEngine(kana="カキカエ", fail_accent=True)],
)
async def test_engine_failures_keep_stage_one_text(engine: StubEngine) -> None:
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True),
        [make_record(1, LlmProvider.GEMINI, "a", "key-a")],
        {LlmProvider.GEMINI: ScriptedProvider(always("書き換え"))},
        engine=engine,
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "書き換え"
    assert result.audio_query is None


@pytest.mark.anyio
async def test_unexpected_error_returns_original_text() -> None:
    class BrokenStore(MemoryStore):
        async def get_user_llm_prefs(self, community_id, user_id):
            raise RuntimeError("database is locked")

    store = BrokenStore(None, [])
    pipeline = LlmAssistPipeline(
        preferences=store,
        credentials=store,
        vault=CredentialVault(store, MASTER_KEY),  # type: ignore[arg-type]
        engine=StubEngine(),
        providers={},
        max_utterance_length=140,
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "text"


@pytest.mark.anyio
async def test_unexpected_candidate_error_moves_to_next_candidate() -> None:
    def handler(api_key: str, instruction: str, text: str) -> str:
        if api_key == "key-a":
            raise TypeError("'int' object is not iterable")
        return "次の鍵"

    provider = ScriptedProvider(handler)
    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True),
        [
            make_record(1, LlmProvider.GEMINI, "a", "key-a"),
            make_record(2, LlmProvider.GEMINI, "b", "key-b"),
        ],
        {LlmProvider.GEMINI: provider},
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "次の鍵"
    assert provider.keys_for(REWRITE_INSTRUCTION) == ["key-a", "key-b"]


@pytest.mark.anyio
async def test_unexpected_stage_two_error_keeps_stage_one_text() -> None:
    def handler(api_key: str, instruction: str, text: str) -> str:
        if instruction == PROSODY_INSTRUCTION:
            raise TypeError("'int' object is not iterable")
        return "書き換え"

    pipeline = make_pipeline(
        UserLlmPreferences(enabled=True),
        [make_record(1, LlmProvider.GEMINI, "a", "key-a")],
        {LlmProvider.GEMINI: ScriptedProvider(handler)},
        engine=StubEngine(kana="カキカエ"),
    )

    result = await pipeline.assist(COMMUNITY, USER, "text", 1)

    assert result.text == "書き換え"
    assert result.audio_query is None
