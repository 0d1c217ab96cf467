from __future__ import annotations

import itertools

import pytest

from yomiage import repository as repository_module
from yomiage.llm.types import LlmProvider
from yomiage.repository import SettingsRepository
from yomiage.schemas.credentials import CredentialScope
from yomiage.schemas.settings import UserLlmPreferences
from yomiage.services.credential_vault import EncryptedSecret

SECRET = EncryptedSecret(ciphertext="Y2lwaGVy", nonce="bm9uY2U=", tag="dGFn")


@pytest.fixture
async def repository(tmp_path):
    repo = SettingsRepository(tmp_path / "settings.db")
    await repo.initialize()
    try:
        yield repo
    finally:
        await repo.close()


@pytest.fixture
def ticking_clock(monkeypatch: pytest.MonkeyPatch):
    ticks = itertools.count(1)
    monkeypatch.setattr(
        repository_module,
        "_utcnow",
        lambda: f"2025-01-01T00:00:{next(ticks):02d}+00:00",
    )


async def add_key(
    repo: SettingsRepository,
    key_id: str,
    *,
    scope: CredentialScope = CredentialScope.COMMUNITY,
    community_id: str = "guild-1",
    provider: LlmProvider = LlmProvider.GEMINI,
    users: list[str] | None = None,
    actor: str = "owner",
):
    return await repo.upsert_credential(
        scope=scope,
        community_id=community_id,
        provider=provider,
        key_id=key_id,
        secret=SECRET,
        allowed_user_ids=users if users is not None else ["user-1"],
        actor_user_id=actor,
    )


@pytest.mark.anyio
async def test_voice_prefs_absent_until_written(repository):
    assert await repository.get_user_voice_prefs("guild-1", "user-1") is None

    await repository.set_user_speaker("guild-1", "user-1", 3)
    await repository.set_user_speed("guild-1", "user-1", 1.25)

    prefs = await repository.get_user_voice_prefs("guild-1", "user-1")
    assert prefs is not None
    assert prefs.speaker_id == 3
    assert prefs.speed == 1.25
    assert prefs.pitch == 0.0
    assert await repository.get_user_voice_prefs("guild-2", "user-1") is None


@pytest.mark.anyio
async def test_llm_prefs_roundtrip_and_clear(repository):
    assert await repository.get_user_llm_prefs("guild-1", "user-1") is None

    await repository.set_user_llm_prefs(
        "guild-1",
        "user-1",
        UserLlmPreferences(enabled=True, provider=LlmProvider.OPENAI, api_key_id="team"),
    )
    prefs = await repository.get_user_llm_prefs("guild-1", "user-1")
    assert prefs == UserLlmPreferences(
        enabled=True, provider=LlmProvider.OPENAI, api_key_id="team", model=None
    )

    await repository.set_user_llm_prefs("guild-1", "user-1", UserLlmPreferences(enabled=False))
    prefs = await repository.get_user_llm_prefs("guild-1", "user-1")
    assert prefs == UserLlmPreferences()


@pytest.mark.anyio
async def test_community_settings_default_and_partial_updates(repository):
    settings = await repository.get_community_settings("guild-1")
    assert settings.auto_join is True
    assert settings.text_channel_id is None

    await repository.set_community_preferred_text_channel("guild-1", "text-7")
    await repository.set_community_auto_join("guild-1", False)

    settings = await repository.get_community_settings("guild-1")
    assert settings.auto_join is False
    assert settings.text_channel_id == "text-7"


@pytest.mark.anyio
async def test_upsert_credential_replaces_allow_list_and_keeps_creator(repository):
    created, record = await add_key(repository, "team", users=["user-1", "user-2"])
    assert created is True
    assert record.allowed_user_ids == frozenset({"user-1", "user-2"})

    created, record = await add_key(repository, "team", users=["user-3"], actor="admin")
    assert created is False
    assert record.created_by_user_id == "owner"
    assert record.allowed_user_ids == frozenset({"user-3"})


@pytest.mark.anyio
async def test_delete_credential_cascades_access_rows(repository):
    await add_key(repository, "team")

    assert await repository.delete_credential(
        CredentialScope.COMMUNITY, "guild-1", LlmProvider.GEMINI, "team"
    )
    assert not await repository.delete_credential(
        CredentialScope.COMMUNITY, "guild-1", LlmProvider.GEMINI, "team"
    )
    assert await repository.list_accessible_credentials("guild-1", "user-1") == []


@pytest.mark.anyio
async def test_global_keys_are_stored_under_wildcard_community(repository):
    _, record = await add_key(repository, "shared", scope=CredentialScope.GLOBAL)

    assert record.community_id == "*"
    visible = await repository.list_accessible_credentials("guild-9", "user-1")
    assert [r.key_id for r in visible] == ["shared"]


@pytest.mark.anyio
async def test_accessible_listing_respects_community_and_allow_list(repository):
    await add_key(repository, "mine")
    await add_key(repository, "theirs", users=["user-2"])
    await add_key(repository, "elsewhere", community_id="guild-2")
    await add_key(repository, "openai-key", provider=LlmProvider.OPENAI)
    await add_key(repository, "global", scope=CredentialScope.GLOBAL)

    visible = await repository.list_accessible_credentials("guild-1", "user-1")

    assert [(r.provider, r.scope, r.key_id) for r in visible] == [
        (LlmProvider.GEMINI, CredentialScope.COMMUNITY, "mine"),
        (LlmProvider.GEMINI, CredentialScope.GLOBAL, "global"),
        (LlmProvider.OPENAI, CredentialScope.COMMUNITY, "openai-key"),
    ]


@pytest.mark.anyio
async def test_pinned_lookup_prefers_community_key(repository):
    await add_key(repository, "team", scope=CredentialScope.GLOBAL)
    await add_key(repository, "team")

    record = await repository.find_accessible_credential(
        "guild-1", "user-1", LlmProvider.GEMINI, "team"
    )

    assert record is not None
    assert record.scope is CredentialScope.COMMUNITY
    assert (
        await repository.find_accessible_credential(
            "guild-1", "user-2", LlmProvider.GEMINI, "team"
        )
        is None
    )


@pytest.mark.anyio
async def test_by_provider_orders_community_first_then_oldest(repository, ticking_clock):
    await add_key(repository, "g-global", scope=CredentialScope.GLOBAL)
    await add_key(repository, "b")
    await add_key(repository, "a")

    ordered = await repository.find_accessible_credentials_by_provider(
        "guild-1", "user-1", LlmProvider.GEMINI
    )
    assert [r.key_id for r in ordered] == ["b", "a", "g-global"]

    await add_key(repository, "b")
    ordered = await repository.find_accessible_credentials_by_provider(
        "guild-1", "user-1", LlmProvider.GEMINI
    )
    assert [r.key_id for r in ordered] == ["a", "b", "g-global"]
