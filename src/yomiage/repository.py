"""SQLite-backed repository for user, community and credential settings."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from .llm.types import LlmProvider
from .schemas.credentials import (
    CredentialRecord,
    CredentialScope,
    resolve_scope_community_id,
)
from .schemas.settings import CommunitySettings, UserLlmPreferences, UserVoicePreferences
from .services.credential_vault import EncryptedSecret

_CREDENTIAL_COLUMNS = """
    k.id,
    k.scope,
    k.community_id,
    k.provider,
    k.key_id,
    k.ciphertext,
    k.nonce,
    k.tag,
    k.created_by_user_id,
    k.created_at,
    k.updated_at
"""

# Visible to the user in this community: own-community keys and global keys.
_ACCESSIBLE_FILTER = """
    JOIN llm_api_key_access a ON a.api_key_pk = k.id
    WHERE a.allowed_user_id = ?
      AND (
        (k.scope = 'community' AND k.community_id = ?)
        OR (k.scope = 'global' AND k.community_id = '*')
      )
"""

_COMMUNITY_FIRST = "CASE WHEN k.scope = 'community' THEN 0 ELSE 1 END"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_db_timestamp(value: str | None) -> datetime | None:
    """Parse a timestamp stored in SQLite and normalize to UTC."""

    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    else:
        parsed = parsed.astimezone(timezone.utc)
    return parsed


class SettingsRepository:
    """Persist voice preferences, assist settings, community settings and API keys."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        if str(self._path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS user_voice_settings (
                community_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                speaker_id INTEGER,
                pitch REAL NOT NULL DEFAULT 0,
                speed REAL NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (community_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS user_llm_settings (
                community_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 0,
                provider TEXT CHECK(provider IN ('gemini', 'openai')),
                api_key_id TEXT,
                model TEXT,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (community_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS community_settings (
                community_id TEXT PRIMARY KEY,
                auto_join INTEGER NOT NULL DEFAULT 1,
                text_channel_id TEXT,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS llm_api_keys (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scope TEXT NOT NULL CHECK(scope IN ('community', 'global')),
                community_id TEXT NOT NULL,
                provider TEXT NOT NULL CHECK(provider IN ('gemini', 'openai')),
                key_id TEXT NOT NULL,
                ciphertext TEXT NOT NULL,
                nonce TEXT NOT NULL,
                tag TEXT NOT NULL,
                created_by_user_id TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(scope, community_id, provider, key_id)
            );

            CREATE TABLE IF NOT EXISTS llm_api_key_access (
                api_key_pk INTEGER NOT NULL REFERENCES llm_api_keys(id) ON DELETE CASCADE,
                allowed_user_id TEXT NOT NULL,
                PRIMARY KEY (api_key_pk, allowed_user_id)
            );

            CREATE INDEX IF NOT EXISTS idx_llm_api_keys_lookup
                ON llm_api_keys(community_id, provider);
            CREATE INDEX IF NOT EXISTS idx_llm_api_key_access_allowed_user
                ON llm_api_key_access(allowed_user_id);
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Voice preferences
    # ------------------------------------------------------------------

    async def get_user_voice_prefs(
        self, community_id: str, user_id: str
    ) -> Optional[UserVoicePreferences]:
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT speaker_id, pitch, speed
            FROM user_voice_settings
            WHERE community_id = ? AND user_id = ?
            LIMIT 1
            """,
            (community_id, user_id),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return UserVoicePreferences(
            speaker_id=row["speaker_id"],
            pitch=float(row["pitch"]),
            speed=float(row["speed"]),
        )

    async def set_user_speaker(
        self, community_id: str, user_id: str, speaker_id: int
    ) -> None:
        await self._upsert_voice_column(community_id, user_id, "speaker_id", speaker_id)

    async def set_user_pitch(self, community_id: str, user_id: str, pitch: float) -> None:
        await self._upsert_voice_column(community_id, user_id, "pitch", pitch)

    async def set_user_speed(self, community_id: str, user_id: str, speed: float) -> None:
        await self._upsert_voice_column(community_id, user_id, "speed", speed)

    async def _upsert_voice_column(
        self, community_id: str, user_id: str, column: str, value: Any
    ) -> None:
        assert self._connection is not None
        assert column in {"speaker_id", "pitch", "speed"}
        await self._connection.execute(
            f"""
            INSERT INTO user_voice_settings(community_id, user_id, {column}, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(community_id, user_id) DO UPDATE SET
                {column} = excluded.{column},
                updated_at = excluded.updated_at
            """,
            (community_id, user_id, value, _utcnow()),
        )
        await self._connection.commit()

    # ------------------------------------------------------------------
    # Assist preferences
    # ------------------------------------------------------------------

    async def get_user_llm_prefs(
        self, community_id: str, user_id: str
    ) -> Optional[UserLlmPreferences]:
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT enabled, provider, api_key_id, model
            FROM user_llm_settings
            WHERE community_id = ? AND user_id = ?
            LIMIT 1
            """,
            (community_id, user_id),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return UserLlmPreferences(
            enabled=bool(row["enabled"]),
            provider=LlmProvider(row["provider"]) if row["provider"] else None,
            api_key_id=row["api_key_id"],
            model=row["model"],
        )

    async def set_user_llm_prefs(
        self, community_id: str, user_id: str, prefs: UserLlmPreferences
    ) -> None:
        assert self._connection is not None
        await self._connection.execute(
            """
            INSERT INTO user_llm_settings(
                community_id, user_id, enabled, provider, api_key_id, model, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(community_id, user_id) DO UPDATE SET
                enabled = excluded.enabled,
                provider = excluded.provider,
                api_key_id = excluded.api_key_id,
                model = excluded.model,
                updated_at = excluded.updated_at
            """,
            (
                community_id,
                user_id,
                1 if prefs.enabled else 0,
                prefs.provider.value if prefs.provider else None,
                prefs.api_key_id,
                prefs.model,
                _utcnow(),
            ),
        )
        await self._connection.commit()

    # ------------------------------------------------------------------
    # Community settings
    # ------------------------------------------------------------------

    async def get_community_settings(self, community_id: str) -> CommunitySettings:
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT auto_join, text_channel_id
            FROM community_settings
            WHERE community_id = ?
            LIMIT 1
            """,
            (community_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return CommunitySettings()
        return CommunitySettings(
            auto_join=bool(row["auto_join"]),
            text_channel_id=row["text_channel_id"],
        )

    async def set_community_auto_join(self, community_id: str, auto_join: bool) -> None:
        assert self._connection is not None
        await self._connection.execute(
            """
            INSERT INTO community_settings(community_id, auto_join, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(community_id) DO UPDATE SET
                auto_join = excluded.auto_join,
                updated_at = excluded.updated_at
            """,
            (community_id, 1 if auto_join else 0, _utcnow()),
        )
        await self._connection.commit()

    async def set_community_preferred_text_channel(
        self, community_id: str, text_channel_id: str
    ) -> None:
        assert self._connection is not None
        await self._connection.execute(
            """
            INSERT INTO community_settings(community_id, text_channel_id, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(community_id) DO UPDATE SET
                text_channel_id = excluded.text_channel_id,
                updated_at = excluded.updated_at
            """,
            (community_id, text_channel_id, _utcnow()),
        )
        await self._connection.commit()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def get_credential(
        self,
        scope: CredentialScope,
        community_id: str,
        provider: LlmProvider,
        key_id: str,
    ) -> Optional[CredentialRecord]:
        assert self._connection is not None
        cursor = await self._connection.execute(
            f"""
            SELECT {_CREDENTIAL_COLUMNS}
            FROM llm_api_keys k
            WHERE k.scope = ? AND k.community_id = ? AND k.provider = ? AND k.key_id = ?
            LIMIT 1
            """,
            (
                scope.value,
                resolve_scope_community_id(scope, community_id),
                provider.value,
                key_id,
            ),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        records = await self._attach_allow_lists([row])
        return records[0]

    async def upsert_credential(
        self,
        *,
        scope: CredentialScope,
        community_id: str,
        provider: LlmProvider,
        key_id: str,
        secret: EncryptedSecret,
        allowed_user_ids: list[str],
        actor_user_id: str,
    ) -> tuple[bool, CredentialRecord]:
        """Insert or replace the key material and its allow-list atomically.

        The creator of an existing record is preserved on update.
        """

        assert self._connection is not None
        stored_community_id = resolve_scope_community_id(scope, community_id)
        now = _utcnow()

        cursor = await self._connection.execute(
            """
            SELECT id FROM llm_api_keys
            WHERE scope = ? AND community_id = ? AND provider = ? AND key_id = ?
            LIMIT 1
            """,
            (scope.value, stored_community_id, provider.value, key_id),
        )
        existing = await cursor.fetchone()
        await cursor.close()

        try:
            if existing is None:
                cursor = await self._connection.execute(
                    """
                    INSERT INTO llm_api_keys(
                        scope, community_id, provider, key_id,
                        ciphertext, nonce, tag, created_by_user_id,
                        created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        scope.value,
                        stored_community_id,
                        provider.value,
                        key_id,
                        secret.ciphertext,
                        secret.nonce,
                        secret.tag,
                        actor_user_id,
                        now,
                        now,
                    ),
                )
                pk = cursor.lastrowid
                await cursor.close()
                if pk is None:
                    raise RuntimeError("Insert failed: lastrowid is None")
                created = True
            else:
                pk = existing["id"]
                await self._connection.execute(
                    """
                    UPDATE llm_api_keys
                    SET ciphertext = ?, nonce = ?, tag = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (secret.ciphertext, secret.nonce, secret.tag, now, pk),
                )
                created = False

            await self._connection.execute(
                "DELETE FROM llm_api_key_access WHERE api_key_pk = ?", (pk,)
            )
            await self._connection.executemany(
                """
                INSERT OR IGNORE INTO llm_api_key_access(api_key_pk, allowed_user_id)
                VALUES (?, ?)
                """,
                [(pk, user_id) for user_id in allowed_user_ids],
            )
            await self._connection.commit()
        except Exception:
            await self._connection.rollback()
            raise

        record = await self.get_credential(scope, community_id, provider, key_id)
        assert record is not None
        return created, record

    async def delete_credential(
        self,
        scope: CredentialScope,
        community_id: str,
        provider: LlmProvider,
        key_id: str,
    ) -> bool:
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            DELETE FROM llm_api_keys
            WHERE scope = ? AND community_id = ? AND provider = ? AND key_id = ?
            """,
            (
                scope.value,
                resolve_scope_community_id(scope, community_id),
                provider.value,
                key_id,
            ),
        )
        deleted = cursor.rowcount > 0
        await cursor.close()
        await self._connection.commit()
        return deleted

    async def list_accessible_credentials(
        self, community_id: str, user_id: str
    ) -> list[CredentialRecord]:
        assert self._connection is not None
        cursor = await self._connection.execute(
            f"""
            SELECT {_CREDENTIAL_COLUMNS}
            FROM llm_api_keys k
            {_ACCESSIBLE_FILTER}
            ORDER BY k.provider ASC, {_COMMUNITY_FIRST}, k.key_id ASC
            """,
            (user_id, community_id),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return await self._attach_allow_lists(rows)

    async def find_accessible_credential(
        self,
        community_id: str,
        user_id: str,
        provider: LlmProvider,
        key_id: str,
    ) -> Optional[CredentialRecord]:
        """Look up a pinned key; a community key shadows a global key of the same id."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            f"""
            SELECT {_CREDENTIAL_COLUMNS}
            FROM llm_api_keys k
            {_ACCESSIBLE_FILTER}
              AND k.provider = ? AND k.key_id = ?
            ORDER BY {_COMMUNITY_FIRST}
            LIMIT 1
            """,
            (user_id, community_id, provider.value, key_id),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        records = await self._attach_allow_lists([row])
        return records[0]

    async def find_accessible_credentials_by_provider(
        self, community_id: str, user_id: str, provider: LlmProvider
    ) -> list[CredentialRecord]:
        assert self._connection is not None
        cursor = await self._connection.execute(
            f"""
            SELECT {_CREDENTIAL_COLUMNS}
            FROM llm_api_keys k
            {_ACCESSIBLE_FILTER}
              AND k.provider = ?
            ORDER BY {_COMMUNITY_FIRST}, k.updated_at ASC, k.key_id ASC
            """,
            (user_id, community_id, provider.value),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return await self._attach_allow_lists(rows)

    async def _attach_allow_lists(
        self, rows: list[aiosqlite.Row] | Any
    ) -> list[CredentialRecord]:
        assert self._connection is not None
        if not rows:
            return []
        pks = [row["id"] for row in rows]
        placeholders = ", ".join("?" for _ in pks)
        cursor = await self._connection.execute(
            f"""
            SELECT api_key_pk, allowed_user_id
            FROM llm_api_key_access
            WHERE api_key_pk IN ({placeholders})
            """,
            pks,
        )
        access_rows = await cursor.fetchall()
        await cursor.close()

        allow_lists: dict[int, set[str]] = {pk: set() for pk in pks}
        for access in access_rows:
            allow_lists[access["api_key_pk"]].add(access["allowed_user_id"])

        return [
            CredentialRecord(
                id=row["id"],
                scope=CredentialScope(row["scope"]),
                community_id=row["community_id"],
                provider=LlmProvider(row["provider"]),
                key_id=row["key_id"],
                ciphertext=row["ciphertext"],
                nonce=row["nonce"],
                tag=row["tag"],
                created_by_user_id=row["created_by_user_id"],
                allowed_user_ids=frozenset(allow_lists[row["id"]]),
                created_at=_parse_db_timestamp(row["created_at"]),
                updated_at=_parse_db_timestamp(row["updated_at"]),
            )
            for row in rows
        ]


__all__ = ["SettingsRepository"]
