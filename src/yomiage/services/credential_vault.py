"""Encrypted-at-rest storage of third-party LLM API keys.

Keys are sealed with AES-256-GCM. Plaintext only exists transiently inside
:meth:`CredentialVault.decrypt_for_use`, immediately before a provider call.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import CredentialAccessDenied, CredentialError, SettingsValidationError
from ..llm.types import LlmProvider
from ..schemas.credentials import CredentialRecord, CredentialScope

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
TAG_LENGTH = 16


@dataclass(frozen=True)
class EncryptedSecret:
    """Base64 ciphertext, nonce and GCM authentication tag."""

    ciphertext: str
    nonce: str
    tag: str


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CredentialError(f"Stored credential {field} is corrupted") from exc


def _cipher(master_key: bytes) -> AESGCM:
    try:
        return AESGCM(master_key)
    except ValueError as exc:
        raise CredentialError("Master key must be 32 bytes for AES-256-GCM") from exc


def encrypt_secret(plaintext: str, master_key: bytes) -> EncryptedSecret:
    nonce = os.urandom(NONCE_LENGTH)
    sealed = _cipher(master_key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return EncryptedSecret(
        ciphertext=_b64encode(sealed[:-TAG_LENGTH]),
        nonce=_b64encode(nonce),
        tag=_b64encode(sealed[-TAG_LENGTH:]),
    )


def decrypt_secret(ciphertext: str, nonce: str, tag: str, master_key: bytes) -> str:
    """Inverse of :func:`encrypt_secret`; raises ``CredentialError`` on any mismatch."""

    raw_nonce = _b64decode(nonce, "nonce")
    raw_tag = _b64decode(tag, "tag")
    raw_ciphertext = _b64decode(ciphertext, "ciphertext")
    if len(raw_nonce) != NONCE_LENGTH or len(raw_tag) != TAG_LENGTH:
        raise CredentialError("Stored credential nonce or tag has the wrong length")

    try:
        plaintext = _cipher(master_key).decrypt(raw_nonce, raw_ciphertext + raw_tag, None)
    except InvalidTag as exc:
        raise CredentialError("Credential authentication tag verification failed") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CredentialError("Decrypted credential is not valid UTF-8") from exc


def can_use(record: CredentialRecord, user_id: str) -> bool:
    return user_id in record.allowed_user_ids


def can_manage(
    record: CredentialRecord, actor_user_id: str, actor_can_manage_community: bool
) -> bool:
    return actor_can_manage_community or record.created_by_user_id == actor_user_id


def normalize_allow_list(user_ids: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for user_id in user_ids:
        trimmed = user_id.strip()
        if trimmed:
            seen.setdefault(trimmed, None)
    return list(seen)


class CredentialStore(Protocol):
    async def get_credential(
        self,
        scope: CredentialScope,
        community_id: str,
        provider: LlmProvider,
        key_id: str,
    ) -> Optional[CredentialRecord]: ...

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
    ) -> tuple[bool, CredentialRecord]: ...

    async def delete_credential(
        self,
        scope: CredentialScope,
        community_id: str,
        provider: LlmProvider,
        key_id: str,
    ) -> bool: ...

    async def list_accessible_credentials(
        self, community_id: str, user_id: str
    ) -> list[CredentialRecord]: ...

    async def find_accessible_credential(
        self,
        community_id: str,
        user_id: str,
        provider: LlmProvider,
        key_id: str,
    ) -> Optional[CredentialRecord]: ...

    async def find_accessible_credentials_by_provider(
        self, community_id: str, user_id: str, provider: LlmProvider
    ) -> list[CredentialRecord]: ...


class CredentialVault:
    """Access-controlled create/update/delete/use of stored API keys."""

    def __init__(self, store: CredentialStore, master_key: bytes):
        self._store = store
        self._master_key = master_key

    @property
    def store(self) -> CredentialStore:
        return self._store

    async def upsert(
        self,
        *,
        actor_user_id: str,
        actor_can_manage_community: bool,
        scope: CredentialScope,
        community_id: str,
        provider: LlmProvider,
        key_id: str,
        plaintext: str,
        allowed_user_ids: Iterable[str],
    ) -> tuple[bool, CredentialRecord]:
        errors: list[str] = []
        key_id = key_id.strip()
        if not key_id:
            errors.append("key_id must not be empty")
        if not plaintext.strip():
            errors.append("api_key must not be empty")
        allow_list = normalize_allow_list(allowed_user_ids)
        if not allow_list:
            errors.append("allowed_user_ids must contain at least one user id")
        if errors:
            raise SettingsValidationError(errors)

        existing = await self._store.get_credential(scope, community_id, provider, key_id)
        if existing is not None and not can_manage(
            existing, actor_user_id, actor_can_manage_community
        ):
            raise CredentialAccessDenied(
                f"Not permitted to update API key {provider.value}/{key_id}"
            )

        secret = encrypt_secret(plaintext.strip(), self._master_key)
        created, record = await self._store.upsert_credential(
            scope=scope,
            community_id=community_id,
            provider=provider,
            key_id=key_id,
            secret=secret,
            allowed_user_ids=allow_list,
            actor_user_id=actor_user_id,
        )
        logger.info(
            "%s API key %s/%s (scope=%s) for community %s",
            "Created" if created else "Updated",
            provider.value,
            key_id,
            scope.value,
            community_id,
        )
        return created, record

    async def delete(
        self,
        *,
        actor_user_id: str,
        actor_can_manage_community: bool,
        scope: CredentialScope,
        community_id: str,
        provider: LlmProvider,
        key_id: str,
    ) -> None:
        existing = await self._store.get_credential(scope, community_id, provider, key_id)
        if existing is None:
            raise CredentialError(f"API key {provider.value}/{key_id} was not found")
        if not can_manage(existing, actor_user_id, actor_can_manage_community):
            raise CredentialAccessDenied(
                f"Not permitted to delete API key {provider.value}/{key_id}"
            )
        await self._store.delete_credential(scope, community_id, provider, key_id)
        logger.info(
            "Deleted API key %s/%s (scope=%s) for community %s",
            provider.value,
            key_id,
            scope.value,
            community_id,
        )

    async def list_accessible(
        self, community_id: str, user_id: str
    ) -> list[CredentialRecord]:
        return await self._store.list_accessible_credentials(community_id, user_id)

    def decrypt_for_use(self, record: CredentialRecord, user_id: str) -> str:
        if not can_use(record, user_id):
            raise CredentialAccessDenied(
                f"User {user_id} may not use API key {record.provider.value}/{record.key_id}"
            )
        return decrypt_secret(record.ciphertext, record.nonce, record.tag, self._master_key)


__all__ = [
    "CredentialStore",
    "CredentialVault",
    "EncryptedSecret",
    "can_manage",
    "can_use",
    "decrypt_secret",
    "encrypt_secret",
    "normalize_allow_list",
]
