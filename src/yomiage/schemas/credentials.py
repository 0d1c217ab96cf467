"""Schemas for encrypted LLM API key records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..llm.types import LlmProvider

# Community id under which global-scope credentials are stored.
GLOBAL_SCOPE_COMMUNITY_ID = "*"


class CredentialScope(str, Enum):
    """Where a credential is visible."""

    COMMUNITY = "community"
    GLOBAL = "global"


def resolve_scope_community_id(scope: CredentialScope, community_id: str) -> str:
    return GLOBAL_SCOPE_COMMUNITY_ID if scope is CredentialScope.GLOBAL else community_id


@dataclass(frozen=True)
class CredentialRecord:
    """An API key as stored at rest. Never carries plaintext."""

    id: int
    scope: CredentialScope
    community_id: str
    provider: LlmProvider
    key_id: str
    ciphertext: str
    nonce: str
    tag: str
    created_by_user_id: str
    allowed_user_ids: frozenset[str] = field(default_factory=frozenset)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Public view without any key material."""
        return {
            "scope": self.scope.value,
            "community_id": self.community_id,
            "provider": self.provider.value,
            "key_id": self.key_id,
            "created_by_user_id": self.created_by_user_id,
            "allowed_user_ids": sorted(self.allowed_user_ids),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class CredentialUpsertRequest(BaseModel):
    """Payload for creating or replacing an API key."""

    actor_user_id: str = Field(min_length=1)
    actor_can_manage_community: bool = False
    api_key: str = Field(min_length=1, description="Plaintext provider API key")
    allowed_user_ids: list[str] = Field(default_factory=list)


class CredentialUpsertResponse(BaseModel):
    created: bool
    credential: dict[str, Any]


__all__ = [
    "CredentialRecord",
    "CredentialScope",
    "CredentialUpsertRequest",
    "CredentialUpsertResponse",
    "GLOBAL_SCOPE_COMMUNITY_ID",
    "resolve_scope_community_id",
]
