"""API routes for managing encrypted LLM API keys."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from ..errors import CredentialAccessDenied, CredentialError, SettingsValidationError
from ..llm.types import LlmProvider
from ..schemas.credentials import (
    CredentialScope,
    CredentialUpsertRequest,
    CredentialUpsertResponse,
)
from ..services.credential_vault import CredentialVault
from .dependencies import get_credential_vault, require_api_key

router = APIRouter(
    prefix="/api/credentials",
    tags=["credentials"],
    dependencies=[Depends(require_api_key)],
)


@router.get("/{community_id}/users/{user_id}")
async def list_accessible_credentials(
    community_id: str,
    user_id: str,
    vault: CredentialVault = Depends(get_credential_vault),
) -> dict[str, Any]:
    records = await vault.list_accessible(community_id, user_id)
    return {"credentials": [record.to_dict() for record in records]}


@router.put(
    "/{scope}/{community_id}/{provider}/{key_id}",
    response_model=CredentialUpsertResponse,
)
async def upsert_credential(
    scope: CredentialScope,
    community_id: str,
    provider: LlmProvider,
    key_id: str,
    payload: CredentialUpsertRequest,
    response: Response,
    vault: CredentialVault = Depends(get_credential_vault),
) -> CredentialUpsertResponse:
    try:
        created, record = await vault.upsert(
            actor_user_id=payload.actor_user_id,
            actor_can_manage_community=payload.actor_can_manage_community,
            scope=scope,
            community_id=community_id,
            provider=provider,
            key_id=key_id,
            plaintext=payload.api_key,
            allowed_user_ids=payload.allowed_user_ids,
        )
    except SettingsValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors) from exc
    except CredentialAccessDenied as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except CredentialError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    response.status_code = 201 if created else 200
    return CredentialUpsertResponse(created=created, credential=record.to_dict())


@router.delete("/{scope}/{community_id}/{provider}/{key_id}", status_code=204)
async def delete_credential(
    scope: CredentialScope,
    community_id: str,
    provider: LlmProvider,
    key_id: str,
    actor_user_id: str = Query(min_length=1),
    actor_can_manage_community: bool = Query(default=False),
    vault: CredentialVault = Depends(get_credential_vault),
) -> Response:
    try:
        await vault.delete(
            actor_user_id=actor_user_id,
            actor_can_manage_community=actor_can_manage_community,
            scope=scope,
            community_id=community_id,
            provider=provider,
            key_id=key_id,
        )
    except CredentialAccessDenied as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except CredentialError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)
