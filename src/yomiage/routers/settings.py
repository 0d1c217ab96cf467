"""API routes for per-user voice/assist settings and per-community settings."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..errors import SettingsValidationError, SynthesisError
from ..schemas.settings import (
    CommunitySettings,
    CommunitySettingsUpdate,
    EffectiveUserSettings,
    UserSettingsResponse,
    UserSettingsUpdate,
)
from ..services.user_settings import UserSettingsService
from .dependencies import get_user_settings_service, require_api_key

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/settings",
    tags=["settings"],
    dependencies=[Depends(require_api_key)],
)


@router.get("/users/{community_id}/{user_id}", response_model=EffectiveUserSettings)
async def read_user_settings(
    community_id: str,
    user_id: str,
    service: UserSettingsService = Depends(get_user_settings_service),
) -> EffectiveUserSettings:
    return await service.effective_settings(community_id, user_id)


@router.patch("/users/{community_id}/{user_id}", response_model=UserSettingsResponse)
async def update_user_settings(
    community_id: str,
    user_id: str,
    payload: UserSettingsUpdate,
    service: UserSettingsService = Depends(get_user_settings_service),
) -> UserSettingsResponse:
    try:
        return await service.apply_update(community_id, user_id, payload)
    except SettingsValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors) from exc
    except SynthesisError as exc:
        logger.error("Failed to validate speaker_id against the voice catalog: %s", exc)
        raise HTTPException(status_code=502, detail="Failed to validate speaker_id") from exc


@router.get("/communities/{community_id}", response_model=CommunitySettings)
async def read_community_settings(
    community_id: str,
    service: UserSettingsService = Depends(get_user_settings_service),
) -> CommunitySettings:
    return await service.get_community_settings(community_id)


@router.put("/communities/{community_id}", response_model=CommunitySettings)
async def update_community_settings(
    community_id: str,
    payload: CommunitySettingsUpdate,
    service: UserSettingsService = Depends(get_user_settings_service),
) -> CommunitySettings:
    try:
        return await service.update_community_settings(community_id, payload)
    except SettingsValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors) from exc
