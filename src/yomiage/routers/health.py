"""Liveness endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from ..config import Settings
from .dependencies import get_app_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def healthcheck(
    request: Request, settings: Settings = Depends(get_app_settings)
) -> dict[str, Any]:
    registry = getattr(request.app.state, "session_registry", None)
    return {
        "status": "ok",
        "voicevox_api_url": str(settings.voicevox_api_url),
        "gateway_attached": registry is not None,
        "active_sessions": len(registry.snapshot()) if registry is not None else 0,
        "credential_vault": getattr(request.app.state, "credential_vault", None) is not None,
    }
