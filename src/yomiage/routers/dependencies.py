"""Shared request dependencies for the admin routers."""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from ..config import Settings
from ..services.credential_vault import CredentialVault
from ..services.speech_dispatcher import SpeechDispatcher
from ..services.user_settings import UserSettingsService
from ..voice.registry import SessionRegistry

logger = logging.getLogger(__name__)


def get_app_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:  # pragma: no cover
        raise RuntimeError("Settings are not configured")
    return settings


def require_api_key(
    settings: Settings = Depends(get_app_settings),
    x_api_key: Optional[str] = Header(default=None, alias="x-api-key"),
) -> None:
    expected = settings.admin_api_key
    if expected is None or not expected.get_secret_value():
        raise HTTPException(status_code=503, detail="Admin API key is not configured")
    if x_api_key is None or not secrets.compare_digest(
        x_api_key.encode("utf-8"), expected.get_secret_value().encode("utf-8")
    ):
        logger.warning("API request rejected due to invalid API key")
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_session_registry(request: Request) -> SessionRegistry:
    registry = getattr(request.app.state, "session_registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="No voice gateway is attached")
    return registry


def get_user_settings_service(request: Request) -> UserSettingsService:
    service = getattr(request.app.state, "user_settings_service", None)
    if service is None:  # pragma: no cover
        raise RuntimeError("User settings service is not configured")
    return service


def get_speech_dispatcher(request: Request) -> SpeechDispatcher:
    dispatcher = getattr(request.app.state, "speech_dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="No voice gateway is attached")
    return dispatcher


def get_credential_vault(request: Request) -> CredentialVault:
    vault = getattr(request.app.state, "credential_vault", None)
    if vault is None:
        raise HTTPException(
            status_code=503, detail="Credential vault is not configured (LLM_MASTER_KEY)"
        )
    return vault


__all__ = [
    "get_app_settings",
    "get_credential_vault",
    "get_session_registry",
    "get_speech_dispatcher",
    "get_user_settings_service",
    "require_api_key",
]
