"""Read-only view of active voice sessions."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from ..voice.registry import SessionRegistry
from .dependencies import get_session_registry, require_api_key

router = APIRouter(
    prefix="/api/sessions",
    tags=["sessions"],
    dependencies=[Depends(require_api_key)],
)


@router.get("")
async def list_sessions(
    registry: SessionRegistry = Depends(get_session_registry),
) -> dict[str, Any]:
    sessions = registry.snapshot()
    return {"sessions": sessions, "count": len(sessions)}
