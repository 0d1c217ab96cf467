"""Speak a line of text as a given user."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ..errors import SpeechRequestError, VoiceConnectionError
from ..schemas.settings import SpeechRequest, SpeechResponse
from ..services.speech_dispatcher import SpeechDispatcher
from .dependencies import get_speech_dispatcher, require_api_key

router = APIRouter(
    prefix="/api/speech",
    tags=["speech"],
    dependencies=[Depends(require_api_key)],
)


@router.post("", response_model=SpeechResponse)
async def speak(
    payload: SpeechRequest,
    dispatcher: SpeechDispatcher = Depends(get_speech_dispatcher),
) -> SpeechResponse:
    try:
        return await dispatcher.speak(payload)
    except SpeechRequestError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except VoiceConnectionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
