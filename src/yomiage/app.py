"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from .config import PROJECT_ROOT, Settings, get_settings
from .errors import CredentialError
from .llm.assist import LlmAssistPipeline, PassthroughAssist
from .llm.providers import CompletionProvider, build_providers
from .logging_handlers import DateStampedFileHandler, cleanup_old_logs
from .repository import SettingsRepository
from .routers.credentials import router as credentials_router
from .routers.health import router as health_router
from .routers.sessions import router as sessions_router
from .routers.settings import router as settings_router
from .routers.speech import router as speech_router
from .services.credential_vault import CredentialVault
from .services.speech_dispatcher import SpeechDispatcher
from .services.user_settings import UserSettingsService
from .services.voicevox import VoiceVoxClient
from .voice.gateway import VoiceGateway
from .voice.registry import SessionRegistry

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _configure_logging(settings: Settings) -> None:
    """Configure the root logger from LOG_LEVEL and optional LOG_DIR."""

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    formatter = logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATE_FORMAT)

    handlers: list[logging.Handler] = []
    if settings.log_dir is not None:
        log_dir = _resolve_path(settings.log_dir)
        cleanup_old_logs([log_dir], settings.log_retention_hours)
        file_handler = DateStampedFileHandler(log_dir, tz=settings.log_timezone)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    # Always add console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("yomiage").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # Request URLs carry the Gemini API key as a query parameter
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def _resolve_path(path: Path) -> Path:
    return path.resolve() if path.is_absolute() else (PROJECT_ROOT / path).resolve()


def _build_vault(
    settings: Settings, repository: SettingsRepository
) -> Optional[CredentialVault]:
    try:
        master_key = settings.master_key_bytes
    except CredentialError as exc:
        logger.warning("LLM assist and credential routes disabled: %s", exc)
        return None
    return CredentialVault(repository, master_key)


def create_app(
    gateway: Optional[VoiceGateway] = None,
    settings: Optional[Settings] = None,
    voicevox: Optional[VoiceVoxClient] = None,
) -> FastAPI:
    """Build the service.

    ``gateway`` is the chat-platform adapter. Without one the admin routes for
    settings and credentials still work, while speech and session routes
    answer 503. ``voicevox`` replaces the engine client built from settings.
    """

    load_dotenv()
    settings = settings or get_settings()
    _configure_logging(settings)

    repository = SettingsRepository(_resolve_path(settings.database_path))
    voicevox = voicevox or VoiceVoxClient(
        str(settings.voicevox_api_url), timeout=settings.voicevox_timeout
    )
    vault = _build_vault(settings, repository)

    assistant: LlmAssistPipeline | PassthroughAssist
    if vault is not None:
        assistant = LlmAssistPipeline(
            preferences=repository,
            credentials=repository,
            vault=vault,
            engine=voicevox,
            providers=build_providers(timeout=settings.llm_request_timeout),
            max_utterance_length=settings.max_utterance_length,
        )
    else:
        assistant = PassthroughAssist()

    user_settings_service = UserSettingsService(
        repository,
        voicevox,
        default_speaker_id=settings.default_speaker_id,
        default_pitch=settings.default_pitch,
        default_speed=settings.default_speed,
    )

    registry: Optional[SessionRegistry] = None
    dispatcher: Optional[SpeechDispatcher] = None
    if gateway is not None:
        registry = SessionRegistry(
            gateway,
            voicevox,
            connect_timeout=settings.voice_connect_timeout,
            playback_start_timeout=settings.playback_start_timeout,
        )
        dispatcher = SpeechDispatcher(
            registry=registry,
            gateway=gateway,
            repository=repository,
            catalog=voicevox,
            assistant=assistant,
            default_speaker_id=settings.default_speaker_id,
            default_pitch=settings.default_pitch,
            default_speed=settings.default_speed,
            max_utterance_length=settings.max_utterance_length,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await repository.initialize()
        logger.info("Settings database ready at %s", settings.database_path)
        try:
            yield
        finally:
            if registry is not None:
                registry.destroy_all()
            await voicevox.aclose()
            await CompletionProvider.aclose_shared()
            try:
                await asyncio.wait_for(repository.close(), timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Settings database close timed out after 10s")

    app = FastAPI(
        title="Yomiage TTS Relay",
        version="0.1.0",
        description="Reads community chat aloud in voice channels via VOICEVOX.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.repository = repository
    app.state.voicevox = voicevox
    app.state.credential_vault = vault
    app.state.assistant = assistant
    app.state.user_settings_service = user_settings_service
    app.state.session_registry = registry
    app.state.speech_dispatcher = dispatcher

    app.include_router(health_router)
    app.include_router(sessions_router)
    app.include_router(settings_router)
    app.include_router(speech_router)
    app.include_router(credentials_router)

    return app


__all__ = ["create_app"]
