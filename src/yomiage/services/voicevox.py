"""HTTP client for the VOICEVOX synthesis engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..errors import SynthesisError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpeakerStyle:
    """One selectable voice: a speaker plus one of its styles."""

    speaker_name: str
    style_name: str
    style_id: int

    @property
    def is_normal(self) -> bool:
        normalized = self.style_name.strip().lower()
        return normalized in {"ノーマル", "normal"}


class VoiceVoxClient:
    """Build synthesis queries and render audio through the engine's REST API.

    A single ``httpx.AsyncClient`` is shared per instance for connection
    pooling; pass ``client`` to supply your own (tests use a mock transport).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = str(base_url).rstrip("/")
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._speakers_cache: Optional[list[dict[str, Any]]] = None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=5.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
            logger.info("Created httpx.AsyncClient for VOICEVOX at %s", self._base_url)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
    ) -> httpx.Response:
        client = self._get_http_client()
        try:
            response = await client.request(
                method, f"{self._base_url}{path}", params=params, json=json
            )
        except httpx.HTTPError as exc:
            raise SynthesisError(f"VOICEVOX {operation} failed: {exc}") from exc

        if response.status_code >= 400:
            raise SynthesisError(
                f"VOICEVOX {operation} failed: {response.status_code} "
                f"{response.reason_phrase}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _decode(response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise SynthesisError(f"VOICEVOX {operation} returned invalid JSON") from exc

    async def list_speakers(self, force_refresh: bool = False) -> list[dict[str, Any]]:
        if not force_refresh and self._speakers_cache is not None:
            return self._speakers_cache

        response = await self._request("GET", "/speakers", operation="speakers fetch")
        data = self._decode(response, "speakers fetch")
        if not isinstance(data, list):
            raise SynthesisError("VOICEVOX speakers payload is not a list")
        self._speakers_cache = data
        return data

    async def list_speaker_styles(self, force_refresh: bool = False) -> list[SpeakerStyle]:
        speakers = await self.list_speakers(force_refresh)
        styles: list[SpeakerStyle] = []
        for speaker in speakers:
            name = str(speaker.get("name", ""))
            for style in speaker.get("styles") or []:
                if not isinstance(style, dict) or not isinstance(style.get("id"), int):
                    continue
                styles.append(
                    SpeakerStyle(
                        speaker_name=name,
                        style_name=str(style.get("name", "")),
                        style_id=style["id"],
                    )
                )
        return styles

    async def build_audio_query(self, text: str, speaker_id: int) -> dict[str, Any]:
        """Return the engine's synthesis query for ``text``, including its ``kana``."""

        response = await self._request(
            "POST",
            "/audio_query",
            operation="audio_query",
            params={"text": text, "speaker": speaker_id},
        )
        return self._decode(response, "audio_query")

    async def build_accent_phrases_from_kana(
        self, kana: str, speaker_id: int
    ) -> list[dict[str, Any]]:
        response = await self._request(
            "POST",
            "/accent_phrases",
            operation="accent_phrases",
            params={"text": kana, "speaker": speaker_id, "is_kana": "true"},
        )
        return self._decode(response, "accent_phrases")

    async def synthesize(
        self,
        text: str,
        speaker_id: int,
        *,
        pitch: float = 0.0,
        speed: float = 1.0,
        audio_query: Optional[dict[str, Any]] = None,
    ) -> bytes:
        """Render ``text`` (or a precomputed query) to WAV bytes."""

        query = dict(audio_query) if audio_query else await self.build_audio_query(
            text, speaker_id
        )
        query["pitchScale"] = pitch
        query["speedScale"] = speed

        response = await self._request(
            "POST",
            "/synthesis",
            operation="synthesis",
            params={"speaker": speaker_id},
            json=query,
        )
        return response.content


__all__ = ["SpeakerStyle", "VoiceVoxClient"]
