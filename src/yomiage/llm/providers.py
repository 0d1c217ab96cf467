"""Completion providers behind one ``generate(instruction, text)`` contract.

Each provider differs only in endpoint and auth shape (bearer header for
OpenAI, key-in-URL for Gemini). Adding a provider means adding one subclass
and one entry in :data:`PROVIDER_CLASSES`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional
from urllib.parse import quote

import httpx
from fastapi import status

from ..errors import ProviderError
from .types import LlmProvider

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.2


class CompletionProvider(ABC):
    """Base class handling transport, status and empty-output failures."""

    provider: LlmProvider

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[float, httpx.AsyncClient] = {}

    def __init__(
        self,
        *,
        timeout: float = 6.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._timeout = timeout
        self._client = client

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client

        key = float(self._timeout)
        client = CompletionProvider._client_pool.get(key)
        if client is not None:
            return client

        async with CompletionProvider._client_lock:
            client = CompletionProvider._client_pool.get(key)
            if client is None:
                client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self._timeout, connect=3.0),
                    limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                )
                CompletionProvider._client_pool[key] = client
        return client

    @classmethod
    async def aclose_shared(cls) -> None:
        async with CompletionProvider._client_lock:
            clients = list(CompletionProvider._client_pool.values())
            CompletionProvider._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover
                logger.debug("Failed to close pooled provider client", exc_info=True)

    async def generate(
        self, instruction: str, text: str, *, model: str, api_key: str
    ) -> str:
        """Return the provider's non-empty, stripped completion for ``text``."""

        url, headers, payload = self._build_request(instruction, text, model, api_key)
        client = await self._get_http_client()
        try:
            response = await client.post(
                url, headers=headers, json=payload, timeout=self._timeout
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                status.HTTP_504_GATEWAY_TIMEOUT,
                f"{self.provider.value} request timed out after {self._timeout:.0f}s",
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            raise ProviderError(
                response.status_code, self._extract_error_detail(response.content)
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        output = self._extract_text(body).strip() if isinstance(body, Mapping) else ""
        if not output:
            raise ProviderError(
                status.HTTP_502_BAD_GATEWAY,
                f"{self.provider.value} response did not contain output text",
            )
        return output

    @abstractmethod
    def _build_request(
        self, instruction: str, text: str, model: str, api_key: str
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return ``(url, headers, json_payload)``."""

    @abstractmethod
    def _extract_text(self, payload: Mapping[str, Any]) -> str:
        """Pull the completion text out of a decoded response body."""

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Provider returned an empty error response."
        text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


class OpenAIProvider(CompletionProvider):
    provider = LlmProvider.OPENAI
    endpoint = "https://api.openai.com/v1/responses"

    def _build_request(
        self, instruction: str, text: str, model: str, api_key: str
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": model,
            "input": [
                {
                    "role": "system",
                    "content": [{"type": "input_text", "text": instruction}],
                },
                {"role": "user", "content": [{"type": "input_text", "text": text}]},
            ],
            "temperature": DEFAULT_TEMPERATURE,
        }
        return self.endpoint, headers, payload

    def _extract_text(self, payload: Mapping[str, Any]) -> str:
        output_text = payload.get("output_text")
        if isinstance(output_text, str) and output_text:
            return output_text
        outputs = payload.get("output")
        if not isinstance(outputs, list):
            return ""
        for output in outputs:
            if not isinstance(output, Mapping):
                continue
            contents = output.get("content")
            if not isinstance(contents, list):
                continue
            for content in contents:
                if (
                    isinstance(content, Mapping)
                    and content.get("type") == "output_text"
                    and isinstance(content.get("text"), str)
                ):
                    return content["text"]
        return ""


class GeminiProvider(CompletionProvider):
    provider = LlmProvider.GEMINI
    base_url = "https://generativelanguage.googleapis.com/v1beta/models"

    def _build_request(
        self, instruction: str, text: str, model: str, api_key: str
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = (
            f"{self.base_url}/{quote(model, safe='')}:generateContent"
            f"?key={quote(api_key, safe='')}"
        )
        payload = {
            "systemInstruction": {"parts": [{"text": instruction}]},
            "contents": [{"role": "user", "parts": [{"text": text}]}],
            "generationConfig": {"temperature": DEFAULT_TEMPERATURE},
        }
        return url, {"Content-Type": "application/json"}, payload

    def _extract_text(self, payload: Mapping[str, Any]) -> str:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return ""
        if not isinstance(candidates[0], Mapping):
            return ""
        content = candidates[0].get("content")
        parts = content.get("parts") if isinstance(content, Mapping) else None
        if not isinstance(parts, list):
            return ""
        return "".join(
            part["text"]
            for part in parts
            if isinstance(part, Mapping) and isinstance(part.get("text"), str)
        )


PROVIDER_CLASSES: dict[LlmProvider, type[CompletionProvider]] = {
    LlmProvider.GEMINI: GeminiProvider,
    LlmProvider.OPENAI: OpenAIProvider,
}


def build_providers(
    *, timeout: float = 6.0, client: Optional[httpx.AsyncClient] = None
) -> dict[LlmProvider, CompletionProvider]:
    return {
        name: provider_cls(timeout=timeout, client=client)
        for name, provider_cls in PROVIDER_CLASSES.items()
    }


__all__ = [
    "CompletionProvider",
    "GeminiProvider",
    "OpenAIProvider",
    "PROVIDER_CLASSES",
    "build_providers",
]
