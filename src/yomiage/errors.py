"""Error taxonomy shared by the voice, LLM and settings layers."""

from __future__ import annotations

from typing import Any, Iterable


class YomiageError(Exception):
    """Base class for every error raised by the service."""


class VoiceConnectionError(YomiageError):
    """Joining a voice channel failed or did not become ready in time."""


class SynthesisError(YomiageError):
    """The synthesis engine rejected or failed a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderError(YomiageError):
    """Wrap transport or API failures when talking to a completion provider."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail

    def summary(self) -> str:
        compact = " ".join(str(self.detail).split())[:240]
        return f"HTTP {self.status_code} {compact}".strip()


class CredentialError(YomiageError):
    """A stored credential could not be decrypted, found, or used."""


class CredentialAccessDenied(CredentialError):
    """The acting user may not use or manage this credential."""


class SettingsValidationError(YomiageError):
    """One or more settings fields were rejected before any change was applied."""

    def __init__(self, errors: Iterable[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class SpeechRequestError(YomiageError):
    """A speak-as-user request cannot be routed to a voice session."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "CredentialAccessDenied",
    "CredentialError",
    "ProviderError",
    "SettingsValidationError",
    "SpeechRequestError",
    "SynthesisError",
    "VoiceConnectionError",
    "YomiageError",
]
