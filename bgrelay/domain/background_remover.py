from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class UploadedFile:
    content: bytes
    content_type: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class ProviderResult:
    content: bytes
    content_type: str = "image/png"
    cached: bool = False


class FailureReason(str, Enum):
    INVALID_INPUT = "invalid-input"
    QUOTA_EXCEEDED = "quota-exceeded"
    AUTH_FAILURE = "auth-failure"
    RATE_LIMITED = "rate-limited"
    PROVIDER_ERROR = "provider-error"
    UPSTREAM_UNAVAILABLE = "upstream-unavailable"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ProviderError(Exception):
    """Provider failure already classified into the shared taxonomy."""

    def __init__(
        self,
        reason: FailureReason,
        message: str,
        status_code: int | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.status_code = status_code
        self.details = details


class BackgroundRemover(ABC):
    name: str = "provider"

    @abstractmethod
    async def remove_background(self, file: UploadedFile) -> ProviderResult:
        """Return the processed image, or raise ProviderError."""
