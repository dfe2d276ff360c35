from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from bgrelay.domain.background_remover import (
    BackgroundRemover,
    FailureReason,
    ProviderError,
    UploadedFile,
)
from bgrelay.infrastructure.image_validation import ImageValidationError, validate_upload
from bgrelay.infrastructure.metrics import MetricsStore

logger = logging.getLogger("bgrelay.relay")

PROVIDER_ERROR_RESPONSES: dict[FailureReason, tuple[int, str]] = {
    FailureReason.INVALID_INPUT: (400, "Invalid image format or corrupted file"),
    FailureReason.AUTH_FAILURE: (403, "Invalid API key"),
    FailureReason.QUOTA_EXCEEDED: (402, "API quota exceeded. Please check your provider plan"),
    FailureReason.RATE_LIMITED: (429, "Rate limit exceeded. Please try again in a moment"),
    FailureReason.PROVIDER_ERROR: (500, "AI processing error. Please try again"),
    FailureReason.UPSTREAM_UNAVAILABLE: (503, "Service unavailable. Please try again later"),
    FailureReason.TIMEOUT: (
        504,
        "Request timeout. The AI processing took too long, please try a smaller image",
    ),
    FailureReason.UNKNOWN: (500, "Internal server error"),
}


@dataclass(frozen=True)
class RelayResult:
    content: bytes
    filename: str
    content_type: str = "image/png"


class RelayError(Exception):
    def __init__(self, status_code: int, message: str, code: str, details: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details

    def to_payload(self) -> dict[str, str]:
        payload = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


def relay_error_for(exc: ProviderError) -> RelayError:
    status_code, message = PROVIDER_ERROR_RESPONSES[exc.reason]
    return RelayError(status_code, message, exc.reason.value, details=exc.details or exc.message)


def suggested_filename(now: float) -> str:
    return f"removed-bg-{int(now * 1000)}.png"


class RemoveBackgroundUseCase:
    """Validate one upload, hand it to the configured remover, normalize the outcome.

    The remover call is bounded by ``timeout_seconds`` as a whole, so a
    multi round-trip provider cannot exceed it either. Nothing is retried.
    """

    def __init__(
        self,
        remover: BackgroundRemover | None,
        max_upload_bytes: int,
        timeout_seconds: float,
        metrics: MetricsStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._remover = remover
        self._max_upload_bytes = max_upload_bytes
        self._timeout_seconds = timeout_seconds
        self._metrics = metrics or MetricsStore()
        self._clock = clock

    @property
    def remover(self) -> BackgroundRemover | None:
        return self._remover

    async def execute(self, file: UploadedFile | None) -> RelayResult:
        if file is None:
            raise RelayError(400, "No file uploaded", "no-file")

        try:
            validate_upload(file, self._max_upload_bytes)
        except ImageValidationError as exc:
            self._metrics.incr("uploads_rejected_total")
            logger.info("rejected upload %s: %s", file.filename, exc.reason)
            raise RelayError(400, exc.message, exc.reason) from exc

        if self._remover is None:
            self._metrics.incr("relay_failures_total")
            raise RelayError(500, "API configuration error", "configuration-error")

        logger.info(
            "processing image filename=%s size_kb=%.2f content_type=%s provider=%s",
            file.filename,
            file.size / 1024,
            file.content_type,
            self._remover.name,
        )
        started = time.perf_counter()

        try:
            result = await asyncio.wait_for(
                self._remover.remove_background(file),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise self._failed(
                ProviderError(FailureReason.TIMEOUT, f"provider call exceeded {self._timeout_seconds:g}s"),
                started,
            ) from exc
        except ProviderError as exc:
            raise self._failed(exc, started) from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("unexpected failure from provider %s", self._remover.name)
            raise self._failed(ProviderError(FailureReason.UNKNOWN, str(exc)), started) from exc

        if not result.content:
            raise self._failed(
                ProviderError(FailureReason.PROVIDER_ERROR, "provider returned an empty image"),
                started,
            )

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        self._metrics.incr("relay_success_total")
        logger.info(
            "provider %s succeeded in %dms (%d bytes, cached=%s)",
            self._remover.name,
            elapsed_ms,
            len(result.content),
            result.cached,
        )
        return RelayResult(content=result.content, filename=suggested_filename(self._clock()))

    def _failed(self, exc: ProviderError, started: float) -> RelayError:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        self._metrics.incr("relay_failures_total")
        self._metrics.incr(f"provider_failures_{exc.reason.value.replace('-', '_')}_total")
        logger.error(
            "provider %s failed after %dms: reason=%s status=%s message=%s",
            self._remover.name if self._remover else "none",
            elapsed_ms,
            exc.reason.value,
            exc.status_code,
            exc.message,
        )
        return relay_error_for(exc)
