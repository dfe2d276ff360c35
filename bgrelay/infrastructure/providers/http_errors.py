from __future__ import annotations

import httpx

from bgrelay.domain.background_remover import FailureReason, ProviderError

MAX_DETAILS_CHARS = 500

_STATUS_REASONS: dict[int, FailureReason] = {
    400: FailureReason.INVALID_INPUT,
    401: FailureReason.AUTH_FAILURE,
    402: FailureReason.QUOTA_EXCEEDED,
    403: FailureReason.AUTH_FAILURE,
    408: FailureReason.TIMEOUT,
    413: FailureReason.INVALID_INPUT,
    415: FailureReason.INVALID_INPUT,
    422: FailureReason.INVALID_INPUT,
    429: FailureReason.RATE_LIMITED,
    500: FailureReason.PROVIDER_ERROR,
    502: FailureReason.UPSTREAM_UNAVAILABLE,
    503: FailureReason.UPSTREAM_UNAVAILABLE,
    504: FailureReason.TIMEOUT,
}


def classify_status(status_code: int) -> FailureReason:
    return _STATUS_REASONS.get(status_code, FailureReason.UNKNOWN)


def truncate_details(text: str | None) -> str | None:
    if not text:
        return None
    return text[:MAX_DETAILS_CHARS]


def error_from_response(response: httpx.Response, message: str | None = None) -> ProviderError:
    """Build a classified ProviderError from a non-2xx provider response."""
    try:
        body = response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        body = ""
    return ProviderError(
        classify_status(response.status_code),
        message or f"provider responded with HTTP {response.status_code}",
        status_code=response.status_code,
        details=truncate_details(body),
    )


def error_from_transport(exc: httpx.HTTPError, stage: str) -> ProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(FailureReason.TIMEOUT, f"{stage} timed out", details=truncate_details(str(exc)))
    if isinstance(exc, httpx.TransportError):
        return ProviderError(
            FailureReason.UPSTREAM_UNAVAILABLE,
            f"{stage} could not reach the provider",
            details=truncate_details(str(exc)),
        )
    return ProviderError(FailureReason.UNKNOWN, f"{stage} failed", details=truncate_details(str(exc)))
