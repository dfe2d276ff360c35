from __future__ import annotations

import logging

import httpx

from bgrelay.domain.background_remover import (
    BackgroundRemover,
    FailureReason,
    ProviderError,
    ProviderResult,
    UploadedFile,
)
from bgrelay.infrastructure.providers.data_uri import decode_data_uri
from bgrelay.infrastructure.providers.http_errors import (
    error_from_response,
    error_from_transport,
    truncate_details,
)

logger = logging.getLogger("bgrelay.providers.custom")


class CustomApiRemover(BackgroundRemover):
    """Internal removal service returning a JSON envelope.

    Response shape: ``{"image": "data:image/png;base64,...", "cached": bool}``.
    Failures come back as ``{"error": "..."}`` with a non-2xx status.
    """

    name = "custom"

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = f"{api_url.rstrip('/')}/remove-background"
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def remove_background(self, file: UploadedFile) -> ProviderResult:
        files = {"image": (file.filename or "image", file.content, file.content_type)}
        headers = {}
        if self._api_key:
            headers["X-API-Key"] = self._api_key

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._endpoint, files=files, headers=headers)
        except httpx.HTTPError as exc:
            raise error_from_transport(exc, "custom service request") from exc

        if response.status_code != 200:
            raise error_from_response(response, _error_message(response))

        try:
            envelope = response.json()
        except ValueError as exc:
            raise ProviderError(
                FailureReason.PROVIDER_ERROR,
                "custom service returned a non-JSON body",
                status_code=response.status_code,
                details=truncate_details(response.text),
            ) from exc

        image = envelope.get("image") if isinstance(envelope, dict) else None
        if not isinstance(image, str) or not image:
            raise ProviderError(
                FailureReason.PROVIDER_ERROR,
                "custom service returned no image",
                status_code=response.status_code,
                details=truncate_details(response.text),
            )

        try:
            content, content_type = decode_data_uri(image)
        except ValueError as exc:
            raise ProviderError(FailureReason.PROVIDER_ERROR, f"custom service image is unreadable: {exc}") from exc

        cached = bool(envelope.get("cached", False))
        logger.info("custom service returned %d bytes (cached=%s)", len(content), cached)
        return ProviderResult(content, content_type, cached=cached)


def _error_message(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return None
