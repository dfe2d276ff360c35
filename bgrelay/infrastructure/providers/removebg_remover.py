from __future__ import annotations

import logging

import httpx

from bgrelay.domain.background_remover import BackgroundRemover, ProviderResult, UploadedFile
from bgrelay.infrastructure.providers.http_errors import error_from_response, error_from_transport

logger = logging.getLogger("bgrelay.providers.removebg")

REMOVEBG_ENDPOINT = "https://api.remove.bg/v1.0/removebg"


class RemoveBgRemover(BackgroundRemover):
    """remove.bg: one multipart request, the response body is the image."""

    name = "removebg"

    def __init__(
        self,
        api_key: str,
        api_url: str = REMOVEBG_ENDPOINT,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_url = api_url
        self._timeout = timeout
        self._transport = transport

    async def remove_background(self, file: UploadedFile) -> ProviderResult:
        files = {"image_file": (file.filename or "image", file.content, file.content_type)}
        data = {"size": "auto"}
        headers = {"X-Api-Key": self._api_key}

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._api_url, files=files, data=data, headers=headers)
        except httpx.HTTPError as exc:
            raise error_from_transport(exc, "remove.bg request") from exc

        if response.status_code != 200:
            raise error_from_response(response, _error_title(response))

        credits = response.headers.get("x-credits-charged")
        if credits:
            logger.info("remove.bg charged %s credits", credits)
        return ProviderResult(response.content, response.headers.get("content-type", "image/png"))


def _error_title(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if not errors or not isinstance(errors, list):
        return None
    first = errors[0] if isinstance(errors[0], dict) else {}
    title = first.get("title")
    return f"remove.bg: {title}" if title else None
