from __future__ import annotations

import asyncio
import logging
import time

import httpx

from bgrelay.domain.background_remover import (
    BackgroundRemover,
    FailureReason,
    ProviderError,
    ProviderResult,
    UploadedFile,
)
from bgrelay.infrastructure.providers.data_uri import to_data_uri
from bgrelay.infrastructure.providers.http_errors import (
    error_from_response,
    error_from_transport,
    truncate_details,
)

logger = logging.getLogger("bgrelay.providers.replicate")

REPLICATE_API_URL = "https://api.replicate.com/v1"
TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})


class ReplicateRemover(BackgroundRemover):
    """Hosted model on Replicate.

    Two round trips: create the prediction (polling until it settles), then
    download the image from the output URL. A failed download after a
    successful prediction is reported as upstream-unavailable.
    """

    name = "replicate"

    def __init__(
        self,
        api_token: str,
        model_version: str,
        api_url: str = REPLICATE_API_URL,
        timeout: float = 30.0,
        poll_interval: float = 1.0,
        max_wait: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_token = api_token
        self._model_version = model_version
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._transport = transport

    async def remove_background(self, file: UploadedFile) -> ProviderResult:
        headers = {"Authorization": f"Bearer {self._api_token}", "Prefer": "wait"}
        payload = {
            "version": self._model_version,
            "input": {"image": to_data_uri(file.content, file.content_type)},
        }

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            prediction = await self._create_prediction(client, payload, headers)
            prediction = await self._wait_for_prediction(client, prediction, headers)
            output_url = _output_url(prediction)
            logger.info("prediction %s succeeded, fetching %s", prediction.get("id"), output_url)
            return await self._download(client, output_url)

    async def _create_prediction(self, client: httpx.AsyncClient, payload: dict, headers: dict) -> dict:
        try:
            response = await client.post(f"{self._api_url}/predictions", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise error_from_transport(exc, "prediction request") from exc

        if response.status_code not in (200, 201):
            raise error_from_response(response, _error_detail(response))
        return _prediction_body(response)

    async def _wait_for_prediction(self, client: httpx.AsyncClient, prediction: dict, headers: dict) -> dict:
        deadline = time.monotonic() + self._max_wait
        while prediction.get("status") not in TERMINAL_STATUSES:
            if time.monotonic() >= deadline:
                raise ProviderError(FailureReason.TIMEOUT, "prediction did not finish in time")

            poll_url = (prediction.get("urls") or {}).get("get")
            if not poll_url:
                raise ProviderError(FailureReason.PROVIDER_ERROR, "prediction has no status URL")

            await asyncio.sleep(self._poll_interval)
            try:
                response = await client.get(poll_url, headers={"Authorization": headers["Authorization"]})
            except httpx.HTTPError as exc:
                raise error_from_transport(exc, "prediction status request") from exc
            if response.status_code != 200:
                raise error_from_response(response, _error_detail(response))
            prediction = _prediction_body(response)

        status = prediction.get("status")
        if status != "succeeded":
            raise ProviderError(
                FailureReason.PROVIDER_ERROR,
                f"prediction {status}",
                details=truncate_details(str(prediction.get("error") or "")),
            )
        return prediction

    async def _download(self, client: httpx.AsyncClient, url: str) -> ProviderResult:
        try:
            response = await client.get(url)
        except httpx.HTTPError as exc:
            raise ProviderError(
                FailureReason.UPSTREAM_UNAVAILABLE,
                "could not download prediction output",
                details=truncate_details(str(exc)),
            ) from exc

        if response.status_code != 200:
            raise ProviderError(
                FailureReason.UPSTREAM_UNAVAILABLE,
                "could not download prediction output",
                status_code=response.status_code,
                details=truncate_details(response.text),
            )
        return ProviderResult(response.content, response.headers.get("content-type", "image/png"))


def _prediction_body(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderError(
            FailureReason.PROVIDER_ERROR,
            "replicate returned a non-JSON body",
            status_code=response.status_code,
            details=truncate_details(response.text),
        ) from exc
    if not isinstance(payload, dict):
        raise ProviderError(FailureReason.PROVIDER_ERROR, "replicate returned an unexpected body")
    return payload


def _output_url(prediction: dict) -> str:
    output = prediction.get("output")
    if isinstance(output, list):
        output = output[0] if output else None
    if not isinstance(output, str) or not output:
        raise ProviderError(FailureReason.PROVIDER_ERROR, "prediction returned no output")
    return output


def _error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and payload.get("detail"):
        return f"replicate: {payload['detail']}"
    return None
