from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Any

import requests

from bgrelay.domain.background_remover import UploadedFile

DEFAULT_TIMEOUT_SECONDS = 30
FALLBACK_ERROR_MESSAGE = (
    "Failed to remove background. Your image may not have a background or is too complex. "
    "Please upload an image that is suitable for removing background."
)


class RemoveBackgroundError(Exception):
    def __init__(self, message: str, status_code: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


def load_file(path: str | Path) -> UploadedFile:
    path = Path(path)
    content_type, _ = mimetypes.guess_type(path.name)
    return UploadedFile(
        content=path.read_bytes(),
        content_type=content_type or "application/octet-stream",
        filename=path.name,
    )


def remove_background(
    file: UploadedFile,
    base_url: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    session: requests.Session | None = None,
) -> bytes:
    """POST the file to the relay and return the processed image bytes.

    Any non-2xx response raises RemoveBackgroundError carrying the relay's
    JSON error payload; the ``error`` field becomes the message.
    """
    http = session or requests
    try:
        response = http.post(
            f"{base_url.rstrip('/')}/api/remove-bg",
            files={"file": (file.filename, file.content, file.content_type)},
            timeout=timeout,
        )
    except requests.Timeout as exc:
        raise RemoveBackgroundError("Request timeout. Please try again with a smaller image") from exc
    except requests.RequestException as exc:
        raise RemoveBackgroundError(FALLBACK_ERROR_MESSAGE) from exc

    if not response.ok:
        payload = _json_or_none(response)
        message = FALLBACK_ERROR_MESSAGE
        if isinstance(payload, dict) and payload.get("error"):
            message = str(payload["error"])
        raise RemoveBackgroundError(message, response.status_code, payload)

    return response.content


def _json_or_none(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
