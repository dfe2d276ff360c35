from __future__ import annotations

import base64
import binascii


def to_data_uri(content: bytes, content_type: str) -> str:
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{content_type or 'application/octet-stream'};base64,{encoded}"


def decode_data_uri(value: str) -> tuple[bytes, str]:
    """Return (bytes, content_type). Bare base64 strings are accepted as PNG."""
    content_type = "image/png"
    payload = value
    if value.startswith("data:"):
        header, sep, payload = value.partition(",")
        if not sep:
            raise ValueError("data URI has no payload")
        media = header[len("data:"):].split(";", 1)[0].strip()
        if media:
            content_type = media
        if ";base64" not in header:
            raise ValueError("data URI is not base64 encoded")
    try:
        return base64.b64decode(payload, validate=True), content_type
    except binascii.Error as exc:
        raise ValueError("invalid base64 payload") from exc
