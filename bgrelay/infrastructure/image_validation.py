from __future__ import annotations

from bgrelay.domain.background_remover import UploadedFile

ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/webp"})


class ImageValidationError(ValueError):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


def normalize_content_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def validate_upload(file: UploadedFile, max_bytes: int) -> None:
    if file.size > max_bytes:
        raise ImageValidationError(
            "too-large",
            f"File too large. Max size is {max_bytes // (1024 * 1024)} MB",
        )
    if normalize_content_type(file.content_type) not in ALLOWED_CONTENT_TYPES:
        raise ImageValidationError(
            "unsupported-type",
            "Invalid file type. Only JPEG, PNG, and WebP are allowed.",
        )
    if file.size == 0:
        raise ImageValidationError("empty-file", "Uploaded file is empty")
