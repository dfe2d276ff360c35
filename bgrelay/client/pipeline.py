from __future__ import annotations

import io
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from threading import Condition, RLock
from typing import Callable, Optional, Union

import requests
from PIL import Image, UnidentifiedImageError

from bgrelay.client.api_client import (
    DEFAULT_TIMEOUT_SECONDS,
    FALLBACK_ERROR_MESSAGE,
    RemoveBackgroundError,
    load_file,
    remove_background,
)
from bgrelay.domain.background_remover import UploadedFile

logger = logging.getLogger("bgrelay.client")

MAX_LOCAL_BYTES = 10 * 1024 * 1024
PREVIEW_MAX_SIDE = 512


@dataclass(frozen=True)
class Preview:
    width: int
    height: int
    thumbnail: bytes


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Previewing:
    original: bytes
    preview: Optional[Preview]


@dataclass(frozen=True)
class Processing:
    original: bytes
    preview: Optional[Preview]


@dataclass(frozen=True)
class Done:
    original: bytes
    processed: bytes
    preview: Optional[Preview]


@dataclass(frozen=True)
class Failed:
    message: str


ClientState = Union[Idle, Previewing, Processing, Done, Failed]


class PipelineStateError(RuntimeError):
    pass


class PipelineBusyError(PipelineStateError):
    pass


def check_local(file: UploadedFile, max_bytes: int = MAX_LOCAL_BYTES) -> str | None:
    if not (file.content_type or "").lower().startswith("image/"):
        return "Please upload an image file"
    if file.size > max_bytes:
        return f"File size must be less than {max_bytes // (1024 * 1024)}MB"
    return None


def build_preview(content: bytes, max_side: int = PREVIEW_MAX_SIDE) -> Preview | None:
    try:
        with Image.open(io.BytesIO(content)) as image:
            width, height = image.size
            thumb = image.convert("RGBA")
            thumb.thumbnail((max_side, max_side))
            out = io.BytesIO()
            thumb.save(out, format="PNG")
    except (UnidentifiedImageError, OSError):
        logger.debug("could not decode image for preview")
        return None
    return Preview(width=width, height=height, thumbnail=out.getvalue())


class ClientPipeline:
    """Drives one upload at a time: Idle -> Previewing -> Processing -> Done | Failed.

    Each submission gets a generation number. reset() bumps it, so a request
    that was abandoned and resolves later is dropped instead of being applied
    to whatever the pipeline shows now.
    """

    def __init__(
        self,
        base_url: str,
        max_bytes: int = MAX_LOCAL_BYTES,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        remove_fn: Callable[[UploadedFile], bytes] | None = None,
        on_change: Callable[[ClientState], None] | None = None,
        executor: ThreadPoolExecutor | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url
        self._max_bytes = max_bytes
        self._timeout = timeout
        self._session = session
        self._remove = remove_fn or partial(
            remove_background, base_url=base_url, timeout=timeout, session=session
        )
        self._on_change = on_change
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="bgrelay-client")
        self._lock = RLock()
        self._settled = Condition(self._lock)
        self._state: ClientState = Idle()
        self._generation = 0

    @property
    def state(self) -> ClientState:
        with self._lock:
            return self._state

    @property
    def accepting_uploads(self) -> bool:
        return not isinstance(self.state, Processing)

    def select_file(self, file: UploadedFile) -> Future | None:
        with self._lock:
            if isinstance(self._state, Processing):
                raise PipelineBusyError("an image is already being processed")

            rejection = check_local(file, self._max_bytes)
            if rejection:
                self._set_state(Failed(rejection))
                return None

            preview = build_preview(file.content)
            self._set_state(Previewing(file.content, preview))

            self._generation += 1
            generation = self._generation
            self._set_state(Processing(file.content, preview))

        future = self._executor.submit(self._remove, file)
        future.add_done_callback(partial(self._settle, generation, file.content, preview))
        return future

    def select_path(self, path: str | Path) -> Future | None:
        return self.select_file(load_file(path))

    def select_url(self, url: str) -> Future | None:
        if not self.accepting_uploads:
            raise PipelineBusyError("an image is already being processed")
        http = self._session or requests
        try:
            response = http.get(url, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("could not load sample image %s: %s", url, exc)
            with self._lock:
                self._set_state(Failed(FALLBACK_ERROR_MESSAGE))
            return None

        content_type = response.headers.get("content-type", "image/jpeg").split(";", 1)[0].strip()
        return self.select_file(UploadedFile(response.content, content_type, "sample.jpg"))

    def retry(self) -> None:
        with self._lock:
            if not isinstance(self._state, Failed):
                raise PipelineStateError("retry is only available after a failure")
            self._reset_locked()

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()

    def save(self, path: str | Path | None = None) -> Path:
        with self._lock:
            state = self._state
        if not isinstance(state, Done):
            raise PipelineStateError("no processed image to save")
        target = Path(path) if path else Path(f"background-removed-{int(time.time() * 1000)}.png")
        target.write_bytes(state.processed)
        return target

    def wait(self, timeout: float | None = None) -> ClientState:
        """Block until the pipeline leaves Processing and return the state."""
        with self._settled:
            self._settled.wait_for(lambda: not isinstance(self._state, Processing), timeout)
            return self._state

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def __enter__(self) -> ClientPipeline:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _reset_locked(self) -> None:
        self._generation += 1
        self._set_state(Idle())

    def _settle(self, generation: int, original: bytes, preview: Preview | None, future: Future) -> None:
        with self._lock:
            if generation != self._generation or future.cancelled():
                logger.debug("dropping result of abandoned request %d", generation)
                return

            exc = future.exception()
            if exc is None:
                self._set_state(Done(original, future.result(), preview))
            elif isinstance(exc, RemoveBackgroundError):
                self._set_state(Failed(exc.message))
            else:
                logger.error("background removal failed: %s", exc)
                self._set_state(Failed(FALLBACK_ERROR_MESSAGE))

    def _set_state(self, state: ClientState) -> None:
        self._state = state
        self._settled.notify_all()
        if self._on_change is not None:
            self._on_change(state)
