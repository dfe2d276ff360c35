from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from bgrelay.application.remove_background_use_case import RelayError, RemoveBackgroundUseCase
from bgrelay.config import Settings, settings as default_settings
from bgrelay.domain.background_remover import BackgroundRemover, UploadedFile
from bgrelay.infrastructure.metrics import MetricsStore
from bgrelay.infrastructure.providers.factory import ProviderConfigurationError, build_remover
from bgrelay.infrastructure.rate_limiter import SlidingWindowRateLimiter, build_rate_limiter

logger = logging.getLogger("bgrelay.api")
if not logger.handlers:
    logging.basicConfig(level=getattr(logging, default_settings.log_level.upper(), logging.INFO))

DISCONNECT_POLL_SECONDS = 0.5
CLIENT_CLOSED_REQUEST = 499


class ClientDisconnected(Exception):
    pass


def client_key(request: Request, trust_proxy: bool) -> str:
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


class RequestContextMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,
        rate_limiter: SlidingWindowRateLimiter,
        metrics: MetricsStore,
        trust_proxy: bool = False,
    ) -> None:
        super().__init__(app)
        self._rate_limiter = rate_limiter
        self._metrics = metrics
        self._trust_proxy = trust_proxy

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        start = time.perf_counter()

        request.state.request_id = request_id
        self._metrics.incr("http_requests_total")

        if request.url.path.startswith("/api/") and request.method != "OPTIONS":
            decision = self._rate_limiter.check(client_key(request, self._trust_proxy))
            if not decision.allowed:
                self._metrics.incr("rate_limited_total")
                logger.warning("rate limit exceeded for %s", client_key(request, self._trust_proxy))
                return JSONResponse(
                    {"error": "Too many requests, please try again later.", "code": "too-many-requests"},
                    status_code=429,
                    headers={
                        "x-request-id": request_id,
                        "Retry-After": str(decision.retry_after_seconds),
                    },
                )

        response = await call_next(request)
        elapsed_ms = int((time.perf_counter() - start) * 1000)

        response.headers["x-request-id"] = request_id
        logger.info(
            json.dumps(
                {
                    "request_id": request_id,
                    "method": request.method,
                    "path": str(request.url.path),
                    "status": response.status_code,
                    "elapsed_ms": elapsed_ms,
                }
            )
        )
        return response


async def _wait_for_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def run_unless_disconnected(request: Request, work: Awaitable[Any]) -> Any:
    """Await work, cancelling it if the client goes away first."""
    task = asyncio.ensure_future(work)
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        done, _ = await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        pending = [t for t in (task, watcher) if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    if task in done:
        return task.result()
    raise ClientDisconnected()


def create_app(
    settings: Settings | None = None,
    remover: BackgroundRemover | None = None,
    rate_limiter: SlidingWindowRateLimiter | None = None,
    metrics: MetricsStore | None = None,
) -> FastAPI:
    settings = settings or default_settings
    metrics = metrics or MetricsStore()
    rate_limiter = rate_limiter or build_rate_limiter(settings)

    if remover is None:
        try:
            remover = build_remover(settings)
        except ProviderConfigurationError as exc:
            logger.warning("background remover not configured: %s", exc)

    use_case = RemoveBackgroundUseCase(
        remover,
        max_upload_bytes=settings.max_upload_bytes,
        timeout_seconds=settings.provider_timeout_seconds,
        metrics=metrics,
    )

    app = FastAPI(title="Background Removal Relay")
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.rate_limiter = rate_limiter
    app.state.use_case = use_case

    app.add_middleware(
        RequestContextMiddleware,
        rate_limiter=rate_limiter,
        metrics=metrics,
        trust_proxy=settings.trust_proxy,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_origin_regex=settings.allowed_origin_regex or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition", "x-request-id"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code in (404, 405):
            return JSONResponse({"error": "Endpoint not found"}, status_code=404)
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"error": "Invalid request", "details": json.dumps(exc.errors(), default=str)[:500]},
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": str(exc) or "Internal server error"}, status_code=500)

    @app.get("/")
    def health() -> dict[str, str]:
        return {"status": "OK"}

    @app.post("/api/remove-bg")
    async def remove_bg(request: Request, file: UploadFile | None = File(None)) -> Response:
        upload = None
        if file is not None:
            upload = UploadedFile(
                content=await file.read(),
                content_type=file.content_type or "",
                filename=file.filename or "image",
            )

        try:
            result = await run_unless_disconnected(request, use_case.execute(upload))
        except RelayError as exc:
            return JSONResponse(exc.to_payload(), status_code=exc.status_code)
        except ClientDisconnected:
            logger.warning("client disconnected before provider finished; call abandoned")
            return Response(status_code=CLIENT_CLOSED_REQUEST)

        return Response(
            content=result.content,
            media_type=result.content_type,
            headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
        )

    @app.get("/api/metrics")
    def get_metrics() -> dict:
        snapshot = metrics.snapshot()
        snapshot["timestamp"] = int(datetime.now(timezone.utc).timestamp())
        return snapshot

    @app.get("/api/metrics/prometheus")
    def get_prometheus_metrics() -> PlainTextResponse:
        return PlainTextResponse(metrics.to_prometheus_text(), media_type="text/plain; version=0.0.4")

    return app


app = create_app()
