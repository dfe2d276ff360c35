from __future__ import annotations

import asyncio
import io

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from bgrelay.config import Settings
from bgrelay.domain.background_remover import (
    BackgroundRemover,
    FailureReason,
    ProviderError,
    ProviderResult,
    UploadedFile,
)
from bgrelay.infrastructure.metrics import MetricsStore
from bgrelay.infrastructure.providers.removebg_remover import RemoveBgRemover
from bgrelay.infrastructure.rate_limiter import InMemoryWindowStore, SlidingWindowRateLimiter
from bgrelay.presentation import api


class StubRemover(BackgroundRemover):
    name = 'stub'

    def __init__(self, result: bytes = b'', error: Exception | None = None, delay: float = 0.0) -> None:
        self.calls: list[UploadedFile] = []
        self._result = result
        self._error = error
        self._delay = delay

    async def remove_background(self, file: UploadedFile) -> ProviderResult:
        self.calls.append(file)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return ProviderResult(self._result or file.content, 'image/png')


class Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _image_bytes(fmt: str = 'PNG') -> bytes:
    img = Image.new('RGB', (20, 20), 'white')
    out = io.BytesIO()
    img.save(out, format=fmt)
    return out.getvalue()


def _client(
    remover: BackgroundRemover | None,
    clock: Clock | None = None,
    max_requests: int = 50,
    **overrides,
) -> TestClient:
    settings = Settings()
    settings.trust_proxy = True
    for key, value in overrides.items():
        setattr(settings, key, value)
    limiter = SlidingWindowRateLimiter(
        InMemoryWindowStore(),
        max_requests=max_requests,
        window_seconds=60,
        clock=clock or Clock(),
    )
    app = api.create_app(settings, remover=remover, rate_limiter=limiter, metrics=MetricsStore())
    return TestClient(app, raise_server_exceptions=False)


def test_health() -> None:
    client = _client(StubRemover())
    res = client.get('/')
    assert res.status_code == 200
    assert res.json() == {'status': 'OK'}


def test_remove_bg_returns_png_for_jpeg_upload() -> None:
    png = _image_bytes('PNG')
    stub = StubRemover(result=png)
    client = _client(stub)

    jpeg = _image_bytes('JPEG') + b'\0' * (2 * 1024 * 1024)
    res = client.post('/api/remove-bg', files={'file': ('photo.jpg', jpeg, 'image/jpeg')})

    assert res.status_code == 200
    assert res.headers['content-type'] == 'image/png'
    assert res.content == png
    disposition = res.headers['content-disposition']
    assert disposition.startswith('attachment; filename="removed-bg-')
    assert disposition.endswith('.png"')
    assert len(stub.calls) == 1
    assert stub.calls[0].filename == 'photo.jpg'
    assert stub.calls[0].content_type == 'image/jpeg'


def test_echo_provider_round_trip_is_byte_identical() -> None:
    client = _client(StubRemover())
    payload = _image_bytes('PNG')

    res = client.post('/api/remove-bg', files={'file': ('a.png', payload, 'image/png')})

    assert res.status_code == 200
    assert res.headers['content-type'] == 'image/png'
    assert res.content == payload


def test_missing_file_field() -> None:
    stub = StubRemover()
    client = _client(stub)

    res = client.post('/api/remove-bg', files={'image': ('a.png', _image_bytes(), 'image/png')})
    assert res.status_code == 400
    assert res.json()['error'] == 'No file uploaded'

    res = client.post('/api/remove-bg')
    assert res.status_code == 400
    assert res.json() == {'error': 'No file uploaded', 'code': 'no-file'}
    assert stub.calls == []


def test_rejects_unsupported_type_without_calling_provider() -> None:
    stub = StubRemover()
    client = _client(stub)

    res = client.post('/api/remove-bg', files={'file': ('a.gif', b'GIF89a', 'image/gif')})

    assert res.status_code == 400
    assert res.json()['code'] == 'unsupported-type'
    assert stub.calls == []


def test_rejects_oversized_png_without_calling_provider() -> None:
    stub = StubRemover()
    client = _client(stub)
    big = _image_bytes('PNG') + b'\0' * (12 * 1024 * 1024)

    res = client.post('/api/remove-bg', files={'file': ('big.png', big, 'image/png')})

    assert res.status_code == 400
    assert res.json()['code'] == 'too-large'
    assert stub.calls == []


def test_provider_403_maps_to_invalid_api_key() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={'errors': [{'title': 'API Key invalid'}]})

    remover = RemoveBgRemover('bad-key', transport=httpx.MockTransport(handler))
    client = _client(remover)

    res = client.post('/api/remove-bg', files={'file': ('a.png', _image_bytes(), 'image/png')})

    assert res.status_code == 403
    body = res.json()
    assert body['error'] == 'Invalid API key'
    assert body['code'] == 'auth-failure'
    assert 'API Key invalid' in body['details']


def test_provider_timeout_returns_504_json() -> None:
    stub = StubRemover(result=b'late', delay=5)
    client = _client(stub, provider_timeout_seconds=0.05)

    res = client.post('/api/remove-bg', files={'file': ('a.png', _image_bytes(), 'image/png')})

    assert res.status_code == 504
    assert res.headers['content-type'].startswith('application/json')
    assert res.json()['code'] == 'timeout'


def test_provider_quota_error_maps_to_402() -> None:
    stub = StubRemover(error=ProviderError(FailureReason.QUOTA_EXCEEDED, 'no credits', status_code=402))
    client = _client(stub)

    res = client.post('/api/remove-bg', files={'file': ('a.png', _image_bytes(), 'image/png')})

    assert res.status_code == 402
    assert res.json()['error'].startswith('API quota exceeded')


def test_rate_limit_per_client_and_window_expiry() -> None:
    clock = Clock()
    stub = StubRemover()
    client = _client(stub, clock=clock, max_requests=2)
    files = {'file': ('a.png', _image_bytes(), 'image/png')}
    first_client = {'x-forwarded-for': '10.0.0.1'}

    assert client.post('/api/remove-bg', files=files, headers=first_client).status_code == 200
    assert client.post('/api/remove-bg', files=files, headers=first_client).status_code == 200

    limited = client.post('/api/remove-bg', files=files, headers=first_client)
    assert limited.status_code == 429
    assert limited.json()['error'] == 'Too many requests, please try again later.'
    assert int(limited.headers['retry-after']) >= 1
    assert len(stub.calls) == 2

    other = client.post('/api/remove-bg', files=files, headers={'x-forwarded-for': '10.0.0.2'})
    assert other.status_code == 200

    clock.now += 61
    assert client.post('/api/remove-bg', files=files, headers=first_client).status_code == 200


def test_unmatched_routes_return_404() -> None:
    client = _client(StubRemover())

    res = client.get('/api/nothing-here')
    assert res.status_code == 404
    assert res.json() == {'error': 'Endpoint not found'}

    res = client.get('/api/remove-bg')
    assert res.status_code == 404
    assert res.json() == {'error': 'Endpoint not found'}


def test_missing_provider_configuration() -> None:
    client = _client(None, bg_provider='custom', custom_api_url=None)

    res = client.post('/api/remove-bg', files={'file': ('a.png', _image_bytes(), 'image/png')})

    assert res.status_code == 500
    assert res.json()['error'] == 'API configuration error'


def test_uncaught_failure_returns_500_json() -> None:
    class BrokenLimiter:
        def check(self, client_key: str):
            raise RuntimeError('limiter exploded')

    settings = Settings()
    app = api.create_app(settings, remover=StubRemover(), rate_limiter=BrokenLimiter(), metrics=MetricsStore())
    client = TestClient(app, raise_server_exceptions=False)

    res = client.post('/api/remove-bg', files={'file': ('a.png', _image_bytes(), 'image/png')})

    assert res.status_code == 500
    assert res.json() == {'error': 'limiter exploded'}


def test_request_id_is_echoed() -> None:
    client = _client(StubRemover())
    res = client.get('/', headers={'x-request-id': 'req-42'})
    assert res.headers['x-request-id'] == 'req-42'


def test_metrics_endpoints() -> None:
    client = _client(StubRemover())
    client.post('/api/remove-bg', files={'file': ('a.png', _image_bytes(), 'image/png')})

    res = client.get('/api/metrics')
    assert res.status_code == 200
    body = res.json()
    assert 'timestamp' in body
    assert body['relay_success_total'] == 1

    res = client.get('/api/metrics/prometheus')
    assert res.status_code == 200
    assert 'bgrelay_relay_success_total 1' in res.text


def test_cors_allows_configured_origin() -> None:
    client = _client(StubRemover())
    res = client.options(
        '/api/remove-bg',
        headers={'origin': 'https://preview-123.vercel.app', 'access-control-request-method': 'POST'},
    )
    assert res.status_code == 200
    assert res.headers['access-control-allow-origin'] == 'https://preview-123.vercel.app'


def test_client_key_prefers_forwarded_header_when_trusted() -> None:
    class FakeRequest:
        headers = {'x-forwarded-for': '203.0.113.9, 10.0.0.1'}
        client = type('Peer', (), {'host': '10.0.0.1'})()

    assert api.client_key(FakeRequest(), trust_proxy=True) == '203.0.113.9'
    assert api.client_key(FakeRequest(), trust_proxy=False) == '10.0.0.1'


def test_disconnect_cancels_pending_provider_call() -> None:
    class DisconnectedRequest:
        async def is_disconnected(self) -> bool:
            return True

    cancelled = []

    async def slow_call() -> bytes:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise
        return b'never'

    async def scenario() -> None:
        await api.run_unless_disconnected(DisconnectedRequest(), slow_call())

    with pytest.raises(api.ClientDisconnected):
        asyncio.run(scenario())
    assert cancelled == [True]
