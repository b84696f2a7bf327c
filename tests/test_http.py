import asyncio

import aiohttp
import pytest

from usd1_radar import http
from usd1_radar.errors import (
    HTTPError,
    MalformedResponse,
    NetworkTimeout,
    RateLimited,
    SourceUnavailable,
)


class _DummyResponse:
    def __init__(self, status=200, *, body=b"{}", headers=None):
        self.status = status
        self._body = body
        self.headers = headers or {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self):
        return self._body.decode()

    async def read(self):
        return self._body


class _RaisingContext:
    def __init__(self, exc):
        self._exc = exc

    async def __aenter__(self):
        raise self._exc

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _DummySession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if not self._responses:
            raise AssertionError("No more dummy responses available")
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            return _RaisingContext(item)
        return item


@pytest.fixture
def no_retry_sleep(monkeypatch):
    monkeypatch.setattr(http, "retry_plan", lambda url: (2, 0.0))


@pytest.mark.anyio("asyncio")
async def test_fetch_json_parses_body():
    session = _DummySession([_DummyResponse(body=b'{"pairs": [1, 2]}')])
    payload = await http.fetch_json("https://example.test/a", session=session, timeout=3)
    assert payload == {"pairs": [1, 2]}
    method, url, kwargs = session.calls[0]
    assert method == "GET"
    assert kwargs["timeout"].total == 3


@pytest.mark.anyio("asyncio")
async def test_rate_limit_is_not_retried(no_retry_sleep):
    session = _DummySession(
        [_DummyResponse(429, headers={"Retry-After": "7"}), _DummyResponse()]
    )
    with pytest.raises(RateLimited) as excinfo:
        await http.fetch_json("https://example.test/rl", session=session)
    assert excinfo.value.retry_after == 7.0
    assert excinfo.value.status == 429
    assert len(session.calls) == 1


@pytest.mark.anyio("asyncio")
async def test_timeout_is_retried_then_raised(no_retry_sleep):
    session = _DummySession([asyncio.TimeoutError(), asyncio.TimeoutError()])
    with pytest.raises(NetworkTimeout):
        await http.fetch_json("https://example.test/slow", session=session)
    assert len(session.calls) == 2


@pytest.mark.anyio("asyncio")
async def test_server_error_recovers_on_retry(no_retry_sleep):
    session = _DummySession([_DummyResponse(502, body=b"bad gateway"), _DummyResponse(body=b"[]")])
    assert await http.fetch_json("https://example.test/flaky", session=session) == []


@pytest.mark.anyio("asyncio")
async def test_client_error_status_raises_immediately(no_retry_sleep):
    session = _DummySession([_DummyResponse(404, body=b"missing"), _DummyResponse()])
    with pytest.raises(HTTPError) as excinfo:
        await http.fetch_json("https://example.test/missing", session=session)
    assert excinfo.value.status == 404
    assert len(session.calls) == 1


@pytest.mark.anyio("asyncio")
async def test_transport_error_maps_to_source_unavailable(no_retry_sleep):
    session = _DummySession(
        [aiohttp.ClientConnectionError("reset"), aiohttp.ClientConnectionError("reset")]
    )
    with pytest.raises(SourceUnavailable):
        await http.fetch_json("https://example.test/down", session=session)


@pytest.mark.anyio("asyncio")
async def test_non_json_body_is_malformed():
    session = _DummySession([_DummyResponse(body=b"<html>")])
    with pytest.raises(MalformedResponse):
        await http.fetch_json("https://example.test/html", session=session)


@pytest.mark.anyio("asyncio")
async def test_host_circuit_opens_after_repeated_failures(monkeypatch):
    monkeypatch.setattr(http, "retry_plan", lambda url: (1, 0.0))
    session = _DummySession([_DummyResponse(500, body=b"boom") for _ in range(3)])
    for _ in range(3):
        with pytest.raises(HTTPError):
            await http.fetch_json("https://breaker.test/x", session=session)
    with pytest.raises(http.HostCircuitOpenError):
        await http.fetch_json("https://breaker.test/x", session=session)
    assert len(session.calls) == 3


def test_redact_hides_api_key():
    redacted = http._redact("https://api.helius.xyz/v0/addresses/abc/transactions?api-key=secret&limit=5")
    assert "secret" not in redacted
