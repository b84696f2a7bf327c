"""Shared aiohttp transport: JSON decoding, per-host guards and retries."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, Mapping
from urllib.parse import urlparse

import aiohttp
import orjson

from .errors import (
    HTTPError,
    MalformedResponse,
    NetworkTimeout,
    RateLimited,
    SourceUnavailable,
)
from .utils import coerce_float

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = coerce_float(os.getenv("RADAR_HTTP_TIMEOUT")) or 8.0
USER_AGENT = os.getenv("HTTP_USER_AGENT", "usd1-radar/0.1")


def dumps(obj: object) -> bytes:
    return orjson.dumps(obj)


def loads(data: str | bytes) -> object:
    return orjson.loads(data.encode() if isinstance(data, str) else data)


# One session per event loop; tests and the CLI each run their own loop.
_SESSIONS: Dict[asyncio.AbstractEventLoop, aiohttp.ClientSession] = {}


async def get_session() -> aiohttp.ClientSession:
    loop = asyncio.get_running_loop()
    session = _SESSIONS.get(loop)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            timeout=aiohttp.ClientTimeout(total=DEFAULT_TIMEOUT),
        )
        _SESSIONS[loop] = session
    return session


async def close_session() -> None:
    sessions = list(_SESSIONS.values())
    _SESSIONS.clear()
    for session in sessions:
        if not session.closed:
            await session.close()


# ---------------------------------------------------------------------------
# Per-host breakers
# ---------------------------------------------------------------------------


class HostCircuitOpenError(SourceUnavailable):
    """The host had too many recent failures; the request was not sent."""


@dataclass(frozen=True, slots=True)
class HostPolicy:
    concurrency: int = 4
    failure_threshold: int = 3
    open_for: float = 30.0
    attempts: int = 2
    retry_base: float = 0.3


# Helius REST is rate limited per key, so it is strictly serial and never retried
# here; the verification retry queue owns those retries.
_POLICIES: Dict[str, HostPolicy] = {
    "api.dexscreener.com": HostPolicy(concurrency=8, open_for=20.0),
    "api.geckoterminal.com": HostPolicy(concurrency=5, retry_base=0.5),
    "api-v3.raydium.io": HostPolicy(concurrency=6, open_for=20.0),
    "api.helius.xyz": HostPolicy(concurrency=1, failure_threshold=5, open_for=20.0, attempts=1, retry_base=0.0),
    "mainnet.helius-rpc.com": HostPolicy(open_for=20.0, attempts=1, retry_base=0.25),
}
_DEFAULT_POLICY = HostPolicy()


def policy_for(host: str) -> HostPolicy:
    host = host.lower()
    for suffix, policy in _POLICIES.items():
        if host == suffix or host.endswith("." + suffix):
            return policy
    return _DEFAULT_POLICY


@dataclass
class _HostBreaker:
    host: str
    policy: HostPolicy
    semaphore: asyncio.Semaphore = field(init=False)
    failures: Deque[float] = field(default_factory=deque)
    open_until: float = 0.0

    def __post_init__(self) -> None:
        self.semaphore = asyncio.Semaphore(max(1, self.policy.concurrency))

    def is_open(self, now: float) -> bool:
        if not self.open_until:
            return False
        if now < self.open_until:
            return True
        self.open_until = 0.0
        self.failures.clear()
        return False

    def succeeded(self) -> None:
        self.failures.clear()
        self.open_until = 0.0

    def failed(self, now: float) -> None:
        self.failures.append(now)
        while self.failures and self.failures[0] < now - self.policy.open_for:
            self.failures.popleft()
        if len(self.failures) >= self.policy.failure_threshold:
            self.open_until = now + self.policy.open_for
            logger.warning(
                "Opening breaker for %s for %.0fs after %d failures",
                self.host,
                self.policy.open_for,
                len(self.failures),
            )


_BREAKERS: Dict[str, _HostBreaker] = {}


def _host(url: str) -> str:
    parsed = urlparse(url)
    return (parsed.hostname or parsed.netloc or "").lower()


def _breaker(host: str) -> _HostBreaker:
    breaker = _BREAKERS.get(host)
    if breaker is None:
        breaker = _BREAKERS[host] = _HostBreaker(host, policy_for(host))
    return breaker


def reset_host_state() -> None:
    _BREAKERS.clear()


@asynccontextmanager
async def host_guard(url: str) -> AsyncIterator[None]:
    """Bound concurrency for *url*'s host and record the outcome."""

    host = _host(url)
    if not host:
        yield
        return
    breaker = _breaker(host)
    if breaker.is_open(time.monotonic()):
        raise HostCircuitOpenError(f"breaker open for {host}")
    async with breaker.semaphore:
        try:
            yield
        except Exception:
            breaker.failed(time.monotonic())
            raise
        breaker.succeeded()


def retry_plan(url: str) -> tuple[int, float]:
    """``(attempts, base_delay)`` for requests to *url*."""

    host = _host(url)
    policy = policy_for(host) if host else HostPolicy(attempts=1, retry_base=0.0)
    return max(1, policy.attempts), max(0.0, policy.retry_base)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


def _retry_after(headers: Mapping[str, str] | None) -> float | None:
    if not headers:
        return None
    return coerce_float(headers.get("Retry-After"))


def _redact(url: str) -> str:
    parsed = urlparse(url)
    if "api-key" in (parsed.query or ""):
        return url.split("?", 1)[0] + "?api-key=***"
    return url


async def _request_once(
    sess: aiohttp.ClientSession,
    method: str,
    url: str,
    timeout: float,
    kwargs: Dict[str, Any],
) -> Any:
    safe_url = _redact(url)
    try:
        async with sess.request(
            method, url, timeout=aiohttp.ClientTimeout(total=timeout), **kwargs
        ) as response:
            if response.status == 429:
                raise RateLimited(
                    f"{method} {safe_url} -> 429",
                    retry_after=_retry_after(response.headers),
                )
            if response.status >= 400:
                text = await response.text()
                raise HTTPError(
                    f"{method} {safe_url} -> {response.status}: {text[:300]}",
                    status=response.status,
                )
            raw = await response.read()
    except asyncio.TimeoutError as exc:
        raise NetworkTimeout(f"{method} {safe_url} timed out after {timeout:.1f}s") from exc
    except aiohttp.ClientError as exc:
        raise SourceUnavailable(f"{method} {safe_url} failed: {exc}") from exc
    try:
        return loads(raw)
    except orjson.JSONDecodeError as exc:
        raise MalformedResponse(f"{method} {safe_url} returned non-JSON body") from exc


async def fetch_json(
    url: str,
    method: str = "GET",
    *,
    timeout: float | None = None,
    session: aiohttp.ClientSession | None = None,
    **kwargs: Any,
) -> Any:
    """Fetch *url* using *method* and return the parsed JSON body.

    Timeouts, transport errors and 5xx answers are retried per host policy.
    ``RateLimited``, ``MalformedResponse``, 4xx answers and open breakers are
    raised immediately.
    """

    sess = session if session is not None else await get_session()
    deadline = float(timeout or DEFAULT_TIMEOUT)
    attempts, base_delay = retry_plan(url)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            async with host_guard(url):
                return await _request_once(sess, method, url, deadline, kwargs)
        except (HostCircuitOpenError, RateLimited, MalformedResponse):
            raise
        except HTTPError as exc:
            if exc.status is not None and exc.status < 500:
                raise
            last_error = exc
        except (NetworkTimeout, SourceUnavailable) as exc:
            last_error = exc
        if attempt < attempts:
            logger.debug("Retrying %s (%d/%d): %s", _redact(url), attempt, attempts, last_error)
            await asyncio.sleep(base_delay * (2 ** (attempt - 1)))
    if last_error is not None:
        raise last_error
    raise SourceUnavailable(f"failed to fetch {_redact(url)}")


__all__ = [
    "DEFAULT_TIMEOUT",
    "HostCircuitOpenError",
    "HostPolicy",
    "close_session",
    "dumps",
    "fetch_json",
    "get_session",
    "host_guard",
    "loads",
    "policy_for",
    "reset_host_state",
    "retry_plan",
]
