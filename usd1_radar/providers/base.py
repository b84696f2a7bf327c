"""Shared plumbing for the market-data fetchers."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Sequence

from ..errors import (
    NetworkTimeout,
    RadarError,
    RateLimited,
    SourceBackingOff,
    SourceUnavailable,
)
from ..health import ApiHealthMonitor
from ..http import fetch_json

logger = logging.getLogger(__name__)

FetchJson = Callable[..., Awaitable[Any]]


class ProviderFetcher:
    """Base class wiring a provider to the health monitor and transport.

    Subclasses set ``source`` and call :meth:`_get`. Rate limits and timeouts
    mark the source unhealthy. Fetchers that fan out log individual failures
    and keep partial data, but raise ``SourceUnavailable`` when nothing at all
    came back so callers can tell an outage from an empty answer.
    """

    source: str = "unknown"

    def __init__(
        self,
        health: ApiHealthMonitor,
        *,
        fetch: FetchJson | None = None,
        timeout: float | None = None,
    ) -> None:
        self._health = health
        self._fetch = fetch or fetch_json
        self._timeout = timeout

    @property
    def healthy(self) -> bool:
        return self._health.is_healthy(self.source)

    def _ensure_healthy(self) -> None:
        if not self._health.is_healthy(self.source):
            raise SourceBackingOff(f"{self.source} is backing off")

    async def _get(self, url: str, **kwargs: Any) -> Any:
        self._ensure_healthy()
        try:
            payload = await self._fetch(url, timeout=self._timeout, **kwargs)
        except (RateLimited, NetworkTimeout) as exc:
            self._health.mark_error(self.source, exc)
            raise
        self._health.reset_health(self.source)
        return payload

    def _log_failure(self, what: str, exc: BaseException) -> None:
        if isinstance(exc, RadarError):
            logger.warning("%s %s failed: %s", self.source, what, exc)
        else:
            logger.exception("%s %s failed unexpectedly", self.source, what, exc_info=exc)

    def _all_failed(self, what: str, errors: Sequence[BaseException]) -> SourceUnavailable:
        return SourceUnavailable(f"{self.source}: all {len(errors)} {what} failed (last: {errors[-1]})")


__all__ = ["FetchJson", "ProviderFetcher"]
