"""Exception taxonomy for external-source failures."""

from __future__ import annotations


class RadarError(Exception):
    """Base class for all pipeline errors."""


class SourceUnavailable(RadarError):
    """Raised when a source is skipped, unconfigured or unreachable."""


class SourceBackingOff(SourceUnavailable):
    """The source is in health backoff; no request was sent."""


class HTTPError(SourceUnavailable):
    """Raised when an HTTP request returns a non-success status code."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimited(HTTPError):
    """HTTP 429 from an upstream provider."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message, status=429)
        self.retry_after = retry_after


class NetworkTimeout(RadarError):
    """An external call exceeded its deadline."""


class MalformedResponse(RadarError):
    """The upstream answered but the body could not be interpreted."""


class VerificationInconclusive(RadarError):
    """Provenance could not be established either way.

    Distinct from a definitive negative: the mint is queued for retry.
    """

    def __init__(self, mint: str, reason: str, *, deferred: bool = False) -> None:
        super().__init__(f"verification inconclusive for {mint}: {reason}")
        self.mint = mint
        self.reason = reason
        # True when no request reached the provider (health backoff).
        self.deferred = deferred


__all__ = [
    "RadarError",
    "SourceUnavailable",
    "SourceBackingOff",
    "HTTPError",
    "RateLimited",
    "NetworkTimeout",
    "MalformedResponse",
    "VerificationInconclusive",
]
