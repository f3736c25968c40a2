"""Exception hierarchy for the hero pool engine.

Shortfalls and policy mismatches are reported as data on ``PoolResult`` and
``PipelineStatus``; only the conditions below are raised.
"""

from __future__ import annotations

from typing import Any


class HeroPoolError(Exception):
    """Base exception for all hero pool errors."""

    error_code = "HERO_POOL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class SourceUnavailable(HeroPoolError):
    """The candidate source returned no usable data for a kind."""

    error_code = "SOURCE_UNAVAILABLE"

    def __init__(self, kind: str, reason: str = "no candidates available") -> None:
        super().__init__(
            f"Candidate source unavailable for {kind}: {reason}",
            details={"kind": kind, "reason": reason},
        )
        self.kind = kind


class UpstreamThrottled(HeroPoolError):
    """The enrichment service is rate limiting or timing out."""

    error_code = "UPSTREAM_THROTTLED"

    def __init__(self, message: str, *, retry_after_ms: int, until: int) -> None:
        super().__init__(
            message, details={"retry_after_ms": retry_after_ms, "until": until}
        )
        self.retry_after_ms = retry_after_ms
        self.until = until


class RefreshFailed(HeroPoolError):
    """A pool fetch failed and no fallback pool exists."""

    error_code = "REFRESH_FAILED"

    def __init__(self, kind: str, reason: str) -> None:
        super().__init__(
            f"Hero pool refresh failed for {kind}: {reason}",
            details={"kind": kind, "reason": reason},
        )
        self.kind = kind
        self.reason = reason
