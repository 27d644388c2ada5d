"""Retry policy shared by authentication and API calls."""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

THROTTLING_ERROR_CODES: frozenset[str] = frozenset(["TooManyRequests", "Throttled"])


@dataclass(frozen=True, kw_only=True)
class RetryPolicy:
    """Capped exponential backoff.

    A call is attempted at most ``max_retries + 1`` times.
    """

    max_retries: int = 3
    backoff_base: float = 2.0
    backoff_cap: float = 30.0

    def delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait after the given (1-based) failed attempt.

        An explicit ``Retry-After`` from the server wins over the computed
        backoff, even when it is larger than the cap.
        """
        if retry_after is not None:
            return max(retry_after, 0.0)
        return min(self.backoff_base**attempt, self.backoff_cap)


def is_transient_status(status: int) -> bool:
    """Whether an HTTP status denotes throttling or a server-side failure."""
    return status == 429 or 500 <= status <= 599


def is_throttling_body(body: Any) -> bool:
    """Whether a JSON error body carries an explicit throttling signal."""
    if not isinstance(body, Mapping):
        return False
    return body.get("errorCode") in THROTTLING_ERROR_CODES


def parse_retry_after(headers: Mapping[str, str]) -> float | None:
    """Parse a ``Retry-After`` header given in seconds."""
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
