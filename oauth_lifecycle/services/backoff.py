"""Retry delay computation for token refresh attempts."""

from __future__ import annotations

import random
from typing import Optional

from oauth_lifecycle.services.error_classifier import ClassifiedError, ErrorType


class BackoffScheduler:
    """
    Exponential backoff with jitter, keyed by error category.

    ``delay`` is pure apart from drawing from the injected random source, so
    tests pass a seeded ``random.Random`` to make delays reproducible.
    """

    NETWORK_BASE_MS = 1000
    RATE_LIMIT_BASE_MS = 5000
    SERVER_BASE_MS = 2000
    MAX_JITTER_MS = 1000

    _BASE_DELAYS: dict[ErrorType, int] = {
        ErrorType.NETWORK_ERROR: NETWORK_BASE_MS,
        ErrorType.UNKNOWN_ERROR: NETWORK_BASE_MS,
        ErrorType.INVALID_REQUEST: NETWORK_BASE_MS,
        ErrorType.RATE_LIMITED: RATE_LIMIT_BASE_MS,
        ErrorType.SERVICE_UNAVAILABLE: SERVER_BASE_MS,
        ErrorType.SERVER_ERROR: SERVER_BASE_MS,
    }

    def __init__(
        self,
        *,
        max_delay_ms: int = 30000,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_delay_ms <= 0:
            raise ValueError("max_delay_ms must be positive.")
        self.max_delay_ms = max_delay_ms
        self._rng = rng or random.Random()

    def base_delay(self, classified: ClassifiedError) -> int:
        return self._BASE_DELAYS.get(classified.error_type, self.NETWORK_BASE_MS)

    def delay(self, attempt: int, classified: ClassifiedError) -> float:
        """Milliseconds to wait before retry number ``attempt`` (1-based)."""
        attempt = max(1, attempt)
        base = self.base_delay(classified)
        exponential = base * (2 ** (attempt - 1))
        jitter = self._rng.random() * min(self.MAX_JITTER_MS, base)
        return min(exponential + jitter, float(self.max_delay_ms))

    def delay_seconds(self, attempt: int, classified: ClassifiedError) -> float:
        return self.delay(attempt, classified) / 1000


__all__ = ["BackoffScheduler"]
