# =============================================================================
# RealtyVoice Agent - Request Rate Limiting
# =============================================================================
"""
Per-client fixed-window rate limiting for the hosted AI routes.

Each (route, client) pair gets its own counter that resets once the window
has elapsed. State lives in process memory.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    """Allowed requests per window for one route."""
    name: str
    max_requests: int
    window_seconds: float = 60.0


# Limits for the hosted routes
RECEPTIONIST_LIMIT = RateLimit("receptionist", max_requests=20)
TTS_LIMIT = RateLimit("tts", max_requests=30)


@dataclass
class _Window:
    started: float
    count: int = 0


@dataclass
class RateLimiter:
    """In-memory limiter keyed by route name and client identifier."""
    clock: Callable[[], float] = time.monotonic
    _windows: Dict[Tuple[str, str], _Window] = field(default_factory=dict)

    def check(self, limit: RateLimit, client_id: str) -> bool:
        """Count one request and return whether it is allowed."""
        now = self.clock()
        key = (limit.name, client_id)
        window = self._windows.get(key)
        if window is None or now - window.started >= limit.window_seconds:
            window = _Window(started=now)
            self._windows[key] = window

        if window.count >= limit.max_requests:
            logger.warning(f"Rate limit hit for {limit.name} by {client_id}")
            return False
        window.count += 1
        return True

    def reset(self) -> None:
        self._windows.clear()
