"""Sliding-window request admission per key."""
import logging
import time
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


class RateLimiter:
    """
    Advisory sliding-window rate limiter.

    Callers ask before making a request and pick another path when refused.
    Nothing here blocks or queues.
    """

    def __init__(self, max_requests_per_second: int = 2, window_ms: float = 1000):
        """
        Initialize rate limiter.

        Args:
            max_requests_per_second: Requests admitted per key inside one window
            window_ms: Window length in milliseconds
        """
        self.max_requests_per_second = max_requests_per_second
        self.window_ms = window_ms
        self._request_history: Dict[str, List[float]] = {}

    def _recent(self, key: str, now: float) -> List[float]:
        history = self._request_history.get(key, [])
        return [ts for ts in history if now - ts < self.window_ms]

    def can_make_request(self, key: str) -> bool:
        """Check whether another request for key fits in the current window."""
        recent = self._recent(key, _now_ms())
        return len(recent) < self.max_requests_per_second

    def record_request(self, key: str) -> None:
        """Record a request for key, pruning entries outside the window."""
        now = _now_ms()
        recent = self._recent(key, now)
        recent.append(now)
        self._request_history[key] = recent

    def get_wait_time(self, key: str) -> float:
        """
        Milliseconds until a request for key would be admitted.

        Returns:
            0 when a request is allowed now
        """
        now = _now_ms()
        recent = self._recent(key, now)
        if len(recent) < self.max_requests_per_second:
            return 0

        oldest = min(recent)
        return max(0.0, self.window_ms - (now - oldest))

    def reset(self, key: Optional[str] = None) -> None:
        """Forget history for one key, or for all keys."""
        if key:
            self._request_history.pop(key, None)
        else:
            self._request_history.clear()
