"""Per-tenant fixed-window limiter for outbound sends.

Windows live in process memory and are rebuilt empty after a restart; a
restarted worker may briefly exceed the limit, which the channel tolerates.
"""

import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable


@dataclass
class RateWindow:
    count: int
    window_reset_at: float


class RateLimiter:
    """Allow at most `limit` sends per tenant in each `window_seconds` window."""

    def __init__(self, limit: int = 10, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._lock = Lock()

    def try_consume(self, tenant_id: str) -> bool:
        """Take one slot from the tenant's window; False means defer, not fail."""

        now = self.clock()
        with self._lock:
            window = self._windows.get(tenant_id)
            if window is None or now >= window.window_reset_at:
                # Lazy reset: the window restarts on the first check after expiry.
                self._windows[tenant_id] = RateWindow(count=1, window_reset_at=now + self.window_seconds)
                return True
            if window.count >= self.limit:
                return False
            window.count += 1
            return True

    def window(self, tenant_id: str) -> RateWindow | None:
        with self._lock:
            window = self._windows.get(tenant_id)
            if window is None or self.clock() >= window.window_reset_at:
                return None
            return RateWindow(count=window.count, window_reset_at=window.window_reset_at)

    def remaining(self, tenant_id: str) -> int:
        window = self.window(tenant_id)
        return self.limit if window is None else max(0, self.limit - window.count)

    def reset(self, tenant_id: str) -> None:
        with self._lock:
            self._windows.pop(tenant_id, None)
