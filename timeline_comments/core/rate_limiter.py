"""Sliding-window admission control per (actor, action kind).

Each actor gets an independent window per action. Expired timestamps are
pruned lazily on the next check; a rejected attempt is never recorded.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    """At most ``max`` admissions within any trailing ``window_ms``."""

    max: int
    window_ms: int


DEFAULT_LIMITS: dict[str, RateLimit] = {
    "comment": RateLimit(max=10, window_ms=60_000),
    "like": RateLimit(max=30, window_ms=60_000),
    "reply": RateLimit(max=20, window_ms=60_000),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """Per-actor, per-action sliding window counter."""

    def __init__(self, limits: Mapping[str, RateLimit] | None = None) -> None:
        self._limits = dict(limits if limits is not None else DEFAULT_LIMITS)
        self._windows: dict[tuple[str, str], deque[int]] = defaultdict(deque)
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, rate_limits: Mapping[str, tuple[int, int]]) -> "RateLimiter":
        """Build from the ``{action: (max, window_ms)}`` table in Settings."""
        return cls({action: RateLimit(*limit) for action, limit in rate_limits.items()})

    @property
    def limits(self) -> dict[str, RateLimit]:
        return dict(self._limits)

    def _limit_for(self, action: str) -> RateLimit:
        try:
            return self._limits[action]
        except KeyError:
            raise ValueError(f"Unknown action kind: {action}") from None

    @staticmethod
    def _prune(window: deque[int], now: int, window_ms: int) -> None:
        while window and now - window[0] >= window_ms:
            window.popleft()

    def try_admit(self, actor_id: str, action: str, now: int | None = None) -> bool:
        """Admit and record the action if the window has room, else reject."""
        limit = self._limit_for(action)
        now = _now_ms() if now is None else now

        with self._lock:
            window = self._windows[(actor_id, action)]
            self._prune(window, now, limit.window_ms)
            if len(window) >= limit.max:
                logger.debug(f"Rate limit: rejected {action} for {actor_id} ({len(window)}/{limit.max})")
                return False
            window.append(now)
            return True

    def remaining(self, actor_id: str, action: str, now: int | None = None) -> int:
        """Admissions left in the current window. Does not record anything."""
        limit = self._limit_for(action)
        now = _now_ms() if now is None else now
        with self._lock:
            window = self._windows.get((actor_id, action))
            if not window:
                return limit.max
            live = sum(1 for t in window if now - t < limit.window_ms)
            return max(limit.max - live, 0)

    def reset(self, actor_id: str | None = None) -> None:
        """Forget recorded admissions for one actor, or for everyone."""
        with self._lock:
            if actor_id is None:
                self._windows.clear()
                return
            for key in [k for k in self._windows if k[0] == actor_id]:
                del self._windows[key]
