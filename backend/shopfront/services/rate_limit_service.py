# Overview: Fixed-window request limits for magic-link emails, keyed by address and by client IP.

"""
In-process request rate limiting.

WHY: Stop magic-link email floods, both for a single address and from a
single client cycling through addresses. The counters live in process
memory, so limits are per worker and reset on restart. That is acceptable
for this use: it is a nuisance guard, not a security boundary.

Fixed window: the first request opens a window of `window_seconds`; at
most `max_requests` are allowed inside it. Expired windows are dropped on
the next hit so the table only holds keys seen within the last window.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from flask import current_app

from ..errors import RateLimitedError


@dataclass
class _Window:
    count: int
    started_at: float


class FixedWindowLimiter:
    def __init__(self, max_requests: int, window_seconds: int, clock=time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def __len__(self) -> int:
        return len(self._windows)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now - window.started_at > self.window_seconds]
        for key in expired:
            del self._windows[key]

    def hit(self, key: str) -> bool:
        """Record one request for `key`. Returns False when the limit is exceeded."""
        now = self._clock()
        self._evict_expired(now)
        window = self._windows.get(key)

        if window is None:
            self._windows[key] = _Window(count=1, started_at=now)
            return True

        if window.count >= self.max_requests:
            return False

        window.count += 1
        return True

    def reset(self) -> None:
        self._windows.clear()


def _limiter(name: str, max_key: str, window_key: str) -> FixedWindowLimiter:
    limiters = current_app.extensions.setdefault("shopfront_rate_limiters", {})
    limiter = limiters.get(name)
    if limiter is None:
        limiter = FixedWindowLimiter(
            max_requests=current_app.config[max_key],
            window_seconds=current_app.config[window_key],
        )
        limiters[name] = limiter
    return limiter


def _enforce(limiter: FixedWindowLimiter, key: str) -> None:
    if not limiter.hit(key):
        raise RateLimitedError(
            "Too many requests. Please try again later.",
            retry_after=limiter.window_seconds,
        )


def check_magic_link(email: str) -> None:
    """Raise RateLimitedError (429, Retry-After = window) when `email` has used up its requests."""
    limiter = _limiter("magic_link", "MAGIC_LINK_MAX_REQUESTS", "MAGIC_LINK_WINDOW_SECONDS")
    _enforce(limiter, email.strip().lower())


def check_magic_link_ip(ip: str | None) -> None:
    """Same as check_magic_link, counted per client address. No address, no check."""
    if not ip:
        return
    limiter = _limiter("magic_link_ip", "MAGIC_LINK_MAX_REQUESTS_PER_IP", "MAGIC_LINK_WINDOW_SECONDS")
    _enforce(limiter, ip)


def reset_all() -> None:
    for limiter in current_app.extensions.get("shopfront_rate_limiters", {}).values():
        limiter.reset()
