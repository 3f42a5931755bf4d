"""Fixed-window request admission control shared by all write endpoints."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


@dataclass
class _Window:
    count: int
    reset_at: int


class FixedWindowRateLimiter:
    """Per-key fixed-window counter; windows reset lazily on first request after expiry.

    Expired windows are swept whenever ``max_tracked_keys`` keys are tracked.
    """

    def __init__(self, max_requests: int, window_ms: int, max_tracked_keys: int = 10_000):
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        if max_tracked_keys <= 0:
            raise ValueError("max_tracked_keys must be > 0")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.max_tracked_keys = max_tracked_keys
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, key: str, now_ms: Optional[int] = None) -> RateLimitDecision:
        now = int(time.time() * 1000) if now_ms is None else now_ms
        with self._lock:
            existing = self._windows.get(key)
            if existing is None or now >= existing.reset_at:
                if existing is None and len(self._windows) >= self.max_tracked_keys:
                    self._evict_expired(now)
                self._windows[key] = _Window(count=1, reset_at=now + self.window_ms)
                return RateLimitDecision(allowed=True)

            if existing.count >= self.max_requests:
                retry_after_ms = max(existing.reset_at - now, 0)
                return RateLimitDecision(
                    allowed=False,
                    retry_after_seconds=math.ceil(retry_after_ms / 1000),
                )

            existing.count += 1
            return RateLimitDecision(allowed=True)

    def _evict_expired(self, now: int) -> None:
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


def rate_limit_key(bucket: str, client: str) -> str:
    return f"{bucket}:{client or 'unknown'}"


def client_identity(headers: Mapping[str, str]) -> str:
    """Best-effort client address from proxy headers (first hop wins)."""
    lowered = {k.lower(): v for k, v in headers.items()}
    forwarded_for = lowered.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        return first or "unknown"
    return lowered.get("cf-connecting-ip") or lowered.get("x-real-ip") or "unknown"
