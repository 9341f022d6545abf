"""In-memory fixed-window rate limiter for the HTTP intake surface.

Job submission triggers invoice issuance on the payment rail, so each client
(keyed by address or bearer token) gets a per-category budget. Single-process
only; a shared store would be needed behind a load balancer.

``check_and_increment`` returns ``(allowed, meta)`` where meta carries
``limit``, ``remaining``, ``reset_epoch``, ``count`` and ``category``; the
middleware copies these into ``X-RateLimit-*`` headers.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Tuple


@dataclass
class Window:
    start: int
    count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class InMemoryRateLimiter:
    def __init__(self):
        # (client_key, category) -> Window
        self._windows: Dict[tuple[str, str], Window] = {}
        self._global_lock = asyncio.Lock()

    def _now(self) -> int:
        return int(time.time())

    async def _window_for(self, key: str, category: str, window_start: int) -> Window:
        window = self._windows.get((key, category))
        if window is None:
            async with self._global_lock:
                window = self._windows.setdefault((key, category), Window(start=window_start))
        return window

    async def check_and_increment(self, key: str, category: str, limit: int, window_seconds: int) -> Tuple[bool, dict]:
        now = self._now()
        window_start = now - (now % window_seconds)
        window = await self._window_for(key, category, window_start)
        async with window.lock:
            if window.start != window_start:
                window.start = window_start
                window.count = 0
            window.count += 1
            allowed = window.count <= limit
            return allowed, {
                "limit": limit,
                "remaining": max(0, limit - window.count) if allowed else 0,
                "reset_epoch": window.start + window_seconds,
                "count": window.count,
                "category": category,
            }

    def reset(self) -> None:
        """Forget every window (test isolation)."""
        self._windows.clear()


rate_limiter = InMemoryRateLimiter()

__all__ = ["rate_limiter", "InMemoryRateLimiter"]
