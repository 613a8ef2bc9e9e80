"""
auth/ratelimit.py -- Fixed-window rate limiter with ban escalation.

Window state per subject (e.g. "ip:10.0.0.1", "user:42", "api_key:7") lives
in the injected cache as a small dict:

    {"count": int, "window_start": float, "window_size": int,
     "ban_until": float | None, "strikes": int}

check_and_increment() is one atomic cache.update(), so concurrent requests
for the same subject never under-count.

Algorithm:
  1. An active ban denies immediately without touching the count.
  2. No window, or now >= window_start + window: start a new window at now
     with count = 1 and allow.
  3. Otherwise count += 1. count <= limit allows. count > limit denies with
     retry_after = window_start + window - now, and adds a strike; reaching
     ban_threshold strikes sets ban_until = now + ban_duration.

A cache failure is not a security decision: settings.rate_limiting.fail_open
chooses between allowing (default) and denying while state is unavailable.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Union

from auth.errors import CacheUnavailableError
from core.clock import Clock

logger = logging.getLogger("restwarden.ratelimit")


@dataclass(frozen=True)
class Allowed:
    remaining: int


@dataclass(frozen=True)
class RateLimited:
    retry_after: int
    banned: bool = False


Verdict = Union[Allowed, RateLimited]


def _key(subject_id: str) -> str:
    return f"rl:{subject_id}"


class RateLimiter:
    """Owns the rate-limit windows; nothing else writes rl:* cache keys."""

    def __init__(
        self,
        cache,
        clock: Clock,
        ban_duration: int = 3600,
        ban_threshold: int = 10,
        fail_open: bool = True,
    ) -> None:
        self.cache = cache
        self.clock = clock
        self.ban_duration = ban_duration
        self.ban_threshold = ban_threshold
        self.fail_open = fail_open

    def check_and_increment(self, subject_id: str, limit: int, window_seconds: int) -> Verdict:
        now = self.clock.now()

        def mutate(state: Optional[dict]):
            if state is not None and state.get("ban_until") and now < state["ban_until"]:
                return state, RateLimited(retry_after=_ceil(state["ban_until"] - now), banned=True)

            if state is None or now >= state["window_start"] + window_seconds:
                fresh = {
                    "count": 1,
                    "window_start": now,
                    "window_size": window_seconds,
                    "ban_until": None,
                    "strikes": 0,
                }
                return fresh, Allowed(remaining=max(0, limit - 1))

            state = dict(state)
            state["count"] += 1
            if state["count"] <= limit:
                return state, Allowed(remaining=limit - state["count"])

            state["strikes"] = state.get("strikes", 0) + 1
            if self.ban_threshold and self.ban_duration and state["strikes"] >= self.ban_threshold:
                state["ban_until"] = now + self.ban_duration
                logger.warning("Subject %s banned for %ds after repeated rate-limit violations", subject_id, self.ban_duration)
                return state, RateLimited(retry_after=_ceil(self.ban_duration), banned=True)
            return state, RateLimited(retry_after=_ceil(state["window_start"] + window_seconds - now))

        # Keep the entry alive for whichever lasts longer: the window or a ban.
        ttl = max(window_seconds, self.ban_duration)
        try:
            verdict = self.cache.update(_key(subject_id), mutate, ttl)
        except CacheUnavailableError:
            logger.warning(
                "Rate-limit state unavailable for %s; failing %s",
                subject_id,
                "open" if self.fail_open else "closed",
            )
            if self.fail_open:
                return Allowed(remaining=limit)
            return RateLimited(retry_after=window_seconds)

        if isinstance(verdict, RateLimited):
            logger.debug(
                "Rate limit hit subject=%s retry_after=%d banned=%s", subject_id, verdict.retry_after, verdict.banned
            )
        return verdict

    def status(self, subject_id: str, limit: int, window_seconds: int) -> dict[str, int]:
        """Current counters as X-RateLimit-* header values. Read-only."""
        now = self.clock.now()
        try:
            state = self.cache.get(_key(subject_id))
        except CacheUnavailableError:
            state = None
        if state is None or now >= state["window_start"] + window_seconds:
            return {"limit": limit, "remaining": limit, "reset": int(now + window_seconds)}
        return {
            "limit": limit,
            "remaining": max(0, limit - state["count"]),
            "reset": int(state["window_start"] + window_seconds),
        }

    def reset(self, subject_id: str) -> None:
        """Forget a subject's window and any ban (admin action)."""
        self.cache.delete(_key(subject_id))


def _ceil(seconds: float) -> int:
    return max(1, math.ceil(seconds))
