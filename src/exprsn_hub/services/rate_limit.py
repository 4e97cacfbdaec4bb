"""Fixed-window rate limiting.

Two algorithms coexist: an in-process window for high-rate paths such as login,
and a database-backed window for per-principal, per-endpoint quotas. Both are
fail-open: an internal error lets the request through.
"""

from __future__ import annotations

import logging
import math
import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Any

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from exprsn_hub.db.time import utcnow
from exprsn_hub.models import RateLimitCounter

logger = logging.getLogger(__name__)

GC_PROBABILITY = 0.01


@dataclass(frozen=True)
class RateLimitPolicy:
    """Window length, request budget and storage choice for one limit."""

    window_ms: int
    max: int
    strict: bool = False
    db: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RateLimitPolicy:
        """Build a policy from a route manifest ``rateLimit`` block.

        Raises:
            ValueError: If the window or budget is not a positive integer.
        """
        strict = bool(data.get("strict", False))
        base = STRICT_POLICY if strict else MODERATE_POLICY
        window_ms = int(data.get("windowMs", base.window_ms))
        maximum = int(data.get("max", base.max))
        if window_ms <= 0 or maximum <= 0:
            raise ValueError("rateLimit windowMs and max must be positive")
        return cls(window_ms=window_ms, max=maximum, strict=strict, db=bool(data.get("db", False)))

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000

    def to_dict(self) -> dict[str, Any]:
        return {"windowMs": self.window_ms, "max": self.max, "strict": self.strict, "db": self.db}


STRICT_POLICY = RateLimitPolicy(window_ms=15 * 60 * 1000, max=30, strict=True)
MODERATE_POLICY = RateLimitPolicy(window_ms=60 * 60 * 1000, max=100)
LOGIN_POLICY = RateLimitPolicy(window_ms=15 * 60 * 1000, max=20, strict=True)
SITE_POLICY = RateLimitPolicy(window_ms=60 * 60 * 1000, max=1000)
ADMIN_API_POLICY = RateLimitPolicy(window_ms=60 * 60 * 1000, max=200)
RELOAD_POLICY = RateLimitPolicy(window_ms=60 * 1000, max=10, strict=True)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of counting one request."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds

    def retry_after(self, now: float) -> int:
        """Seconds until the window resets, rounded up."""
        return max(1, math.ceil(self.reset_at - now))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class InProcessRateLimiter:
    """Fixed windows kept in a dictionary keyed by principal or address."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = Lock()

    def hit(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            reset_at, count = self._windows.get(key, (0.0, 0))
            if reset_at <= now:
                reset_at, count = now + policy.window_seconds, 0
                if len(self._windows) > 10_000:
                    self._sweep(now)
            if count >= policy.max:
                return RateLimitDecision(False, policy.max, 0, reset_at)
            count += 1
            self._windows[key] = (reset_at, count)
            return RateLimitDecision(True, policy.max, policy.max - count, reset_at)

    def _sweep(self, now: float) -> None:
        for key in [key for key, (reset_at, _) in self._windows.items() if reset_at <= now]:
            del self._windows[key]

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


class PersistentRateLimiter:
    """Fixed windows stored as ``rate_limits`` rows keyed by (principal, endpoint)."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        clock: Callable[[], datetime] = utcnow,
        gc_probability: float = GC_PROBABILITY,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self.gc_probability = gc_probability
        self._rng = rng

    def hit(self, principal: str, endpoint: str, policy: RateLimitPolicy) -> RateLimitDecision:
        now = self._clock()
        with self._session_factory() as db:
            if self._rng() < self.gc_probability:
                self.sweep(db, now)

            row = (
                db.query(RateLimitCounter)
                .filter(
                    RateLimitCounter.principal == principal,
                    RateLimitCounter.endpoint == endpoint,
                )
                .first()
            )
            if row is None or row.reset_at <= now:
                reset_at = now + timedelta(milliseconds=policy.window_ms)
                if row is None:
                    db.add(
                        RateLimitCounter(
                            principal=principal,
                            endpoint=endpoint,
                            request_count=1,
                            reset_at=reset_at,
                        )
                    )
                else:
                    row.request_count = 1
                    row.reset_at = reset_at
                db.commit()
                return RateLimitDecision(True, policy.max, policy.max - 1, reset_at.timestamp())

            reset_ts = row.reset_at.timestamp()
            result = db.execute(
                update(RateLimitCounter)
                .where(
                    RateLimitCounter.id == row.id,
                    RateLimitCounter.request_count < policy.max,
                )
                .values(request_count=RateLimitCounter.request_count + 1)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount == 0:
                return RateLimitDecision(False, policy.max, 0, reset_ts)
            remaining = max(0, policy.max - (row.request_count + 1))
            return RateLimitDecision(True, policy.max, remaining, reset_ts)

    def sweep(self, db: Session, now: datetime | None = None) -> int:
        """Delete windows that have already reset."""
        cutoff = now or self._clock()
        result = db.execute(delete(RateLimitCounter).where(RateLimitCounter.reset_at < cutoff))
        db.commit()
        removed = result.rowcount or 0
        if removed:
            logger.debug("Swept %d expired rate-limit rows", removed)
        return removed


class RateLimiter:
    """Front door choosing the algorithm from the policy and failing open."""

    def __init__(
        self,
        persistent: PersistentRateLimiter,
        in_process: InProcessRateLimiter | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.persistent = persistent
        self.in_process = in_process or InProcessRateLimiter(clock)
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def check(
        self, principal: str, endpoint: str, policy: RateLimitPolicy
    ) -> RateLimitDecision | None:
        """Count one request; returns None when the limiter itself failed."""
        try:
            if policy.db:
                return self.persistent.hit(principal, endpoint, policy)
            return self.in_process.hit(f"{endpoint}:{principal}", policy)
        except (SQLAlchemyError, ValueError, TypeError) as exc:
            logger.warning("Rate limiter error for %s on %s: %s", principal, endpoint, exc)
            return None
