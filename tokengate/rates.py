"""Refill disciplines for token buckets.

A ``RefillPolicy`` is either rolling (tokens accrue continuously at
``amount / period_ms`` tokens per millisecond) or fixed (the bucket is reset to
full capacity once per ``period_ms`` window). The discipline is picked once when
the policy is built; the hot path only calls the selected refill function.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .bucket import Bucket


def now_ms() -> float:
    return time.time() * 1000.0


class RefillKind(str, Enum):
    ROLLING = "rolling"
    FIXED = "fixed"


def _window_index(t: float, window_start: float, period_ms: int) -> int:
    return math.floor((t - window_start) / period_ms)


def _refill_rolling(policy: "RefillPolicy", bucket: Bucket, now: float) -> Bucket:
    elapsed = max(now - bucket.mtime, 0.0)
    tokens = min(bucket.tokens + policy.rate * elapsed, policy.capacity)
    return Bucket(tokens=tokens, mtime=max(now, bucket.mtime))


def _refill_fixed(policy: "RefillPolicy", bucket: Bucket, now: float) -> Bucket:
    start = bucket.window_start if bucket.window_start is not None else bucket.mtime
    if _window_index(now, start, policy.period_ms) > _window_index(
        bucket.mtime, start, policy.period_ms
    ):
        return Bucket(tokens=policy.capacity, mtime=now, window_start=now)
    tokens = min(bucket.tokens, policy.capacity)
    return Bucket(tokens=tokens, mtime=max(now, bucket.mtime), window_start=start)


_REFILLERS: dict[RefillKind, Callable[["RefillPolicy", Bucket, float], Bucket]] = {
    RefillKind.ROLLING: _refill_rolling,
    RefillKind.FIXED: _refill_fixed,
}


@dataclass(frozen=True)
class RefillPolicy:
    kind: RefillKind
    capacity: float
    amount: int
    period_ms: int
    _refill: Callable[["RefillPolicy", Bucket, float], Bucket] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "_refill", _REFILLERS[self.kind])

    @classmethod
    def rolling(cls, amount: int, period_ms: int, capacity: float | None = None) -> "RefillPolicy":
        return cls(
            RefillKind.ROLLING,
            float(amount if capacity is None else capacity),
            amount,
            period_ms,
        )

    @classmethod
    def fixed(cls, capacity: float, period_ms: int, amount: int | None = None) -> "RefillPolicy":
        if amount is None:
            amount = int(math.ceil(capacity))
        return cls(RefillKind.FIXED, float(capacity), amount, period_ms)

    @property
    def is_fixed(self) -> bool:
        return self.kind is RefillKind.FIXED

    @property
    def rate(self) -> float:
        """Tokens per millisecond for rolling refill."""
        return self.amount / self.period_ms

    def create_bucket(self, now: float) -> Bucket:
        if self.is_fixed:
            return Bucket(tokens=self.capacity, mtime=now, window_start=now)
        return Bucket(tokens=self.capacity, mtime=now)

    def refill(self, bucket: Bucket, now: float) -> Bucket:
        """Return a new bucket with tokens accrued up to ``now``, clamped to capacity."""
        return self._refill(self, bucket, now)
