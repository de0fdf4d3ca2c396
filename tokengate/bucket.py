"""Token bucket state and the admission engine."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, replace
from typing import TYPE_CHECKING, Any, Optional, Tuple

if TYPE_CHECKING:  # pragma: no cover
    from .rates import RefillPolicy


@dataclass
class Bucket:
    tokens: float
    mtime: float  # last time tokens were computed, in ms
    window_start: Optional[float] = None
    etime: Optional[float] = None  # fixed window expiry
    rtime: Optional[float] = None  # ms until the fixed window resets

    def copy(self) -> "Bucket":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _expose_window(policy: "RefillPolicy", bucket: Bucket, now: float) -> Bucket:
    if not policy.is_fixed or bucket.window_start is None:
        return bucket
    bucket.etime = bucket.window_start + policy.period_ms
    bucket.rtime = abs(policy.period_ms - now % policy.period_ms)
    return bucket


def admit(
    policy: "RefillPolicy",
    bucket: Optional[Bucket],
    now: float,
    cost: float,
    consume: bool = True,
) -> Tuple[bool, Bucket]:
    """Refill ``bucket`` up to ``now`` and decide whether ``cost`` tokens fit.

    Returns ``(admitted, new_bucket)``. The refill is kept in ``new_bucket`` even
    when the request is rejected. With ``consume=False`` the decision is made but
    nothing is subtracted; the cost is settled later with :func:`drain`.
    """

    if bucket is None:
        bucket = policy.create_bucket(now)
    fresh = policy.refill(bucket, now)
    admitted = fresh.tokens >= cost
    if admitted and consume and cost > 0:
        fresh.tokens -= cost
    return admitted, _expose_window(policy, fresh, now)


def drain(
    policy: "RefillPolicy",
    bucket: Optional[Bucket],
    now: float,
    cost: float,
) -> Bucket:
    """Refill up to ``now`` and subtract ``cost``, never going below zero."""

    if bucket is None:
        bucket = policy.create_bucket(now)
    fresh = policy.refill(bucket, now)
    fresh.tokens = max(fresh.tokens - cost, 0.0)
    return _expose_window(policy, fresh, now)


def rate_limit_headers(policy: "RefillPolicy", bucket: Bucket) -> dict[str, str]:
    if policy.is_fixed:
        if bucket.etime is not None:
            reset_ms = max(bucket.etime - bucket.mtime, 0.0)
        else:
            reset_ms = policy.period_ms
    else:
        reset_ms = max(policy.capacity - bucket.tokens, 0.0) / policy.rate
    return {
        "X-RateLimit-Limit": str(int(policy.capacity)),
        "X-RateLimit-Remaining": str(max(int(math.floor(bucket.tokens)), 0)),
        "X-RateLimit-Reset": str(int(math.ceil(reset_ms / 1000.0))),
    }
