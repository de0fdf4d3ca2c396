"""Throttle option parsing.

Options are validated once, when the throttle is built; every problem raises a
``ConfigurationError`` naming the offending option.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple, Union

from starlette.requests import Request
from starlette.responses import Response

from .bucket import Bucket
from .errors import ConfigurationError
from .rates import RefillPolicy, now_ms
from .store import BucketStore, MemoryStore

CallNext = Callable[[Request], Awaitable[Response]]
Hook = Callable[[Request, CallNext, Bucket], Union[Response, Awaitable[Response]]]
KeyFunc = Callable[[Request], str]
CostFunc = Callable[[Request], float]

_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "sec": 1000,
    "second": 1000,
    "m": 60 * 1000,
    "min": 60 * 1000,
    "minute": 60 * 1000,
    "h": 60 * 60 * 1000,
    "hour": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "day": 24 * 60 * 60 * 1000,
}
_UNITS = "|".join(sorted(_UNIT_MS, key=len, reverse=True))

RATE_PATTERN = re.compile(rf"^(\d+)/(\d+)?({_UNITS})(:fixed)?$")
PERIOD_PATTERN = re.compile(rf"^(\d+)?({_UNITS})$")

DEFAULT_STORE_SIZE = 10000


def time_unit_to_ms(unit: str) -> int:
    return _UNIT_MS[unit]


def parse_rate(rate: Any) -> Tuple[int, int, bool]:
    """Parse ``"5/2min"`` style rates into ``(amount, period_ms, fixed)``."""

    if not isinstance(rate, str):
        raise ConfigurationError("rate", "needs to be a string (e.g 3/s, 5/2min, 10/day).")
    match = RATE_PATTERN.match(rate)
    if not match:
        raise ConfigurationError("rate", "has an invalid format (e.g 3/s, 5/2min, 10/day, 5/s:fixed).")
    amount = int(match.group(1))
    if amount == 0:
        raise ConfigurationError("rate", "amount can't be 0.")
    denominator = int(match.group(2) or 1)
    if denominator == 0:
        raise ConfigurationError("rate", "denominator can't be 0.")
    return amount, denominator * time_unit_to_ms(match.group(3)), bool(match.group(4))


def parse_period(period: Any) -> int:
    """Parse ``"2h"`` style periods into milliseconds."""

    if not isinstance(period, str):
        raise ConfigurationError("period", "needs to be a string (e.g 2h, second, 5min).")
    match = PERIOD_PATTERN.match(period)
    if not match:
        raise ConfigurationError("period", "has an invalid format (e.g d, 2m, 3h).")
    amount = int(match.group(1) or 1)
    if amount == 0:
        raise ConfigurationError("period", "can't be 0.")
    return amount * time_unit_to_ms(match.group(2))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def client_address(request: Request, trust_proxy: bool = False) -> str:
    """Resolve the client address, optionally honouring proxy headers."""

    if trust_proxy:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else "unknown"


async def proceed(request: Request, call_next: CallNext, bucket: Bucket) -> Response:
    return await call_next(request)


async def reject(request: Request, call_next: CallNext, bucket: Bucket) -> Response:
    return Response(status_code=429)


@dataclass(frozen=True)
class ThrottleOptions:
    policy: RefillPolicy
    key: KeyFunc
    cost: CostFunc
    store: BucketStore
    on_allowed: Hook
    on_throttled: Hook
    auto_drain: bool = True
    clock: Callable[[], float] = now_ms

    @property
    def burst(self) -> float:
        return self.policy.capacity


def _policy(rate: Any, period: Any, burst: Any) -> RefillPolicy:
    if burst is not None and not _is_number(burst):
        raise ConfigurationError("burst", "needs to be a number.")
    if burst is not None and (not math.isfinite(burst) or burst <= 0):
        raise ConfigurationError("burst", "needs to be a positive finite number.")

    if rate is not None:
        amount, period_ms, fixed = parse_rate(rate)
        if fixed:
            return RefillPolicy.fixed(amount if burst is None else burst, period_ms, amount)
        return RefillPolicy.rolling(amount, period_ms, burst)
    if period is not None:
        period_ms = parse_period(period)
        if burst is None:
            raise ConfigurationError("burst", "needs to be a number.")
        return RefillPolicy.fixed(burst, period_ms)
    raise ConfigurationError("rate", "or 'period' must be supplied.")


def _cost_func(cost: Any) -> CostFunc:
    if cost is None:
        return lambda request: 1
    if _is_number(cost):
        if not math.isfinite(cost) or cost < 0:
            raise ConfigurationError("cost", "needs to be a non-negative finite number.")
        return lambda request: cost
    if callable(cost):
        return cost
    raise ConfigurationError("cost", "needs to be a number or function.")


def _hook(name: str, value: Any, default: Hook) -> Hook:
    if value is None:
        return default
    if not callable(value):
        raise ConfigurationError(name, "needs to be a function.")
    return value


def parse_options(
    options: Optional[Mapping[str, Any]] = None, **kwargs: Any
) -> ThrottleOptions:
    """Validate throttle options given as a mapping and/or keyword arguments."""

    if options is not None and not isinstance(options, Mapping):
        raise ConfigurationError("options", "needs to be a mapping.")
    opts: dict[str, Any] = dict(options or {})
    opts.update(kwargs)

    known = {
        "rate",
        "period",
        "burst",
        "key",
        "cost",
        "store",
        "store_size",
        "on_allowed",
        "on_throttled",
        "auto_drain",
        "clock",
        "trust_proxy",
    }
    unknown = sorted(set(opts) - known)
    if unknown:
        raise ConfigurationError(unknown[0], "is not a known option.")

    store_size = opts.get("store_size")
    if store_size is not None and (
        not isinstance(store_size, int) or isinstance(store_size, bool) or store_size < 0
    ):
        raise ConfigurationError("store_size", "needs to be a non-negative integer.")
    store = opts.get("store")
    if store is None:
        store = MemoryStore(DEFAULT_STORE_SIZE if store_size is None else store_size)
    elif not (callable(getattr(store, "get", None)) and callable(getattr(store, "set", None))):
        raise ConfigurationError("store", "needs 'get' and 'set' methods.")

    policy = _policy(opts.get("rate"), opts.get("period"), opts.get("burst"))

    trust_proxy = opts.get("trust_proxy", False)
    if not isinstance(trust_proxy, bool):
        raise ConfigurationError("trust_proxy", "needs to be a boolean.")
    key = opts.get("key")
    if key is None:
        key = lambda request: client_address(request, trust_proxy)  # noqa: E731
    elif not callable(key):
        raise ConfigurationError("key", "needs to be a function.")

    auto_drain = opts.get("auto_drain", True)
    if not isinstance(auto_drain, bool):
        raise ConfigurationError("auto_drain", "needs to be a boolean.")

    clock = opts.get("clock") or now_ms
    if not callable(clock):
        raise ConfigurationError("clock", "needs to be a function.")

    return ThrottleOptions(
        policy=policy,
        key=key,
        cost=_cost_func(opts.get("cost")),
        store=store,
        on_allowed=_hook("on_allowed", opts.get("on_allowed"), proceed),
        on_throttled=_hook("on_throttled", opts.get("on_throttled"), reject),
        auto_drain=auto_drain,
        clock=clock,
    )
