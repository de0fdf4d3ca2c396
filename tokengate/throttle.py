"""Per-request throttling for Starlette and FastAPI apps."""

from __future__ import annotations

import inspect
import logging
import math
from typing import Any, Awaitable, Mapping, Optional, TypeVar, Union

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from .bucket import Bucket, admit, drain
from .errors import InvalidCostError, StoreError
from .metrics import DECISIONS, DRAINS
from .options import CallNext, ThrottleOptions, parse_options
from .rates import RefillPolicy
from .store import BucketStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _resolve(value: Union[T, Awaitable[T]]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


def _checked_cost(cost: Any) -> float:
    if isinstance(cost, bool) or not isinstance(cost, (int, float)):
        raise InvalidCostError(cost)
    if cost < 0 or not math.isfinite(cost):
        raise InvalidCostError(cost)
    return float(cost)


class Drain:
    """Single-use handle that settles a request's cost after the fact."""

    def __init__(
        self,
        throttle: Optional["Throttle"],
        key: str,
        cost: float,
        drained: bool = False,
    ) -> None:
        self._throttle = throttle
        self._key = key
        self._cost = cost
        self._drained = drained

    @property
    def drained(self) -> bool:
        return self._drained

    async def __call__(self, cost: Optional[float] = None) -> Optional[Bucket]:
        """Subtract the cost once; later calls do nothing and return None."""

        if self._drained or self._throttle is None:
            return None
        amount = self._cost if cost is None else _checked_cost(cost)
        self._drained = True
        return await self._throttle.consume(self._key, amount)

    @classmethod
    def spent(cls) -> "Drain":
        return cls(None, "", 0.0, drained=True)


class Throttle:
    """Token bucket admission for incoming requests.

    Accepts prebuilt :class:`ThrottleOptions` or the raw options accepted by
    :func:`parse_options`.
    """

    def __init__(
        self,
        options: Union[ThrottleOptions, Mapping[str, Any], None] = None,
        **kwargs: Any,
    ) -> None:
        if isinstance(options, ThrottleOptions):
            self.options = options
        else:
            self.options = parse_options(options, **kwargs)

    @property
    def policy(self) -> RefillPolicy:
        return self.options.policy

    @property
    def store(self) -> BucketStore:
        return self.options.store

    async def _load(self, key: str) -> Optional[Bucket]:
        try:
            return await _resolve(self.options.store.get(key))
        except Exception as exc:
            logger.error("bucket load failed for %s: %r", key, exc)
            raise StoreError(key, "load") from exc

    async def _save(self, key: str, bucket: Bucket) -> None:
        try:
            await _resolve(self.options.store.set(key, bucket))
        except Exception as exc:
            logger.error("bucket save failed for %s: %r", key, exc)
            raise StoreError(key, "save") from exc

    async def check(self, key: str, cost: float) -> tuple[bool, Bucket]:
        """Run one admission decision for ``key`` and persist the result."""

        try:
            previous = await self._load(key)
            admitted, bucket = admit(
                self.options.policy,
                previous,
                self.options.clock(),
                cost,
                consume=self.options.auto_drain,
            )
            await self._save(key, bucket)
        except StoreError:
            DECISIONS.labels("error").inc()
            raise
        DECISIONS.labels("allowed" if admitted else "throttled").inc()
        return admitted, bucket.copy()

    async def consume(self, key: str, cost: float) -> Bucket:
        """Subtract ``cost`` from the stored bucket for ``key``."""

        try:
            previous = await self._load(key)
            bucket = drain(self.options.policy, previous, self.options.clock(), cost)
            await self._save(key, bucket)
        except StoreError:
            DRAINS.labels("error").inc()
            raise
        DRAINS.labels("drained").inc()
        logger.debug("drained %s tokens from %s, %.3f left", cost, key, bucket.tokens)
        return bucket.copy()

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        key = self.options.key(request)
        cost = _checked_cost(self.options.cost(request))
        admitted, bucket = await self.check(key, cost)
        request.state.bucket = bucket
        if admitted:
            if self.options.auto_drain:
                request.state.drain = Drain.spent()
            else:
                request.state.drain = Drain(self, key, cost)
            return await _resolve(self.options.on_allowed(request, call_next, bucket))
        request.state.drain = Drain.spent()
        logger.info("throttled %s (cost %s, %.3f tokens left)", key, cost, bucket.tokens)
        return await _resolve(self.options.on_throttled(request, call_next, bucket))


class ThrottleMiddleware(BaseHTTPMiddleware):
    """Mount a :class:`Throttle` in front of every route of an app."""

    def __init__(self, app: ASGIApp, throttle: Optional[Throttle] = None, **options: Any) -> None:
        super().__init__(app)
        self.throttle = throttle if throttle is not None else Throttle(**options)

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:  # type: ignore[override]
        return await self.throttle(request, call_next)
