from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.responses import Response

from .blocking import to_thread
from .bucket import Bucket, rate_limit_headers
from .config import Settings, options_from_settings, settings
from .logging_setup import RequestLogMiddleware, init_logging
from .metrics import LAT, REQS, router as metrics_router
from .options import CallNext
from .store import SQLStore
from .throttle import Throttle, ThrottleMiddleware

FREE_PATHS = {"/health", "/metrics"}

logger = logging.getLogger(__name__)


class Health(BaseModel):
    status: str
    time: str


def build_throttle(cfg: Settings) -> Throttle:
    base_cost = cfg.THROTTLE_COST

    def cost(request: Request) -> float:
        return 0 if request.url.path in FREE_PATHS else base_cost

    async def on_allowed(request: Request, call_next: CallNext, bucket: Bucket) -> Response:
        response = await call_next(request)
        response.headers.update(rate_limit_headers(throttle.policy, bucket))
        return response

    async def on_throttled(request: Request, call_next: CallNext, bucket: Bucket) -> Response:
        headers = rate_limit_headers(throttle.policy, bucket)
        headers["Retry-After"] = headers["X-RateLimit-Reset"]
        return JSONResponse({"detail": "rate limit"}, status_code=429, headers=headers)

    throttle = Throttle(
        options_from_settings(
            cfg, cost=cost, on_allowed=on_allowed, on_throttled=on_throttled
        )
    )
    return throttle


async def purge_idle_buckets(
    store: SQLStore, throttle: Throttle, max_idle_seconds: int, interval: float
) -> None:
    """Periodically delete persisted buckets that have been idle too long."""

    while True:
        await asyncio.sleep(interval)
        try:
            purged = await to_thread(
                store.purge_older_than, max_idle_seconds * 1000.0, throttle.options.clock()
            )
        except Exception:  # noqa: BLE001
            logger.exception("bucket purge failed")
            continue
        if purged:
            logger.info("purged %d idle buckets", purged)


def create_app(cfg: Settings | None = None) -> FastAPI:
    cfg = cfg or settings
    init_logging(cfg.LOG_LEVEL)
    throttle = build_throttle(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = throttle.store
        tasks: list[asyncio.Task[None]] = []
        if isinstance(store, SQLStore):
            await to_thread(store.init_db)
            tasks.append(
                asyncio.create_task(
                    purge_idle_buckets(
                        store,
                        throttle,
                        cfg.STORE_MAX_IDLE_SECONDS,
                        cfg.STORE_PURGE_INTERVAL_SECONDS,
                    )
                )
            )
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
            if isinstance(store, SQLStore):
                store.dispose()

    app = FastAPI(title="tokengate", version="0.1.0", lifespan=lifespan)
    app.state.throttle = throttle
    app.add_middleware(ThrottleMiddleware, throttle=throttle)
    app.add_middleware(RequestLogMiddleware)
    app.include_router(metrics_router())

    origins = [o.strip() for o in cfg.CORS_ALLOW_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    @app.middleware("http")
    async def _metrics(request: Request, call_next):
        method = request.method
        path = request.url.path
        start = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration = time.time() - start
            REQS.labels(method, path, str(status_code)).inc()
            LAT.labels(method, path).observe(duration)

    @app.get("/health", response_model=Health)
    def health():
        return Health(status="ok", time=datetime.now(timezone.utc).isoformat())

    @app.get("/items")
    async def items(request: Request, count: int = Query(1, ge=1, le=100)):
        # with auto drain off, each returned item costs one token
        settle = getattr(request.state, "drain", None)
        drained = await settle(cost=count) if settle is not None else None
        return {
            "items": [{"id": i} for i in range(count)],
            "tokens": drained.tokens if drained is not None else request.state.bucket.tokens,
            "deferred": drained is not None,
        }

    return app


app = create_app()
