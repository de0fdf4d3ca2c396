import logging
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("tokengate.access")


def init_logging(level: str = "INFO"):
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Log one line per request, with the bucket balance when one was computed."""

    async def dispatch(self, request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start) * 1000
        bucket = getattr(request.state, "bucket", None)
        logger.info(
            "%s %s %s %.2fms tokens=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            "-" if bucket is None else f"{bucket.tokens:.2f}",
        )
        return response
