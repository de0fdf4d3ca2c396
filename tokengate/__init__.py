"""tokengate: token bucket request throttling for ASGI apps."""

from typing import TYPE_CHECKING

from .bucket import Bucket, admit, drain, rate_limit_headers
from .errors import ConfigurationError, InvalidCostError, StoreError, TokengateError
from .options import ThrottleOptions, parse_options, parse_period, parse_rate
from .rates import RefillKind, RefillPolicy
from .store import BucketStore, MemoryStore, SQLStore
from .throttle import Drain, Throttle, ThrottleMiddleware

__version__ = "0.1.0"

if TYPE_CHECKING:  # pragma: no cover
    from .main import app as app

__all__ = [
    "__version__",
    "Bucket",
    "BucketStore",
    "ConfigurationError",
    "Drain",
    "InvalidCostError",
    "MemoryStore",
    "RefillKind",
    "RefillPolicy",
    "SQLStore",
    "StoreError",
    "Throttle",
    "ThrottleMiddleware",
    "ThrottleOptions",
    "TokengateError",
    "admit",
    "drain",
    "parse_options",
    "parse_period",
    "parse_rate",
    "rate_limit_headers",
]


def __getattr__(name: str):
    if name == "app":
        from .main import app as _app
        return _app
    raise AttributeError(f"module 'tokengate' has no attribute {name!r}")
