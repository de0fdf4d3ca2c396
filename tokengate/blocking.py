from __future__ import annotations

from functools import partial
from typing import Any, Callable, TypeVar

import anyio

T = TypeVar("T")


async def to_thread(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store call in anyio's worker thread pool."""
    return await anyio.to_thread.run_sync(partial(fn, *args, **kwargs))
