from collections import OrderedDict
from pathlib import Path
from time import time
from typing import Awaitable, Optional, Protocol, Union

from sqlalchemy import Column, Float, Integer
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, create_engine, delete

from .blocking import to_thread
from .bucket import Bucket


class BucketStore(Protocol):
    """Key to bucket persistence.

    Either method may be a coroutine function or a plain function. Failures are
    signalled by raising; the throttle never retries them.
    """

    def get(self, key: str) -> Union[Optional[Bucket], Awaitable[Optional[Bucket]]]:
        ...

    def set(self, key: str, bucket: Bucket) -> Union[None, Awaitable[None]]:
        ...


class MemoryStore:
    """Bounded LRU bucket store. ``size=0`` keeps every key forever."""

    def __init__(self, size: int = 10000) -> None:
        self.size = size
        self._cache: OrderedDict[str, Bucket] = OrderedDict()

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    # Neither coroutine awaits anything, so a get/set pair for one key runs
    # without yielding to the event loop.
    async def get(self, key: str) -> Optional[Bucket]:
        bucket = self._cache.get(key)
        if bucket is not None:
            self._cache.move_to_end(key)
        return bucket

    async def set(self, key: str, bucket: Bucket) -> None:
        self._cache[key] = bucket
        self._cache.move_to_end(key)
        if self.size:
            while len(self._cache) > self.size:
                self._cache.popitem(last=False)

    def clear(self) -> None:
        self._cache.clear()


class BucketRecord(SQLModel, table=True):
    __tablename__ = "bucket"

    key: str = Field(primary_key=True)
    tokens: float = Field(sa_column=Column(Float, nullable=False))
    mtime: float = Field(sa_column=Column(Float, nullable=False, index=True))
    window_start: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    updated_at: int = Field(sa_column=Column(Integer, nullable=False))


class SQLStore:
    """SQLite bucket store.

    Blocking database calls run in a worker thread, so concurrent requests for
    the same key can interleave and overwrite each other's buckets.
    """

    def __init__(self, db_path: str = "tokengate.db") -> None:
        self.db_path = db_path
        self._engine: Engine | None = None
        self._ready = False

    def _get_engine(self) -> Engine:
        if self._engine is None:
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._engine = create_engine(
                f"sqlite:///{path}",
                echo=False,
                connect_args={"check_same_thread": False},
            )
        return self._engine

    def init_db(self) -> Engine:
        eng = self._get_engine()
        if not self._ready:
            SQLModel.metadata.create_all(eng, tables=[BucketRecord.__table__])
            self._ready = True
        return eng

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._ready = False

    def get_sync(self, key: str) -> Optional[Bucket]:
        eng = self.init_db()
        with Session(eng) as session:
            row = session.get(BucketRecord, key)
            if row is None:
                return None
            return Bucket(tokens=row.tokens, mtime=row.mtime, window_start=row.window_start)

    def set_sync(self, key: str, bucket: Bucket) -> None:
        eng = self.init_db()
        with Session(eng) as session:
            session.merge(
                BucketRecord(
                    key=key,
                    tokens=bucket.tokens,
                    mtime=bucket.mtime,
                    window_start=bucket.window_start,
                    updated_at=int(time()),
                )
            )
            session.commit()

    async def get(self, key: str) -> Optional[Bucket]:
        return await to_thread(self.get_sync, key)

    async def set(self, key: str, bucket: Bucket) -> None:
        await to_thread(self.set_sync, key, bucket)

    def purge_older_than(self, max_idle_ms: float, now: float) -> int:
        """Delete buckets untouched for ``max_idle_ms``; they restart at full capacity."""
        eng = self.init_db()
        cutoff = now - max_idle_ms
        with Session(eng) as session:
            result = session.exec(delete(BucketRecord).where(BucketRecord.mtime < cutoff))
            session.commit()
            return result.rowcount or 0
