"""
ratelimit.py — Fixed-window rate limiting keyed by (route, ip).

The limiter is injected into routes; its state lives behind a
`RateLimitStore`. The in-memory store suits a single process; the database
store shares counters between instances.
"""

import hashlib
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Tuple

from dotenv import load_dotenv
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError as DBIntegrityError

from errors import RateLimitExceededError
import models

load_dotenv()

logger = logging.getLogger(__name__)

RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory")      # memory | database
PASSWORD_ATTEMPT_LIMIT = int(os.getenv("PASSWORD_ATTEMPT_LIMIT", "5"))
PASSWORD_ATTEMPT_WINDOW = int(os.getenv("PASSWORD_ATTEMPT_WINDOW", "900"))
UPLOAD_RATE_LIMIT = int(os.getenv("UPLOAD_RATE_LIMIT", "10"))
UPLOAD_RATE_WINDOW = int(os.getenv("UPLOAD_RATE_WINDOW", "60"))


def _as_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float


class RateLimitStore(ABC):

    @abstractmethod
    def increment(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        """Count one hit; returns (count in current window, window reset time)."""

    @abstractmethod
    def reset(self, key: str):
        ...

    def purge_expired(self, now: datetime) -> int:
        """Drop windows that ended before `now`; returns how many."""
        return 0


class InMemoryRateLimitStore(RateLimitStore):

    def __init__(self):
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def increment(self, key, window_seconds, now):
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)
            return count, reset_at

    def reset(self, key):
        with self._lock:
            self._windows.pop(key, None)

    def purge_expired(self, now):
        cutoff = now.replace(tzinfo=timezone.utc).timestamp()
        with self._lock:
            stale = [k for k, (_, reset_at) in self._windows.items() if reset_at <= cutoff]
            for key in stale:
                del self._windows[key]
        return len(stale)


class DatabaseRateLimitStore(RateLimitStore):
    """Shared counters in the `rate_limit_windows` table, aligned windows."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @staticmethod
    def _row_key(key: str) -> str:
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    @staticmethod
    def _window(window_seconds: int, now: float) -> Tuple[int, float]:
        start = int(now // window_seconds) * window_seconds
        return start, float(start + window_seconds)

    def increment(self, key, window_seconds, now):
        row_key = self._row_key(key)
        start, reset_at = self._window(window_seconds, now)
        match = (models.RateLimitWindow.key == row_key) & (models.RateLimitWindow.window_start == start)
        db = self._session_factory()
        try:
            for _ in range(2):
                result = db.execute(
                    update(models.RateLimitWindow).where(match)
                    .values(count=models.RateLimitWindow.count + 1)
                )
                if result.rowcount == 0:
                    db.add(models.RateLimitWindow(
                        key=row_key, window_start=start, count=1,
                        expires_at=_as_datetime(reset_at),
                    ))
                try:
                    db.commit()
                    break
                except DBIntegrityError:
                    # Another instance created the window first; count again.
                    db.rollback()
            count = db.execute(select(models.RateLimitWindow.count).where(match)).scalar() or 0
            return count, reset_at
        finally:
            db.close()

    def reset(self, key):
        db = self._session_factory()
        try:
            db.execute(delete(models.RateLimitWindow).where(
                models.RateLimitWindow.key == self._row_key(key)))
            db.commit()
        finally:
            db.close()

    def purge_expired(self, now: datetime) -> int:
        db = self._session_factory()
        try:
            result = db.execute(delete(models.RateLimitWindow).where(
                models.RateLimitWindow.expires_at <= now))
            db.commit()
            return result.rowcount or 0
        finally:
            db.close()


class RateLimiter:

    def __init__(self, store: RateLimitStore, limit: int, window_seconds: int,
                 name: str = "default", clock: Callable[[], float] = time.time):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock

    def _key(self, ip: str) -> str:
        return f"{self.name}:{ip}"

    def _exceeded(self, reset_at: float) -> RateLimitExceededError:
        return RateLimitExceededError(limit=self.limit, remaining=0,
                                      reset_at=_as_datetime(reset_at))

    def hit(self, ip: str) -> RateLimitStatus:
        """Count one event against `ip`."""
        count, reset_at = self.store.increment(self._key(ip), self.window_seconds, self._clock())
        return RateLimitStatus(count <= self.limit, self.limit, max(0, self.limit - count), reset_at)

    def consume(self, ip: str) -> RateLimitStatus:
        """Count one request and raise once the allowance is exceeded."""
        status = self.hit(ip)
        if not status.allowed:
            logger.warning(f"Rate limit '{self.name}' exceeded")
            raise self._exceeded(status.reset_at)
        return status

    def reset(self, ip: str):
        self.store.reset(self._key(ip))


def build_store(backend: str = RATE_LIMIT_BACKEND) -> RateLimitStore:
    if backend == "database":
        from database import SessionLocal
        return DatabaseRateLimitStore(SessionLocal)
    if backend != "memory":
        logger.warning(f"Unknown RATE_LIMIT_BACKEND={backend!r}; using in-memory store")
    return InMemoryRateLimitStore()


class RateLimiters:
    """The limiters the API uses, sharing one store."""

    def __init__(self, store: RateLimitStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.password = RateLimiter(store, PASSWORD_ATTEMPT_LIMIT, PASSWORD_ATTEMPT_WINDOW,
                                    name="password", clock=clock)
        self.upload = RateLimiter(store, UPLOAD_RATE_LIMIT, UPLOAD_RATE_WINDOW,
                                  name="upload", clock=clock)


_limiters = None
_limiters_lock = threading.Lock()


def get_rate_limiters() -> RateLimiters:
    """Dependency: overridden in tests or multi-instance deployments."""
    global _limiters
    with _limiters_lock:
        if _limiters is None:
            _limiters = RateLimiters(build_store())
        return _limiters
