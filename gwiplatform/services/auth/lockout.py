from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

from gwiplatform.core.clock import utc_now
from gwiplatform.core.config import get_settings


logger = logging.getLogger(__name__)

_PRUNE_INTERVAL = timedelta(minutes=1)


def lockout_key(portal: str, email: str) -> str:
    # Counters are per portal so an admin lockout never blocks the same email elsewhere.
    return f"{portal}:{email.strip().lower()}"


@dataclass
class _AttemptState:
    failures: int
    window_started_at: datetime
    locked_until: datetime | None = None


class MemoryLockoutStore:
    """Process-local failure counters for development and tests."""

    def __init__(self, *, max_attempts: int, lockout: timedelta) -> None:
        self._max_attempts = max_attempts
        self._lockout = lockout
        self._state: dict[str, _AttemptState] = {}
        self._last_pruned_at: datetime | None = None

    def __len__(self) -> int:
        return len(self._state)

    def _is_stale(self, state: _AttemptState, current: datetime) -> bool:
        if state.locked_until is not None:
            return current >= state.locked_until
        return current - state.window_started_at >= self._lockout

    def _prune(self, current: datetime) -> None:
        # Runs at most once per interval; removes elapsed windows and expired locks.
        if self._last_pruned_at is not None and current - self._last_pruned_at < _PRUNE_INTERVAL:
            return
        self._last_pruned_at = current
        stale = [key for key, state in self._state.items() if self._is_stale(state, current)]
        for key in stale:
            del self._state[key]

    async def is_locked(self, key: str, *, now: datetime | None = None) -> bool:
        state = self._state.get(key)
        if state is None or state.locked_until is None:
            return False
        if (now or utc_now()) >= state.locked_until:
            # Lock elapsed; start a fresh window.
            self._state.pop(key, None)
            return False
        return True

    async def record_failure(self, key: str, *, now: datetime | None = None) -> int:
        current = now or utc_now()
        self._prune(current)
        state = self._state.get(key)
        if state is None or self._is_stale(state, current):
            state = _AttemptState(failures=0, window_started_at=current)
            self._state[key] = state
        state.failures += 1
        if state.failures >= self._max_attempts:
            state.locked_until = current + self._lockout
        return state.failures

    async def reset(self, key: str) -> None:
        self._state.pop(key, None)


class RedisLockoutStore:
    """Failure counters shared across API instances through Redis."""

    def __init__(
        self,
        redis: Redis,
        *,
        max_attempts: int,
        lockout: timedelta,
        prefix: str,
        fallback: MemoryLockoutStore,
    ) -> None:
        self._redis = redis
        self._max_attempts = max_attempts
        self._lockout_s = int(lockout.total_seconds())
        self._prefix = prefix
        self._fallback = fallback

    def _failures_key(self, key: str) -> str:
        return f"{self._prefix}:login_failures:{key}"

    def _locked_key(self, key: str) -> str:
        return f"{self._prefix}:login_locked:{key}"

    async def is_locked(self, key: str, *, now: datetime | None = None) -> bool:
        try:
            return bool(await self._redis.exists(self._locked_key(key)))
        except RedisError as exc:
            logger.warning("login_lockout_redis_error op=is_locked", exc_info=exc)
            return await self._fallback.is_locked(key, now=now)

    async def record_failure(self, key: str, *, now: datetime | None = None) -> int:
        try:
            failures = int(await self._redis.incr(self._failures_key(key)))
            if failures == 1:
                await self._redis.expire(self._failures_key(key), self._lockout_s)
            if failures >= self._max_attempts:
                await self._redis.set(self._locked_key(key), "1", ex=self._lockout_s)
            return failures
        except RedisError as exc:
            logger.warning("login_lockout_redis_error op=record_failure", exc_info=exc)
            return await self._fallback.record_failure(key, now=now)

    async def reset(self, key: str) -> None:
        try:
            await self._redis.delete(self._failures_key(key), self._locked_key(key))
        except RedisError as exc:
            logger.warning("login_lockout_redis_error op=reset", exc_info=exc)
        await self._fallback.reset(key)


LockoutStore = MemoryLockoutStore | RedisLockoutStore

_store: LockoutStore | None = None
_store_loop: asyncio.AbstractEventLoop | None = None
_store_lock = asyncio.Lock()


async def get_lockout_store() -> LockoutStore:
    # Reuse one store per event loop; fall back to memory when Redis is unreachable.
    global _store, _store_loop
    settings = get_settings()
    current_loop = asyncio.get_running_loop()
    if _store is not None and _store_loop == current_loop:
        return _store
    async with _store_lock:
        if _store is not None and _store_loop == current_loop:
            return _store
        lockout = timedelta(minutes=settings.login_lockout_minutes)
        memory = MemoryLockoutStore(max_attempts=settings.login_max_attempts, lockout=lockout)
        store: LockoutStore = memory
        if settings.login_lockout_backend.lower() == "redis":
            redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            try:
                await redis.ping()
            except (RedisError, OSError) as exc:
                logger.warning("login_lockout_redis_unavailable fallback=memory", exc_info=exc)
            else:
                store = RedisLockoutStore(
                    redis,
                    max_attempts=settings.login_max_attempts,
                    lockout=lockout,
                    prefix=settings.redis_prefix,
                    fallback=memory,
                )
        _store = store
        _store_loop = current_loop
    return _store


def reset_lockout_store() -> None:
    # Tests swap settings between cases; drop the cached store with them.
    global _store, _store_loop
    _store = None
    _store_loop = None
