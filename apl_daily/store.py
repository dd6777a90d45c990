from __future__ import annotations

import asyncio
import re
import time
from abc import ABC, abstractmethod
from datetime import date
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

import redis.asyncio as redis

from apl_daily.config import Settings
from apl_daily.errors import StoreError
from apl_daily.logs import EventLog


class StateStore(ABC):
    """Async key-value contract. Every call may fail with StoreError."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def increment(self, key: str) -> int: ...

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def keys_matching(self, prefix: str) -> List[str]: ...

    @abstractmethod
    async def add_to_set(self, key: str, member: str) -> None: ...

    @abstractmethod
    async def remove_from_set(self, key: str, member: str) -> None: ...

    @abstractmethod
    async def is_set_member(self, key: str, member: str) -> bool: ...

    @abstractmethod
    async def set_members(self, key: str) -> Set[str]: ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryStateStore(StateStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._values: Dict[str, Union[str, Set[str]]] = {}
        self._expires_at: Dict[str, float] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _purge(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def _string(self, operation: str, key: str) -> Optional[str]:
        self._purge(key)
        value = self._values.get(key)
        if value is not None and not isinstance(value, str):
            raise StoreError(operation, key, TypeError("value is a set"))
        return value

    def _set_value(self, operation: str, key: str, create: bool) -> Optional[Set[str]]:
        self._purge(key)
        value = self._values.get(key)
        if value is None:
            if not create:
                return None
            value = set()
            self._values[key] = value
        if not isinstance(value, set):
            raise StoreError(operation, key, TypeError("value is not a set"))
        return value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._string("get", key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        async with self._lock:
            self._values[key] = str(value)
            if ttl is None:
                self._expires_at.pop(key, None)
            else:
                self._expires_at[key] = self._clock() + ttl

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    async def increment(self, key: str) -> int:
        async with self._lock:
            current = self._string("increment", key)
            try:
                value = int(current or 0) + 1
            except ValueError as ex:
                raise StoreError("increment", key, ex) from ex
            self._values[key] = str(value)
            return value

    async def expire(self, key: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._purge(key)
            if key in self._values:
                self._expires_at[key] = self._clock() + ttl_seconds

    async def keys_matching(self, prefix: str) -> List[str]:
        async with self._lock:
            for key in list(self._values):
                self._purge(key)
            return sorted(k for k in self._values if k.startswith(prefix))

    async def add_to_set(self, key: str, member: str) -> None:
        async with self._lock:
            self._set_value("add_to_set", key, create=True).add(str(member))

    async def remove_from_set(self, key: str, member: str) -> None:
        async with self._lock:
            members = self._set_value("remove_from_set", key, create=False)
            if members is not None:
                members.discard(str(member))
                if not members:
                    self._values.pop(key, None)

    async def is_set_member(self, key: str, member: str) -> bool:
        async with self._lock:
            members = self._set_value("is_set_member", key, create=False)
            return members is not None and str(member) in members

    async def set_members(self, key: str) -> Set[str]:
        async with self._lock:
            return set(self._set_value("set_members", key, create=False) or set())


class RedisStateStore(StateStore):
    def __init__(self, client: "redis.Redis") -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 5.0) -> "RedisStateStore":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except redis.RedisError as ex:
            raise StoreError("get", key, ex) from ex

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        try:
            await self.client.set(key, value, ex=ttl)
        except redis.RedisError as ex:
            raise StoreError("set", key, ex) from ex

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except redis.RedisError as ex:
            raise StoreError("delete", key, ex) from ex

    async def increment(self, key: str) -> int:
        try:
            return int(await self.client.incr(key))
        except redis.RedisError as ex:
            raise StoreError("increment", key, ex) from ex

    async def expire(self, key: str, ttl_seconds: int) -> None:
        try:
            await self.client.expire(key, ttl_seconds)
        except redis.RedisError as ex:
            raise StoreError("expire", key, ex) from ex

    async def keys_matching(self, prefix: str) -> List[str]:
        try:
            keys = [key async for key in self.client.scan_iter(match=f"{prefix}*", count=200)]
        except redis.RedisError as ex:
            raise StoreError("keys_matching", prefix, ex) from ex
        return sorted(set(keys))

    async def add_to_set(self, key: str, member: str) -> None:
        try:
            await self.client.sadd(key, str(member))
        except redis.RedisError as ex:
            raise StoreError("add_to_set", key, ex) from ex

    async def remove_from_set(self, key: str, member: str) -> None:
        try:
            await self.client.srem(key, str(member))
        except redis.RedisError as ex:
            raise StoreError("remove_from_set", key, ex) from ex

    async def is_set_member(self, key: str, member: str) -> bool:
        try:
            return bool(await self.client.sismember(key, str(member)))
        except redis.RedisError as ex:
            raise StoreError("is_set_member", key, ex) from ex

    async def set_members(self, key: str) -> Set[str]:
        try:
            return set(await self.client.smembers(key))
        except redis.RedisError as ex:
            raise StoreError("set_members", key, ex) from ex

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except redis.RedisError as ex:
            raise StoreError("ping", "", ex) from ex

    async def close(self) -> None:
        await self.client.aclose()


class StoreKeys:
    def __init__(self, prefix: str) -> None:
        self.prefix = prefix.rstrip(":")
        self._user_re = re.compile(rf"^{re.escape(self.prefix)}:user:(\d+)$")

    def user(self, user_id: int) -> str:
        return f"{self.prefix}:user:{user_id}"

    def users_prefix(self) -> str:
        return f"{self.prefix}:user:"

    def bookmarks(self, user_id: int) -> str:
        return f"{self.prefix}:user:{user_id}:bookmarks"

    def last_pattern_id(self) -> str:
        return f"{self.prefix}:last-pattern-id"

    def run_count(self, day: date) -> str:
        return f"{self.prefix}:run_count:{day.isoformat()}"

    def run_offset(self) -> str:
        return f"{self.prefix}:run_offset"

    def current_index(self) -> str:
        return f"{self.prefix}:current-index"

    def user_id_from_key(self, key: str) -> Optional[int]:
        # Bookmark sets share the user: prefix and are skipped.
        match = self._user_re.match(key)
        return int(match.group(1)) if match else None


async def open_store(settings: Settings, log: EventLog) -> Tuple[StateStore, str]:
    """Return the configured store and its mode, falling back to memory when Redis is down."""
    if settings.data_backend != "redis":
        return MemoryStateStore(), "memory"
    store = RedisStateStore.from_url(settings.redis_url)
    try:
        await store.ping()
    except StoreError as ex:
        log.error("redis_unavailable_fallback_memory", error=str(ex))
        await store.close()
        return MemoryStateStore(), "memory"
    log.emit("redis_connected")
    return store, "redis"
