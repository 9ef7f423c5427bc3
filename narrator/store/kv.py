from __future__ import annotations

import logging
import os
import re
import threading
from pathlib import Path
from typing import Protocol

from redis import Redis
from redis.exceptions import LockError, RedisError

log = logging.getLogger("kv_store")


class StorageError(Exception):
    pass


class PassLock(Protocol):
    def acquire(self) -> bool: ...

    def release(self) -> None: ...


class KeyValueStore(Protocol):
    """Durable append-only lists of opaque items.

    ``remove`` deletes one occurrence of an exact item, so concurrent appends are never
    overwritten. ``pass_lock`` guards a whole replay pass over a key.
    """

    def append(self, key: str, item: bytes) -> None: ...

    def items(self, key: str) -> list[bytes]: ...

    def remove(self, key: str, item: bytes) -> bool: ...

    def pass_lock(self, key: str) -> PassLock: ...


class _RedisPassLock:
    def __init__(self, lock) -> None:
        self._lock = lock

    def acquire(self) -> bool:
        try:
            return bool(self._lock.acquire(blocking=False))
        except RedisError as e:
            raise StorageError(f"redis lock failed: {e}") from e

    def release(self) -> None:
        try:
            self._lock.release()
        except LockError as e:
            log.warning("Replay lock expired before release: %s", e)
        except RedisError as e:
            raise StorageError(f"redis unlock failed: {e}") from e


class RedisKeyValueStore:
    """Lists in Redis (RPUSH/LRANGE/LREM) with a ``redis-py`` lock per replay pass.

    Safe to share between the API process and Celery workers.
    """

    def __init__(self, client: Redis, *, prefix: str = "", lock_timeout_s: float = 300.0) -> None:
        self._client = client
        self._prefix = prefix
        self._lock_timeout_s = lock_timeout_s

    @classmethod
    def from_url(cls, url: str, *, prefix: str = "", lock_timeout_s: float = 300.0) -> "RedisKeyValueStore":
        client = Redis.from_url(url, socket_connect_timeout=2, socket_timeout=2)
        return cls(client, prefix=prefix, lock_timeout_s=lock_timeout_s)

    def append(self, key: str, item: bytes) -> None:
        try:
            self._client.rpush(self._prefix + key, item)
        except RedisError as e:
            raise StorageError(f"redis rpush {key!r} failed: {e}") from e

    def items(self, key: str) -> list[bytes]:
        try:
            return list(self._client.lrange(self._prefix + key, 0, -1))
        except RedisError as e:
            raise StorageError(f"redis lrange {key!r} failed: {e}") from e

    def remove(self, key: str, item: bytes) -> bool:
        try:
            return bool(self._client.lrem(self._prefix + key, 1, item))
        except RedisError as e:
            raise StorageError(f"redis lrem {key!r} failed: {e}") from e

    def pass_lock(self, key: str) -> PassLock:
        # Acquire and release may run on different worker threads, so the token is not thread-local.
        lock = self._client.lock(
            f"{self._prefix}{key}:lock", timeout=self._lock_timeout_s, blocking=False, thread_local=False
        )
        return _RedisPassLock(lock)


_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9._-]")


class _LocalPassLock:
    def __init__(self, lock: threading.Lock) -> None:
        self._lock = lock

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()


class LocalKeyValueStore:
    """One JSON-lines file per key under ``root``.

    Single process only: appends, removals and pass locks are serialized by locks held on
    this instance, so every buffer must share the same store object. Use
    ``RedisKeyValueStore`` when a worker process replays too.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._io_lock = threading.Lock()
        self._pass_locks: dict[str, threading.Lock] = {}

    def _path(self, key: str) -> Path:
        return self._root / _SAFE_KEY_RE.sub("_", key)

    def _read(self, key: str) -> list[bytes]:
        try:
            data = self._path(key).read_bytes()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"read {key!r} failed: {e}") from e
        return [line for line in data.split(b"\n") if line]

    def append(self, key: str, item: bytes) -> None:
        if b"\n" in item:
            raise StorageError("items must be single-line")
        with self._io_lock:
            path = self._path(key)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("ab") as fh:
                    fh.write(item + b"\n")
            except OSError as e:
                raise StorageError(f"append {key!r} failed: {e}") from e

    def items(self, key: str) -> list[bytes]:
        with self._io_lock:
            return self._read(key)

    def remove(self, key: str, item: bytes) -> bool:
        with self._io_lock:
            current = self._read(key)
            if item not in current:
                return False
            current.remove(item)
            path = self._path(key)
            tmp = path.with_name(path.name + ".tmp")
            try:
                tmp.write_bytes(b"".join(line + b"\n" for line in current))
                os.replace(tmp, path)
            except OSError as e:
                raise StorageError(f"rewrite {key!r} failed: {e}") from e
            return True

    def pass_lock(self, key: str) -> PassLock:
        with self._io_lock:
            lock = self._pass_locks.setdefault(key, threading.Lock())
        return _LocalPassLock(lock)
