from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from narrator.schemas.capture_v1 import OfflineDescribeRequest, OfflineEntry
from narrator.store.kv import KeyValueStore, StorageError

log = logging.getLogger("offline_buffer")

OFFLINE_QUEUE_KEY = "offline-queue"

Processor = Callable[[OfflineEntry], Awaitable[bool] | bool]


@dataclass
class Connectivity:
    """Externally driven "online" flag."""

    online: bool = True

    def __call__(self) -> bool:
        return self.online


class OfflineBuffer:
    """Durable queue of requests made while disconnected.

    Each entry is one JSON item in a storage list. Appends never rewrite other entries, and an
    entry is removed (by its exact stored bytes) only after the processor reports success for
    it. A storage-level pass lock keeps two buffers, in this or another process, from replaying
    the same entries at once.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        is_online: Callable[[], bool],
        key: str = OFFLINE_QUEUE_KEY,
    ) -> None:
        self._storage = storage
        self._is_online = is_online
        self._key = key
        self._lock = asyncio.Lock()

    def entries(self) -> list[OfflineEntry]:
        return [entry for _, entry in self._parsed(self._storage.items(self._key))]

    def __len__(self) -> int:
        return len(self._storage.items(self._key))

    def queue_request(self, payload: OfflineDescribeRequest | dict) -> OfflineEntry:
        """Append a request to durable storage and return it right away."""

        request = payload if isinstance(payload, OfflineDescribeRequest) else OfflineDescribeRequest.model_validate(payload)
        entry = OfflineEntry(payload=request)
        self._storage.append(self._key, entry.model_dump_json().encode("utf-8"))
        log.info("Offline request %s buffered", entry.id)
        return entry

    async def process_queue(self, processor: Processor) -> int:
        """Replay buffered entries in insertion order. Returns how many were removed.

        No-op while offline or while another pass holds the storage lock. Entries whose
        processor returns False (or raises) stay for the next pass.
        """

        if not self._is_online():
            log.debug("Offline; replay skipped")
            return 0

        async with self._lock:
            try:
                pass_lock = self._storage.pass_lock(self._key)
                acquired = await asyncio.to_thread(pass_lock.acquire)
            except StorageError:
                log.exception("Offline replay lock unavailable; replay skipped")
                return 0
            if not acquired:
                log.info("Another offline replay is running; skipped")
                return 0

            try:
                return await self._replay(processor)
            finally:
                try:
                    await asyncio.to_thread(pass_lock.release)
                except StorageError:
                    log.exception("Could not release offline replay lock")

    async def _replay(self, processor: Processor) -> int:
        try:
            snapshot = await asyncio.to_thread(self._storage.items, self._key)
        except StorageError:
            log.exception("Offline queue unreadable; replay skipped")
            return 0

        removed = 0
        for raw, entry in self._parsed(snapshot):
            try:
                result = processor(entry)
                if inspect.isawaitable(result):
                    result = await result
            except Exception:
                log.exception("Offline entry %s failed; kept for next pass", entry.id)
                continue
            if not result:
                continue
            try:
                if await asyncio.to_thread(self._storage.remove, self._key, raw):
                    removed += 1
            except StorageError:
                log.exception("Could not remove offline entry %s; it will be replayed again", entry.id)

        if removed:
            log.info("Offline replay removed %s entries", removed)
        return removed

    def _parsed(self, items: list[bytes]) -> list[tuple[bytes, OfflineEntry]]:
        out = []
        for raw in items:
            try:
                out.append((raw, OfflineEntry.model_validate_json(raw)))
            except PydanticValidationError:
                log.error("Unreadable offline entry kept in storage: %r", raw[:80])
        return out
