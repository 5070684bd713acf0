"""Async save/load of engine envelopes through a storage adapter."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, TypeVar

from storyloom.data.storage import StorageAdapter, describe_envelope
from storyloom.services.errors import AdapterError, SaveLoadError
from storyloom.services.save_service import Envelope, Migration
from storyloom.services.transition_engine import TransitionEngine, TransitionResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PersistenceService:
    """Moves envelopes between an engine and a StorageAdapter.

    Operations on the same key are serialized with a per-key lock. ``save``
    snapshots the envelope before its first await, so later commits never
    leak into a write already in flight. ``load`` only touches the engine
    after the adapter has returned and the envelope has validated, so a
    failed or cancelled load leaves the engine as it was.
    """

    def __init__(
        self,
        adapter: StorageAdapter,
        engine: TransitionEngine,
        *,
        timeout: float | None = None,
    ) -> None:
        self._adapter = adapter
        self._engine = engine
        self._timeout = timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @property
    def adapter(self) -> StorageAdapter:
        return self._adapter

    async def save(self, key: str, meta: Mapping[str, Any] | None = None) -> Envelope:
        envelope = self._engine.export_envelope(meta)
        data = envelope.to_dict()
        async with self._lock(key):
            await self._call(key, "save", lambda: self._adapter.save(key, data))
        logger.info("Saved state at node '%s' to '%s'.", data["payload"]["current_node_id"], key)
        return envelope

    async def load(
        self,
        key: str,
        *,
        validate_checksum: bool = True,
        skip_compatibility_check: bool = False,
        migrate: Migration | None = None,
    ) -> TransitionResult:
        async with self._lock(key):
            data = await self._call(key, "load", lambda: self._adapter.load(key))
        if data is None:
            raise SaveLoadError(f"No save found for key '{key}'.")
        result = self._engine.load_state(
            data,
            validate_checksum=validate_checksum,
            skip_compatibility_check=skip_compatibility_check,
            migrate=migrate,
        )
        logger.info("Loaded '%s' at node '%s'.", key, result.to_node_id)
        return result

    async def delete(self, key: str) -> bool:
        async with self._lock(key):
            return bool(await self._call(key, "delete", lambda: self._adapter.delete(key)))

    async def list_keys(self) -> List[str]:
        return list(await self._call(None, "list_keys", self._adapter.list_keys))

    async def get_metadata(self, key: str) -> Dict[str, Any] | None:
        """Summarize a stored save without loading it into the engine."""
        async with self._lock(key):
            get_metadata = getattr(self._adapter, "get_metadata", None)
            if get_metadata is not None:
                return await self._call(key, "get_metadata", lambda: get_metadata(key))
            data = await self._call(key, "load", lambda: self._adapter.load(key))
        if data is None:
            return None
        return describe_envelope(key, data, 0)

    @asynccontextmanager
    async def _lock(self, key: str) -> AsyncIterator[None]:
        """Hold the key's lock; it is discarded once no caller holds or awaits it."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _call(
        self, key: str | None, operation: str, start: Callable[[], Awaitable[T]]
    ) -> T:
        try:
            if self._timeout is not None:
                return await asyncio.wait_for(start(), self._timeout)
            return await start()
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as exc:
            raise AdapterError(f"Storage {operation} timed out for key {key!r}.", key) from exc
        except Exception as exc:
            raise AdapterError(f"Storage {operation} failed for key {key!r}: {exc}", key) from exc
