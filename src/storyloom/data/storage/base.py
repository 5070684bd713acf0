"""Storage adapter protocol used by the persistence service."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Protocol, runtime_checkable

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


@runtime_checkable
class StorageAdapter(Protocol):
    """Async key/value store for save envelopes (JSON-compatible dicts)."""

    async def save(self, key: str, data: Mapping[str, Any]) -> None:
        ...

    async def load(self, key: str) -> Dict[str, Any] | None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def list_keys(self) -> List[str]:
        ...


def validate_key(key: object) -> str:
    """Return ``key`` if it is safe to use as a storage key and file name."""
    if not isinstance(key, str) or not _KEY_PATTERN.match(key) or ".." in key:
        raise ValueError(f"Invalid storage key: {key!r}.")
    return key


def describe_envelope(key: str, data: Mapping[str, Any], size: int) -> Dict[str, Any]:
    """Build the metadata summary adapters return from ``get_metadata``."""
    payload = data.get("payload") if isinstance(data.get("payload"), Mapping) else {}
    meta = payload.get("meta") if isinstance(payload.get("meta"), Mapping) else {}
    return {
        "key": key,
        "size": size,
        "timestamp": data.get("timestamp"),
        "engine_version": data.get("engine_version"),
        "current_node_id": payload.get("current_node_id"),
        "meta": dict(meta),
    }
