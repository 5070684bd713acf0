"""In-memory storage adapter."""
from __future__ import annotations

import copy
import json
from typing import Any, Dict, List, Mapping

from .base import describe_envelope, validate_key


class MemoryStorageAdapter:
    """Keeps deep copies of saved data in a dict; nothing survives the process."""

    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, Any]] = {}

    async def save(self, key: str, data: Mapping[str, Any]) -> None:
        self._items[validate_key(key)] = copy.deepcopy(dict(data))

    async def load(self, key: str) -> Dict[str, Any] | None:
        data = self._items.get(validate_key(key))
        return copy.deepcopy(data) if data is not None else None

    async def delete(self, key: str) -> bool:
        return self._items.pop(validate_key(key), None) is not None

    async def list_keys(self) -> List[str]:
        return sorted(self._items)

    async def get_metadata(self, key: str) -> Dict[str, Any] | None:
        data = self._items.get(validate_key(key))
        if data is None:
            return None
        return describe_envelope(key, data, len(json.dumps(data, sort_keys=True)))
