"""File-system storage adapter writing one JSON file per key."""
from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Mapping

from storyloom import config

from .base import describe_envelope, validate_key


class FileStorageAdapter:
    """Stores each key as ``<key>.json`` under a directory.

    Writes go to a temporary file in the same directory and are swapped in
    with ``os.replace``, so a failed or cancelled write never leaves a
    partially written save behind. Blocking I/O runs in a worker thread.
    """

    SUFFIX = ".json"

    def __init__(self, base_dir: Path | str | None = None) -> None:
        self._base_dir = Path(base_dir) if base_dir is not None else config.get_save_dir()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    async def save(self, key: str, data: Mapping[str, Any]) -> None:
        path = self._path(key)
        text = json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False)
        await asyncio.to_thread(self._write_atomic, path, text)

    async def load(self, key: str) -> Dict[str, Any] | None:
        return await asyncio.to_thread(self._read, self._path(key))

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._unlink, self._path(key))

    async def list_keys(self) -> List[str]:
        return await asyncio.to_thread(self._list)

    async def get_metadata(self, key: str) -> Dict[str, Any] | None:
        path = self._path(key)
        data = await asyncio.to_thread(self._read, path)
        if data is None:
            return None
        return describe_envelope(key, data, path.stat().st_size)

    def _path(self, key: str) -> Path:
        return self._base_dir / f"{validate_key(key)}{self.SUFFIX}"

    def _write_atomic(self, path: Path, text: str) -> None:
        self._base_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=self._base_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _read(path: Path) -> Dict[str, Any] | None:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"Stored data in {path} is not a JSON object.")
        return data

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def _list(self) -> List[str]:
        if not self._base_dir.exists():
            return []
        return sorted(
            path.name[: -len(self.SUFFIX)]
            for path in self._base_dir.iterdir()
            if path.is_file() and path.name.endswith(self.SUFFIX) and not path.name.startswith(".")
        )
