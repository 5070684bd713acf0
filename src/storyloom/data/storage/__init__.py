"""Storage adapters for persisted save envelopes."""

from .base import StorageAdapter, describe_envelope, validate_key
from .file import FileStorageAdapter
from .memory import MemoryStorageAdapter

__all__ = [
    "FileStorageAdapter",
    "MemoryStorageAdapter",
    "StorageAdapter",
    "describe_envelope",
    "validate_key",
]
