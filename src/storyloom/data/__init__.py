"""Data layer utilities for loading story definitions."""

from .errors import DataError, DataLoadError, ValidationError
from .paths import get_repo_root, get_stories_path

__all__ = [
    "DataError",
    "DataLoadError",
    "ValidationError",
    "get_repo_root",
    "get_stories_path",
]
