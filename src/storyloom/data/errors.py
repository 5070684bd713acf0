"""Custom exceptions for story data loading and validation."""
from __future__ import annotations

from typing import Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from storyloom.services.story_graph_validator import Issue


class DataError(Exception):
    """Base exception for the data layer."""


class DataLoadError(DataError):
    """Raised when JSON files are missing or invalid."""


class ValidationError(DataError):
    """Raised when story content fails structural validation.

    ``issues`` holds the validator findings when the failure came from graph
    validation; it is empty for plain shape errors found while parsing.
    """

    def __init__(self, message: str, issues: Sequence["Issue"] = ()) -> None:
        super().__init__(message)
        self.issues = list(issues)
