"""Service-layer exceptions."""
from __future__ import annotations


class EngineError(Exception):
    """Base class for runtime engine failures."""


class InvalidChoiceError(EngineError):
    """Raised when a choice outside the available set is selected."""

    def __init__(self, message: str, *, choice: object = None, available: list | None = None) -> None:
        super().__init__(message)
        self.choice = choice
        self.available = list(available or [])


class BrokenReferenceError(EngineError):
    """Raised when a node, flow or option id fails to resolve at runtime."""

    def __init__(self, message: str, reference_id: str | None = None) -> None:
        super().__init__(message)
        self.reference_id = reference_id


class UnresolvedFlowError(BrokenReferenceError):
    """Raised when a branch targets a flow that does not exist or has no nodes."""


class UnresolvedNodeError(BrokenReferenceError):
    """Raised when a branch entry node cannot be resolved."""


class UnresolvedChapterError(BrokenReferenceError):
    """Raised when a dynamic branch targets an unknown chapter."""


class UnresolvedOptionError(BrokenReferenceError):
    """Raised when no registered branch point owns the requested option."""


class BranchInProgressError(EngineError):
    """Raised when branch execution is re-entered before the first call finishes."""


class ConditionExpressionError(EngineError):
    """Raised when a condition expression cannot be parsed or evaluated."""

    def __init__(self, message: str, expression: str | None = None) -> None:
        super().__init__(message)
        self.expression = expression


class SaveLoadError(EngineError):
    """Raised when save or load operations fail."""


class IncompatibleVersionError(SaveLoadError):
    """Raised when an envelope was written by a newer, incompatible engine."""


class IntegrityError(SaveLoadError):
    """Raised when an envelope checksum does not match its payload."""


class AdapterError(EngineError):
    """Raised when the storage adapter fails to read or write."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key
