"""Service layer exports."""

from .errors import (
    AdapterError,
    BranchInProgressError,
    BrokenReferenceError,
    ConditionExpressionError,
    EngineError,
    IncompatibleVersionError,
    IntegrityError,
    InvalidChoiceError,
    SaveLoadError,
    UnresolvedChapterError,
    UnresolvedFlowError,
    UnresolvedNodeError,
    UnresolvedOptionError,
)
from .condition_evaluator import ConditionEvaluator
from .history_service import HistoryManager, UndoRedoResult
from .save_service import Envelope, SaveService
from .transition_engine import TransitionEngine, TransitionResult
from .checkpoint_service import AutosaveResult, CheckpointManager
from .persistence_service import PersistenceService

__all__ = [
    "AdapterError",
    "AutosaveResult",
    "BranchInProgressError",
    "BrokenReferenceError",
    "CheckpointManager",
    "ConditionEvaluator",
    "ConditionExpressionError",
    "EngineError",
    "Envelope",
    "HistoryManager",
    "IncompatibleVersionError",
    "IntegrityError",
    "InvalidChoiceError",
    "PersistenceService",
    "SaveLoadError",
    "SaveService",
    "TransitionEngine",
    "TransitionResult",
    "UndoRedoResult",
    "UnresolvedChapterError",
    "UnresolvedFlowError",
    "UnresolvedNodeError",
    "UnresolvedOptionError",
]
