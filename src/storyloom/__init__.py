"""Narrative-state engine for branching, choice-driven stories."""
from __future__ import annotations

import logging

ENGINE_VERSION = "1.2.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = ["ENGINE_VERSION"]
