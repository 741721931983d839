"""Shared helpers: error taxonomy and text utilities."""

from __future__ import annotations

from .errors import (
    DriftGuardError,
    DriftGuardErrorCode,
    ForwardError,
    MemoryFetchError,
    MutationError,
    ScorerError,
)
from .text import clean_user_prompt, smart_truncate, truncate

__all__ = [
    "DriftGuardError",
    "DriftGuardErrorCode",
    "ForwardError",
    "MemoryFetchError",
    "MutationError",
    "ScorerError",
    "clean_user_prompt",
    "smart_truncate",
    "truncate",
]
