"""Team memory service client and payload models."""

from __future__ import annotations

from .client import MemoryClient
from .models import Decision, Memory, Plan, PlanTask, ReasoningEntry

__all__ = ["Decision", "Memory", "MemoryClient", "Plan", "PlanTask", "ReasoningEntry"]
