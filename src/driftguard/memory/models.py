# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Payload models for the team memory API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ReasoningEntry(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    conclusion: str | None = None
    insight: str | None = None


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    choice: str = ""
    reason: str = ""


class Memory(BaseModel):
    """A completed prior session stored by the memory service.

    ``reasoning_trace`` entries arrive either as plain strings or as
    conclusion/insight objects; both shapes are kept.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    goal: str | None = None
    summary: str | None = None
    original_query: str | None = None
    reasoning_trace: list[str | ReasoningEntry] = Field(default_factory=list)
    decisions: list[Decision] = Field(default_factory=list)
    files_touched: list[str] = Field(default_factory=list)
    updated_at: str | None = None

    @property
    def short_id(self) -> str:
        return self.id[:8]


class PlanTask(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    title: str = ""
    status: str = "pending"

    @property
    def is_done(self) -> bool:
        return self.status in ("completed", "skipped")


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    title: str = "Untitled plan"
    status: str = "active"
    tasks: list[PlanTask] = Field(default_factory=list)

    @property
    def done_count(self) -> int:
        return sum(1 for task in self.tasks if task.is_done)


__all__ = ["Decision", "Memory", "Plan", "PlanTask", "ReasoningEntry"]
