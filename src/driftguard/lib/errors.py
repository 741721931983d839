# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Error codes and exception classes for driftguard.

Only ForwardError is allowed to reach the HTTP layer. Every other error in
this module is raised by a collaborator client and caught at its call site,
where it is replaced by a documented safe default.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class DriftGuardErrorCode(str, Enum):
    """Error codes for proxy operations."""

    # Upstream forwarding
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    UPSTREAM_NETWORK = "UPSTREAM_NETWORK"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"

    # Collaborators
    SCORER_UNAVAILABLE = "SCORER_UNAVAILABLE"
    SCORER_BAD_RESPONSE = "SCORER_BAD_RESPONSE"
    MEMORY_FETCH_FAILED = "MEMORY_FETCH_FAILED"

    # Request handling
    INVALID_INPUT = "INVALID_INPUT"
    MUTATION_FAILED = "MUTATION_FAILED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class DriftGuardError(Exception):
    """Base exception with a code, a message and contextual details.

    Attributes:
        code: Error code from DriftGuardErrorCode
        message: Human-readable error message
        details: Additional error context
    """

    def __init__(
        self,
        code: DriftGuardErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code}, message={self.message}, "
            f"details={self.details})"
        )


class ForwardError(DriftGuardError):
    """Upstream call failed after retries.

    ``kind`` is one of ``timeout``, ``network`` or ``upstream``. The HTTP layer
    turns it into a 504 or 502 proxy error envelope.
    """

    def __init__(
        self,
        kind: str,
        message: str,
        status_code: int = 502,
        details: dict[str, Any] | None = None,
    ) -> None:
        code = {
            "timeout": DriftGuardErrorCode.UPSTREAM_TIMEOUT,
            "network": DriftGuardErrorCode.UPSTREAM_NETWORK,
        }.get(kind, DriftGuardErrorCode.UPSTREAM_ERROR)
        super().__init__(code, message, details)
        self.kind = kind
        self.status_code = status_code

    @property
    def client_message(self) -> str:
        return "Gateway timeout" if self.kind == "timeout" else "Bad gateway"


class ScorerError(DriftGuardError):
    """Scorer call failed, timed out, or returned an unusable payload."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(DriftGuardErrorCode.SCORER_UNAVAILABLE, message, details)


class MemoryFetchError(DriftGuardError):
    """Memory or plan lookup against the memory API failed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(DriftGuardErrorCode.MEMORY_FETCH_FAILED, message, details)


class MutationError(DriftGuardError):
    """Raised inside the raw body mutator when an anchor cannot be located.

    Never escapes the public mutator functions, which report failure through
    ``MutationResult.success`` instead.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(DriftGuardErrorCode.MUTATION_FAILED, message, details)


__all__ = [
    "DriftGuardError",
    "DriftGuardErrorCode",
    "ForwardError",
    "MemoryFetchError",
    "MutationError",
    "ScorerError",
]
