# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Proxy settings loaded from the environment.

All variables use the DRIFTGUARD_ prefix and may also come from a local
``.env`` file:

    DRIFTGUARD_HOST=127.0.0.1
    DRIFTGUARD_PORT=8080
    DRIFTGUARD_ANTHROPIC_BASE_URL=https://api.anthropic.com
    DRIFTGUARD_DRIFT_CHECK_INTERVAL=3
    DRIFTGUARD_TOKEN_CLEAR_THRESHOLD=180000

Memory sync stays disabled until DRIFTGUARD_MEMORY_API_URL is set, and the
LLM scorer stays disabled when DRIFTGUARD_SCORER_ENABLED=false.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from functools import lru_cache

from pydantic import Field, PrivateAttr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Request headers forwarded upstream; everything else is dropped.
FORWARD_HEADERS: tuple[str, ...] = (
    "x-api-key",
    "authorization",
    "anthropic-version",
    "content-type",
    "anthropic-beta",
)

# Never logged in clear text.
SENSITIVE_HEADERS: frozenset[str] = frozenset({"x-api-key", "authorization"})

# Upstream response headers passed back to the client.
RESPONSE_HEADERS: tuple[str, ...] = (
    "content-type",
    "x-request-id",
    "request-id",
    "x-should-retry",
    "retry-after",
    "retry-after-ms",
    "anthropic-ratelimit-requests-limit",
    "anthropic-ratelimit-requests-remaining",
    "anthropic-ratelimit-requests-reset",
    "anthropic-ratelimit-tokens-limit",
    "anthropic-ratelimit-tokens-remaining",
    "anthropic-ratelimit-tokens-reset",
)


class ProxySettings(BaseSettings):
    """Configuration for the interception proxy.

    Environment variables use the DRIFTGUARD_ prefix.
    Example: DRIFTGUARD_TOKEN_CLEAR_THRESHOLD=180000
    """

    model_config = SettingsConfigDict(
        env_prefix="DRIFTGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    host: str = Field(default="127.0.0.1", description="Listen address")
    port: int = Field(default=8080, ge=1, le=65535, description="Listen port")

    # Upstream
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com",
        description="Base URL of the upstream messages API",
    )
    request_timeout_ms: int = Field(
        default=300000,  # 5 minutes
        ge=1000,
        le=3600000,
        description="Upstream request timeout in milliseconds",
    )
    body_limit_bytes: int = Field(
        default=10485760,  # 10MB
        ge=1024,
        le=104857600,
        description="Largest accepted request body",
    )
    forward_max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for connect errors and upstream 5xx",
    )

    # Drift
    drift_check_interval: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Run a drift check every N prompts of a session",
    )
    max_escalation: int = Field(
        default=3,
        ge=1,
        le=3,
        description="Escalation level at which forced recovery replaces correction",
    )
    recent_steps_window: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Recent steps considered by the drift scorer",
    )
    step_history_limit: int = Field(
        default=200,
        ge=10,
        le=10000,
        description="Steps retained per session",
    )
    session_idle_timeout_seconds: float = Field(
        default=3600.0,
        ge=60.0,
        description="Idle time after which a session is abandoned",
    )
    session_sweep_interval_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="How often idle sessions are swept",
    )
    repeated_edit_threshold: int = Field(
        default=3,
        ge=2,
        le=50,
        description="Edits to one file that count as repetition evidence",
    )

    # Token tracking
    token_warning_threshold: int = Field(
        default=160000,
        ge=1000,
        description="Context size that triggers a one-time warning",
    )
    token_clear_threshold: int = Field(
        default=180000,
        ge=1000,
        description="Context size above which a queued clear summary replaces history",
    )
    clear_precompute_ratio: float = Field(
        default=0.85,
        gt=0.0,
        le=1.0,
        description="Fraction of the clear threshold at which the summary is precomputed",
    )

    # Scorer
    scorer_enabled: bool = Field(default=True, description="Use the LLM drift scorer")
    scorer_model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model used for drift scoring and recovery prompts",
    )
    scorer_api_key: str | None = Field(
        default=None,
        description="API key for scorer calls; falls back to the caller's auth headers",
    )
    scorer_timeout_seconds: float = Field(
        default=15.0,
        gt=0.0,
        le=120.0,
        description="Bound on a single scorer call",
    )
    scorer_max_tokens: int = Field(default=300, ge=50, le=4096)
    recovery_max_tokens: int = Field(default=600, ge=50, le=4096)
    summary_max_tokens: int = Field(default=2000, ge=100, le=16000)

    # Memory API
    memory_api_url: str | None = Field(
        default=None,
        description="Memory API base URL; memory sync is disabled when unset",
    )
    memory_api_token: str | None = Field(default=None, description="Bearer token")
    memory_team_id: str | None = Field(default=None, description="Team namespace")
    memory_fetch_limit: int = Field(default=3, ge=1, le=20)
    memory_timeout_seconds: float = Field(default=10.0, gt=0.0, le=60.0)

    # Internal expand tool
    expand_max_loops: int = Field(default=5, ge=0, le=20)

    # Prompt-cache keep-alive
    extended_cache_enabled: bool = Field(
        default=False,
        description="Send keep-alive requests so idle projects keep their upstream prompt cache",
    )
    extended_cache_idle_seconds: float = Field(
        default=240.0,
        gt=0.0,
        description="Idle time before a keep-alive is sent; must stay under the cache TTL",
    )
    extended_cache_max_idle_seconds: float = Field(
        default=600.0,
        gt=0.0,
        description="Idle time after which a captured request is dropped",
    )
    extended_cache_max_keepalives: int = Field(default=2, ge=1, le=10)
    extended_cache_max_entries: int = Field(default=100, ge=1, le=10000)
    extended_cache_check_interval_seconds: float = Field(default=60.0, gt=0.0)

    # Anchor extraction bounds
    anchor_max_file_bytes: int = Field(default=1048576, ge=1024)
    anchor_max_count: int = Field(default=500, ge=1, le=100000)

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_requests: bool = Field(default=True, description="Log forwarded requests")

    _defaults_logged: bool = PrivateAttr(default=False)

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_token_thresholds(self) -> ProxySettings:
        """Warning must trigger before clearing."""
        if self.token_warning_threshold >= self.token_clear_threshold:
            raise ValueError(
                "token_warning_threshold must be lower than token_clear_threshold "
                f"({self.token_warning_threshold} >= {self.token_clear_threshold})"
            )
        return self

    @model_validator(mode="after")
    def validate_extended_cache_window(self) -> ProxySettings:
        """Keep-alives must start before captured requests are dropped."""
        if self.extended_cache_idle_seconds >= self.extended_cache_max_idle_seconds:
            raise ValueError(
                "extended_cache_idle_seconds must be lower than extended_cache_max_idle_seconds "
                f"({self.extended_cache_idle_seconds} >= {self.extended_cache_max_idle_seconds})"
            )
        return self

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def memory_sync_enabled(self) -> bool:
        return bool(self.memory_api_url and self.memory_team_id)

    @property
    def clear_precompute_threshold(self) -> int:
        return int(self.token_clear_threshold * self.clear_precompute_ratio)

    def log_disabled_features(self) -> None:
        """Log, once per instance, which optional collaborators are off."""
        if self._defaults_logged:
            return
        self._defaults_logged = True

        if not self.memory_sync_enabled:
            logger.info(
                "Memory sync is disabled. Set DRIFTGUARD_MEMORY_API_URL and "
                "DRIFTGUARD_MEMORY_TEAM_ID to enable memory previews."
            )
        if not self.scorer_enabled:
            logger.info(
                "LLM drift scorer is disabled (DRIFTGUARD_SCORER_ENABLED=false). "
                "Drift checks will use the non-penalizing basic check."
            )


def mask_sensitive_value(key: str, value: str) -> str:
    """Mask credentials for logging; other header values pass through."""
    if key.lower() not in SENSITIVE_HEADERS:
        return value
    if len(value) <= 10:
        return "***"
    return f"{value[:7]}...{value[-4:]}"


def _first(value: str | list[str] | tuple[str, ...]) -> str:
    if isinstance(value, (list, tuple)):
        return value[0] if value else ""
    return value


def build_safe_headers(incoming: Mapping[str, str | list[str]]) -> dict[str, str]:
    """Keep only allow-listed request headers, matched case-insensitively."""
    lowered = {key.lower(): value for key, value in incoming.items()}
    safe: dict[str, str] = {}
    for header in FORWARD_HEADERS:
        value = lowered.get(header)
        if value:
            first = _first(value)
            if first:
                safe[header] = first
    return safe


def filter_response_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Keep only the upstream response headers the client should see."""
    lowered = {key.lower(): value for key, value in headers.items()}
    return {h: lowered[h] for h in RESPONSE_HEADERS if lowered.get(h)}


@lru_cache(maxsize=1)
def get_settings() -> ProxySettings:
    """Get singleton settings instance.

    Note:
        For test isolation, use `clear_settings_cache()` to reset the
        singleton before each test that needs fresh settings.
    """
    instance = ProxySettings()
    instance.log_disabled_features()
    return instance


def clear_settings_cache() -> None:
    """Clear the settings singleton cache for test isolation."""
    get_settings.cache_clear()
