"""driftguard configuration - Pydantic Settings for environment configuration."""

from __future__ import annotations

from .settings import (
    FORWARD_HEADERS,
    RESPONSE_HEADERS,
    SENSITIVE_HEADERS,
    ProxySettings,
    build_safe_headers,
    clear_settings_cache,
    filter_response_headers,
    get_settings,
    mask_sensitive_value,
)

__all__ = [
    "FORWARD_HEADERS",
    "RESPONSE_HEADERS",
    "SENSITIVE_HEADERS",
    "ProxySettings",
    "build_safe_headers",
    "clear_settings_cache",
    "filter_response_headers",
    "get_settings",
    "mask_sensitive_value",
]
