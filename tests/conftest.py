# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Shared fixtures for the driftguard test suite."""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from driftguard.config.settings import ProxySettings, clear_settings_cache
from driftguard.session import SessionManager


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep DRIFTGUARD_ variables from the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith("DRIFTGUARD_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> ProxySettings:
    """Settings with both collaborators disabled and a drift check every prompt."""
    return ProxySettings(
        _env_file=None,
        anthropic_base_url="http://upstream.test",
        scorer_enabled=False,
        memory_api_url=None,
        forward_max_retries=2,
        drift_check_interval=1,
    )


@pytest.fixture
def sessions() -> SessionManager:
    return SessionManager(step_history_limit=50)
