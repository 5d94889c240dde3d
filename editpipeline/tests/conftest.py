"""Pytest configuration and shared fixtures.

This module provides shared fixtures for all editpipeline tests:
- clean_settings_cache: Clears the cached Settings between tests (autouse)
- settings: Settings with short windows and timeouts, file logging disabled
- token: A fresh CancellationToken without a deadline

Tests never read the developer's .env; every Settings object is built with
``_env_file=None``.
"""

from __future__ import annotations

import pytest

from editpipeline.core.cancellation import CancellationToken
from editpipeline.core.config import Settings, get_settings
from editpipeline.tests.mock_utils import create_test_settings


@pytest.fixture(autouse=True)
def clean_settings_cache():
    """Clear the get_settings() cache before and after each test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast tests."""
    return create_test_settings()


@pytest.fixture
def token() -> CancellationToken:
    """Cancellation token with no deadline."""
    return CancellationToken()
