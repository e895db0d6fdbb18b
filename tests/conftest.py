"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
Environment defaults are set before anything imports the settings module.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ["TESTING"] = "true"

os.environ.setdefault("GUARD_ENABLED", "true")
os.environ.setdefault("GUARD_PAGE_COUNT", "5")
os.environ.setdefault("GUARD_PAGE_INTERVAL_SECONDS", "10")
os.environ.setdefault("GUARD_BLOCKING_PERIOD_SECONDS", "60")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from floodguard.adapters.storage.in_memory import InMemoryStorage
from floodguard.services.rate_guard import RequestIdentity


@pytest.fixture
def memory_storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def make_identity():
    """Build RequestIdentity values with sensible defaults."""

    def _make(now: float, **overrides) -> RequestIdentity:
        values = {
            "key": "session-abc",
            "ip_address": "203.0.113.7",
            "uri": "/products",
            "method": "GET",
            "now": now,
        }
        values.update(overrides)
        return RequestIdentity(**values)

    return _make
