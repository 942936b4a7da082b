"""Shared fixtures for the context engine tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from context_engine.config import loader
from context_engine.observability.logging_config import clear_log_context
from context_engine.persistence import SupabaseCheckpointStore
from context_engine.testing import FakeSupabaseClient


@pytest.fixture(autouse=True)
def _isolate_globals(monkeypatch):
    """Fresh rules cache and log context, and no config override from the shell."""
    monkeypatch.delenv(loader.CONFIG_ENV_VAR, raising=False)
    loader.clear_cache()
    clear_log_context()
    yield
    loader.clear_cache()
    clear_log_context()


@pytest.fixture
def fake_client():
    return FakeSupabaseClient()


@pytest.fixture
def checkpoint_store(fake_client):
    return SupabaseCheckpointStore(fake_client)
