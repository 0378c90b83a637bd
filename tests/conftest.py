"""Pytest configuration and fixtures."""

import os

import pytest


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["ANTHROPIC_API_KEY"] = "test-anthropic-key"
    os.environ["COACH_ENGINE_ENV"] = "test"


@pytest.fixture(autouse=True)
def clear_profile_cache():
    """Profile reads are cached per user for a few seconds; isolate tests."""
    from app.db import context_cache

    context_cache.clear()
    yield
    context_cache.clear()
