"""Pytest configuration and fixtures."""

import os

import pytest

from app.core.config import Settings, get_settings
from app.core.session_registry import SessionRegistry
from app.db.reconstruction_jobs import InMemoryJobStore, get_job_store


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["RECON_ENV"] = "test"
    os.environ["PERSISTENCE_BACKEND"] = "memory"
    os.environ["ANTHROPIC_API_KEY"] = "test-anthropic-key"
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    get_settings.cache_clear()
    get_job_store.cache_clear()


@pytest.fixture
def settings():
    """Settings with retries that never sleep."""
    return Settings(
        RECON_ENV="test",
        ANTHROPIC_API_KEY="test-anthropic-key",
        OPENAI_API_KEY="test-openai-key",
        DEEPSEEK_API_KEY="",
        GROK_API_KEY="",
        PERPLEXITY_API_KEY="",
        PERSISTENCE_BACKEND="memory",
        PROVIDER_RETRY_BASE_DELAY=0.0,
    )


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def make_ctx(registry, store, settings):
    """Build a started RunContext around a provider."""
    from app.chains.reconstruction_common import RunContext

    def _make(provider, strategy="cross-chunk", job_id="job-1", run_settings=None):
        registry.start(job_id, strategy)
        return RunContext(
            job_id=job_id,
            strategy=strategy,
            provider=provider,
            registry=registry,
            store=store,
            settings=run_settings or settings,
        )

    return _make
