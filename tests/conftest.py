"""Shared fixtures: isolated settings, in-memory storage and fast pollers."""

from __future__ import annotations

import pytest

from homify.config import Settings
from homify.services.job_poller import JobPoller
from homify.services.photo_cache import PhotoCache
from homify.workflows.orchestrator import WorkflowOrchestrator
from tests.fakes import SUPABASE_URL, CountingStore, FakeEngine, RecordingNotifier


@pytest.fixture
def config() -> Settings:
    return Settings(
        _env_file=None,
        supabase_url=SUPABASE_URL,
        supabase_anon_key="anon-key",
        photo_cache_dir="",
        environment="test",
    )


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def cache(store: CountingStore, config: Settings) -> PhotoCache:
    return PhotoCache(store, config)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def poller(engine: FakeEngine, cache: PhotoCache, store: CountingStore, config: Settings):
    p = JobPoller(engine, cache, store, config, poll_interval=0.01, session_timeout=5.0)
    yield p
    p.stop_all_polling()


@pytest.fixture
def orchestrator(
    engine: FakeEngine,
    cache: PhotoCache,
    poller: JobPoller,
    notifier: RecordingNotifier,
    config: Settings,
) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(engine, cache, poller, notifier, config)
