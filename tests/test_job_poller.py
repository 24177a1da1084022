"""Tests for JobPoller: per-job loops, failure thresholds and blacklisting."""

from __future__ import annotations

import asyncio
import uuid

import pytest
import structlog

from homify.config import Settings
from homify.errors import PollFetchError
from homify.services.job_poller import JobPoller
from homify.services.photo_cache import PhotoCache
from tests.fakes import CountingStore, FakeEngine, job, wait_for


def _job_id() -> str:
    return str(uuid.uuid4())


class TestRegistration:
    @pytest.mark.asyncio
    async def test_rejects_non_uuid_v4(self, poller: JobPoller, engine: FakeEngine) -> None:
        """Malformed ids never get a loop and never reach the status endpoint."""
        for bad in ("not-a-uuid", "", str(uuid.uuid1()), "photo_123_abc"):
            assert poller.start_polling(bad) is False
        await asyncio.sleep(0.05)
        assert poller.get_active_polling_count() == 0
        assert engine.fetches == []

    @pytest.mark.asyncio
    async def test_double_start_keeps_one_loop(self, poller: JobPoller, engine: FakeEngine) -> None:
        """Starting an already polled job replaces the old loop instead of adding one."""
        job_id = _job_id()
        engine.script(job_id, job(job_id, "processing"))

        assert poller.start_polling(job_id) is True
        first_task = poller._polls[job_id].task
        assert poller.start_polling(job_id) is True
        await asyncio.sleep(0)

        assert poller.get_active_polling_count() == 1
        assert first_task.cancelled()
        assert poller._polls[job_id].task is not first_task

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, poller: JobPoller) -> None:
        job_id = _job_id()
        poller.stop_polling(job_id)
        poller.start_polling(job_id)
        poller.stop_polling(job_id)
        poller.stop_polling(job_id)
        assert not poller.is_polling(job_id)

    @pytest.mark.asyncio
    async def test_stop_all(self, poller: JobPoller, engine: FakeEngine) -> None:
        ids = [_job_id() for _ in range(3)]
        for job_id in ids:
            engine.script(job_id, job(job_id, "processing"))
            poller.start_polling(job_id)
        assert poller.get_active_polling_count() == 3

        poller.stop_all_polling()
        assert poller.get_active_polling_count() == 0


class TestFailurePolicy:
    @pytest.mark.asyncio
    async def test_three_consecutive_failures_blacklist(
        self, poller: JobPoller, engine: FakeEngine
    ) -> None:
        """The default threshold blacklists a job after three failed fetches in a row."""
        job_id = _job_id()
        engine.script(job_id, PollFetchError(job_id, "boom"))

        poller.start_polling(job_id)
        await wait_for(lambda: not poller.is_polling(job_id))

        assert len(engine.fetches) == 3
        assert poller.get_failed_jobs_count() == 1
        assert poller.is_failed(job_id)
        assert "3 consecutive" in poller.get_failure(job_id).reason

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_failures", [0, 1])
    async def test_explicit_threshold_overrides_config(
        self,
        engine: FakeEngine,
        cache: PhotoCache,
        store: CountingStore,
        config: Settings,
        max_failures: int,
    ) -> None:
        """An explicit low threshold, zero included, wins over the configured default."""
        assert config.max_consecutive_failures == 3
        poller = JobPoller(
            engine, cache, store, config, poll_interval=0.01, max_failures=max_failures
        )
        job_id = _job_id()
        engine.script(job_id, PollFetchError(job_id, "boom"))

        poller.start_polling(job_id)
        await wait_for(lambda: not poller.is_polling(job_id))

        assert len(engine.fetches) == 1
        assert poller.is_failed(job_id)

    @pytest.mark.asyncio
    async def test_blacklisted_job_is_never_restarted(
        self, poller: JobPoller, engine: FakeEngine
    ) -> None:
        job_id = _job_id()
        engine.script(job_id, PollFetchError(job_id, "boom"))
        poller.start_polling(job_id)
        await wait_for(lambda: not poller.is_polling(job_id))
        fetches = len(engine.fetches)

        assert poller.start_polling(job_id) is False
        await asyncio.sleep(0.05)
        assert len(engine.fetches) == fetches

    @pytest.mark.asyncio
    async def test_none_result_counts_as_failure(self, poller: JobPoller, engine: FakeEngine) -> None:
        """A job missing from the table is treated like a failed fetch."""
        job_id = _job_id()  # unscripted -> fetch returns None
        poller.start_polling(job_id)
        await wait_for(lambda: not poller.is_polling(job_id))
        assert poller.is_failed(job_id)

    @pytest.mark.asyncio
    async def test_success_resets_failure_counter(
        self, poller: JobPoller, engine: FakeEngine
    ) -> None:
        """Only consecutive failures count; a good fetch starts the count over."""
        job_id = _job_id()
        err = PollFetchError(job_id, "flaky")
        engine.script(
            job_id,
            err,
            err,
            job(job_id, "processing"),
            err,
            err,
            job(job_id, "done"),
        )
        poller.start_polling(job_id)
        await wait_for(lambda: not poller.is_polling(job_id))

        assert len(engine.fetches) == 6
        assert not poller.is_failed(job_id)

    @pytest.mark.asyncio
    async def test_error_status_blacklists(self, poller: JobPoller, engine: FakeEngine) -> None:
        job_id = _job_id()
        engine.script(job_id, job(job_id, "error"))
        poller.start_polling(job_id)
        await wait_for(lambda: not poller.is_polling(job_id))
        assert poller.is_failed(job_id)
        assert engine.fetches == [job_id]

    @pytest.mark.asyncio
    async def test_done_status_stops_without_blacklist(
        self, poller: JobPoller, engine: FakeEngine
    ) -> None:
        job_id = _job_id()
        engine.script(job_id, job(job_id, "processing"), job(job_id, "done"))
        poller.start_polling(job_id)
        await wait_for(lambda: not poller.is_polling(job_id))
        assert not poller.is_failed(job_id)
        assert poller.get_failed_jobs_count() == 0
        assert len(engine.fetches) == 2

    @pytest.mark.asyncio
    async def test_session_timeout_stops_without_penalty(
        self, engine: FakeEngine, cache: PhotoCache, store: CountingStore, config: Settings
    ) -> None:
        """The session deadline stops the loop without blacklisting or failing the photo."""
        job_id = _job_id()
        photo = await cache.create_room_photo("file:///a.jpg", "bedroom")
        await cache.update(photo.id, metadata={"job_id": job_id})
        engine.script(job_id, job(job_id, "processing"))

        poller = JobPoller(engine, cache, store, config, poll_interval=0.01, session_timeout=0.08)
        poller.start_polling(job_id)
        await wait_for(lambda: not poller.is_polling(job_id))

        assert len(engine.fetches) >= 1
        assert not poller.is_failed(job_id)
        assert cache.get(photo.id).status == "processing"
        fetches = len(engine.fetches)
        await asyncio.sleep(0.05)
        assert len(engine.fetches) == fetches

    @pytest.mark.asyncio
    async def test_clear_failed_jobs_allows_repolling(
        self, poller: JobPoller, engine: FakeEngine
    ) -> None:
        job_id = _job_id()
        engine.script(job_id, job(job_id, "error"))
        poller.start_polling(job_id)
        await wait_for(lambda: not poller.is_polling(job_id))

        await poller.clear_failed_jobs()
        assert poller.get_failed_jobs_count() == 0
        assert poller.start_polling(job_id) is True


class TestUpdates:
    @pytest.mark.asyncio
    async def test_reconciles_and_calls_back(
        self, poller: JobPoller, engine: FakeEngine, cache: PhotoCache
    ) -> None:
        """Each snapshot is folded into the photo cache before the callback sees it."""
        job_id = _job_id()
        photo = await cache.create_room_photo("file:///a.jpg", "bedroom")
        await cache.update(photo.id, metadata={"job_id": job_id})
        engine.script(job_id, job(job_id, "done", empty_path="empty/1.jpg"))
        seen = []

        poller.start_polling(job_id, seen.append)
        await wait_for(lambda: not poller.is_polling(job_id))

        assert [j.status for j in seen] == ["done"]
        assert cache.get(photo.id).status == "completed"

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, poller: JobPoller, engine: FakeEngine) -> None:
        job_id = _job_id()
        engine.script(job_id, job(job_id, "done"))
        seen = []

        async def on_update(snapshot) -> None:
            await asyncio.sleep(0)
            seen.append(snapshot.id)

        poller.start_polling(job_id, on_update)
        await wait_for(lambda: bool(seen))
        assert seen == [job_id]

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_count_as_failures(
        self, poller: JobPoller, engine: FakeEngine
    ) -> None:
        """A raising callback is logged; the loop keeps going and nothing is blacklisted."""
        job_id = _job_id()
        engine.script(job_id, job(job_id, "processing"), job(job_id, "processing"),
                      job(job_id, "processing"), job(job_id, "done"))

        def explode(_snapshot) -> None:
            raise RuntimeError("ui went away")

        poller.start_polling(job_id, explode)
        await wait_for(lambda: not poller.is_polling(job_id))
        assert not poller.is_failed(job_id)
        assert len(engine.fetches) == 4

    @pytest.mark.asyncio
    async def test_callbacks_run_with_job_log_context(
        self, poller: JobPoller, engine: FakeEngine
    ) -> None:
        """Log lines emitted from inside a poll loop are tagged with its job_id."""
        first, second = _job_id(), _job_id()
        engine.script(first, job(first, "done"))
        engine.script(second, job(second, "done"))
        bound: dict[str, object] = {}

        def on_update(snapshot) -> None:
            bound[snapshot.id] = structlog.contextvars.get_contextvars().get("job_id")

        poller.start_polling(first, on_update)
        poller.start_polling(second, on_update)
        await wait_for(lambda: len(bound) == 2)

        assert bound == {first: first, second: second}
        assert "job_id" not in structlog.contextvars.get_contextvars()


class TestPersistedBlacklist:
    @pytest.mark.asyncio
    async def test_round_trip_when_enabled(
        self, engine: FakeEngine, cache: PhotoCache, store: CountingStore, config: Settings
    ) -> None:
        """With persistence on, a second poller restores and honours the blacklist."""
        persisting = config.model_copy(update={"persist_failed_jobs": True})
        job_id = _job_id()
        engine.script(job_id, job(job_id, "error"))

        first = JobPoller(engine, cache, store, persisting, poll_interval=0.01)
        first.start_polling(job_id)
        await wait_for(lambda: not first.is_polling(job_id))
        assert await store.get_item(persisting.failed_jobs_key) == [job_id]

        second = JobPoller(engine, cache, store, persisting, poll_interval=0.01)
        assert await second.restore_failed_jobs() == 1
        assert second.start_polling(job_id) is False

        await second.clear_failed_jobs()
        assert await store.get_item(persisting.failed_jobs_key) is None

    @pytest.mark.asyncio
    async def test_memory_only_by_default(
        self, poller: JobPoller, engine: FakeEngine, store: CountingStore, config: Settings
    ) -> None:
        job_id = _job_id()
        engine.script(job_id, job(job_id, "error"))
        poller.start_polling(job_id)
        await wait_for(lambda: not poller.is_polling(job_id))

        assert await store.get_item(config.failed_jobs_key) is None
        assert await poller.restore_failed_jobs() == 0
