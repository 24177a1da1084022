"""JobPoller: one polling loop per remote job id.

Each job gets its own asyncio task that sleeps ``poll_interval_seconds``,
fetches the job, reconciles the snapshot into the PhotoCache and hands it to
the caller's ``on_update``. The loop ends when:

- the job reports ``done`` or ``error`` (``error`` also blacklists the id),
- ``max_consecutive_failures`` fetches in a row fail (blacklists the id),
- the session deadline fires (no blacklist, photo left untouched),
- someone calls ``stop_polling``.

A blacklisted id is never polled again in this process. With
``persist_failed_jobs`` on, the blacklist is also written to the key-value
store and ``restore_failed_jobs`` reloads it after a restart.

All state is touched from the event loop thread only. The active-poll map and
the failed set would need a lock if the poller were ever driven from threads.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

import structlog

from homify.config import Settings, settings
from homify.errors import PermanentJobFailure, StorageError
from homify.logging import job_log_context
from homify.models.contracts import JobRecord, is_valid_job_id
from homify.services.photo_cache import PhotoCache
from homify.utils.kv_store import KeyValueStore

logger = structlog.get_logger()

OnUpdate = Callable[[JobRecord], Awaitable[None] | None]


class JobStatusSource(Protocol):
    async def fetch_job_status(self, job_id: str) -> JobRecord | None: ...


@dataclass
class _PollHandle:
    task: asyncio.Task[None]
    deadline: asyncio.TimerHandle
    failures: int = 0


class JobPoller:
    def __init__(
        self,
        client: JobStatusSource,
        cache: PhotoCache,
        store: KeyValueStore | None = None,
        config: Settings = settings,
        *,
        poll_interval: float | None = None,
        session_timeout: float | None = None,
        max_failures: int | None = None,
    ) -> None:
        self._client = client
        self._cache = cache
        self._store = store
        self._config = config
        self._interval = poll_interval if poll_interval is not None else config.poll_interval_seconds
        self._session_timeout = (
            session_timeout if session_timeout is not None else config.poll_session_timeout_seconds
        )
        self._max_failures = (
            max_failures if max_failures is not None else config.max_consecutive_failures
        )
        self._polls: dict[str, _PollHandle] = {}
        self._failed: dict[str, PermanentJobFailure] = {}

    # --- public surface ---

    def start_polling(self, job_id: str, on_update: OnUpdate | None = None) -> bool:
        """Start (or restart) the loop for ``job_id``. Must be called on the event loop.

        Returns False when the id is malformed or permanently failed.
        """
        if not is_valid_job_id(job_id):
            logger.warning("polling_rejected_invalid_job_id", job_id=job_id)
            return False
        if job_id in self._failed:
            logger.info("polling_skipped_failed_job", job_id=job_id)
            return False

        self.stop_polling(job_id)

        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run(job_id, on_update), name=f"poll:{job_id}")
        deadline = loop.call_later(self._session_timeout, self._on_session_timeout, job_id, task)
        self._polls[job_id] = _PollHandle(task=task, deadline=deadline)
        logger.info(
            "polling_started",
            job_id=job_id,
            interval=self._interval,
            session_timeout=self._session_timeout,
        )
        return True

    def stop_polling(self, job_id: str) -> None:
        handle = self._polls.pop(job_id, None)
        if handle is None:
            return
        handle.deadline.cancel()
        handle.task.cancel()
        logger.info("polling_stopped", job_id=job_id)

    def stop_all_polling(self) -> None:
        for job_id in list(self._polls):
            self.stop_polling(job_id)

    def is_polling(self, job_id: str) -> bool:
        return job_id in self._polls

    def get_active_polling_count(self) -> int:
        return len(self._polls)

    def is_failed(self, job_id: str) -> bool:
        return job_id in self._failed

    def get_failure(self, job_id: str) -> PermanentJobFailure | None:
        return self._failed.get(job_id)

    def get_failed_jobs_count(self) -> int:
        return len(self._failed)

    async def clear_failed_jobs(self) -> None:
        self._failed.clear()
        if self._persisting:
            try:
                await self._store.remove_item(self._config.failed_jobs_key)  # type: ignore[union-attr]
            except (OSError, StorageError) as exc:
                logger.error("failed_jobs_clear_persist_failed", error=str(exc))
        logger.info("failed_jobs_cleared")

    async def restore_failed_jobs(self) -> int:
        """Reload the persisted blacklist. No-op unless ``persist_failed_jobs`` is on."""
        if not self._persisting:
            return 0
        try:
            stored = await self._store.get_item(self._config.failed_jobs_key)  # type: ignore[union-attr]
        except (OSError, StorageError) as exc:
            logger.error("failed_jobs_restore_failed", error=str(exc))
            return 0
        restored = 0
        for job_id in stored or []:
            if isinstance(job_id, str) and job_id not in self._failed:
                self._failed[job_id] = PermanentJobFailure(job_id, "restored from storage")
                restored += 1
        logger.info("failed_jobs_restored", count=restored)
        return restored

    # --- internals ---

    @property
    def _persisting(self) -> bool:
        return self._config.persist_failed_jobs and self._store is not None

    async def _mark_failed(self, job_id: str, reason: str) -> None:
        failure = PermanentJobFailure(job_id, reason)
        self._failed[job_id] = failure
        logger.error("job_permanently_failed", job_id=job_id, reason=reason)
        if self._persisting:
            try:
                await self._store.set_item(self._config.failed_jobs_key, sorted(self._failed))  # type: ignore[union-attr]
            except (OSError, StorageError) as exc:
                logger.error("failed_jobs_persist_failed", job_id=job_id, error=str(exc))

    def _on_session_timeout(self, job_id: str, task: asyncio.Task[None]) -> None:
        handle = self._polls.get(job_id)
        if handle is None or handle.task is not task:
            return
        logger.info("polling_session_expired", job_id=job_id, after=self._session_timeout)
        self.stop_polling(job_id)

    def _release(self, job_id: str, task: asyncio.Task[None] | None) -> None:
        handle = self._polls.get(job_id)
        if handle is not None and handle.task is task:
            del self._polls[job_id]
            handle.deadline.cancel()
            logger.info("polling_stopped", job_id=job_id)

    async def _run(self, job_id: str, on_update: OnUpdate | None) -> None:
        with job_log_context(job_id):
            try:
                while True:
                    await asyncio.sleep(self._interval)
                    if not await self._tick(job_id, on_update):
                        return
            except Exception:
                logger.exception("polling_loop_crashed", job_id=job_id)
            finally:
                self._release(job_id, asyncio.current_task())

    async def _tick(self, job_id: str, on_update: OnUpdate | None) -> bool:
        """One fetch/reconcile round. Returns False when the loop should end."""
        handle = self._polls.get(job_id)
        if handle is None:
            return False

        try:
            job = await self._client.fetch_job_status(job_id)
        except Exception as exc:
            logger.warning(
                "poll_fetch_failed",
                job_id=job_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            job = None

        if job is None:
            handle.failures += 1
            logger.warning(
                "poll_no_status",
                job_id=job_id,
                failures=handle.failures,
                max_failures=self._max_failures,
            )
            if handle.failures >= self._max_failures:
                await self._mark_failed(job_id, f"{handle.failures} consecutive fetch failures")
                return False
            return True

        handle.failures = 0
        logger.debug("poll_status", job_id=job_id, status=job.status)
        await self._cache.reconcile(job)
        if on_update is not None:
            await self._dispatch(on_update, job)

        if job.is_terminal:
            logger.info("poll_job_finished", job_id=job_id, status=job.status)
            if job.status == "error":
                await self._mark_failed(job_id, "job reported error")
            return False
        return True

    async def _dispatch(self, on_update: OnUpdate, job: JobRecord) -> None:
        try:
            result = on_update(job)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("poll_update_callback_failed", job_id=job.id)
