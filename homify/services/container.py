"""Wires the services together once per process.

Nothing here is a module-level singleton: the API lifespan (or a script, or a
test) builds a ``Services`` bundle and passes it to whoever needs it.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from homify.config import Settings, settings
from homify.services.job_poller import JobPoller
from homify.services.notifications import QueuedNotificationSink
from homify.services.photo_cache import PhotoCache
from homify.utils.http import JobApiClient
from homify.utils.kv_store import KeyValueStore, build_store
from homify.workflows.orchestrator import WorkflowOrchestrator

logger = structlog.get_logger()


@dataclass
class Services:
    http: httpx.AsyncClient
    store: KeyValueStore
    cache: PhotoCache
    poller: JobPoller
    notifier: QueuedNotificationSink
    orchestrator: WorkflowOrchestrator

    async def aclose(self) -> None:
        self.poller.stop_all_polling()
        await self.http.aclose()
        logger.info("services_closed")


async def build_services(
    config: Settings = settings,
    *,
    store: KeyValueStore | None = None,
    http: httpx.AsyncClient | None = None,
) -> Services:
    """Construct, load persisted state and run the startup orphan sweep.

    Polling is not resumed here; that is an explicit call on the orchestrator.
    """
    http = http or httpx.AsyncClient(timeout=config.http_timeout_seconds)
    store = store or build_store(config.photo_cache_dir)
    api = JobApiClient(http, config)
    cache = PhotoCache(store, config)
    poller = JobPoller(api, cache, store, config)
    notifier = QueuedNotificationSink()
    orchestrator = WorkflowOrchestrator(api, cache, poller, notifier, config)

    await cache.load_all()
    await poller.restore_failed_jobs()
    await orchestrator.initialize_polling()

    logger.info(
        "services_ready",
        photos=cache.get_photo_count(),
        failed_jobs=poller.get_failed_jobs_count(),
    )
    return Services(
        http=http,
        store=store,
        cache=cache,
        poller=poller,
        notifier=notifier,
        orchestrator=orchestrator,
    )
