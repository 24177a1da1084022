"""Polling diagnostics and the explicit restart-recovery trigger."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from homify.api.deps import get_services
from homify.models.contracts import CountResponse, Notification, PollingStatusResponse
from homify.services.container import Services

router = APIRouter(tags=["polling"])

ServicesDep = Annotated[Services, Depends(get_services)]


def _status(services: Services) -> PollingStatusResponse:
    return PollingStatusResponse(
        active_polling_count=services.poller.get_active_polling_count(),
        failed_jobs_count=services.poller.get_failed_jobs_count(),
    )


@router.get("/polling", response_model=PollingStatusResponse)
async def polling_status(services: ServicesDep) -> PollingStatusResponse:
    return _status(services)


@router.post("/polling/resume", response_model=CountResponse)
async def resume_polling(services: ServicesDep) -> CountResponse:
    """Resume polling for processing photos with a valid job id. Never automatic."""
    return CountResponse(count=await services.orchestrator.resume_polling())


@router.delete("/polling/failed-jobs", response_model=PollingStatusResponse)
async def clear_failed_jobs(services: ServicesDep) -> PollingStatusResponse:
    await services.poller.clear_failed_jobs()
    return _status(services)


@router.get("/notifications", response_model=list[Notification])
async def list_notifications(services: ServicesDep) -> list[Notification]:
    return services.notifier.recent()
