"""Workflow endpoints: start, inspect and fail room transformations."""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Form, UploadFile

from homify.api.deps import error_response, get_services
from homify.config import settings
from homify.errors import PhotoNotFoundError, SubmissionError
from homify.models.contracts import (
    CountResponse,
    ErrorResponse,
    MarkFailedRequest,
    StyleApplicationRequest,
    WorkflowRecord,
    WorkflowStartedResponse,
)
from homify.services.container import Services

logger = structlog.get_logger()

router = APIRouter(prefix="/workflows", tags=["workflows"])

MAX_PHOTO_BYTES = 20 * 1024 * 1024  # 20 MB

ServicesDep = Annotated[Services, Depends(get_services)]


def _started(services: Services, workflow_id: str) -> WorkflowStartedResponse:
    workflow = services.orchestrator.get_workflow(workflow_id)
    assert workflow is not None  # just created
    return WorkflowStartedResponse(
        workflow_id=workflow.id,
        photo_id=workflow.photo_id,
        job_id=workflow.job_id,
    )


def _submission_failed(exc: SubmissionError):
    return error_response(502, "submission_failed", str(exc), retryable=exc.retryable)


@router.post(
    "/room-creation",
    status_code=201,
    response_model=WorkflowStartedResponse,
    responses={413: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def start_room_creation(
    file: UploadFile,
    services: ServicesDep,
    room_type: Annotated[str, Form()] = settings.default_room_type,
):
    """Store the upload locally, then hand it to the orchestrator."""
    chunks: list[bytes] = []
    total = 0
    while chunk := await file.read(65_536):
        total += len(chunk)
        if total > MAX_PHOTO_BYTES:
            mb = MAX_PHOTO_BYTES // (1024 * 1024)
            return error_response(413, "file_too_large", f"Photo exceeds {mb} MB limit")
        chunks.append(chunk)

    upload_dir = Path(settings.upload_dir)
    suffix = Path(file.filename or "room.jpg").suffix or ".jpg"
    path = upload_dir / f"{uuid.uuid4()}{suffix}"

    def _write() -> None:
        upload_dir.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"".join(chunks))

    await asyncio.to_thread(_write)
    logger.info("room_upload_stored", path=str(path), size=total, room_type=room_type)

    try:
        workflow_id = await services.orchestrator.start_room_creation(str(path), room_type)
    except SubmissionError as exc:
        return _submission_failed(exc)
    return _started(services, workflow_id)


@router.post(
    "/style-application",
    status_code=201,
    response_model=WorkflowStartedResponse,
    responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def start_style_application(body: StyleApplicationRequest, services: ServicesDep):
    try:
        workflow_id = await services.orchestrator.start_style_application(
            body.empty_image_uri, body.style, body.photo_id
        )
    except PhotoNotFoundError as exc:
        return error_response(404, "photo_not_found", str(exc))
    except SubmissionError as exc:
        return _submission_failed(exc)
    return _started(services, workflow_id)


@router.get("", response_model=list[WorkflowRecord])
async def list_workflows(services: ServicesDep) -> list[WorkflowRecord]:
    return services.orchestrator.get_active_workflows()


@router.delete("/completed", response_model=CountResponse)
async def clear_completed_workflows(services: ServicesDep) -> CountResponse:
    return CountResponse(count=services.orchestrator.clear_completed_workflows())


@router.get(
    "/{workflow_id}",
    response_model=WorkflowRecord,
    responses={404: {"model": ErrorResponse}},
)
async def get_workflow(workflow_id: str, services: ServicesDep):
    workflow = services.orchestrator.get_workflow(workflow_id)
    if workflow is None:
        return error_response(404, "workflow_not_found", "Workflow not found")
    return workflow


@router.post(
    "/{workflow_id}/fail",
    response_model=WorkflowRecord,
    responses={404: {"model": ErrorResponse}},
)
async def mark_workflow_failed(workflow_id: str, body: MarkFailedRequest, services: ServicesDep):
    if services.orchestrator.get_workflow(workflow_id) is None:
        return error_response(404, "workflow_not_found", "Workflow not found")
    await services.orchestrator.mark_workflow_failed(workflow_id, body.reason)
    return services.orchestrator.get_workflow(workflow_id)
