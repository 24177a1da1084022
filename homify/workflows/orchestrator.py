"""WorkflowOrchestrator: one state machine per user-initiated transformation.

A workflow binds a request ("empty this room", "apply this style") to exactly
one PhotoRecord and at most one active remote job:

    started -> processing -> [emptying ->] completed
                          -> failed | error

Submission failures propagate to the caller as SubmissionError after the
bound photo is marked failed. Everything that arrives later (poll updates,
completion callbacks) can race with cleanup or a restart, so a missing
workflow or field there is logged and ignored rather than raised.
"""

from __future__ import annotations

import uuid
from typing import Protocol

import structlog

from homify.config import Settings, settings
from homify.errors import OrphanedJobReference, PhotoNotFoundError, SubmissionError
from homify.models.contracts import (
    JobRecord,
    SubmitJobResponse,
    SubmitMode,
    WorkflowRecord,
    WorkflowStatus,
    WorkflowType,
    is_valid_job_id,
    utc_now,
)
from homify.services.job_poller import JobPoller
from homify.services.notifications import NotificationSink, ResultKind
from homify.services.photo_cache import PhotoCache

logger = structlog.get_logger()

_TRANSITIONS: dict[str, frozenset[str]] = {
    "started": frozenset({"processing", "emptying", "completed", "failed", "error"}),
    "processing": frozenset({"emptying", "completed", "failed", "error"}),
    "emptying": frozenset({"completed", "failed", "error"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "error": frozenset(),
}


class JobSubmitter(Protocol):
    """Anything that can hand an image to the remote engine (JobApiClient in production)."""

    async def submit_job(
        self,
        image_uri: str,
        *,
        mode: SubmitMode,
        room_type: str | None = None,
        style: str | None = None,
        quality: str | None = None,
    ) -> SubmitJobResponse: ...


class WorkflowOrchestrator:
    def __init__(
        self,
        submitter: JobSubmitter,
        cache: PhotoCache,
        poller: JobPoller,
        notifier: NotificationSink,
        config: Settings = settings,
    ) -> None:
        self._submitter = submitter
        self._cache = cache
        self._poller = poller
        self._notifier = notifier
        self._config = config
        self._workflows: dict[str, WorkflowRecord] = {}

    # --- starting work ---

    async def start_room_creation(self, image_uri: str, room_type: str) -> str:
        workflow_id = str(uuid.uuid4())
        photo = await self._cache.create_room_photo(image_uri, room_type)
        workflow = WorkflowRecord(
            id=workflow_id,
            type="room_creation",
            photo_id=photo.id,
            original_image_uri=image_uri,
            room_type=room_type,
        )
        self._workflows[workflow_id] = workflow
        logger.info(
            "workflow_started",
            workflow_id=workflow_id,
            type=workflow.type,
            photo_id=photo.id,
            room_type=room_type,
        )
        await self._submit(
            workflow,
            image_uri,
            mode="unified",
            room_type=room_type,
            style=self._config.default_style,
        )
        return workflow_id

    async def start_style_application(self, empty_image_uri: str, style: str, photo_id: str) -> str:
        photo = self._cache.get(photo_id)
        if photo is None:
            raise PhotoNotFoundError(photo_id)

        workflow_id = str(uuid.uuid4())
        workflow = WorkflowRecord(
            id=workflow_id,
            type="style_application",
            photo_id=photo_id,
            original_image_uri=empty_image_uri,
            room_type=photo.room_type,
            target_style=style,
        )
        self._workflows[workflow_id] = workflow
        logger.info(
            "workflow_started",
            workflow_id=workflow_id,
            type=workflow.type,
            photo_id=photo_id,
            style=style,
        )
        await self._submit(
            workflow,
            empty_image_uri,
            mode="style",
            room_type=photo.room_type,
            style=style,
        )
        return workflow_id

    async def start_upstyling(self, empty_image_uri: str, style: str, photo_id: str) -> str:
        return await self.start_style_application(empty_image_uri, style, photo_id)

    async def _submit(
        self,
        workflow: WorkflowRecord,
        image_uri: str,
        *,
        mode: SubmitMode,
        room_type: str | None,
        style: str | None,
    ) -> None:
        try:
            response = await self._submitter.submit_job(
                image_uri,
                mode=mode,
                room_type=room_type,
                style=style,
                quality=self._config.default_quality,
            )
        except SubmissionError as exc:
            await self._fail_submission(workflow, exc)
            raise
        except Exception as exc:
            wrapped = SubmissionError(f"Submission failed: {type(exc).__name__}: {exc}")
            await self._fail_submission(workflow, wrapped)
            raise wrapped from exc

        job_id = response.job_id
        if not is_valid_job_id(job_id):
            rejected = SubmissionError(
                f"Engine returned an invalid job id: {job_id!r}", retryable=False
            )
            await self._fail_submission(workflow, rejected)
            raise rejected

        metadata: dict[str, object] = {"job_id": job_id, "workflow_id": workflow.id}
        if response.image is not None:
            metadata.update(
                width=response.image.width,
                height=response.image.height,
                file_size=response.image.file_size,
            )
        await self._cache.update(workflow.photo_id, metadata=metadata)
        workflow.job_id = job_id
        workflow.updated_at = utc_now()
        if not self._poller.start_polling(job_id, self._update_handler(workflow.id)):
            rejected = SubmissionError(f"Cannot poll job {job_id}", retryable=False)
            await self._fail_submission(workflow, rejected)
            raise rejected
        logger.info("workflow_job_bound", workflow_id=workflow.id, job_id=job_id)

    async def _fail_submission(self, workflow: WorkflowRecord, exc: SubmissionError) -> None:
        logger.error(
            "workflow_submission_failed",
            workflow_id=workflow.id,
            photo_id=workflow.photo_id,
            error=str(exc),
            retryable=exc.retryable,
        )
        await self._cache.mark_failed(workflow.photo_id)
        workflow.error = str(exc)
        self._transition(workflow, "failed")
        exc.workflow_id = workflow.id
        exc.photo_id = workflow.photo_id

    # --- state machine ---

    def _transition(self, workflow: WorkflowRecord, status: WorkflowStatus) -> bool:
        if status == workflow.status:
            return True
        if status not in _TRANSITIONS[workflow.status]:
            logger.warning(
                "workflow_transition_ignored",
                workflow_id=workflow.id,
                current=workflow.status,
                requested=status,
            )
            return False
        logger.info(
            "workflow_transition",
            workflow_id=workflow.id,
            previous=workflow.status,
            status=status,
        )
        workflow.status = status
        workflow.updated_at = utc_now()
        return True

    def _update_handler(self, workflow_id: str):
        async def on_update(job: JobRecord) -> None:
            await self._on_job_update(workflow_id, job)

        return on_update

    async def _on_job_update(self, workflow_id: str, job: JobRecord) -> None:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            logger.debug("job_update_for_unknown_workflow", workflow_id=workflow_id, job_id=job.id)
            return
        if workflow.job_id != job.id:
            logger.warning(
                "job_update_for_stale_job",
                workflow_id=workflow_id,
                job_id=job.id,
                active_job_id=workflow.job_id,
            )
            return

        if job.status == "processing":
            if workflow.status == "started":
                self._transition(workflow, "processing")
            return
        if job.status == "error":
            if self._transition(workflow, "error"):
                workflow.error = "Remote job reported an error"
            return

        if workflow.is_terminal:
            return
        photo = self._cache.get(workflow.photo_id)
        if photo is not None:
            workflow.empty_room_uri = photo.empty_url or workflow.empty_room_uri
            workflow.styled_room_uri = photo.styled_url or workflow.styled_room_uri
        if not self._transition(workflow, "completed"):
            return

        if workflow.empty_room_uri:
            await self._notify_download("empty")
        if workflow.styled_room_uri:
            await self._notify_download("styled")
            style = (photo.style if photo else None) or workflow.target_style
            if style:
                await self._notify_completion(style)

    # --- completion callbacks ---

    async def complete_room_emptying(self, workflow_id: str, result_uri: str) -> None:
        workflow = self._workflows.get(workflow_id)
        if workflow is None or not workflow.photo_id:
            logger.warning("complete_room_emptying_skipped", workflow_id=workflow_id)
            return
        if not self._transition(workflow, "emptying"):
            return
        workflow.empty_room_uri = result_uri
        await self._cache.complete_room_emptying(workflow.photo_id, result_uri)
        logger.info("room_emptying_completed", workflow_id=workflow_id, photo_id=workflow.photo_id)

    async def complete_upstyling(self, workflow_id: str, result_uri: str) -> None:
        workflow = self._workflows.get(workflow_id)
        if workflow is None or not workflow.photo_id or not workflow.target_style:
            logger.warning(
                "complete_upstyling_skipped",
                workflow_id=workflow_id,
                reason="workflow missing or lacks photo_id/target_style",
            )
            return
        if not self._transition(workflow, "completed"):
            return
        workflow.styled_room_uri = result_uri
        await self._cache.complete_upstyling(workflow.photo_id, result_uri, workflow.target_style)
        await self._notify_completion(workflow.target_style)
        logger.info("upstyling_completed", workflow_id=workflow_id, style=workflow.target_style)

    async def mark_workflow_failed(self, workflow_id: str, reason: str | None = None) -> None:
        workflow = self._workflows.get(workflow_id)
        if workflow is None or not workflow.photo_id:
            logger.warning("mark_workflow_failed_skipped", workflow_id=workflow_id)
            return
        if not self._transition(workflow, "failed"):
            return
        workflow.error = reason
        if workflow.job_id:
            self._poller.stop_polling(workflow.job_id)
        await self._cache.mark_failed(workflow.photo_id)
        logger.info("workflow_failed", workflow_id=workflow_id, reason=reason)

    # --- notifications (fire-and-forget) ---

    async def _notify_completion(self, style: str) -> None:
        try:
            await self._notifier.notify_completion(style)
        except Exception:
            logger.exception("notification_failed", kind="processing_complete")

    async def _notify_download(self, kind: ResultKind) -> None:
        try:
            await self._notifier.notify_download_complete(kind)
        except Exception:
            logger.exception("notification_failed", kind="download_complete")

    # --- queries and maintenance ---

    def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        workflow = self._workflows.get(workflow_id)
        return None if workflow is None else workflow.model_copy()

    def get_active_workflows(self) -> list[WorkflowRecord]:
        return [w.model_copy() for w in self._workflows.values()]

    def get_workflows_by_type(self, workflow_type: WorkflowType) -> list[WorkflowRecord]:
        return [w.model_copy() for w in self._workflows.values() if w.type == workflow_type]

    def clear_completed_workflows(self) -> int:
        terminal = [wid for wid, w in self._workflows.items() if w.is_terminal]
        for workflow_id in terminal:
            del self._workflows[workflow_id]
        logger.info("workflows_cleared", count=len(terminal), remaining=len(self._workflows))
        return len(terminal)

    async def initialize_polling(self) -> int:
        """Startup sweep: fail processing photos that have no usable job id.

        Never starts polling; call ``resume_polling`` for that.
        """
        orphans = [
            photo
            for photo in self._cache.get_photos_by_status("processing")
            if not is_valid_job_id(photo.metadata.job_id)
        ]
        for photo in orphans:
            orphan = OrphanedJobReference(photo.id, photo.metadata.job_id)
            logger.warning("orphaned_photo_marked_failed", photo_id=photo.id, reason=str(orphan))
            await self._cache.mark_failed(photo.id)
        logger.info("polling_initialized", orphaned=len(orphans), auto_polling=False)
        return len(orphans)

    async def resume_polling(self) -> int:
        """Restart polling for processing photos that carry a valid job id."""
        started = 0
        for photo in self._cache.get_photos_by_status("processing"):
            job_id = photo.metadata.job_id
            if not is_valid_job_id(job_id):
                logger.debug("resume_polling_skipped", photo_id=photo.id, job_id=job_id)
                continue
            workflow_id = photo.metadata.workflow_id
            on_update = self._update_handler(workflow_id) if workflow_id else None
            if self._poller.start_polling(job_id, on_update):  # type: ignore[arg-type]
                started += 1
        logger.info("polling_resumed", started=started)
        return started
