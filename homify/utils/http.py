"""HTTP client for the remote transformation engine.

Two calls cross the boundary: a multipart upload to the edge function that
creates a job, and a row lookup on the jobs table that reports its status.
Submission is never retried here; fetch failures are reported as
PollFetchError and the poller decides what to do with them.
"""

from __future__ import annotations

import asyncio
import io
from pathlib import Path

import httpx
import structlog
from PIL import Image
from pydantic import ValidationError

from homify.config import Settings, settings
from homify.errors import PollFetchError, SubmissionError
from homify.models.contracts import ImageInfo, JobRecord, SubmitJobResponse, SubmitMode
from homify.utils.storage import is_remote_uri, local_path

logger = structlog.get_logger()

_MIME_BY_FORMAT = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}


def _sniff_image(data: bytes, source: str) -> ImageInfo:
    """Decode ``data`` fully and describe it; raise SubmissionError if it is not an image."""
    try:
        img = Image.open(io.BytesIO(data))
        img.load()  # full decode catches truncated uploads
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise SubmissionError(
            f"Not a valid image: {source[:100]}",
            retryable=False,
        ) from exc
    width, height = img.size
    return ImageInfo(
        content_type=_MIME_BY_FORMAT.get(img.format or "", "image/jpeg"),
        width=width,
        height=height,
        file_size=len(data),
    )


class JobApiClient:
    """Thin async wrapper over the edge function and jobs table endpoints."""

    def __init__(self, http: httpx.AsyncClient, config: Settings = settings) -> None:
        self._http = http
        self._config = config

    def _auth_headers(self) -> dict[str, str]:
        key = self._config.supabase_anon_key
        return {"apikey": key, "Authorization": f"Bearer {key}"}

    async def _load_image(self, image_uri: str) -> bytes:
        if not is_remote_uri(image_uri):
            try:
                return await asyncio.to_thread(Path(local_path(image_uri)).read_bytes)
            except OSError as exc:
                raise SubmissionError(
                    f"Cannot read image {image_uri[:100]}: {exc}",
                    retryable=False,
                ) from exc

        try:
            response = await self._http.get(image_uri, timeout=self._config.http_timeout_seconds)
        except httpx.RequestError as exc:
            raise SubmissionError(
                f"Network error downloading image: {image_uri[:100]}: {type(exc).__name__}",
            ) from exc
        if response.status_code >= 400:
            raise SubmissionError(
                f"HTTP {response.status_code} downloading image: {image_uri[:100]}",
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        return response.content

    async def submit_job(
        self,
        image_uri: str,
        *,
        mode: SubmitMode,
        room_type: str | None = None,
        style: str | None = None,
        quality: str | None = None,
    ) -> SubmitJobResponse:
        data = await self._load_image(image_uri)
        image = _sniff_image(data, image_uri)
        form = {
            "mode": mode,
            "roomType": room_type or self._config.default_room_type,
            "selectedStyle": style or self._config.default_style,
            "quality": quality or self._config.default_quality,
            "imageWidth": str(image.width),
            "imageHeight": str(image.height),
        }
        files = {"file": ("room_image.jpg", data, image.content_type)}

        logger.info(
            "job_submit",
            mode=mode,
            room_type=form["roomType"],
            style=form["selectedStyle"],
            size=image.file_size,
            width=image.width,
            height=image.height,
        )
        try:
            response = await self._http.post(
                self._config.edge_function_url,
                data=form,
                files=files,
                headers={"Authorization": f"Bearer {self._config.supabase_anon_key}"},
                timeout=self._config.http_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise SubmissionError("Timeout submitting job") from exc
        except httpx.RequestError as exc:
            raise SubmissionError(f"Network error submitting job: {type(exc).__name__}") from exc

        if response.status_code >= 400:
            raise SubmissionError(
                f"Edge function failed: {response.status_code} - {response.text[:200]}",
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise SubmissionError(f"Invalid response format: {response.text[:200]}") from exc
        if not isinstance(body, dict) or not body.get("jobId"):
            raise SubmissionError("No job ID returned from edge function")
        try:
            result = SubmitJobResponse.model_validate(body)
        except ValidationError as exc:
            raise SubmissionError(f"Malformed submission response: {exc}") from exc

        result.image = image
        logger.info("job_submitted", job_id=result.job_id)
        return result

    async def fetch_job_status(self, job_id: str) -> JobRecord | None:
        """Return the job's current row, or None if the table has no such job."""
        url = f"{self._config.supabase_url.rstrip('/')}/rest/v1/{self._config.jobs_table}"
        try:
            response = await self._http.get(
                url,
                params={"id": f"eq.{job_id}", "select": "*"},
                headers=self._auth_headers(),
                timeout=self._config.http_timeout_seconds,
            )
        except httpx.RequestError as exc:
            raise PollFetchError(job_id, f"Network error: {type(exc).__name__}") from exc

        if response.status_code >= 400:
            raise PollFetchError(job_id, f"HTTP {response.status_code}")

        try:
            rows = response.json()
        except ValueError as exc:
            raise PollFetchError(job_id, "Response is not JSON") from exc
        if isinstance(rows, dict):
            rows = [rows]
        if not isinstance(rows, list):
            raise PollFetchError(job_id, f"Unexpected payload type {type(rows).__name__}")
        if not rows:
            return None
        try:
            return JobRecord.model_validate(rows[0])
        except ValidationError as exc:
            raise PollFetchError(job_id, f"Malformed job record: {exc.error_count()} errors") from exc
