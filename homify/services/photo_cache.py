"""PhotoCache: the persisted collection of locally known photos.

The whole collection lives under one key in a KeyValueStore, newest first.
The in-memory list is authoritative for the life of the process: storage
failures are logged and never roll back a change already applied in memory.

``reconcile`` folds a remote JobRecord into the matching local photo. Local
photos exist before the remote job does, so until the job id has been
recorded on the photo the match falls back to comparing storage paths.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from pydantic import ValidationError

from homify.config import Settings, settings
from homify.errors import StorageError
from homify.models.contracts import (
    MUTABLE_PHOTO_FIELDS,
    JobRecord,
    PhotoMetadata,
    PhotoRecord,
    PhotoStatus,
    new_photo_id,
)
from homify.utils.kv_store import KeyValueStore
from homify.utils.storage import public_url

logger = structlog.get_logger()

_STATUS_BY_JOB_STATUS: dict[str, PhotoStatus] = {
    "done": "completed",
    "error": "failed",
}


class PhotoCache:
    def __init__(self, store: KeyValueStore, config: Settings = settings) -> None:
        self._store = store
        self._config = config
        self._key = config.photo_cache_key
        self._photos: list[PhotoRecord] = []
        self._persist_lock = asyncio.Lock()

    # --- persistence ---

    async def load_all(self) -> list[PhotoRecord]:
        try:
            raw = await self._store.get_item(self._key)
        except (OSError, StorageError) as exc:
            logger.error("photo_cache_load_failed", error=str(exc))
            return self.get_photos()
        if raw is None:
            return self.get_photos()

        photos: list[PhotoRecord] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                photos.append(PhotoRecord.model_validate(item))
            except ValidationError as exc:
                logger.warning(
                    "photo_cache_record_skipped",
                    photo_id=item.get("id") if isinstance(item, dict) else None,
                    error_count=exc.error_count(),
                )
        self._photos = photos
        logger.info("photo_cache_loaded", count=len(photos))
        return self.get_photos()

    async def _persist(self) -> None:
        # Snapshot under the lock so the last write to land is the newest state.
        async with self._persist_lock:
            payload = [
                p.model_dump(mode="json", by_alias=True, exclude_none=True) for p in self._photos
            ]
            try:
                await self._store.set_item(self._key, payload)
            except (OSError, StorageError) as exc:
                logger.error("photo_cache_persist_failed", error=str(exc), count=len(payload))

    # --- CRUD ---

    async def save(
        self,
        original_url: str,
        *,
        status: PhotoStatus,
        room_type: str | None = None,
        style: str | None = None,
        empty_url: str | None = None,
        styled_url: str | None = None,
        metadata: PhotoMetadata | None = None,
    ) -> PhotoRecord:
        photo = PhotoRecord(
            id=new_photo_id(),
            original_url=original_url,
            room_type=room_type,
            style=style,
            empty_url=empty_url,
            styled_url=styled_url,
            status=status,
            metadata=metadata or PhotoMetadata(),
        )
        self._photos.insert(0, photo)
        await self._persist()
        logger.info("photo_saved", photo_id=photo.id, status=status, room_type=room_type)
        return photo.model_copy(deep=True)

    async def create_room_photo(self, original_url: str, room_type: str) -> PhotoRecord:
        return await self.save(original_url, room_type=room_type, status="processing")

    async def create_upstyle_photo(
        self,
        original_url: str,
        room_type: str | None = None,
        target_style: str | None = None,
    ) -> PhotoRecord:
        return await self.save(
            original_url, room_type=room_type, style=target_style, status="processing"
        )

    async def save_processed_image(
        self,
        original_url: str,
        processed_url: str,
        style: str | None = None,
        room_type: str | None = None,
    ) -> PhotoRecord:
        """Store a finished styled result that never went through a tracked job."""
        return await self.save(
            original_url,
            styled_url=processed_url,
            style=style or self._config.default_style,
            room_type=room_type or self._config.default_room_type,
            status="completed",
        )

    async def update(self, photo_id: str, **changes: Any) -> PhotoRecord | None:
        """Apply a partial update. ``metadata`` may be a dict and merges key by key."""
        immutable = set(changes) - MUTABLE_PHOTO_FIELDS
        if immutable:
            raise ValueError(f"Cannot change immutable photo fields: {sorted(immutable)}")

        index = self._index_of(photo_id)
        if index is None:
            logger.warning("photo_update_missing", photo_id=photo_id)
            return None

        current = self._photos[index]
        if "metadata" in changes:
            meta = changes["metadata"]
            if isinstance(meta, PhotoMetadata):
                meta = meta.model_dump(exclude_unset=True)
            changes["metadata"] = current.metadata.model_copy(update=meta)

        updated = PhotoRecord.model_validate({**current.model_dump(), **changes})
        self._photos[index] = updated
        await self._persist()
        logger.info("photo_updated", photo_id=photo_id, fields=sorted(changes))
        return updated.model_copy(deep=True)

    async def delete(self, photo_id: str) -> bool:
        index = self._index_of(photo_id)
        if index is None:
            logger.warning("photo_delete_missing", photo_id=photo_id)
            return False
        del self._photos[index]
        await self._persist()
        logger.info("photo_deleted", photo_id=photo_id)
        return True

    async def clear(self) -> None:
        self._photos = []
        async with self._persist_lock:
            try:
                await self._store.remove_item(self._key)
            except (OSError, StorageError) as exc:
                logger.error("photo_cache_clear_failed", error=str(exc))
        logger.info("photo_cache_cleared")

    # --- helpers used by workflows ---

    async def complete_room_emptying(self, photo_id: str, empty_url: str) -> PhotoRecord | None:
        return await self.update(photo_id, empty_url=empty_url, status="completed")

    async def complete_upstyling(
        self, photo_id: str, styled_url: str, style: str
    ) -> PhotoRecord | None:
        return await self.update(photo_id, styled_url=styled_url, style=style, status="completed")

    async def mark_failed(self, photo_id: str) -> PhotoRecord | None:
        return await self.update(photo_id, status="failed")

    # --- queries ---

    def _index_of(self, photo_id: str) -> int | None:
        for i, photo in enumerate(self._photos):
            if photo.id == photo_id:
                return i
        return None

    def get(self, photo_id: str) -> PhotoRecord | None:
        index = self._index_of(photo_id)
        return None if index is None else self._photos[index].model_copy(deep=True)

    def get_photos(self) -> list[PhotoRecord]:
        return [p.model_copy(deep=True) for p in self._photos]

    def get_photos_by_status(self, status: PhotoStatus) -> list[PhotoRecord]:
        return [p.model_copy(deep=True) for p in self._photos if p.status == status]

    def get_photos_by_room_type(self, room_type: str) -> list[PhotoRecord]:
        return [p.model_copy(deep=True) for p in self._photos if p.room_type == room_type]

    def get_recent_photos(self, limit: int = 10) -> list[PhotoRecord]:
        ordered = sorted(self._photos, key=lambda p: p.created_at, reverse=True)
        return [p.model_copy(deep=True) for p in ordered[:limit]]

    def get_photo_count(self) -> int:
        return len(self._photos)

    def get_completed_photo_count(self) -> int:
        return sum(1 for p in self._photos if p.status == "completed")

    # --- reconciliation ---

    def _find_match(self, job: JobRecord) -> int | None:
        for i, photo in enumerate(self._photos):
            if photo.metadata.job_id == job.id:
                return i

        strict = self._config.reconcile_strict_job_id

        def eligible(photo: PhotoRecord) -> bool:
            bound = photo.metadata.job_id
            return not (strict and bound and bound != job.id)

        original = public_url(job.original_path, self._config)
        candidates = [(i, p) for i, p in enumerate(self._photos) if eligible(p)]
        if original:
            for i, photo in candidates:
                if photo.original_url == original:
                    return i
            for i, photo in candidates:
                if job.original_path in photo.original_url:
                    return i
        for i, photo in candidates:
            if photo.id == job.id:
                return i
        return None

    async def reconcile(self, job: JobRecord) -> PhotoRecord | None:
        """Merge a remote snapshot into its local photo. Returns the photo if it changed."""
        index = self._find_match(job)
        if index is None:
            logger.debug("reconcile_no_local_photo", job_id=job.id)
            return None

        current = self._photos[index]
        changes: dict[str, Any] = {}

        if job.empty_path and not current.empty_url:
            changes["empty_url"] = public_url(job.empty_path, self._config)
        if job.styled_path and not current.styled_url:
            changes["styled_url"] = public_url(job.styled_path, self._config)
            changes["style"] = job.applied_style or current.style

        status = _STATUS_BY_JOB_STATUS.get(job.status, "processing")
        if status != current.status:
            changes["status"] = status

        changes = {k: v for k, v in changes.items() if getattr(current, k) != v}
        if not changes:
            return None

        self._photos[index] = current.model_copy(update=changes)
        await self._persist()
        logger.info(
            "photo_reconciled",
            photo_id=current.id,
            job_id=job.id,
            job_status=job.status,
            fields=sorted(changes),
        )
        return self._photos[index].model_copy(deep=True)
