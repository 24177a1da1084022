"""Photo cache endpoints: read and delete locally known photos."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response

from homify.api.deps import error_response, get_services
from homify.models.contracts import ErrorResponse, PhotoRecord, PhotoStatus
from homify.services.container import Services

router = APIRouter(prefix="/photos", tags=["photos"])

ServicesDep = Annotated[Services, Depends(get_services)]


@router.get("", response_model=list[PhotoRecord])
async def list_photos(
    services: ServicesDep,
    status: PhotoStatus | None = None,
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> list[PhotoRecord]:
    cache = services.cache
    if status is not None:
        photos = cache.get_photos_by_status(status)
        return photos[:limit] if limit else photos
    if limit:
        return cache.get_recent_photos(limit)
    return cache.get_photos()


@router.get("/{photo_id}", response_model=PhotoRecord, responses={404: {"model": ErrorResponse}})
async def get_photo(photo_id: str, services: ServicesDep):
    photo = services.cache.get(photo_id)
    if photo is None:
        return error_response(404, "photo_not_found", "Photo not found")
    return photo


@router.delete("/{photo_id}", status_code=204, responses={404: {"model": ErrorResponse}})
async def delete_photo(photo_id: str, services: ServicesDep):
    if not await services.cache.delete(photo_id):
        return error_response(404, "photo_not_found", "Photo not found")
    return Response(status_code=204)
