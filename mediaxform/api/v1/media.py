"""
Media Endpoints

POST   /api/v1/media                    - Upload an original (multipart)
GET    /api/v1/media                    - List the caller's objects (paged)
GET    /api/v1/media/{id}               - Object metadata
GET    /api/v1/media/{id}/content       - Object bytes
GET    /api/v1/media/{id}/derived       - Objects produced from this one
DELETE /api/v1/media/{id}               - Delete object and blob
POST   /api/v1/media/{id}/transform     - Queue a transform (202)
"""

from typing import Dict, List

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile, status

from mediaxform.api.dependencies import get_dispatcher, get_media_service, get_owner_id
from mediaxform.core.logging import get_logger
from mediaxform.engines.transform.dispatcher import TransformDispatcher
from mediaxform.engines.transform.schemas import TransformRequest
from mediaxform.modules.media.schemas import MediaObjectRead, MediaPage
from mediaxform.modules.media.service import MediaService

logger = get_logger(__name__)
router = APIRouter()


@router.post("", response_model=MediaObjectRead, status_code=status.HTTP_201_CREATED)
async def upload_media(
    file: UploadFile = File(...),
    owner_id: str = Depends(get_owner_id),
    media: MediaService = Depends(get_media_service),
):
    """Upload an image. Size and type are validated before anything is stored."""
    # One byte past the limit is enough for the service to reject oversize input
    data = await file.read(media.max_upload_bytes + 1)
    return await media.upload(
        owner_id=owner_id,
        filename=file.filename or "",
        mime_type=file.content_type or "",
        data=data,
    )


@router.get("", response_model=MediaPage)
async def list_media(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1),
    owner_id: str = Depends(get_owner_id),
    media: MediaService = Depends(get_media_service),
):
    return await media.list_objects(owner_id, page=page, limit=limit)


@router.get("/{object_id}", response_model=MediaObjectRead)
async def get_media(
    object_id: str,
    owner_id: str = Depends(get_owner_id),
    media: MediaService = Depends(get_media_service),
):
    return await media.get_object(owner_id, object_id)


@router.get("/{object_id}/content")
async def get_media_content(
    object_id: str,
    owner_id: str = Depends(get_owner_id),
    media: MediaService = Depends(get_media_service),
):
    data, mime_type = await media.get_content(owner_id, object_id)
    return Response(content=data, media_type=mime_type)


@router.get("/{object_id}/derived", response_model=List[MediaObjectRead])
async def list_derived_media(
    object_id: str,
    owner_id: str = Depends(get_owner_id),
    media: MediaService = Depends(get_media_service),
):
    return await media.list_derived(owner_id, object_id)


@router.delete("/{object_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_media(
    object_id: str,
    owner_id: str = Depends(get_owner_id),
    media: MediaService = Depends(get_media_service),
):
    await media.delete(owner_id, object_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{object_id}/transform", status_code=status.HTTP_202_ACCEPTED)
async def transform_media(
    object_id: str,
    request: TransformRequest,
    owner_id: str = Depends(get_owner_id),
    dispatcher: TransformDispatcher = Depends(get_dispatcher),
) -> Dict[str, str]:
    """
    Queue a transform of an owned object.

    Returns immediately with {"status": "queued"}; the derived object shows
    up under /derived once a worker has processed the message.
    """
    return await dispatcher.request_transform(owner_id, object_id, request.transformations)
