"""FastAPI router for media uploads."""
import logging

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import FileResponse

from chatrelay.auth.dependencies import get_identity
from chatrelay.auth.schemas import Identity
from chatrelay.container import ChatServices, get_services
from chatrelay.errors import InvalidPayload, NotFound

from .schemas import MediaUploadResponse, get_media_kind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/media", tags=["media"])


@router.post("", response_model=MediaUploadResponse, response_model_by_alias=True)
async def upload_media(
    file: UploadFile = File(...),
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> MediaUploadResponse:
    """Upload an image, GIF or video.

    Returns:
        MediaUploadResponse with the URL and kind to attach to a message.

    Raises:
        InvalidPayload (400): Unsupported type, empty file, or too large.
    """
    kind = get_media_kind(file.content_type)
    if kind is None:
        raise InvalidPayload(f"Unsupported media type: {file.content_type}")

    content = await file.read()
    url = services.blobs.store(identity.user_id, file.filename or "upload", content)

    logger.info(
        "Media uploaded by %s: %s (%s, %d bytes)", identity.user_id, url, kind.value, len(content)
    )
    return MediaUploadResponse(url=url, kind=kind, size_bytes=len(content))


@router.get("/{owner_id}/{stored_name}")
async def download_media(
    owner_id: str,
    stored_name: str,
    services: ChatServices = Depends(get_services),
):
    path = services.blobs.resolve(owner_id, stored_name)
    if path is None:
        raise NotFound("Media not found")
    return FileResponse(path=path)
