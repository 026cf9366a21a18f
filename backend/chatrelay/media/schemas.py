"""Pydantic schemas and MIME rules for media uploads.

Only the three attachment kinds a message can carry are accepted:
- IMAGE: JPEG, PNG, WebP
- GIF: animated or still GIF
- VIDEO: MP4, WebM, QuickTime
"""
from typing import Optional

from pydantic import BaseModel, Field

from chatrelay.conversations.schemas import MediaKind

ALLOWED_MIME_TYPES = {
    MediaKind.IMAGE: [
        "image/jpeg",
        "image/png",
        "image/webp",
    ],
    MediaKind.GIF: [
        "image/gif",
    ],
    MediaKind.VIDEO: [
        "video/mp4",
        "video/webm",
        "video/quicktime",
    ],
}


def get_media_kind(mime_type: Optional[str]) -> Optional[MediaKind]:
    """Map a MIME type to a media kind.

    Examples:
        >>> get_media_kind("image/gif")
        <MediaKind.GIF: 'gif'>
        >>> get_media_kind("application/pdf") is None
        True
    """
    for kind, mime_types in ALLOWED_MIME_TYPES.items():
        if mime_type in mime_types:
            return kind
    return None


class MediaUploadResponse(BaseModel):
    """Returned by POST /media; ``url`` and ``kind`` go straight into a send."""
    url: str = Field(..., description="Public URL of the stored blob")
    kind: MediaKind = Field(..., description="Attachment kind")
    size_bytes: int = Field(..., alias="sizeBytes", description="Stored size in bytes")

    model_config = {"populate_by_name": True}
