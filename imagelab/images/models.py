"""
Image domain models.

ImageMetadata is what the local store persists under data/metadata/<id>.json
and what the API hands back for generated, edited and uploaded images.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from imagelab.feishu.models import ImageKind, utc_now_ms


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class ImageOptions(BaseModel):
    """Caller-supplied options for generate / save."""

    model_config = ConfigDict(extra="allow")

    is_uploaded_image: bool = Field(default=False, description="Source image was uploaded by the user")
    root_parent_id: str | None = Field(default=None, description="First image of the edit chain")


class ImageMetadata(BaseModel):
    """Locally persisted description of one stored image."""

    model_config = ConfigDict(frozen=False, use_enum_values=True)

    id: str
    prompt: str = ""
    created_at: str = Field(default_factory=utc_now_iso)
    filename: str
    mime_type: str = "image/png"
    size: int = Field(default=0, description="Image size in bytes")
    url: str
    type: ImageKind = ImageKind.GENERATED
    parent_id: str | None = None
    root_parent_id: str | None = None
    timestamp: int = Field(default_factory=utc_now_ms)
    feishu_url: str | None = None
    feishu_file_token: str | None = None
    feishu_sync_failed: bool = False

    @property
    def display_url(self) -> str:
        """Feishu URL when synced, else the local URL."""
        return self.feishu_url or self.url

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ValidatedImage(BaseModel):
    data: bytes
    mime_type: str
    size_mb: float
    warnings: list[str] = Field(default_factory=list)


class EditPreparation(BaseModel):
    """Everything edit-execute needs, resolved from the source image URL."""

    prepare_id: str
    file_token: str
    parent_id: str
    root_parent_id: str
    is_uploaded_image: bool = False
    original_url: str


class GenerationResult(BaseModel):
    """Outcome of generate / one-shot edit."""

    image_url: str
    description: str = ""
    metadata: ImageMetadata
    is_stateless: bool = False


class EditResult(BaseModel):
    """Outcome of edit-execute."""

    image_data: str = Field(..., description="Base64 image bytes")
    mime_type: str
    id: str
    prompt: str
    file_token: str
    prepare_id: str
    parent_id: str
    root_parent_id: str
    is_uploaded_image: bool = False
    text_response: str = ""
    feishu_url: str


class SaveResult(BaseModel):
    """Outcome of save-to-feishu."""

    id: str
    file_token: str
    url: str
    record_id: str | None = None
    parent_id: str | None = None
    root_parent_id: str | None = None
    warning: str | None = None
