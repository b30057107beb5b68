"""
Image Service - business logic for generating, editing and storing images.

Orchestrates between:
- the image model (imagelab.llm)
- FeishuClient (image storage + Bitable records)
- ImageRepository (local files, skipped in stateless deployments)
- the lineage forest (gallery and history views)
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from typing import Any
from uuid import uuid4

import httpx

from imagelab.config import SAVE_DEFAULT_PROMPT, UPLOAD_DEFAULT_PROMPT
from imagelab.feishu.client import FeishuClient, FeishuError, get_feishu_client
from imagelab.feishu.models import EditHistoryEntry, ImageKind, ImageRecord, utc_now_ms
from imagelab.images.models import (
    EditPreparation,
    EditResult,
    GenerationResult,
    ImageMetadata,
    ImageOptions,
    SaveResult,
)
from imagelab.images.repository import ImageRepository, StatelessStorageError, get_image_repository
from imagelab.images.url_ids import (
    extract_image_id,
    is_data_url,
    is_feishu_url,
    is_image_id,
    is_local_url,
    is_proxy_url,
    local_image_id,
    unwrap_proxy_url,
)
from imagelab.images.validation import (
    InvalidDataUrl,
    InvalidImageError,
    extension_for_mime,
    parse_data_url,
    validate_image,
)
from imagelab.infrastructure.settings import IMAGES_URL_PREFIX
from imagelab.lineage.forest import Forest, ImageGroup, build_forest, group_for, lineage_of
from imagelab.llm.gemini import image_part, text_part
from imagelab.llm.response import GeneratedContent, build_edit_prompt, extract_generated_content
from imagelab.llm.retry import generate_image_content
from imagelab.observability.logging import get_logger
from imagelab.observability.telemetry import counter, log_event

logger = get_logger(__name__)

EXTERNAL_FETCH_TIMEOUT = 30.0

__all__ = [
    "ImageService",
    "ImageServiceError",
    "NoImageGenerated",
    "ImageFetchError",
    "ImageSaveError",
    "UnsupportedImageUrl",
    "MissingImageId",
    "MissingImageSource",
    "ImageRecordNotFound",
    "InvalidDataUrl",
    "InvalidImageError",
    "get_image_service",
]


class ImageServiceError(Exception):
    """Base exception for image service errors."""

    pass


class NoImageGenerated(ImageServiceError):
    """Model response carried no image."""

    pass


class ImageFetchError(ImageServiceError):
    """Source image bytes could not be obtained."""

    pass


class ImageSaveError(ImageServiceError):
    """Image could not be persisted anywhere."""

    pass


class UnsupportedImageUrl(ImageServiceError):
    """URL is not a Feishu, proxy, local or data URL."""

    pass


class MissingImageId(ImageServiceError):
    """No image id could be derived from the request."""

    pass


class MissingImageSource(ImageServiceError):
    """Neither a file token nor a data URL was supplied."""

    pass


class ImageRecordNotFound(ImageServiceError):
    """No Feishu record with a file token exists for the image id."""

    pass


def _md5_name(seed: bytes, extension: str) -> str:
    return f"{hashlib.md5(seed).hexdigest()}.{extension}"


def _upload_extension(mime_type: str) -> str:
    if mime_type in ("image/jpeg", "image/jpg"):
        return "jpg"
    if mime_type == "image/webp":
        return "webp"
    return "png"


class ImageService:
    """
    Service layer for image operations.

    Generation and edits go to the model, results go to Feishu (always) and
    to local disk (unless stateless).
    """

    def __init__(
        self,
        feishu: FeishuClient | None = None,
        repository: ImageRepository | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.feishu = feishu or get_feishu_client()
        self.repository = repository or get_image_repository()
        self._http_transport = http_transport

    @property
    def stateless(self) -> bool:
        return self.repository.stateless

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save_image(
        self,
        data: bytes,
        prompt: str,
        mime_type: str = "image/png",
        options: ImageOptions | None = None,
        parent_id: str | None = None,
        kind: ImageKind | None = None,
    ) -> ImageMetadata:
        """
        Store an image locally and in Feishu.

        Raises:
            ImageSaveError: Feishu failed in a stateless deployment
        """
        options = options or ImageOptions()
        image_id = str(uuid4())
        extension = extension_for_mime(mime_type)
        filename = _md5_name(f"{prompt}{utc_now_ms()}".encode(), extension)

        if kind is None:
            kind = ImageKind.UPLOADED if options.is_uploaded_image else ImageKind.GENERATED

        root_parent_id = options.root_parent_id
        if not root_parent_id and options.is_uploaded_image and parent_id:
            root_parent_id = parent_id

        metadata = ImageMetadata(
            id=image_id,
            prompt=prompt,
            filename=filename,
            mime_type=mime_type,
            size=len(data),
            url=f"{IMAGES_URL_PREFIX}{filename}",
            type=kind,
            parent_id=parent_id,
            root_parent_id=root_parent_id,
        )

        self.repository.write_image(filename, data)
        self.repository.save_metadata(metadata)

        try:
            upload = await self.feishu.upload_image(data, f"{image_id}.{extension}", mime_type)
            await self.feishu.create_record(
                image_id=image_id,
                file_token=upload.file_token,
                url=upload.url,
                prompt=prompt,
                parent_id=parent_id,
                root_parent_id=root_parent_id,
                kind=metadata.type,
                timestamp=metadata.timestamp,
            )
        except FeishuError as exc:
            counter("images.feishu_sync_failed")
            logger.error("Feishu sync failed for image %s: %s", image_id, exc)
            if self.stateless:
                raise ImageSaveError(f"Unable to save image: {exc}") from exc
            metadata.feishu_sync_failed = True
            self.repository.save_metadata(metadata)
            return metadata

        metadata.feishu_url = upload.url
        metadata.feishu_file_token = upload.file_token
        self.repository.save_metadata(metadata)
        log_event("images.saved", image_id=image_id, kind=metadata.type, parent_id=parent_id)
        return metadata

    async def process_and_save(
        self,
        content: GeneratedContent,
        prompt: str,
        options: ImageOptions | None = None,
        parent_id: str | None = None,
        kind: ImageKind | None = None,
    ) -> ImageMetadata:
        if not content.has_image:
            raise NoImageGenerated("No image was generated")
        validated = validate_image(content.image_data, content.mime_type)
        return await self.save_image(
            validated.data, prompt, validated.mime_type, options, parent_id, kind=kind
        )

    # ------------------------------------------------------------------
    # Source images
    # ------------------------------------------------------------------

    async def fetch_image_from_url(self, url: str) -> tuple[bytes, str]:
        """
        Load image bytes from a local path, a data URL or an external URL.

        Raises:
            ImageFetchError: On any failure
        """
        if is_data_url(url):
            try:
                return parse_data_url(url)
            except InvalidDataUrl as exc:
                raise ImageFetchError(str(exc)) from exc

        if url.startswith("/"):
            try:
                return self.repository.read_public_file(url)
            except (StatelessStorageError, FileNotFoundError) as exc:
                raise ImageFetchError(str(exc)) from exc

        try:
            async with httpx.AsyncClient(
                transport=self._http_transport,
                timeout=EXTERNAL_FETCH_TIMEOUT,
                follow_redirects=True,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise ImageFetchError(f"Failed to fetch image: {exc}") from exc

        if not response.is_success:
            raise ImageFetchError(f"Failed to fetch image: HTTP {response.status_code}")

        mime_type = response.headers.get("content-type", "").split(";")[0].strip() or "image/jpeg"
        return response.content, mime_type

    async def _download_feishu(self, file_token: str) -> tuple[bytes, str]:
        try:
            return await self.feishu.download_image(file_token)
        except FeishuError as exc:
            raise ImageFetchError(f"Failed to fetch image from Feishu: {exc}") from exc

    async def _call_model(self, parts: list) -> GeneratedContent:
        response = await generate_image_content(parts)
        content = extract_generated_content(response)
        if not content.has_image:
            counter("model.no_image")
            raise NoImageGenerated("No image was generated")
        return content

    def _display_url(self, metadata: ImageMetadata) -> str:
        if self.stateless:
            return metadata.feishu_url or metadata.url
        return metadata.url

    # ------------------------------------------------------------------
    # Generate / edit
    # ------------------------------------------------------------------

    async def generate(self, prompt: str, options: ImageOptions | None = None) -> GenerationResult:
        """Generate a new image from a text prompt and store it."""
        content = await self._call_model([text_part(prompt)])
        metadata = await self.process_and_save(content, prompt, options)
        return GenerationResult(
            image_url=metadata.display_url,
            description=content.text,
            metadata=metadata,
            is_stateless=self.stateless,
        )

    async def _resolve_feishu_source(self, image_url: str) -> tuple[ImageRecord, str]:
        if not is_feishu_url(image_url):
            raise UnsupportedImageUrl("Only Feishu image URLs can be edited in a stateless environment")
        image_id = extract_image_id(image_url)
        if not image_id:
            raise MissingImageId("Unable to derive an image id from the Feishu URL")
        record = await self.feishu.find_record(image_id)
        if record is None or not record.file_token:
            raise ImageRecordNotFound(f"No image record or file token for {image_id}")
        root = record.root_parent_id or record.parent_id or record.id
        return record, root

    async def edit(self, prompt: str, image_url: str) -> GenerationResult:
        """
        One-shot edit: resolve the source image, edit it, store the result.

        The new image's parent is the edited image; its root is the lineage
        root of the source.
        """
        current_id: str | None = None
        root_id: str | None = None
        is_uploaded = False

        if self.stateless or is_feishu_url(image_url):
            record, root_id = await self._resolve_feishu_source(image_url)
            current_id = record.id
            is_uploaded = record.is_uploaded
            data, mime_type = await self._download_feishu(record.file_token)
        else:
            metadata = None
            if image_url.startswith(IMAGES_URL_PREFIX):
                metadata = self.repository.find_by_filename(image_url)
            if metadata is not None:
                current_id = metadata.id
                if metadata.type == ImageKind.UPLOADED.value:
                    is_uploaded = True
                    root_id = metadata.id
                else:
                    root_id = metadata.root_parent_id or metadata.parent_id or metadata.id
            data, mime_type = await self.fetch_image_from_url(image_url)

        content = await self._call_model([text_part(prompt), image_part(data, mime_type)])
        saved = await self.process_and_save(
            content,
            prompt,
            ImageOptions(is_uploaded_image=is_uploaded, root_parent_id=root_id),
            parent_id=current_id,
            kind=ImageKind.EDITED,
        )

        if root_id:
            entry = EditHistoryEntry(
                id=saved.id,
                image_id=current_id or root_id,
                prompt=prompt,
                result_image_id=saved.id,
                root_parent_id=root_id,
                created_at=saved.created_at,
            )
            try:
                self.repository.append_edit_history(root_id, entry)
            except OSError as exc:
                logger.error("Failed to record edit history for %s: %s", root_id, exc)

        return GenerationResult(
            image_url=self._display_url(saved),
            description=content.text,
            metadata=saved,
            is_stateless=self.stateless,
        )

    async def prepare_edit(
        self,
        image_url: str,
        original_image_id: str | None = None,
        root_parent_id: str | None = None,
    ) -> EditPreparation:
        """
        Resolve an image URL to the record edit-execute will work on.

        Raises:
            UnsupportedImageUrl: Unknown URL kind
            MissingImageId: No id derivable
            ImageRecordNotFound: No record with a file token
        """
        image_id: str | None = None

        if is_feishu_url(image_url) and not is_proxy_url(image_url):
            image_id = extract_image_id(image_url)
        elif is_proxy_url(image_url):
            inner = unwrap_proxy_url(image_url)
            image_id = extract_image_id(inner) if inner else None
        elif is_local_url(image_url):
            if not self.stateless and image_url.startswith(IMAGES_URL_PREFIX):
                image_id = self.repository.id_for_url(image_url)
            image_id = image_id or local_image_id(image_url)
        elif is_data_url(image_url):
            image_id = original_image_id or root_parent_id
        else:
            raise UnsupportedImageUrl("Unsupported URL type; use a Feishu image URL or a local image")

        if not image_id:
            raise MissingImageId("Unable to get an image id from the image URL")

        record = await self.feishu.find_record(image_id)
        if record is None or not record.file_token:
            raise ImageRecordNotFound(f"Unable to get image record or file token: {image_id}")

        parent = record.parent_id if is_image_id(record.parent_id) else image_id
        root = record.root_parent_id if is_image_id(record.root_parent_id) else image_id

        logger.info("Prepared edit of %s (parent=%s, root=%s)", image_id, parent, root)
        return EditPreparation(
            prepare_id=image_id,
            file_token=record.file_token,
            parent_id=parent,
            root_parent_id=root,
            is_uploaded_image=record.is_uploaded,
            original_url=image_url,
        )

    async def execute_edit(
        self,
        prompt: str,
        prepare_id: str | None,
        file_token: str | None = None,
        parent_id: str | None = None,
        root_parent_id: str | None = None,
        is_uploaded_image: bool = False,
        data_url: str | None = None,
    ) -> EditResult:
        """
        Edit a prepared image and store the result in Feishu.

        The stored image uses its Feishu file token as record id.

        Raises:
            MissingImageSource: Neither file_token nor data_url given
            ImageFetchError / InvalidDataUrl: Source image unavailable
            NoImageGenerated: Model returned no image
            ImageSaveError: Upload or record creation failed
        """
        if not file_token and not data_url:
            raise MissingImageSource("Missing image source (file_token or data_url)")

        if data_url:
            data, mime_type = parse_data_url(data_url)
        else:
            data, mime_type = await self._download_feishu(file_token)

        content = await self._call_model([text_part(build_edit_prompt(prompt)), image_part(data, mime_type)])

        new_parent = prepare_id or parent_id or ""
        new_root = root_parent_id
        if not new_root:
            new_root = parent_id if parent_id and parent_id == prepare_id else (prepare_id or parent_id or "")

        timestamp = utc_now_ms()
        try:
            upload = await self.feishu.upload_image(
                content.image_data, f"edited_image_{timestamp}.png", content.mime_type
            )
            await self.feishu.create_record(
                image_id=upload.file_token,
                file_token=upload.file_token,
                url=upload.url,
                prompt=prompt,
                parent_id=new_parent,
                root_parent_id=new_root,
                kind=ImageKind.EDITED.value,
                timestamp=timestamp,
            )
        except FeishuError as exc:
            raise ImageSaveError(f"Failed to save edited image: {exc}") from exc

        log_event("images.edit_executed", image_id=upload.file_token, parent_id=new_parent, root=new_root)
        return EditResult(
            image_data=content.image_base64,
            mime_type=content.mime_type,
            id=upload.file_token,
            prompt=prompt,
            file_token=upload.file_token,
            prepare_id=prepare_id or "",
            parent_id=new_parent,
            root_parent_id=new_root,
            is_uploaded_image=is_uploaded_image,
            text_response=content.text,
            feishu_url=upload.url,
        )

    async def save_to_feishu(
        self,
        image_data: str,
        mime_type: str,
        prompt: str | None = None,
        prepare_id: str | None = None,
        root_parent_id: str | None = None,
        is_uploaded_image: bool = False,
        additional_metadata: dict[str, Any] | None = None,
    ) -> SaveResult:
        """
        Upload base64 image data and record it as a child of ``prepare_id``.

        A failed record write after a successful upload still succeeds, with
        a warning.
        """
        if is_data_url(image_data):
            data, mime_type = parse_data_url(image_data)
        else:
            try:
                data = base64.b64decode(image_data, validate=False)
            except (binascii.Error, ValueError) as exc:
                raise InvalidDataUrl(f"Invalid base64 image data: {exc}") from exc
        if not data:
            raise InvalidImageError("Image data is empty")

        image_id = str(uuid4())
        extension = mime_type.split("/")[-1] or "png"
        upload = await self.feishu.upload_image(data, f"{image_id}.{extension}", mime_type)

        root = root_parent_id or prepare_id
        kind = ImageKind.UPLOADED if is_uploaded_image else ImageKind.GENERATED
        try:
            record_id = await self.feishu.create_record(
                image_id=image_id,
                file_token=upload.file_token,
                url=upload.url,
                prompt=prompt or SAVE_DEFAULT_PROMPT,
                parent_id=prepare_id,
                root_parent_id=root,
                kind=kind.value,
                extra_fields=additional_metadata,
            )
        except FeishuError as exc:
            logger.error("Image %s uploaded but record save failed: %s", image_id, exc)
            return SaveResult(
                id=image_id,
                file_token=upload.file_token,
                url=upload.url,
                parent_id=prepare_id,
                root_parent_id=root,
                warning=f"Failed to save record to Feishu: {exc}",
            )

        return SaveResult(
            id=image_id,
            file_token=upload.file_token,
            url=upload.url,
            record_id=record_id,
            parent_id=prepare_id,
            root_parent_id=root,
        )

    async def upload(self, data: bytes, mime_type: str, prompt: str | None = None) -> ImageMetadata:
        """
        Store a user-uploaded original image.

        Feishu sync failures are tolerated locally and fatal when stateless.
        """
        if not data:
            raise InvalidImageError("Image data is empty")

        filename = _md5_name(data, _upload_extension(mime_type))
        metadata = ImageMetadata(
            id=str(uuid4()),
            prompt=prompt or UPLOAD_DEFAULT_PROMPT,
            filename=filename,
            mime_type=mime_type,
            size=len(data),
            url=f"{IMAGES_URL_PREFIX}{filename}",
            type=ImageKind.UPLOADED,
        )

        self.repository.write_image(filename, data)
        self.repository.save_metadata(metadata)

        try:
            upload = await self.feishu.upload_image(data, filename, mime_type)
            await self.feishu.create_record(
                image_id=metadata.id,
                file_token=upload.file_token,
                url=upload.url,
                prompt=metadata.prompt,
                kind=ImageKind.UPLOADED.value,
                timestamp=metadata.timestamp,
            )
        except FeishuError as exc:
            counter("images.feishu_sync_failed")
            logger.error("Feishu sync failed for upload %s: %s", metadata.id, exc)
            if self.stateless:
                raise ImageSaveError(f"Unable to save uploaded image: {exc}") from exc
            metadata.feishu_sync_failed = True
        else:
            metadata.feishu_url = upload.url
            metadata.feishu_file_token = upload.file_token

        self.repository.save_metadata(metadata)
        return metadata

    # ------------------------------------------------------------------
    # Gallery / history
    # ------------------------------------------------------------------

    def _local_history(self, image_id: str) -> list[EditHistoryEntry]:
        if self.stateless:
            return []
        return self.repository.edit_history(image_id)

    async def images_with_history(self) -> Forest:
        """Build the lineage forest over every Feishu record."""
        records = await self.feishu.list_records()
        return build_forest(records)

    async def image_history(self, image_id: str) -> tuple[ImageGroup | None, list[ImageRecord]]:
        """The lineage group containing ``image_id`` plus its ancestor path."""
        records = await self.feishu.list_records()
        forest = build_forest(records)
        group = group_for(forest, image_id)
        if group is None:
            return None, []
        return group, lineage_of(forest, image_id)

    async def edit_history(self, image_id: str) -> list[EditHistoryEntry]:
        """Feishu-derived and locally recorded edit history, deduplicated by id."""
        entries: dict[str, EditHistoryEntry] = {}
        for entry in await self.feishu.edit_history(image_id):
            entries.setdefault(entry.id, entry)
        for entry in self._local_history(image_id):
            entries.setdefault(entry.id, entry)
        return sorted(entries.values(), key=lambda e: (e.created_at, e.id))

    def image_metadata(self, path: str | None = None, image_id: str | None = None) -> ImageMetadata | None:
        """Local metadata by stored image path or id."""
        if path:
            return self.repository.find_by_filename(path)
        if image_id:
            return self.repository.get_metadata(image_id)
        return None

    def cleanup(self, max_age_days: int) -> int:
        return self.repository.cleanup_old_images(max_age_days)


_service: ImageService | None = None


def get_image_service() -> ImageService:
    """Get or create singleton ImageService instance."""
    global _service
    if _service is None:
        _service = ImageService()
    return _service
