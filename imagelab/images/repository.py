"""
Local file store for generated images, their metadata and edit history.

Layout:
    public/generated-images/<md5>.<ext>      image bytes (served statically)
    data/metadata/<id>.json                  ImageMetadata
    data/edit-history/<root_id>.json         list of EditHistoryEntry

In stateless deployments (no writable disk) writes are skipped and reads of
local files raise StatelessStorageError; Feishu is then the only store.
"""

from __future__ import annotations

import json
import time
from pathlib import Path

from pydantic import ValidationError

from imagelab.config import CLEANUP_MAX_AGE_DAYS, METADATA_LIST_LIMIT
from imagelab.feishu.models import EditHistoryEntry
from imagelab.images.models import ImageMetadata
from imagelab.images.validation import mime_for_extension
from imagelab.infrastructure import settings
from imagelab.observability.logging import get_logger

logger = get_logger(__name__)


class StatelessStorageError(RuntimeError):
    """Local file access attempted in a stateless deployment."""


class ImageRepository:
    """Filesystem persistence for images and metadata."""

    def __init__(
        self,
        public_dir: Path | None = None,
        images_dir: Path | None = None,
        metadata_dir: Path | None = None,
        history_dir: Path | None = None,
    ):
        self.public_dir = Path(public_dir or settings.PUBLIC_DIR)
        self.images_dir = Path(images_dir or self.public_dir / "generated-images")
        self.metadata_dir = Path(metadata_dir or settings.METADATA_DIR)
        self.history_dir = Path(history_dir or settings.EDIT_HISTORY_DIR)

    @property
    def stateless(self) -> bool:
        return settings.is_stateless()

    def _require_local(self, action: str) -> None:
        if self.stateless:
            raise StatelessStorageError(f"Cannot {action} in a stateless environment")

    def init_directories(self) -> None:
        if self.stateless:
            logger.info("Stateless environment, skipping directory initialization")
            return
        for directory in (self.images_dir, self.metadata_dir, self.history_dir):
            directory.mkdir(parents=True, exist_ok=True)
        logger.info("Storage directories ready under %s", self.public_dir.parent)

    # ------------------------------------------------------------------
    # Images + metadata
    # ------------------------------------------------------------------

    def write_image(self, filename: str, data: bytes) -> Path | None:
        """Write image bytes; returns None when skipped in stateless mode."""
        if self.stateless:
            return None
        self.images_dir.mkdir(parents=True, exist_ok=True)
        path = self.images_dir / filename
        path.write_bytes(data)
        return path

    def save_metadata(self, metadata: ImageMetadata) -> None:
        if self.stateless:
            return
        self.metadata_dir.mkdir(parents=True, exist_ok=True)
        path = self.metadata_dir / f"{metadata.id}.json"
        path.write_text(json.dumps(metadata.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")

    def _load(self, path: Path) -> ImageMetadata | None:
        try:
            return ImageMetadata.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.error("Unreadable metadata file %s: %s", path.name, exc)
            return None

    def get_metadata(self, image_id: str) -> ImageMetadata | None:
        self._require_local("read image metadata")
        # ids are UUIDs; reject anything that would escape the directory
        if not image_id or "/" in image_id or "\\" in image_id or image_id.startswith("."):
            return None
        path = self.metadata_dir / f"{image_id}.json"
        if not path.exists():
            return None
        return self._load(path)

    def find_by_filename(self, filename: str) -> ImageMetadata | None:
        """Find metadata for a stored image filename (basename of its URL)."""
        self._require_local("look up images by filename")
        name = Path(filename).name
        if not self.metadata_dir.exists():
            return None
        for path in self.metadata_dir.glob("*.json"):
            metadata = self._load(path)
            if metadata and metadata.filename == name:
                return metadata
        return None

    def id_for_url(self, url: str) -> str | None:
        """Image id behind a local ``/generated-images/<file>`` URL."""
        if not url.startswith(settings.IMAGES_URL_PREFIX) or self.stateless:
            return None
        metadata = self.find_by_filename(url)
        return metadata.id if metadata else None

    def _metadata_files_newest_first(self) -> list[Path]:
        if not self.metadata_dir.exists():
            return []
        files = list(self.metadata_dir.glob("*.json"))
        files.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        return files

    def list_metadata(self, limit: int = METADATA_LIST_LIMIT, offset: int = 0) -> list[ImageMetadata]:
        self._require_local("list image metadata")
        page = self._metadata_files_newest_first()[offset : offset + limit]
        return [m for m in (self._load(p) for p in page) if m is not None]

    def cleanup_old_images(self, max_age_days: int = CLEANUP_MAX_AGE_DAYS) -> int:
        """Delete images whose metadata file is older than ``max_age_days``."""
        self._require_local("clean up images")
        cutoff = time.time() - max_age_days * 24 * 60 * 60
        deleted = 0

        for path in self._metadata_files_newest_first():
            if path.stat().st_mtime >= cutoff:
                continue
            metadata = self._load(path)
            try:
                if metadata is not None:
                    (self.images_dir / metadata.filename).unlink(missing_ok=True)
                path.unlink()
                deleted += 1
            except OSError as exc:
                logger.error("Failed to delete %s: %s", path.name, exc)

        logger.info("Cleanup removed %d images older than %d days", deleted, max_age_days)
        return deleted

    def read_public_file(self, url_path: str) -> tuple[bytes, str]:
        """
        Read a file served from public/ by its URL path.

        Raises:
            StatelessStorageError: In stateless mode
            FileNotFoundError: Missing file or path outside public/
        """
        self._require_local(f"read local file {url_path}")
        root = self.public_dir.resolve()
        path = (root / url_path.split("?", 1)[0].lstrip("/")).resolve()
        if root not in path.parents or not path.is_file():
            raise FileNotFoundError(f"File not found: {url_path}")
        return path.read_bytes(), mime_for_extension(path.suffix)

    # ------------------------------------------------------------------
    # Edit history
    # ------------------------------------------------------------------

    def _history_path(self, root_id: str) -> Path:
        return self.history_dir / f"{Path(root_id).name}.json"

    def edit_history(self, root_id: str) -> list[EditHistoryEntry]:
        if self.stateless:
            return []
        path = self._history_path(root_id)
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return [EditHistoryEntry.model_validate(item) for item in raw]
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.error("Unreadable edit history %s: %s", path.name, exc)
            return []

    def append_edit_history(self, root_id: str, entry: EditHistoryEntry) -> None:
        if self.stateless:
            return
        self.history_dir.mkdir(parents=True, exist_ok=True)
        entries = [e for e in self.edit_history(root_id) if e.id != entry.id]
        entries.append(entry)
        self._history_path(root_id).write_text(
            json.dumps([e.model_dump() for e in entries], indent=2, ensure_ascii=False),
            encoding="utf-8",
        )


_repository: ImageRepository | None = None


def get_image_repository() -> ImageRepository:
    """Get or create the image repository singleton."""
    global _repository
    if _repository is None:
        _repository = ImageRepository()
    return _repository
