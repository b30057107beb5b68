"""
Feishu record models.

Bitable returns weakly typed rows: text columns arrive either as plain strings
or as lists of rich-text segments, timestamps arrive as epoch milliseconds,
numeric strings, ISO strings or localized date text, and the file token may
live in a text column or in an attachment column.  Everything is normalized
here so the rest of the app only sees ImageRecord.
"""

from __future__ import annotations

import math
import re
from datetime import UTC, datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from imagelab.config import FEISHU_TYPE_FIELD
from imagelab.observability.logging import get_logger

logger = get_logger(__name__)

# Feishu renders date text in China Standard Time
_DISPLAY_TZ = timezone(timedelta(hours=8))

_LOCALIZED_DATE = re.compile(
    r"(\d{4})\s*[年/]\s*(\d{1,2})\s*[月/]\s*(\d{1,2})\s*日?"
    r"(?:\s*(\d{1,2}):(\d{2})(?::(\d{2}))?)?"
)

# 9999-12-31T23:59:59.999Z, the last instant a datetime can hold
MAX_TIMESTAMP_MS = 253402300799999


def utc_now_ms() -> int:
    """Return current UTC time as epoch milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


def ms_to_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=UTC).isoformat().replace("+00:00", "Z")


class ImageKind(str, Enum):
    """How an image entered the system."""

    UPLOADED = "uploaded"
    GENERATED = "generated"
    EDITED = "edited"


def coerce_text(value: Any) -> str:
    """Flatten a Bitable cell into plain text.

    Handles plain strings, numbers, rich-text segment lists
    (``[{"type": "text", "text": "..."}]``) and link cells (``{"link": ...}``).
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float):
        return str(int(value)) if float(value).is_integer() else str(value)
    if isinstance(value, list):
        return "".join(coerce_text(item) for item in value)
    if isinstance(value, dict):
        for key in ("text", "link", "name", "value"):
            if key in value:
                return coerce_text(value[key])
    return str(value)


def _checked_ms(value: int | float) -> int | None:
    """Epoch milliseconds if ``value`` is finite and a datetime can hold it."""
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        value = int(value)
    return value if 0 <= value <= MAX_TIMESTAMP_MS else None


def parse_timestamp(value: Any) -> int | None:
    """Normalize a Bitable timestamp cell to epoch milliseconds.

    Returns None when the value cannot be interpreted or falls outside
    1970-01-01 .. 9999-12-31.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return _checked_ms(value)

    text = coerce_text(value).strip()
    if not text:
        return None

    try:
        return _checked_ms(float(text))
    except ValueError:
        pass

    if "年" in text or "/" in text:
        match = _LOCALIZED_DATE.search(text)
        if not match:
            return None
        year, month, day, hour, minute, second = match.groups()
        try:
            parsed = datetime(
                int(year),
                int(month),
                int(day),
                int(hour or 0),
                int(minute or 0),
                int(second or 0),
                tzinfo=_DISPLAY_TZ,
            )
        except ValueError:
            return None
        return _checked_ms(int(parsed.timestamp() * 1000))

    if "-" in text or "T" in text:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return _checked_ms(int(parsed.timestamp() * 1000))

    return None


class UploadResult(BaseModel):
    """Result of uploading image bytes to Feishu storage."""

    file_token: str = Field(..., description="Feishu image_key")
    url: str = Field(..., description="Feishu URL serving the image")


class ImageRecord(BaseModel):
    """One row of the Bitable image table, normalized."""

    model_config = ConfigDict(frozen=False, use_enum_values=True)

    id: str
    record_id: str | None = None
    url: str = ""
    file_token: str = ""
    prompt: str = ""
    timestamp: int = Field(default_factory=utc_now_ms, description="Epoch milliseconds")
    parent_id: str | None = None
    root_parent_id: str | None = None
    type: ImageKind = ImageKind.GENERATED

    @property
    def created_at(self) -> str:
        return ms_to_iso(self.timestamp)

    @property
    def is_uploaded(self) -> bool:
        return self.type == ImageKind.UPLOADED.value

    @classmethod
    def from_bitable(cls, item: dict[str, Any]) -> ImageRecord:
        """Build a record from a raw ``data.items[]`` entry."""
        fields = item.get("fields") or {}
        record_id = item.get("record_id")

        file_token = coerce_text(fields.get("file_token")).strip()
        if not file_token:
            attachment = fields.get("attachment")
            if isinstance(attachment, list) and attachment:
                first = attachment[0] if isinstance(attachment[0], dict) else {}
                file_token = coerce_text(first.get("file_token")).strip()

        raw_timestamp = fields.get("timestamp")
        timestamp = parse_timestamp(raw_timestamp)
        if timestamp is None:
            if raw_timestamp not in (None, ""):
                logger.warning("Unparseable timestamp %r on record %s", raw_timestamp, record_id)
            timestamp = utc_now_ms()

        kind_text = coerce_text(fields.get(FEISHU_TYPE_FIELD or "type")).strip()
        try:
            kind = ImageKind(kind_text) if kind_text else ImageKind.GENERATED
        except ValueError:
            kind = ImageKind.GENERATED

        return cls(
            id=coerce_text(fields.get("id")).strip() or record_id or "unknown",
            record_id=record_id,
            url=coerce_text(fields.get("url")).strip(),
            file_token=file_token,
            prompt=coerce_text(fields.get("prompt")),
            timestamp=timestamp,
            parent_id=coerce_text(fields.get("parentId")).strip() or None,
            root_parent_id=coerce_text(fields.get("rootParentId")).strip() or None,
            type=kind,
        )


class EditHistoryEntry(BaseModel):
    """One edit step: ``image_id`` was edited with ``prompt`` into ``result_image_id``."""

    id: str
    image_id: str
    prompt: str = ""
    result_image_id: str
    root_parent_id: str | None = None
    created_at: str
    type: str = "edit"

    @classmethod
    def from_record(cls, record: ImageRecord) -> EditHistoryEntry:
        return cls(
            id=record.id,
            image_id=record.parent_id or "",
            prompt=record.prompt,
            result_image_id=record.id,
            root_parent_id=record.root_parent_id,
            created_at=record.created_at,
        )
