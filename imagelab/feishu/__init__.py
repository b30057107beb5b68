"""
Feishu open-platform integration: image storage plus the Bitable table of
image records.
"""

from imagelab.feishu.client import (
    FeishuAuthError,
    FeishuClient,
    FeishuConfigError,
    FeishuDownloadError,
    FeishuError,
    FeishuRecordError,
    FeishuUploadError,
    get_feishu_client,
)
from imagelab.feishu.models import EditHistoryEntry, ImageKind, ImageRecord, UploadResult

__all__ = [
    "EditHistoryEntry",
    "FeishuAuthError",
    "FeishuClient",
    "FeishuConfigError",
    "FeishuDownloadError",
    "FeishuError",
    "FeishuRecordError",
    "FeishuUploadError",
    "ImageKind",
    "ImageRecord",
    "UploadResult",
    "get_feishu_client",
]
