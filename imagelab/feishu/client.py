"""
Feishu open-platform client: image storage + Bitable image records.

Feishu is both the blob store (``im/v1/images``) and the metadata table
(``bitable/v1/apps/{app_token}/tables/{table_id}/records``).  All calls go
through a tenant access token cached until shortly before it expires.
"""

from __future__ import annotations

import json
import os
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from cachetools import TLRUCache

from imagelab.config import (
    DEFAULT_PROMPT,
    FEISHU_DEFAULT_BASE_URL,
    FEISHU_DOWNLOAD_TIMEOUT,
    FEISHU_MAX_RETRIES,
    FEISHU_PAGE_SIZE,
    FEISHU_RECORD_TIMEOUT,
    FEISHU_TOKEN_SAFETY_MARGIN_SECONDS,
    FEISHU_TOKEN_TIMEOUT,
    FEISHU_TYPE_FIELD,
    FEISHU_UPLOAD_TIMEOUT,
)
from imagelab.feishu.models import EditHistoryEntry, ImageRecord, UploadResult, utc_now_ms
from imagelab.infrastructure.retry import AdapterError, RetryPolicy
from imagelab.observability.logging import get_logger
from imagelab.observability.telemetry import counter, log_event, time_block

logger = get_logger(__name__)

FEISHU_IMAGE_KEY_PREFIX = "img_v3_"


class FeishuError(AdapterError):
    """Base exception for Feishu API failures."""


class FeishuConfigError(FeishuError):
    """Required Feishu settings are missing."""


class FeishuAuthError(FeishuError):
    """Tenant access token could not be obtained."""


class FeishuUploadError(FeishuError):
    """Image upload to Feishu storage failed."""


class FeishuRecordError(FeishuError):
    """Bitable record create or query failed."""


class FeishuDownloadError(FeishuError):
    """Image download from Feishu storage failed."""


def _token_ttu(_key: str, value: tuple[str, float], now: float) -> float:
    return now + value[1]


def _parse_body(response: httpx.Response, error_cls: type[FeishuError], action: str) -> dict[str, Any]:
    """Decode a Feishu JSON envelope, raising ``error_cls`` on any failure."""
    content_type = response.headers.get("content-type", "")
    text = response.text

    if response.status_code >= 400:
        raise error_cls(
            f"{action} failed with HTTP {response.status_code}: {text[:200]}",
            status_code=response.status_code,
        )

    if "text/html" in content_type or text.lstrip().startswith("<"):
        raise error_cls(f"{action} returned HTML instead of JSON", status_code=response.status_code)

    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError) as exc:
        raise error_cls(f"{action} returned invalid JSON: {text[:200]}", status_code=response.status_code) from exc

    if not isinstance(body, dict):
        raise error_cls(f"{action} returned unexpected payload", status_code=response.status_code)

    if body.get("code", 0) != 0:
        # API-level rejection; treated as a client error so it is not retried
        raise error_cls(
            f"{action} rejected: {body.get('msg') or 'unknown error'} (code {body.get('code')})",
            status_code=400,
        )
    return body


class FeishuClient:
    """
    Async client for the Feishu endpoints the image service needs.

    Credentials are read from the environment at construction time unless
    passed explicitly.  ``transport`` lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        app_id: str | None = None,
        app_secret: str | None = None,
        app_token: str | None = None,
        table_id: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.app_id = app_id if app_id is not None else os.getenv("FEISHU_APP_ID", "")
        self.app_secret = app_secret if app_secret is not None else os.getenv("FEISHU_APP_SECRET", "")
        self.app_token = app_token if app_token is not None else os.getenv("FEISHU_APP_TOKEN", "")
        self.table_id = table_id if table_id is not None else os.getenv("FEISHU_TABLE_ID", "")
        self.base_url = (base_url or os.getenv("FEISHU_BASE_URL") or FEISHU_DEFAULT_BASE_URL).rstrip("/")
        self._transport = transport
        self._token_cache: TLRUCache[str, tuple[str, float]] = TLRUCache(
            maxsize=1, ttu=_token_ttu, timer=time.monotonic
        )

        policy_kwargs: dict[str, Any] = {"max_attempts": FEISHU_MAX_RETRIES}
        if sleep_fn is not None:
            policy_kwargs["sleep_fn"] = sleep_fn
        self._upload_policy = RetryPolicy(stage="feishu.upload", **policy_kwargs)
        self._record_policy = RetryPolicy(stage="feishu.record", **policy_kwargs)

        logger.info(
            "FeishuClient initialized (app_id set: %s, table configured: %s)",
            bool(self.app_id),
            self.table_configured,
        )

    @property
    def table_configured(self) -> bool:
        return bool(self.app_token and self.table_id)

    def _http(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            transport=self._transport,
            timeout=timeout,
        )

    def _records_path(self) -> str:
        if not self.table_configured:
            raise FeishuConfigError("FEISHU_APP_TOKEN and FEISHU_TABLE_ID must be set")
        return f"/bitable/v1/apps/{self.app_token}/tables/{self.table_id}/records"

    def image_url(self, file_token: str) -> str:
        """Public Feishu URL for an uploaded image key."""
        return f"{self.base_url}/image/v4/get?image_key={file_token}"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        """
        Return a tenant access token, reusing the cached one while valid.

        Raises:
            FeishuConfigError: app id / secret missing
            FeishuAuthError: token endpoint failed or returned code != 0
        """
        cached = self._token_cache.get("tenant")
        if cached is not None:
            return cached[0]

        if not self.app_id or not self.app_secret:
            raise FeishuConfigError("FEISHU_APP_ID and FEISHU_APP_SECRET must be set")

        try:
            async with self._http(FEISHU_TOKEN_TIMEOUT) as client:
                response = await client.post(
                    "/auth/v3/tenant_access_token/internal",
                    json={"app_id": self.app_id, "app_secret": self.app_secret},
                )
        except httpx.RequestError as exc:
            counter("feishu_errors")
            raise FeishuAuthError(f"Token request failed: {exc}") from exc

        try:
            body = _parse_body(response, FeishuAuthError, "Token request")
        except FeishuAuthError:
            counter("feishu_errors")
            raise

        token = body.get("tenant_access_token")
        if not token:
            raise FeishuAuthError("Token response missing tenant_access_token")

        expire = int(body.get("expire", 7200))
        ttl = max(expire - FEISHU_TOKEN_SAFETY_MARGIN_SECONDS, 0)
        if ttl > 0:
            self._token_cache["tenant"] = (token, float(ttl))
        log_event("feishu.token_refreshed", expires_in=expire)
        return token

    def clear_token(self) -> None:
        self._token_cache.clear()

    # ------------------------------------------------------------------
    # Image storage
    # ------------------------------------------------------------------

    async def upload_image(self, data: bytes, file_name: str, mime_type: str) -> UploadResult:
        """
        Upload image bytes to Feishu storage.

        Returns:
            UploadResult with the image key and its Feishu URL

        Raises:
            FeishuUploadError: HTTP, JSON, HTML or API failure
        """
        if not data:
            raise FeishuUploadError("Cannot upload empty image data", status_code=400)

        token = await self.get_access_token()

        async def _attempt() -> dict[str, Any]:
            try:
                async with self._http(FEISHU_UPLOAD_TIMEOUT) as client:
                    response = await client.post(
                        "/im/v1/images",
                        headers={"Authorization": f"Bearer {token}"},
                        data={"image_type": "message"},
                        files={"image": (file_name, data, mime_type)},
                    )
            except httpx.RequestError as exc:
                raise FeishuUploadError(f"Upload request failed: {exc}") from exc
            return _parse_body(response, FeishuUploadError, "Image upload")

        with time_block("feishu.upload.latency"):
            try:
                body = await self._upload_policy.execute(_attempt)
            except FeishuError:
                counter("feishu_errors")
                raise

        image_key = (body.get("data") or {}).get("image_key")
        if not image_key:
            counter("feishu_errors")
            raise FeishuUploadError("Upload response missing image_key")

        logger.info("Uploaded %s (%d bytes) to Feishu as %s", file_name, len(data), image_key)
        return UploadResult(file_token=image_key, url=self.image_url(image_key))

    async def download_image(self, file_token: str) -> tuple[bytes, str]:
        """
        Download image bytes by image key.

        Returns:
            (bytes, content_type); non-image content types are reported as image/jpeg
        """
        token = await self.get_access_token()
        try:
            async with self._http(FEISHU_DOWNLOAD_TIMEOUT) as client:
                response = await client.get(
                    f"/im/v1/images/{file_token}",
                    headers={"Authorization": f"Bearer {token}", "Accept": "image/*"},
                    follow_redirects=True,
                )
        except httpx.RequestError as exc:
            counter("feishu_errors")
            raise FeishuDownloadError(f"Image download failed: {exc}") from exc

        if response.status_code != 200:
            counter("feishu_errors")
            raise FeishuDownloadError(
                f"Image download failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not content_type.startswith("image/"):
            content_type = "image/jpeg"
        return response.content, content_type

    # ------------------------------------------------------------------
    # Bitable records
    # ------------------------------------------------------------------

    async def create_record(
        self,
        image_id: str,
        file_token: str,
        url: str,
        prompt: str = "",
        parent_id: str | None = None,
        root_parent_id: str | None = None,
        kind: str | None = None,
        timestamp: int | None = None,
        extra_fields: dict[str, Any] | None = None,
    ) -> str:
        """
        Create one image record and return its ``record_id``.

        Raises:
            FeishuConfigError: app token / table id missing
            FeishuRecordError: HTTP, JSON or API failure
        """
        path = self._records_path()
        fields: dict[str, Any] = {}
        if extra_fields:
            fields.update(extra_fields)
        fields.update(
            {
                "id": image_id,
                "file_token": file_token,
                "url": url,
                "prompt": prompt or DEFAULT_PROMPT,
                "timestamp": timestamp if timestamp is not None else utc_now_ms(),
                "parentId": parent_id or "",
                "rootParentId": root_parent_id or "",
            }
        )
        if kind and FEISHU_TYPE_FIELD:
            fields[FEISHU_TYPE_FIELD] = kind

        token = await self.get_access_token()

        async def _attempt() -> dict[str, Any]:
            try:
                async with self._http(FEISHU_RECORD_TIMEOUT) as client:
                    response = await client.post(
                        path,
                        headers={"Authorization": f"Bearer {token}"},
                        json={"fields": fields},
                    )
            except httpx.RequestError as exc:
                raise FeishuRecordError(f"Record create request failed: {exc}") from exc
            return _parse_body(response, FeishuRecordError, "Record create")

        try:
            body = await self._record_policy.execute(_attempt)
        except FeishuError:
            counter("feishu_errors")
            raise

        record = (body.get("data") or {}).get("record") or {}
        record_id = record.get("record_id") or record.get("id") or ""
        logger.info("Created Feishu record %s for image %s", record_id, image_id)
        return record_id

    async def list_records(self, filter_expr: str | None = None) -> list[ImageRecord]:
        """Read every page of the image table, optionally filtered."""
        path = self._records_path()
        token = await self.get_access_token()

        records: list[ImageRecord] = []
        page_token: str | None = None

        async with self._http(FEISHU_RECORD_TIMEOUT) as client:
            while True:
                params: dict[str, Any] = {"page_size": FEISHU_PAGE_SIZE}
                if filter_expr:
                    params["filter"] = filter_expr
                if page_token:
                    params["page_token"] = page_token

                async def _attempt(params: dict[str, Any] = params) -> dict[str, Any]:
                    try:
                        response = await client.get(
                            path,
                            headers={"Authorization": f"Bearer {token}"},
                            params=params,
                        )
                    except httpx.RequestError as exc:
                        raise FeishuRecordError(f"Record list request failed: {exc}") from exc
                    return _parse_body(response, FeishuRecordError, "Record list")

                try:
                    body = await self._record_policy.execute(_attempt)
                except FeishuError:
                    counter("feishu_errors")
                    raise

                data = body.get("data") or {}
                for item in data.get("items") or []:
                    records.append(ImageRecord.from_bitable(item))

                page_token = data.get("page_token")
                if not data.get("has_more") or not page_token:
                    break

        logger.debug("Listed %d Feishu records (filter=%s)", len(records), filter_expr)
        return records

    async def find_record(self, image_id: str) -> ImageRecord | None:
        """
        Resolve an image id or Feishu image key to a record with a file token.

        Returns None when nothing usable is found or the lookup fails.
        """
        if not image_id:
            return None

        try:
            if image_id.startswith(FEISHU_IMAGE_KEY_PREFIX):
                for record in await self.list_records():
                    if record.file_token == image_id:
                        return record
                # Key with no record: treat as a bare uploaded image
                return ImageRecord(
                    id=image_id,
                    file_token=image_id,
                    url=self.image_url(image_id),
                    prompt="",
                    type="uploaded",
                )

            matches = await self.list_records(f'CurrentValue.[id] = "{image_id}"')
            for record in matches:
                if record.file_token:
                    return record

            for record in await self.list_records():
                if record.file_token == image_id:
                    return record
        except FeishuError as exc:
            logger.warning("Feishu record lookup failed for %s: %s", image_id, exc)
            return None

        logger.info("No Feishu record found for %s", image_id)
        return None

    async def edit_history(self, image_id: str) -> list[EditHistoryEntry]:
        """Edit steps touching ``image_id`` as parent, self or lineage root."""
        filter_expr = (
            f'CurrentValue.[parentId] = "{image_id}" OR '
            f'CurrentValue.[id] = "{image_id}" OR '
            f'CurrentValue.[rootParentId] = "{image_id}"'
        )
        try:
            records = await self.list_records(filter_expr)
        except FeishuError as exc:
            logger.warning("Feishu edit history failed for %s: %s", image_id, exc)
            return []

        history: list[EditHistoryEntry] = []
        for record in records:
            entry = EditHistoryEntry.from_record(record)
            if not entry.image_id or not entry.result_image_id or entry.id == entry.image_id:
                continue
            history.append(entry)
        return history


_client: FeishuClient | None = None


def get_feishu_client() -> FeishuClient:
    """Get or create the Feishu client singleton."""
    global _client
    if _client is None:
        _client = FeishuClient()
    return _client


def reset_feishu_client() -> None:
    """Drop the singleton so the next call re-reads the environment."""
    global _client
    _client = None
