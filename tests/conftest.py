"""
Pytest configuration for imagelab tests

Provides fixtures shared across unit and integration tests:
- environment isolation (no real Feishu / Gemini credentials)
- an in-memory Feishu backend behind httpx.MockTransport
- a fake image model response
"""

from __future__ import annotations

import base64
import json
import os
import re
import tempfile
from typing import Any

import httpx
import pytest

# Settings are read at import time, so point local storage somewhere disposable
# and lift the API rate limit before any imagelab module loads.
_STORAGE_ROOT = tempfile.mkdtemp(prefix="imagelab-tests-")
os.environ.setdefault("IMAGELAB_PUBLIC_DIR", os.path.join(_STORAGE_ROOT, "public"))
os.environ.setdefault("IMAGELAB_DATA_DIR", os.path.join(_STORAGE_ROOT, "data"))
os.environ.setdefault("IMAGELAB_RATE_LIMIT_RPM", "100000")
os.environ.setdefault("IMAGELAB_RATE_LIMIT_RPH", "1000000")

from imagelab.feishu.client import FeishuClient  # noqa: E402
from imagelab.images.repository import ImageRepository  # noqa: E402
from imagelab.observability import telemetry  # noqa: E402

FEISHU_BASE_URL = "https://open.feishu.cn/open-apis"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64

_FILTER_CLAUSE = re.compile(r'CurrentValue\.\[(\w+)\] = "([^"]*)"')


@pytest.fixture(autouse=True)
def reset_telemetry():
    telemetry.reset()
    yield
    telemetry.reset()


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Strip credentials and deployment flags so tests never reach real services."""
    for key in (
        "IMAGELAB_STATELESS",
        "VERCEL",
        "GEMINI_API_KEY",
        "GOOGLE_API_KEY",
        "FEISHU_APP_ID",
        "FEISHU_APP_SECRET",
        "FEISHU_APP_TOKEN",
        "FEISHU_TABLE_ID",
        "FEISHU_BASE_URL",
        "IMAGELAB_ADMIN_API_KEY",
    ):
        monkeypatch.delenv(key, raising=False)


class FakeFeishu:
    """
    In-memory Feishu: tenant token, image storage and one Bitable table.

    ``records`` holds raw Bitable items (``{"record_id", "fields"}``) so tests
    can seed rows in whatever shape Bitable would return them.
    """

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []
        self.images: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.fail_uploads = False
        self.fail_records = False
        self._next_key = 0
        self.transport = httpx.MockTransport(self.handle)

    def add_record(self, record_id: str | None = None, **fields: Any) -> dict[str, Any]:
        item = {"record_id": record_id or f"rec{len(self.records) + 1}", "fields": fields}
        self.records.append(item)
        return item

    def uploaded_keys(self) -> list[str]:
        return list(self.images)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/auth/v3/tenant_access_token/internal"):
            self.token_calls += 1
            return httpx.Response(200, json={"code": 0, "tenant_access_token": "t-test", "expire": 7200})

        if path.endswith("/im/v1/images") and request.method == "POST":
            if self.fail_uploads:
                return httpx.Response(500, text="upstream unavailable")
            self._next_key += 1
            key = f"img_v3_test_{self._next_key:04d}"
            self.images[key] = PNG_BYTES
            return httpx.Response(200, json={"code": 0, "data": {"image_key": key}})

        if "/im/v1/images/" in path and request.method == "GET":
            key = path.rsplit("/", 1)[-1]
            if key not in self.images:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, content=self.images[key], headers={"content-type": "image/png"})

        if path.endswith("/records") and request.method == "POST":
            if self.fail_records:
                return httpx.Response(200, json={"code": 1254045, "msg": "FieldNameNotFound"})
            fields = json.loads(request.content)["fields"]
            item = self.add_record(**fields)
            return httpx.Response(200, json={"code": 0, "data": {"record": {"record_id": item["record_id"]}}})

        if path.endswith("/records") and request.method == "GET":
            return self._list(request)

        return httpx.Response(404, json={"code": 404, "msg": f"unexpected {request.method} {path}"})

    def _list(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        clauses = _FILTER_CLAUSE.findall(params.get("filter", ""))
        items = [
            item
            for item in self.records
            if not clauses or any(str(item["fields"].get(name, "")) == value for name, value in clauses)
        ]

        page_size = int(params.get("page_size", "100"))
        offset = int(params.get("page_token") or 0)
        page = items[offset : offset + page_size]
        has_more = offset + page_size < len(items)
        data: dict[str, Any] = {"items": page, "has_more": has_more, "total": len(items)}
        if has_more:
            data["page_token"] = str(offset + page_size)
        return httpx.Response(200, json={"code": 0, "data": data})


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def fake_feishu() -> FakeFeishu:
    return FakeFeishu()


@pytest.fixture
def feishu_client(fake_feishu) -> FeishuClient:
    return FeishuClient(
        app_id="cli_test",
        app_secret="secret",
        app_token="bascnTest",
        table_id="tblTest",
        base_url=FEISHU_BASE_URL,
        transport=fake_feishu.transport,
        sleep_fn=_no_sleep,
    )


@pytest.fixture
def repository(tmp_path) -> ImageRepository:
    repo = ImageRepository(
        public_dir=tmp_path / "public",
        metadata_dir=tmp_path / "data" / "metadata",
        history_dir=tmp_path / "data" / "edit-history",
    )
    repo.init_directories()
    return repo


def model_response(text: str = "A generated picture", image: bytes | None = PNG_BYTES) -> dict[str, Any]:
    """Gemini-shaped response with an optional inline image."""
    parts: list[dict[str, Any]] = [{"text": text}]
    if image is not None:
        parts.append({"inline_data": {"data": base64.b64encode(image).decode(), "mime_type": "image/png"}})
    return {"candidates": [{"content": {"parts": parts}}]}


class FakeModel:
    """Stand-in for ``generate_image_content``; records every call's parts."""

    def __init__(self, response: Any = None, error: Exception | None = None):
        self.response = response if response is not None else model_response()
        self.error = error
        self.calls: list[list[Any]] = []

    async def __call__(self, parts):
        self.calls.append(list(parts))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def fake_model(monkeypatch) -> FakeModel:
    model = FakeModel()
    monkeypatch.setattr("imagelab.images.service.generate_image_content", model)
    return model
