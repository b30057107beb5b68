"""Unit tests for ImageService

The model is replaced through the ``generate_image_content`` seam and Feishu
runs in memory, so these tests cover the full orchestration without network.
"""

from __future__ import annotations

import asyncio
import base64
from urllib.parse import quote

import httpx
import pytest

from imagelab.feishu.models import EditHistoryEntry
from imagelab.images.service import (
    ImageFetchError,
    ImageRecordNotFound,
    ImageSaveError,
    ImageService,
    InvalidImageError,
    MissingImageId,
    MissingImageSource,
    NoImageGenerated,
    UnsupportedImageUrl,
)
from imagelab.llm.response import build_edit_prompt
from imagelab.observability import telemetry

ROOT_ID = "11111111-2222-4333-8444-555555555555"
CHILD_ID = "66666666-7777-4888-9999-aaaaaaaaaaaa"
FEISHU_BASE = "https://open.feishu.cn/open-apis"


def feishu_url(key):
    return f"{FEISHU_BASE}/image/v4/get?image_key={key}"


@pytest.fixture
def service(feishu_client, repository, fake_model):
    return ImageService(feishu=feishu_client, repository=repository)


@pytest.fixture
def seeded(fake_feishu):
    """A root image and one edit of it, both stored in Feishu."""
    fake_feishu.images["img_v3_root"] = b"root-bytes"
    fake_feishu.images["img_v3_child"] = b"child-bytes"
    fake_feishu.add_record(id=ROOT_ID, file_token="img_v3_root", prompt="a lighthouse", timestamp=1000)
    fake_feishu.add_record(
        id=CHILD_ID,
        file_token="img_v3_child",
        prompt="at night",
        parentId=ROOT_ID,
        rootParentId=ROOT_ID,
        type="edited",
        timestamp=2000,
    )
    return fake_feishu


# ============================================================================
# Generate
# ============================================================================


def test_generate_stores_locally_and_in_feishu(service, fake_feishu, repository, fake_model):
    result = asyncio.run(service.generate("a lighthouse at dusk"))

    metadata = result.metadata
    assert result.description == "A generated picture"
    assert result.image_url == metadata.feishu_url
    assert not result.is_stateless
    assert metadata.url.startswith("/generated-images/")
    assert metadata.feishu_file_token == "img_v3_test_0001"
    assert (repository.images_dir / metadata.filename).exists()
    assert repository.get_metadata(metadata.id).feishu_url == metadata.feishu_url

    fields = fake_feishu.records[0]["fields"]
    assert fields["id"] == metadata.id
    assert fields["prompt"] == "a lighthouse at dusk"
    assert fields["type"] == "generated"
    assert len(fake_model.calls[0]) == 1


def test_generate_survives_feishu_outage_locally(service, fake_feishu):
    fake_feishu.fail_uploads = True

    result = asyncio.run(service.generate("a lighthouse"))

    assert result.metadata.feishu_sync_failed
    assert result.image_url == result.metadata.url
    assert telemetry._COUNTERS["images.feishu_sync_failed"] == 1


def test_generate_stateless_uses_feishu_only(service, fake_feishu, repository, monkeypatch):
    monkeypatch.setenv("IMAGELAB_STATELESS", "true")

    result = asyncio.run(service.generate("a lighthouse"))

    assert result.is_stateless
    assert result.image_url == feishu_url("img_v3_test_0001")
    assert list(repository.images_dir.iterdir()) == []


def test_generate_stateless_feishu_failure_is_fatal(service, fake_feishu, monkeypatch):
    monkeypatch.setenv("IMAGELAB_STATELESS", "1")
    fake_feishu.fail_uploads = True

    with pytest.raises(ImageSaveError):
        asyncio.run(service.generate("a lighthouse"))


def test_generate_without_image(service, fake_model, fake_feishu):
    fake_model.response = {"candidates": [{"content": {"parts": [{"text": "I can't draw that"}]}}]}

    with pytest.raises(NoImageGenerated):
        asyncio.run(service.generate("something"))
    assert fake_feishu.records == []


def test_generate_uploaded_option_sets_kind_and_root(service, fake_feishu):
    from imagelab.images.models import ImageOptions

    options = ImageOptions(is_uploaded_image=True, root_parent_id=ROOT_ID)
    result = asyncio.run(service.generate("variation", options))

    assert result.metadata.type == "uploaded"
    assert fake_feishu.records[0]["fields"]["rootParentId"] == ROOT_ID


# ============================================================================
# One-shot edit
# ============================================================================


def test_edit_feishu_image(service, seeded, repository, fake_model):
    result = asyncio.run(service.edit("add a hat", feishu_url("img_v3_child")))

    saved = result.metadata
    assert saved.type == "edited"
    assert saved.parent_id == CHILD_ID
    assert saved.root_parent_id == ROOT_ID
    assert fake_model.calls[0][1].inline_data.data == b"child-bytes"

    fields = seeded.records[-1]["fields"]
    assert fields["parentId"] == CHILD_ID
    assert fields["rootParentId"] == ROOT_ID
    assert fields["type"] == "edited"

    history = repository.edit_history(ROOT_ID)
    assert [(e.image_id, e.result_image_id) for e in history] == [(CHILD_ID, saved.id)]


def test_edit_local_image(service, repository):
    first = asyncio.run(service.generate("a cat")).metadata

    result = asyncio.run(service.edit("make it orange", first.url))

    assert result.metadata.parent_id == first.id
    assert result.metadata.root_parent_id == first.id
    assert repository.edit_history(first.id)[0].prompt == "make it orange"


def test_edit_external_url(feishu_client, repository, fake_model):
    def handler(request):
        if request.url.host == "example.com":
            return httpx.Response(200, content=b"remote", headers={"content-type": "image/webp"})
        return httpx.Response(404)

    service = ImageService(feishu=feishu_client, repository=repository, http_transport=httpx.MockTransport(handler))
    result = asyncio.run(service.edit("sharper", "https://example.com/cat.webp"))

    assert result.metadata.parent_id is None
    assert fake_model.calls[0][1].inline_data.mime_type == "image/webp"

    with pytest.raises(ImageFetchError):
        asyncio.run(service.edit("sharper", "https://other.example.org/missing.png"))


def test_edit_stateless_requires_feishu_url(service, monkeypatch):
    monkeypatch.setenv("IMAGELAB_STATELESS", "1")

    with pytest.raises(UnsupportedImageUrl):
        asyncio.run(service.edit("x", "/generated-images/abc.png"))


def test_edit_unknown_feishu_record(service, fake_feishu):
    url = f"{FEISHU_BASE}/files/{ROOT_ID}"

    with pytest.raises(ImageRecordNotFound):
        asyncio.run(service.edit("x", url))


# ============================================================================
# Two-step edit
# ============================================================================


def test_prepare_edit_feishu_url(service, seeded):
    preparation = asyncio.run(service.prepare_edit(feishu_url("img_v3_child")))

    assert preparation.prepare_id == "img_v3_child"
    assert preparation.file_token == "img_v3_child"
    assert preparation.parent_id == ROOT_ID
    assert preparation.root_parent_id == ROOT_ID
    assert not preparation.is_uploaded_image


def test_prepare_edit_proxy_url(service, seeded):
    proxy = f"/api/image-proxy?url={quote(feishu_url('img_v3_root'), safe='')}"

    preparation = asyncio.run(service.prepare_edit(proxy))

    assert preparation.prepare_id == "img_v3_root"
    assert preparation.parent_id == "img_v3_root"
    assert preparation.original_url == proxy


def test_prepare_edit_local_url(service):
    metadata = asyncio.run(service.generate("a cat")).metadata

    preparation = asyncio.run(service.prepare_edit(metadata.url))

    assert preparation.prepare_id == metadata.id
    assert preparation.file_token == metadata.feishu_file_token


def test_prepare_edit_data_url_uses_supplied_ids(service, seeded):
    preparation = asyncio.run(
        service.prepare_edit("data:image/png;base64,AAAA", original_image_id=CHILD_ID)
    )

    assert preparation.prepare_id == CHILD_ID
    assert preparation.root_parent_id == ROOT_ID

    with pytest.raises(MissingImageId):
        asyncio.run(service.prepare_edit("data:image/png;base64,AAAA"))


def test_prepare_edit_errors(service):
    with pytest.raises(UnsupportedImageUrl):
        asyncio.run(service.prepare_edit("ftp://example.com/a.png"))
    with pytest.raises(ImageRecordNotFound):
        asyncio.run(service.prepare_edit(f"{FEISHU_BASE}/files/{ROOT_ID}"))


def test_execute_edit_with_file_token(service, seeded, fake_model):
    result = asyncio.run(
        service.execute_edit(
            prompt="add snow",
            prepare_id="img_v3_child",
            file_token="img_v3_child",
            parent_id=ROOT_ID,
            root_parent_id=ROOT_ID,
        )
    )

    assert result.id == result.file_token == "img_v3_test_0001"
    assert result.parent_id == "img_v3_child"
    assert result.root_parent_id == ROOT_ID
    assert result.feishu_url == feishu_url("img_v3_test_0001")
    assert base64.b64decode(result.image_data)
    assert fake_model.calls[0][0].text == build_edit_prompt("add snow")

    fields = seeded.records[-1]["fields"]
    assert fields["id"] == "img_v3_test_0001"
    assert fields["parentId"] == "img_v3_child"
    assert fields["type"] == "edited"


def test_execute_edit_with_data_url_defaults_root(service):
    data_url = "data:image/png;base64," + base64.b64encode(b"client-bytes").decode()

    result = asyncio.run(service.execute_edit("brighter", prepare_id="P", parent_id="P", data_url=data_url))

    assert result.root_parent_id == "P"
    assert result.parent_id == "P"


def test_execute_edit_errors(service, seeded):
    with pytest.raises(MissingImageSource):
        asyncio.run(service.execute_edit("x", prepare_id="P"))
    with pytest.raises(ImageFetchError):
        asyncio.run(service.execute_edit("x", prepare_id="P", file_token="img_v3_missing"))


def test_execute_edit_record_failure(service, seeded):
    seeded.fail_records = True

    with pytest.raises(ImageSaveError):
        asyncio.run(service.execute_edit("x", prepare_id="img_v3_root", file_token="img_v3_root"))


# ============================================================================
# Save / upload
# ============================================================================


def test_save_to_feishu(service, fake_feishu):
    encoded = base64.b64encode(b"edited-bytes").decode()

    result = asyncio.run(
        service.save_to_feishu(encoded, "image/png", prepare_id="P", additional_metadata={"style": "ink"})
    )

    assert result.record_id == "rec1"
    assert result.parent_id == "P"
    assert result.root_parent_id == "P"
    assert result.warning is None
    fields = fake_feishu.records[0]["fields"]
    assert fields["prompt"] == "Edited image"
    assert fields["style"] == "ink"
    assert fields["id"] == result.id


def test_save_to_feishu_record_failure_is_a_warning(service, fake_feishu):
    fake_feishu.fail_records = True
    data_url = "data:image/jpeg;base64," + base64.b64encode(b"x").decode()

    result = asyncio.run(service.save_to_feishu(data_url, "image/png", prompt="p", is_uploaded_image=True))

    assert result.record_id is None
    assert result.file_token == "img_v3_test_0001"
    assert "Failed to save record" in result.warning


def test_save_to_feishu_rejects_empty_data(service):
    with pytest.raises(InvalidImageError):
        asyncio.run(service.save_to_feishu("", "image/png"))


def test_upload(service, fake_feishu, repository):
    metadata = asyncio.run(service.upload(b"jpeg-bytes", "image/jpeg"))

    assert metadata.type == "uploaded"
    assert metadata.prompt == "User uploaded original image"
    assert metadata.filename.endswith(".jpg")
    assert metadata.feishu_file_token == "img_v3_test_0001"
    assert fake_feishu.records[0]["fields"]["type"] == "uploaded"
    assert repository.get_metadata(metadata.id).feishu_file_token == "img_v3_test_0001"


def test_upload_stateless_feishu_failure(service, fake_feishu, monkeypatch):
    monkeypatch.setenv("IMAGELAB_STATELESS", "1")
    fake_feishu.fail_uploads = True

    with pytest.raises(ImageSaveError):
        asyncio.run(service.upload(b"bytes", "image/png", "mine"))


# ============================================================================
# Gallery / history
# ============================================================================


def test_images_with_history(service, seeded):
    forest = asyncio.run(service.images_with_history())

    assert forest.total == 1
    assert forest.groups[0].original.id == ROOT_ID
    assert forest.stats.edited_images == 1


def test_image_history(service, seeded):
    group, lineage = asyncio.run(service.image_history("img_v3_child"))

    assert group.id == ROOT_ID
    assert [node.id for node in lineage] == [ROOT_ID, CHILD_ID]

    assert asyncio.run(service.image_history("nope")) == (None, [])


def test_edit_history_merges_local_entries(service, seeded, repository):
    repository.append_edit_history(
        ROOT_ID,
        EditHistoryEntry(
            id="local-edit",
            image_id=ROOT_ID,
            result_image_id="local-result",
            created_at="2030-01-01T00:00:00Z",
        ),
    )

    history = asyncio.run(service.edit_history(ROOT_ID))

    assert [entry.id for entry in history] == [CHILD_ID, "local-edit"]


def test_image_metadata_and_cleanup(service, repository):
    metadata = asyncio.run(service.generate("a cat")).metadata

    assert service.image_metadata(path=metadata.filename).id == metadata.id
    assert service.image_metadata(image_id=metadata.id).filename == metadata.filename
    assert service.image_metadata() is None
    assert service.cleanup(7) == 0
