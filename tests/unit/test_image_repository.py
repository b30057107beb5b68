"""Unit tests for local image storage"""

from __future__ import annotations

import os
import time

import pytest

from imagelab.feishu.models import EditHistoryEntry
from imagelab.images.models import ImageMetadata
from imagelab.images.repository import StatelessStorageError


def store(repository, image_id, filename, data=b"img"):
    metadata = ImageMetadata(id=image_id, filename=filename, url=f"/generated-images/{filename}", prompt="p")
    repository.write_image(filename, data)
    repository.save_metadata(metadata)
    return metadata


def test_save_and_read_metadata(repository):
    store(repository, "id-1", "aaa.png")

    loaded = repository.get_metadata("id-1")

    assert loaded.filename == "aaa.png"
    assert (repository.images_dir / "aaa.png").read_bytes() == b"img"


@pytest.mark.parametrize("image_id", ["", "../secrets", "a/b", ".hidden", "missing"])
def test_get_metadata_rejects_unknown_or_unsafe_ids(repository, image_id):
    assert repository.get_metadata(image_id) is None


def test_find_by_filename_and_id_for_url(repository):
    store(repository, "id-1", "aaa.png")
    store(repository, "id-2", "bbb.jpg")

    assert repository.find_by_filename("/generated-images/bbb.jpg").id == "id-2"
    assert repository.id_for_url("/generated-images/aaa.png") == "id-1"
    assert repository.id_for_url("/elsewhere/aaa.png") is None
    assert repository.find_by_filename("nope.png") is None


def test_list_metadata_newest_first(repository):
    store(repository, "old", "old.png")
    store(repository, "new", "new.png")
    past = time.time() - 100
    os.utime(repository.metadata_dir / "old.json", (past, past))

    listed = repository.list_metadata()

    assert [m.id for m in listed] == ["new", "old"]
    assert [m.id for m in repository.list_metadata(limit=1, offset=1)] == ["old"]


def test_cleanup_removes_only_old_images(repository):
    store(repository, "stale", "stale.png")
    store(repository, "fresh", "fresh.png")
    past = time.time() - 10 * 24 * 60 * 60
    os.utime(repository.metadata_dir / "stale.json", (past, past))

    deleted = repository.cleanup_old_images(max_age_days=7)

    assert deleted == 1
    assert not (repository.images_dir / "stale.png").exists()
    assert repository.get_metadata("stale") is None
    assert repository.get_metadata("fresh") is not None


def test_read_public_file(repository):
    store(repository, "id-1", "aaa.png", data=b"\x89PNG")

    data, mime_type = repository.read_public_file("/generated-images/aaa.png?cache=1")

    assert data == b"\x89PNG"
    assert mime_type == "image/png"


@pytest.mark.parametrize("path", ["/generated-images/missing.png", "/../../etc/passwd", "/"])
def test_read_public_file_stays_inside_public_dir(repository, path):
    with pytest.raises(FileNotFoundError):
        repository.read_public_file(path)


def test_edit_history_appends_and_dedupes(repository):
    entry = EditHistoryEntry(id="e1", image_id="root", result_image_id="e1", created_at="2024-01-01T00:00:00Z")

    repository.append_edit_history("root", entry)
    repository.append_edit_history("root", entry.model_copy(update={"prompt": "updated"}))

    history = repository.edit_history("root")
    assert len(history) == 1
    assert history[0].prompt == "updated"
    assert repository.edit_history("other") == []


def test_corrupt_history_file_reads_as_empty(repository):
    (repository.history_dir / "root.json").write_text("{not json", encoding="utf-8")

    assert repository.edit_history("root") == []


def test_stateless_mode_skips_disk(repository, monkeypatch):
    monkeypatch.setenv("IMAGELAB_STATELESS", "1")

    assert repository.write_image("x.png", b"data") is None
    assert not (repository.images_dir / "x.png").exists()
    assert repository.edit_history("root") == []
    with pytest.raises(StatelessStorageError):
        repository.get_metadata("id-1")
    with pytest.raises(StatelessStorageError):
        repository.read_public_file("/generated-images/x.png")


def test_vercel_implies_stateless(repository, monkeypatch):
    monkeypatch.setenv("VERCEL", "1")

    assert repository.stateless
