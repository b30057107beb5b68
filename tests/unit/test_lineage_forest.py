"""Unit tests for lineage forest reconstruction

Tests cover:
- Simple parent chains
- Dangling parents (orphan promotion)
- rootParentId fallback
- File-token parent references
- Cycles and self references
- Display normalization
- Merging external edit history
"""

from __future__ import annotations

import pytest

from imagelab.feishu.models import EditHistoryEntry, ImageRecord
from imagelab.lineage.forest import build_forest, derive_history, group_for, lineage_of


def rec(image_id, ts, parent=None, root=None, token=None, prompt="a prompt", kind="generated"):
    return ImageRecord(
        id=image_id,
        timestamp=ts,
        parent_id=parent,
        root_parent_id=root,
        file_token=token if token is not None else f"img_v3_{image_id}",
        prompt=prompt,
        type=kind,
    )


def member_ids(group):
    return [node.id for node in group.members()]


def test_chain_groups_under_original():
    """Edits of edits land in the original's group, oldest first"""
    records = [
        rec("C", 3000, parent="B", root="A"),
        rec("A", 1000),
        rec("B", 2000, parent="A", root="A"),
    ]
    forest = build_forest(records)

    assert forest.total == 1
    group = forest.groups[0]
    assert group.id == "A"
    assert group.original.id == "A"
    assert [edit.id for edit in group.edits] == ["B", "C"]
    assert not group.promoted

    assert forest.stats.original_images == 1
    assert forest.stats.edited_images == 2
    assert forest.stats.history_records == 2
    assert forest.stats.missing_images == 0


def test_dangling_parent_promotes_oldest_edit():
    """A chain whose original was deleted is keyed by the missing parent id"""
    records = [rec("Y", 6000, parent="X"), rec("X", 5000, parent="deleted-root")]
    forest = build_forest(records)

    group = forest.groups[0]
    assert group.id == "deleted-root"
    assert group.original.id == "X"
    assert group.promoted
    assert [edit.id for edit in group.edits] == ["Y"]
    assert forest.stats.orphan_groups == 1
    assert forest.stats.original_images == 0
    assert forest.stats.edited_images == 2


def test_root_parent_used_when_parent_missing():
    records = [rec("A", 1000), rec("Z", 4000, parent="gone", root="A")]
    forest = build_forest(records)

    assert forest.total == 1
    assert member_ids(forest.groups[0]) == ["A", "Z"]


def test_parent_referenced_by_file_token():
    """parentId may hold the parent's Feishu image key instead of its id"""
    records = [rec("A", 1000, token="img_v3_parent"), rec("B", 2000, parent="img_v3_parent")]
    forest = build_forest(records)

    assert forest.total == 1
    assert forest.groups[0].original.id == "A"


def test_cycle_resolves_to_oldest_member():
    records = [rec("Q", 20, parent="P"), rec("P", 10, parent="Q")]
    forest = build_forest(records)

    assert forest.total == 1
    group = forest.groups[0]
    assert group.id == "P"
    assert group.original.id == "P"
    assert [edit.id for edit in group.edits] == ["Q"]
    assert forest.stats.cycles_broken == 1


@pytest.mark.parametrize(
    "order",
    [("A", "B", "C", "D"), ("D", "C", "B", "A"), ("B", "D", "A", "C")],
)
def test_cycle_root_independent_of_walk_start(order):
    by_id = {
        "A": rec("A", 2000, parent="B"),
        "B": rec("B", 1000, parent="C"),
        "C": rec("C", 3000, parent="A"),
        "D": rec("D", 500, parent="A"),
    }
    forest = build_forest([by_id[key] for key in order])

    assert forest.total == 1
    group = forest.groups[0]
    assert group.original.id == "B"
    assert sorted(edit.id for edit in group.edits) == ["A", "C", "D"]
    assert forest.stats.cycles_broken == 1


def test_self_reference_is_a_root():
    forest = build_forest([rec("A", 1000, parent="A")])

    assert forest.groups[0].original.id == "A"
    assert forest.groups[0].edits == []
    assert derive_history(forest.groups[0].members()) == []


def test_normalizes_empty_prompt_and_missing_id():
    records = [rec("", 1234, prompt="  "), rec("unknown", 5678)]
    forest = build_forest(records)

    ids = sorted(node.id for group in forest.groups for node in group.members())
    assert ids == ["unknown-1234-0", "unknown-5678-1"]
    prompts = {node.id: node.prompt for group in forest.groups for node in group.members()}
    assert prompts["unknown-1234-0"] == "No prompt provided"
    assert forest.stats.empty_prompts == 1

    rebuilt = build_forest(records)
    assert sorted(node.id for group in rebuilt.groups for node in group.members()) == ids


def test_normalization_does_not_mutate_input():
    original = rec("", 1234, prompt="")
    build_forest([original])

    assert original.id == ""
    assert original.prompt == ""


def test_groups_sorted_newest_first():
    records = [rec("old", 1000), rec("new", 9000), rec("mid", 5000)]
    forest = build_forest(records)

    assert [group.id for group in forest.groups] == ["new", "mid", "old"]


def test_every_record_lands_in_exactly_one_group():
    records = [
        rec("A", 1),
        rec("B", 2, parent="A"),
        rec("C", 3, parent="missing"),
        rec("D", 4, parent="C"),
        rec("E", 5, parent="F"),
        rec("F", 6, parent="E"),
        rec("G", 7, parent="G"),
    ]
    forest = build_forest(records)

    seen = [node.id for group in forest.groups for node in group.members()]
    assert sorted(seen) == sorted(r.id for r in records)
    keys = [group.id for group in forest.groups]
    assert len(keys) == len(set(keys))


def test_build_is_deterministic():
    records = [rec("A", 1), rec("B", 2, parent="A"), rec("C", 3, parent="nope"), rec("", 4)]

    first = build_forest(records).model_dump()
    second = build_forest(records).model_dump()

    assert first == second


def test_external_history_merged_and_missing_counted():
    records = [rec("A", 1000), rec("B", 2000, parent="A")]
    history = [
        EditHistoryEntry(
            id="local-1",
            image_id="A",
            prompt="make it blue",
            result_image_id="deleted-result",
            created_at="2024-01-01T00:00:00Z",
        ),
        EditHistoryEntry(
            id="B",
            image_id="A",
            result_image_id="B",
            created_at="2024-01-01T00:00:02Z",
        ),
        EditHistoryEntry(
            id="stray",
            image_id="nowhere",
            result_image_id="nothing",
            created_at="2024-01-01T00:00:03Z",
        ),
    ]
    forest = build_forest(records, history)

    group = forest.groups[0]
    # derived entry for B wins over the external duplicate and sorts first (1970 timestamp)
    assert [entry.id for entry in group.edit_history] == ["B", "local-1"]
    # one entry points at a deleted image, one matches no group at all
    assert forest.stats.missing_images == 2


def test_lineage_of_returns_root_to_image_path():
    records = [rec("A", 1), rec("B", 2, parent="A"), rec("C", 3, parent="B")]
    forest = build_forest(records)

    assert [node.id for node in lineage_of(forest, "C")] == ["A", "B", "C"]
    assert [node.id for node in lineage_of(records, "B")] == ["A", "B"]
    assert lineage_of(forest, "missing") == []


def test_group_for_matches_id_or_token():
    records = [rec("A", 1), rec("B", 2, parent="A", token="img_v3_bbb")]
    forest = build_forest(records)

    assert group_for(forest, "img_v3_bbb").id == "A"
    assert group_for(forest, "A").id == "A"
    assert group_for(forest, "zzz") is None
