"""
Edit-lineage forest reconstruction.

Feishu Bitable stores one flat row per image with ``parentId`` and
``rootParentId`` columns.  Rows are unindexed and weakly typed, and lineage
links may dangle (deleted parents), reference file tokens instead of ids, or
even form cycles after manual edits to the table.  ``build_forest`` turns such
a list into groups of "original image + its edits" by following parent links.

Invariants:
    - every input record lands in exactly one group
    - group keys are unique
    - output is deterministic for a given input order
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from pydantic import BaseModel, Field

from imagelab.config import DEFAULT_PROMPT
from imagelab.feishu.models import EditHistoryEntry, ImageRecord
from imagelab.observability.logging import get_logger
from imagelab.observability.telemetry import counter, log_event

logger = get_logger(__name__)

ImageNode = ImageRecord


class ForestStats(BaseModel):
    original_images: int = 0
    edited_images: int = 0
    history_records: int = 0
    empty_prompts: int = 0
    groups: int = 0
    orphan_groups: int = 0
    cycles_broken: int = 0
    missing_images: int = 0


class ImageGroup(BaseModel):
    """An original image and every image derived from it."""

    id: str = Field(..., description="Group key: root image id, or the dangling parent id")
    original: ImageNode | None = None
    edits: list[ImageNode] = Field(default_factory=list)
    edit_history: list[EditHistoryEntry] = Field(default_factory=list)
    promoted: bool = Field(default=False, description="Original was promoted from an orphaned edit")

    def members(self) -> list[ImageNode]:
        return ([self.original] if self.original else []) + list(self.edits)

    def contains(self, image_id: str) -> bool:
        return any(image_id in (node.id, node.file_token) for node in self.members())


class Forest(BaseModel):
    groups: list[ImageGroup] = Field(default_factory=list)
    stats: ForestStats = Field(default_factory=ForestStats)

    @property
    def total(self) -> int:
        return len(self.groups)


class _Index:
    """Lookup of records by id and by file token (first occurrence wins)."""

    def __init__(self, records: Iterable[ImageNode]):
        self.by_id: dict[str, ImageNode] = {}
        self.by_token: dict[str, ImageNode] = {}
        for record in records:
            self.by_id.setdefault(record.id, record)
            if record.file_token:
                self.by_token.setdefault(record.file_token, record)

    def get(self, key: str | None) -> ImageNode | None:
        if not key:
            return None
        return self.by_id.get(key) or self.by_token.get(key)


def _sort_key(node: ImageNode) -> tuple[int, str]:
    return (node.timestamp, node.id)


def _is_self_reference(node: ImageNode, key: str) -> bool:
    return key == node.id or (bool(node.file_token) and key == node.file_token)


def _normalize(records: Sequence[ImageNode], stats: ForestStats) -> list[ImageNode]:
    """Copy records with display defaults applied."""
    normalized: list[ImageNode] = []
    for position, record in enumerate(records):
        updates: dict[str, object] = {}
        if not record.prompt.strip():
            stats.empty_prompts += 1
            updates["prompt"] = DEFAULT_PROMPT
        if not record.id or record.id == "unknown":
            updates["id"] = f"unknown-{record.timestamp}-{position}"
        normalized.append(record.model_copy(update=updates) if updates else record)
    return normalized


def _resolve_root(node: ImageNode, index: _Index) -> tuple[str, ImageNode | None, bool]:
    """
    Follow parent links from ``node`` to its lineage root.

    Returns (group_key, root_record, hit_cycle).  ``root_record`` is None when
    the chain ends at a parent that is not in the table.
    """
    path: list[ImageNode] = []
    seen: set[int] = set()
    current = node

    while True:
        if id(current) in seen:
            # Canonical root for the cycle so every member resolves the same way
            start = next(i for i, seen_node in enumerate(path) if seen_node is current)
            cycle = path[start:]
            root = min(cycle, key=_sort_key)
            return root.id, root, True
        seen.add(id(current))
        path.append(current)

        parent_key = current.parent_id
        if not parent_key or _is_self_reference(current, parent_key):
            return current.id, current, False

        parent = index.get(parent_key)
        if parent is not None:
            current = parent
            continue

        fallback = index.get(current.root_parent_id)
        if fallback is not None and fallback is not current:
            current = fallback
            continue

        return parent_key, None, False


def derive_history(records: Iterable[ImageNode]) -> list[EditHistoryEntry]:
    """Edit-history entries implied by parent links."""
    history: list[EditHistoryEntry] = []
    for record in records:
        if not record.parent_id or _is_self_reference(record, record.parent_id):
            continue
        history.append(EditHistoryEntry.from_record(record))
    return history


def build_forest(
    records: Sequence[ImageNode],
    history: Sequence[EditHistoryEntry] | None = None,
) -> Forest:
    """
    Group records into lineage trees keyed by their root image.

    Args:
        records: Normalized image records, in table order.
        history: Extra edit-history entries (e.g. the local history files)
            merged into the matching group and deduplicated by id.

    Returns:
        Forest with groups sorted newest original first.
    """
    stats = ForestStats()
    nodes = _normalize(records, stats)
    index = _Index(nodes)

    groups: dict[str, ImageGroup] = {}
    cycle_roots: set[str] = set()

    for node in nodes:
        key, root, hit_cycle = _resolve_root(node, index)
        if hit_cycle and key not in cycle_roots:
            cycle_roots.add(key)
            logger.warning("Lineage cycle detected; using %s as root", key)

        group = groups.get(key)
        if group is None:
            group = ImageGroup(id=key)
            groups[key] = group

        if root is not None and node is root and group.original is None:
            group.original = node
        else:
            group.edits.append(node)

    stats.cycles_broken = len(cycle_roots)

    for group in groups.values():
        group.edits.sort(key=_sort_key)
        if group.original is None and group.edits:
            group.original = group.edits.pop(0)
            group.promoted = True
            stats.orphan_groups += 1

    ordered = [g for g in groups.values() if g.original is not None]
    ordered.sort(key=lambda g: g.original.timestamp, reverse=True)

    external = list(history or [])
    matched_external: set[str] = set()

    for group in ordered:
        entries: dict[str, EditHistoryEntry] = {}
        for entry in derive_history(group.members()):
            entries.setdefault(entry.id, entry)
        for entry in external:
            if entry.id in entries:
                matched_external.add(entry.id)
                continue
            if group.contains(entry.result_image_id) or group.contains(entry.image_id):
                entries[entry.id] = entry
                matched_external.add(entry.id)

        group.edit_history = sorted(entries.values(), key=lambda e: (e.created_at, e.id))
        stats.history_records += len(group.edit_history)
        stats.missing_images += sum(
            1 for entry in group.edit_history if not group.contains(entry.result_image_id)
        )

        if group.promoted:
            stats.edited_images += len(group.edits) + 1
        else:
            stats.original_images += 1
            stats.edited_images += len(group.edits)

    stats.missing_images += sum(1 for entry in external if entry.id not in matched_external)
    stats.groups = len(ordered)

    counter("lineage.builds")
    log_event("lineage.forest_built", **stats.model_dump())
    return Forest(groups=ordered, stats=stats)


def group_for(forest: Forest, image_id: str) -> ImageGroup | None:
    """The group containing ``image_id`` (matched by id or file token)."""
    for group in forest.groups:
        if group.id == image_id or group.contains(image_id):
            return group
    return None


def lineage_of(source: Forest | Sequence[ImageNode], image_id: str) -> list[ImageNode]:
    """Ancestor path from the lineage root down to ``image_id``."""
    if isinstance(source, Forest):
        nodes = [node for group in source.groups for node in group.members()]
    else:
        nodes = list(source)

    index = _Index(nodes)
    current = index.get(image_id)
    path: list[ImageNode] = []
    seen: set[int] = set()

    while current is not None and id(current) not in seen:
        seen.add(id(current))
        path.append(current)
        if not current.parent_id or _is_self_reference(current, current.parent_id):
            break
        current = index.get(current.parent_id)

    path.reverse()
    return path
