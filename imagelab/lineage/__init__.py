"""Edit-lineage reconstruction over flat image records"""

from __future__ import annotations

from imagelab.lineage.forest import (
    Forest,
    ForestStats,
    ImageGroup,
    ImageNode,
    build_forest,
    derive_history,
    group_for,
    lineage_of,
)

__all__ = [
    "Forest",
    "ForestStats",
    "ImageGroup",
    "ImageNode",
    "build_forest",
    "derive_history",
    "group_for",
    "lineage_of",
]
