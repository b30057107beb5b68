"""imagelab - chat-style image generation and editing backed by Feishu"""

from __future__ import annotations

__version__ = "1.0.0"


# Lazy imports so lightweight modules load without the model SDK
def __getattr__(name: str):
    """
    Lazy imports to avoid loading heavy dependencies when only importing lightweight modules.
    """
    if name in ("ImageGroup", "Forest", "build_forest"):
        from imagelab.lineage import forest

        return getattr(forest, name)

    if name == "ImageMetadata":
        from imagelab.images.models import ImageMetadata

        return ImageMetadata

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "Forest",
    "ImageGroup",
    "ImageMetadata",
    "build_forest",
]
