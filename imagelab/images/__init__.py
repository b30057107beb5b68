"""Image generation, editing and local storage"""

from __future__ import annotations
