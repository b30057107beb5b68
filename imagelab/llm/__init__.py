"""Gemini image model access"""

from __future__ import annotations
