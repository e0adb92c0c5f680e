"""Custom theme definitions for the IPTV directory."""
from __future__ import annotations

from typing import Mapping

from textual.theme import Theme

__all__ = [
    "CUSTOM_THEMES",
    "DEFAULT_THEME_NAME",
]

# Purple on charcoal.
_NIGHT_BASE = "#111827"
_NIGHT_SURFACE = "#1f2937"
_NIGHT_PANEL = "#2e1065"
_NIGHT_TEXT = "#e5e7eb"
_DAY_BASE = "#f9fafb"
_DAY_SURFACE = "#ede9fe"
_DAY_TEXT = "#1f2937"
_VIOLET = "#8b5cf6"
_PINK = "#ec4899"
_AMBER = "#f59e0b"
_RED = "#ef4444"
_GREEN = "#22c55e"
_SKY = "#0ea5e9"

_BROADCAST_NIGHT = Theme(
    "broadcast-night",
    primary=_VIOLET,
    secondary=_PINK,
    warning=_AMBER,
    error=_RED,
    success=_GREEN,
    accent=_SKY,
    foreground=_NIGHT_TEXT,
    background=_NIGHT_BASE,
    surface=_NIGHT_SURFACE,
    panel=_NIGHT_PANEL,
    dark=True,
)

_BROADCAST_DAY = Theme(
    "broadcast-day",
    primary=_VIOLET,
    secondary=_SKY,
    warning=_AMBER,
    error=_RED,
    success=_GREEN,
    accent=_PINK,
    foreground=_DAY_TEXT,
    background=_DAY_BASE,
    surface=_DAY_SURFACE,
    panel=_DAY_SURFACE,
    dark=False,
)

CUSTOM_THEMES: Mapping[str, Theme] = {
    _BROADCAST_NIGHT.name: _BROADCAST_NIGHT,
    _BROADCAST_DAY.name: _BROADCAST_DAY,
}
"""Themes bundled with the application keyed by their names."""

DEFAULT_THEME_NAME = _BROADCAST_NIGHT.name
"""Default theme to apply when none is specified explicitly."""
