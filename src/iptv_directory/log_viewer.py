"""Textual widget displaying log output within the application."""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Iterable, Optional, Tuple

from rich.text import Text
from textual.app import App
from textual.widgets import Static

from .logging_utils import register_log_viewer

_LEVEL_STYLES = {
    logging.DEBUG: "dim",
    logging.INFO: "",
    logging.WARNING: "yellow",
    logging.ERROR: "bold red",
    logging.CRITICAL: "bold white on red",
}


def _style_for(level: int) -> str:
    for threshold in (logging.CRITICAL, logging.ERROR, logging.WARNING, logging.INFO):
        if level >= threshold:
            return _LEVEL_STYLES[threshold]
    return _LEVEL_STYLES[logging.DEBUG]


class LogViewer(Static):
    """Rolling log pane with per-level colouring and a minimum level filter."""

    def __init__(
        self,
        *,
        max_lines: int = 500,
        min_level: int = logging.INFO,
        id: Optional[str] = None,
    ) -> None:
        super().__init__("", id=id, markup=False)
        self._entries: Deque[tuple[int, str]] = deque(maxlen=max_lines)
        self._min_level = min_level
        self.owner_app: Optional[App] = None

    def on_mount(self) -> None:  # pragma: no cover - requires UI integration
        self.owner_app = self.app
        register_log_viewer(self)
        self._refresh_view()

    def on_unmount(self) -> None:  # pragma: no cover - teardown
        register_log_viewer(None)
        self.owner_app = None

    @property
    def min_level(self) -> int:
        return self._min_level

    def set_min_level(self, level: int) -> None:
        """Only render entries at ``level`` or above."""

        self._min_level = level
        self._refresh_view()

    def get_messages(self) -> Tuple[str, ...]:
        """Return the buffered messages that pass the level filter."""

        return tuple(
            message for level, message in self._entries if level >= self._min_level
        )

    def clear(self) -> None:
        self._entries.clear()
        self._refresh_view()

    def append_entry(self, level: int, message: str) -> None:
        self._entries.append((level, message))
        if level >= self._min_level:
            self._refresh_view()

    def replace_entries(self, entries: Iterable[tuple[int, str]]) -> None:
        self._entries.clear()
        self._entries.extend(entries)
        self._refresh_view()

    def _render_entries(self) -> Text:
        visible = [
            (level, message)
            for level, message in self._entries
            if level >= self._min_level
        ]
        if not visible:
            return Text("No log messages yet.", style="dim")
        text = Text()
        for index, (level, message) in enumerate(visible):
            if index:
                text.append("\n")
            text.append(message, style=_style_for(level))
        return text

    def _refresh_view(self) -> None:
        if self.owner_app is None:
            return
        self.update(self._render_entries())
        self.call_after_refresh(self._scroll_to_end)

    def _scroll_to_end(self) -> None:
        try:
            self.scroll_end(animate=False)
        except Exception:  # pragma: no cover - scrolling may fail during shutdown
            pass


__all__ = ["LogViewer"]
