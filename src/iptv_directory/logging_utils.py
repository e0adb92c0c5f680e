"""Logging helpers for :mod:`iptv_directory`."""

from __future__ import annotations

import logging
import os
import threading
import weakref
from collections import deque
from pathlib import Path
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - only for typing
    from .log_viewer import LogViewer

__all__ = [
    "configure_logging",
    "get_log_file_path",
    "get_logger",
    "register_log_viewer",
]

_ENV_LEVEL = "IPTV_DIRECTORY_LOG_LEVEL"
_ENV_FILE = "IPTV_DIRECTORY_LOG_FILE"
_DEFAULT_LOG_PATH = Path.home() / ".cache" / "iptv_directory.log"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# aiohttp logs every aborted HEAD probe at debug level; keep them out of the UI.
_NOISY_LOGGERS = ("aiohttp.client", "aiohttp.internal", "asyncio")


def _create_formatter() -> logging.Formatter:
    return logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)


def _coerce_level(value: str) -> int:
    """Return a logging level derived from *value*."""

    normalized = value.strip().upper()
    if normalized.isdigit():
        level = int(normalized)
        if 0 <= level <= logging.CRITICAL:
            return level
    return getattr(logging, normalized, logging.INFO)


def _apply_log_level(logger: logging.Logger, level: int) -> None:
    """Update the logger and all attached handlers to ``level``."""

    logger.setLevel(level)
    for handler in list(logger.handlers):
        handler.setLevel(level)


def _quiet_third_party(level: int) -> None:
    floor = max(level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(floor)


def _configure_file_logging(
    logger: logging.Logger,
    formatter: logging.Formatter,
    level: int,
    destination: Optional[str],
) -> None:
    """Attach or replace the file handler based on ``destination``."""

    existing: Optional[logging.Handler] = getattr(
        configure_logging, "_file_handler", None
    )
    if existing is not None:
        logger.removeHandler(existing)
        existing.close()
        configure_logging._file_handler = None  # type: ignore[attr-defined]

    if not destination:
        configure_logging._log_path = None  # type: ignore[attr-defined]
        return

    log_path = Path(destination).expanduser()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf8")
    except OSError:
        logger.warning("Failed to set up file logging at %s", log_path)
        configure_logging._log_path = None  # type: ignore[attr-defined]
        return

    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)
    logger.addHandler(file_handler)
    configure_logging._file_handler = file_handler  # type: ignore[attr-defined]
    configure_logging._log_path = log_path  # type: ignore[attr-defined]
    logger.debug("File logging enabled at %s", log_path)


class _UILogHandler(logging.Handler):
    """Buffer formatted records and relay them to the in-app log viewer."""

    def __init__(self, *, capacity: int = 300) -> None:
        super().__init__()
        self._buffer: deque[tuple[int, str]] = deque(maxlen=capacity)
        self._viewer: Optional[weakref.ReferenceType["LogViewer"]] = None
        self._lock = threading.RLock()

    def set_viewer(self, viewer: Optional["LogViewer"]) -> None:
        with self._lock:
            self._viewer = weakref.ref(viewer) if viewer else None
            backlog = list(self._buffer)
        if viewer is not None:
            viewer.replace_entries(backlog)

    def emit(self, record: logging.LogRecord) -> None:
        message = self.format(record)
        with self._lock:
            self._buffer.append((record.levelno, message))
            viewer_ref = self._viewer
        if viewer_ref is None:
            return
        viewer = viewer_ref()
        if viewer is None:
            return
        app = viewer.owner_app
        if app is None:
            return
        try:
            app.call_from_thread(viewer.append_entry, record.levelno, message)
        except RuntimeError:
            # Already on the event loop thread.
            viewer.append_entry(record.levelno, message)
        except Exception:  # pragma: no cover - UI teardown
            self.handleError(record)


def configure_logging(
    *,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    console: Optional[bool] = None,
) -> logging.Logger:
    """Configure the package logger, updating level and destinations on re-entry.

    ``console`` toggles the stderr handler; the Textual app switches it off while
    the UI owns the terminal.
    """

    logger = logging.getLogger("iptv_directory")
    configured = getattr(configure_logging, "_configured", False)
    env_level = os.getenv(_ENV_LEVEL)
    env_file = os.getenv(_ENV_FILE)

    if configured:
        base_level = getattr(configure_logging, "_level", logger.level or logging.INFO)
        if level is not None:
            log_level = _coerce_level(level)
        elif env_level is not None:
            log_level = _coerce_level(env_level)
        else:
            log_level = base_level
    else:
        log_level = _coerce_level(level or env_level or "INFO")

    formatter = _create_formatter()
    if not configured:
        logger.propagate = False

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
        configure_logging._stream_handler = stream_handler  # type: ignore[attr-defined]

        ui_handler = _UILogHandler()
        ui_handler.setFormatter(formatter)
        logger.addHandler(ui_handler)
        configure_logging._ui_handler = ui_handler  # type: ignore[attr-defined]

        if log_file is not None:
            file_destination: Optional[str] = log_file
        elif env_file is not None:
            file_destination = env_file
        else:
            file_destination = str(_DEFAULT_LOG_PATH)
        _configure_file_logging(logger, formatter, log_level, file_destination)
        configure_logging._configured = True  # type: ignore[attr-defined]
    else:
        if log_file is not None:
            _configure_file_logging(logger, formatter, log_level, log_file)
        elif env_file is not None and env_file != str(
            getattr(configure_logging, "_log_path", "") or ""
        ):
            _configure_file_logging(logger, formatter, log_level, env_file)

    if console is not None:
        stream_handler = getattr(configure_logging, "_stream_handler", None)
        if stream_handler is not None:
            if console and stream_handler not in logger.handlers:
                logger.addHandler(stream_handler)
            elif not console and stream_handler in logger.handlers:
                logger.removeHandler(stream_handler)

    _apply_log_level(logger, log_level)
    _quiet_third_party(log_level)
    configure_logging._level = log_level  # type: ignore[attr-defined]
    logger.debug("Logging configured with level %s", logging.getLevelName(log_level))
    return logger


def get_log_file_path() -> Optional[Path]:
    """Return the active log file path, if file logging is enabled."""

    configure_logging()
    return getattr(configure_logging, "_log_path", None)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a module-specific logger."""

    base = configure_logging()
    if not name or name == base.name:
        return base
    if name.startswith(base.name + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{base.name}.{name}")


def register_log_viewer(viewer: Optional["LogViewer"]) -> None:
    """Attach *viewer* to the in-app log handler."""

    logger = configure_logging()
    handler: Optional[_UILogHandler] = getattr(configure_logging, "_ui_handler", None)
    if handler is None:
        logger.warning("UI log handler is not available")
        return
    handler.set_viewer(viewer)
