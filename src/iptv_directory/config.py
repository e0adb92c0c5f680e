"""Configuration management for the IPTV directory."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from .logging_utils import get_logger

CONFIG_PATH = Path.home() / ".config" / "iptv_directory" / "config.yaml"

DEFAULT_CATALOG_URL = "https://iptv-org.github.io/api"
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_PROBE_TIMEOUT = 8.0
DEFAULT_MAX_STREAMS_PER_CHANNEL = 3
DEFAULT_BATCH_SIZE = 5
DEFAULT_LOAD_TIMEOUT = 15.0

log = get_logger(__name__)


@dataclass(slots=True)
class AppConfig:
    """Top level application configuration."""

    catalog_url: str = DEFAULT_CATALOG_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    max_streams_per_channel: int = DEFAULT_MAX_STREAMS_PER_CHANNEL
    batch_size: int = DEFAULT_BATCH_SIZE
    load_timeout: float = DEFAULT_LOAD_TIMEOUT
    preferred_player: Optional[str] = None
    user_agent: Optional[str] = None
    theme: Optional[str] = None
    favorite_countries: list[str] = field(default_factory=list)

    def is_favorite_country(self, code: str) -> bool:
        return code.upper() in self.favorite_countries

    def toggle_favorite_country(self, code: str) -> bool:
        """Pin or unpin a country code; return ``True`` if it is now pinned."""

        normalized = code.strip().upper()
        if not normalized:
            return False
        if normalized in self.favorite_countries:
            self.favorite_countries = [c for c in self.favorite_countries if c != normalized]
            return False
        self.favorite_countries.append(normalized)
        return True


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _clean_scalar(value: str) -> str:
    value = value.strip()
    if value.startswith(("'", '"')) and value.endswith(("'", '"')):
        value = value[1:-1]
    return value


def _parse_config(raw: str) -> dict[str, object]:
    """Parse JSON, or the flat ``key: value`` / ``- item`` YAML subset we write."""

    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        pass
    else:
        return parsed if isinstance(parsed, dict) else {}

    result: dict[str, object] = {}
    current_list: Optional[list[str]] = None
    for line in raw.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        stripped = line.strip()
        if stripped.startswith("-"):
            if current_list is not None:
                item = _clean_scalar(stripped[1:])
                if item:
                    current_list.append(item)
            continue
        key, _, remainder = stripped.partition(":")
        key = key.strip()
        value = remainder.strip()
        if value == "[]":
            result[key] = []
            current_list = None
        elif value:
            result[key] = _clean_scalar(value)
            current_list = None
        else:
            current_list = []
            result[key] = current_list
    return result


def _coerce_positive_int(name: str, value: object, default: int) -> int:
    if value is None:
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        log.warning("Ignoring non-numeric %s value %r; using %d", name, value, default)
        return default
    if number <= 0:
        log.warning("%s must be positive (got %d); using %d", name, number, default)
        return default
    return number


def _coerce_positive_float(name: str, value: object, default: float) -> float:
    if value is None:
        return default
    try:
        number = float(str(value).strip())
    except ValueError:
        log.warning("Ignoring non-numeric %s value %r; using %.1f", name, value, default)
        return default
    if number <= 0:
        log.warning("%s must be positive (got %s); using %.1f", name, number, default)
        return default
    return number


def _optional_text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_catalog_url(value: object) -> str:
    text = _optional_text(value)
    if text is None:
        return DEFAULT_CATALOG_URL
    parsed = urlparse(text)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        log.warning("Invalid catalog_url %r; using %s", text, DEFAULT_CATALOG_URL)
        return DEFAULT_CATALOG_URL
    return text.rstrip("/")


def _dump_config(data: AppConfig) -> str:
    lines: list[str] = [
        "catalog_url: " + data.catalog_url,
        f"request_timeout: {data.request_timeout:g}",
        f"probe_timeout: {data.probe_timeout:g}",
        f"max_streams_per_channel: {data.max_streams_per_channel}",
        f"batch_size: {data.batch_size}",
        f"load_timeout: {data.load_timeout:g}",
    ]
    if data.preferred_player:
        lines.append("preferred_player: " + data.preferred_player)
    if data.user_agent:
        lines.append(f'user_agent: "{data.user_agent}"')
    if data.theme:
        lines.append("theme: " + data.theme)
    if data.favorite_countries:
        lines.append("favorite_countries:")
        for code in data.favorite_countries:
            lines.append("  - " + code)
    else:
        lines.append("favorite_countries: []")
    lines.append("")
    return "\n".join(lines)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load configuration from *path* or return the defaults."""

    config_path = path or CONFIG_PATH
    if not config_path.exists():
        log.info("Configuration file missing at %s; using defaults", config_path)
        return AppConfig()
    log.debug("Loading configuration from %s", config_path)
    data = _parse_config(config_path.read_text(encoding="utf8"))

    favorites_raw = data.get("favorite_countries", [])
    favorites: list[str] = []
    if isinstance(favorites_raw, list):
        for entry in favorites_raw:
            code = _optional_text(entry)
            if code and code.upper() not in favorites:
                favorites.append(code.upper())
    else:
        log.warning("Ignoring malformed favorite_countries entry: %r", favorites_raw)

    config = AppConfig(
        catalog_url=_normalize_catalog_url(data.get("catalog_url")),
        request_timeout=_coerce_positive_float(
            "request_timeout", data.get("request_timeout"), DEFAULT_REQUEST_TIMEOUT
        ),
        probe_timeout=_coerce_positive_float(
            "probe_timeout", data.get("probe_timeout"), DEFAULT_PROBE_TIMEOUT
        ),
        max_streams_per_channel=_coerce_positive_int(
            "max_streams_per_channel",
            data.get("max_streams_per_channel"),
            DEFAULT_MAX_STREAMS_PER_CHANNEL,
        ),
        batch_size=_coerce_positive_int(
            "batch_size", data.get("batch_size"), DEFAULT_BATCH_SIZE
        ),
        load_timeout=_coerce_positive_float(
            "load_timeout", data.get("load_timeout"), DEFAULT_LOAD_TIMEOUT
        ),
        preferred_player=_optional_text(data.get("preferred_player")),
        user_agent=_optional_text(data.get("user_agent")),
        theme=_optional_text(data.get("theme")),
        favorite_countries=favorites,
    )
    log.info(
        "Loaded configuration from %s (catalog=%s, batch=%d, streams/channel=%d)",
        config_path,
        config.catalog_url,
        config.batch_size,
        config.max_streams_per_channel,
    )
    return config


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    """Persist *config* to disk at *path*."""

    config_path = path or CONFIG_PATH
    log.debug("Writing configuration to %s", config_path)
    _ensure_parent(config_path)
    config_path.write_text(_dump_config(config), encoding="utf8")
    log.info("Configuration saved to %s", config_path)


__all__ = [
    "AppConfig",
    "CONFIG_PATH",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_CATALOG_URL",
    "DEFAULT_LOAD_TIMEOUT",
    "DEFAULT_MAX_STREAMS_PER_CHANNEL",
    "DEFAULT_PROBE_TIMEOUT",
    "DEFAULT_REQUEST_TIMEOUT",
    "load_config",
    "save_config",
]
