"""Read-only client for the public IPTV catalog and helpers over its records."""
from __future__ import annotations

import asyncio
import json
import unicodedata
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence, TypeVar
from urllib import error, request

from .config import DEFAULT_CATALOG_URL, DEFAULT_REQUEST_TIMEOUT
from .logging_utils import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class CatalogError(RuntimeError):
    """Raised when a catalog dataset cannot be downloaded or decoded."""


@dataclass(slots=True, frozen=True)
class Country:
    name: str
    code: str
    languages: tuple[str, ...] = ()
    flag: str = ""

    @property
    def label(self) -> str:
        return f"{self.flag} {self.name}".strip()


@dataclass(slots=True, frozen=True)
class Channel:
    """A broadcast entity listed in the catalog."""

    id: str
    name: str
    country: str
    categories: tuple[str, ...] = ()
    alt_names: tuple[str, ...] = ()
    network: Optional[str] = None
    website: Optional[str] = None
    closed: Optional[str] = None
    is_nsfw: bool = False


@dataclass(slots=True, frozen=True)
class Stream:
    """One playable URL for a channel (a mirror, feed or quality variant)."""

    url: str
    channel: Optional[str] = None
    title: str = ""
    quality: Optional[str] = None
    feed: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def label(self) -> str:
        title = self.title or self.url
        return f"{title} ({self.quality})" if self.quality else title


@dataclass(slots=True, frozen=True)
class Logo:
    channel: str
    url: str
    feed: Optional[str] = None
    tags: tuple[str, ...] = ()
    width: int = 0
    height: int = 0
    format: Optional[str] = None


def _text(value: object) -> Optional[str]:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _strings(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(item for item in (_text(entry) for entry in value) if item)


def _int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return 0


def _parse_country(entry: Mapping[str, object]) -> Optional[Country]:
    name = _text(entry.get("name"))
    code = _text(entry.get("code"))
    if not name or not code:
        return None
    return Country(
        name=name,
        code=code.upper(),
        languages=_strings(entry.get("languages")),
        flag=_text(entry.get("flag")) or "",
    )


def _parse_channel(entry: Mapping[str, object]) -> Optional[Channel]:
    channel_id = _text(entry.get("id"))
    name = _text(entry.get("name"))
    if not channel_id or not name:
        return None
    return Channel(
        id=channel_id,
        name=name,
        country=(_text(entry.get("country")) or "").upper(),
        categories=_strings(entry.get("categories")),
        alt_names=_strings(entry.get("alt_names")),
        network=_text(entry.get("network")),
        website=_text(entry.get("website")),
        closed=_text(entry.get("closed")),
        is_nsfw=entry.get("is_nsfw") is True,
    )


def _parse_stream(entry: Mapping[str, object]) -> Optional[Stream]:
    url = _text(entry.get("url"))
    if not url:
        return None
    return Stream(
        url=url,
        channel=_text(entry.get("channel")),
        title=_text(entry.get("title")) or "",
        quality=_text(entry.get("quality")),
        feed=_text(entry.get("feed")),
        referrer=_text(entry.get("referrer")),
        user_agent=_text(entry.get("user_agent")),
    )


def _parse_logo(entry: Mapping[str, object]) -> Optional[Logo]:
    channel = _text(entry.get("channel"))
    url = _text(entry.get("url"))
    if not channel or not url:
        return None
    return Logo(
        channel=channel,
        url=url,
        feed=_text(entry.get("feed")),
        tags=_strings(entry.get("tags")),
        width=_int(entry.get("width")),
        height=_int(entry.get("height")),
        format=_text(entry.get("format")),
    )


def _parse_records(payload: object, parser, dataset: str) -> list:
    if not isinstance(payload, list):
        raise CatalogError(f"Unexpected {dataset} payload: expected a JSON list")
    records = []
    skipped = 0
    for entry in payload:
        record = parser(entry) if isinstance(entry, dict) else None
        if record is None:
            skipped += 1
            continue
        records.append(record)
    if skipped:
        log.debug("Skipped %d malformed %s record(s)", skipped, dataset)
    return records


def _fetch_json(url: str, timeout: float, *, user_agent: Optional[str] = None) -> object:
    log.debug("Downloading %s (timeout=%s)", url, timeout)
    headers = {"Accept": "application/json"}
    if user_agent:
        headers["User-Agent"] = user_agent
    req = request.Request(url, headers=headers)
    with request.urlopen(req, timeout=timeout) as response:  # type: ignore[call-arg]
        payload = response.read()
    log.debug("Downloaded %d bytes from %s", len(payload), url)
    return json.loads(payload.decode("utf-8"))


class CatalogClient:
    """Fetch the catalog datasets once and keep them in memory."""

    DATASETS = ("countries", "channels", "streams", "logos")

    def __init__(
        self,
        base_url: str = DEFAULT_CATALOG_URL,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        user_agent: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent
        self._cache: dict[str, list] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def dataset_url(self, dataset: str) -> str:
        return f"{self.base_url}/{dataset}.json"

    def clear_cache(self) -> None:
        log.info("Clearing cached catalog datasets")
        self._cache.clear()

    async def _load(self, dataset: str, parser) -> list:
        cached = self._cache.get(dataset)
        if cached is not None:
            return cached
        lock = self._locks.setdefault(dataset, asyncio.Lock())
        async with lock:
            cached = self._cache.get(dataset)
            if cached is not None:
                return cached
            url = self.dataset_url(dataset)
            log.info("Fetching %s from %s", dataset, url)
            try:
                payload = await asyncio.to_thread(
                    _fetch_json, url, self.timeout, user_agent=self.user_agent
                )
            except (error.URLError, OSError, ValueError) as exc:
                log.error("Failed to fetch %s from %s: %s", dataset, url, exc)
                raise CatalogError(f"Failed to fetch {dataset}: {exc}") from exc
            records = _parse_records(payload, parser, dataset)
            log.info("Loaded %d %s", len(records), dataset)
            self._cache[dataset] = records
            return records

    async def fetch_countries(self) -> list[Country]:
        """Return every country ordered by name."""

        countries = await self._load("countries", _parse_country)
        return sorted(countries, key=lambda country: _fold(country.name))

    async def fetch_channels(self) -> list[Channel]:
        return await self._load("channels", _parse_channel)

    async def fetch_streams(self) -> list[Stream]:
        return await self._load("streams", _parse_stream)

    async def fetch_logos(self) -> list[Logo]:
        return await self._load("logos", _parse_logo)


def _fold(text: str) -> str:
    """Lowercase ``text`` and strip diacritics for matching and ordering."""

    normalized = unicodedata.normalize("NFKD", text)
    return "".join(char for char in normalized if not unicodedata.combining(char)).casefold()


def group_streams(streams: Iterable[Stream]) -> dict[str, list[Stream]]:
    """Index streams by channel id, keeping catalog order and dropping orphans."""

    grouped: dict[str, list[Stream]] = {}
    for stream in streams:
        if stream.channel:
            grouped.setdefault(stream.channel, []).append(stream)
    return grouped


def available_channels(
    channels: Iterable[Channel],
    streams: Iterable[Stream] | Mapping[str, Sequence[Stream]],
    country_code: str,
) -> list[Channel]:
    """Return the browsable channels of ``country_code`` sorted by name.

    Closed and NSFW channels are dropped, as is any channel without at least one
    stream.
    """

    if isinstance(streams, Mapping):
        with_streams = {channel_id for channel_id, items in streams.items() if items}
    else:
        with_streams = {stream.channel for stream in streams if stream.channel}
    code = country_code.upper()
    result = [
        channel
        for channel in channels
        if channel.country == code
        and not channel.closed
        and not channel.is_nsfw
        and channel.id in with_streams
    ]
    result.sort(key=lambda channel: _fold(channel.name))
    log.debug("Country %s has %d browsable channel(s)", code, len(result))
    return result


def logo_for_channel(logos: Iterable[Logo], channel_id: str) -> Optional[str]:
    for logo in logos:
        if logo.channel == channel_id:
            return logo.url
    return None


def filter_countries(countries: Sequence[Country], query: str) -> list[Country]:
    """Return countries whose name or code contains ``query``."""

    needle = _fold(query.strip())
    if not needle:
        return list(countries)
    return [
        country
        for country in countries
        if needle in _fold(country.name) or needle in country.code.casefold()
    ]


def filter_channels(channels: Sequence[Channel], query: str) -> list[Channel]:
    """Return channels whose name or any alternative name contains ``query``."""

    needle = _fold(query.strip())
    if not needle:
        return list(channels)
    return [
        channel
        for channel in channels
        if needle in _fold(channel.name)
        or any(needle in _fold(alt) for alt in channel.alt_names)
    ]


def order_countries(
    countries: Sequence[Country], pinned: Sequence[str] = ()
) -> list[Country]:
    """Move the pinned country codes to the front, preserving order otherwise."""

    if not pinned:
        return list(countries)
    wanted = [code.upper() for code in pinned]
    by_code = {country.code: country for country in countries}
    front = [by_code[code] for code in wanted if code in by_code]
    front_codes = {country.code for country in front}
    return front + [country for country in countries if country.code not in front_codes]


__all__ = [
    "CatalogClient",
    "CatalogError",
    "Channel",
    "Country",
    "Logo",
    "Stream",
    "available_channels",
    "filter_channels",
    "filter_countries",
    "group_streams",
    "logo_for_channel",
    "order_countries",
]
