"""Best-effort stream liveness checks run in cancellable, bounded batches.

A channel counts as *online* as soon as one of its first few streams answers a
``HEAD`` request. Any HTTP response, error statuses included, is treated as
reachable once redirects have been followed: the check only proves that the
final stream host accepted a request, so a redirect to a dead host fails.
Absence of a positive answer means "not confirmed", never "offline".
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Sequence,
)

import aiohttp
from aiohttp import ClientTimeout, TCPConnector

from .catalog import Channel, Stream, group_streams
from .config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_STREAMS_PER_CHANNEL,
    DEFAULT_PROBE_TIMEOUT,
)
from .logging_utils import get_logger

log = get_logger(__name__)

ProbeFunc = Callable[[str], Awaitable[bool]]


class CancellationToken:
    """Cooperative cancellation flag that also aborts the tasks it tracks."""

    __slots__ = ("_event", "_tasks")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._tasks: set[asyncio.Future] = set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            log.debug("Aborted %d in-flight probe(s)", len(pending))

    async def wait(self) -> None:
        await self._event.wait()

    def track(self, task: asyncio.Future) -> asyncio.Future:
        """Register ``task`` so that :meth:`cancel` aborts it."""

        if self._event.is_set():
            task.cancel()
            return task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


@dataclass(slots=True, frozen=True)
class ProbeResult:
    channel_id: str
    reachable: bool
    streams_checked: int


@dataclass(slots=True, frozen=True)
class ProbeUpdate:
    """Cumulative progress emitted after each completed batch."""

    checked: int
    total: int
    online: int
    online_ids: frozenset[str] = frozenset()


@dataclass(slots=True)
class ProbeSession:
    """Run state of one probing pass, owned by the browsing layer."""

    total: int
    checked: int = 0
    online: int = 0
    online_ids: frozenset[str] = frozenset()
    cancelled: bool = False
    finished: bool = False
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)

    @property
    def checking(self) -> bool:
        return not (self.finished or self.cancelled)

    def apply(self, update: ProbeUpdate) -> None:
        if self.cancelled:
            return
        if update.checked < self.checked or update.online < self.online:
            raise ValueError("Probe progress must not go backwards")
        self.checked = min(update.checked, self.total)
        self.online = min(update.online, self.checked)
        self.online_ids = update.online_ids

    def cancel(self) -> None:
        if self.finished or self.cancelled:
            return
        self.cancelled = True
        self.token.cancel()

    def mark_finished(self) -> None:
        if not self.cancelled:
            self.finished = True


async def probe_stream(
    session: aiohttp.ClientSession,
    url: str,
    *,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> bool:
    """Return ``True`` if a connection to ``url`` can be initiated.

    Redirects are followed; the final response status is ignored.
    """

    try:
        async with session.head(
            url,
            timeout=ClientTimeout(total=timeout),
            allow_redirects=True,
        ) as response:
            log.debug("Probe %s answered with HTTP %s", url, response.status)
            return True
    except asyncio.TimeoutError:
        log.debug("Probe %s timed out after %.1fs", url, timeout)
    except (aiohttp.ClientError, ValueError) as exc:
        log.debug("Probe %s failed: %s", url, exc)
    return False


async def _safe_probe(probe: ProbeFunc, url: str) -> bool:
    try:
        return bool(await probe(url))
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        log.debug("Probe %s raised %s; treating as unreachable", url, exc)
        return False


async def check_channel_online(
    channel_id: str,
    streams: Sequence[Stream],
    probe: ProbeFunc,
    *,
    max_streams: int = DEFAULT_MAX_STREAMS_PER_CHANNEL,
    cancel_token: Optional[CancellationToken] = None,
) -> ProbeResult:
    """Probe the first ``max_streams`` streams of a channel concurrently."""

    sampled = list(streams[:max_streams])
    if not sampled:
        return ProbeResult(channel_id, False, 0)
    tasks = []
    for stream in sampled:
        task = asyncio.ensure_future(_safe_probe(probe, stream.url))
        if cancel_token is not None:
            cancel_token.track(task)
        tasks.append(task)
    try:
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise
    reachable = any(outcome is True for outcome in outcomes)
    return ProbeResult(channel_id, reachable, len(sampled))


async def probe_online(
    channels: Sequence[Channel],
    streams: Iterable[Stream] | Mapping[str, Sequence[Stream]],
    *,
    probe: ProbeFunc,
    max_streams_per_channel: int = DEFAULT_MAX_STREAMS_PER_CHANNEL,
    batch_size: int = DEFAULT_BATCH_SIZE,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[ProbeUpdate]:
    """Yield a cumulative :class:`ProbeUpdate` after each batch of channels.

    Batches run strictly one after another; channels within a batch, and the
    sampled streams of each channel, are probed concurrently. Cancellation is
    checked at every batch boundary and aborts the probes still in flight; an
    interrupted batch produces no update.
    """

    if max_streams_per_channel <= 0:
        raise ValueError("max_streams_per_channel must be positive")
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    by_channel = streams if isinstance(streams, Mapping) else group_streams(streams)
    total = len(channels)
    online_ids: set[str] = set()
    log.info(
        "Checking %d channel(s) in batches of %d (up to %d stream(s) each)",
        total,
        batch_size,
        max_streams_per_channel,
    )

    for start in range(0, total, batch_size):
        if cancel_token is not None and cancel_token.cancelled:
            log.info("Stream check cancelled after %d/%d channel(s)", start, total)
            return
        batch = channels[start : start + batch_size]
        results = await asyncio.gather(
            *(
                check_channel_online(
                    channel.id,
                    by_channel.get(channel.id, ()),
                    probe,
                    max_streams=max_streams_per_channel,
                    cancel_token=cancel_token,
                )
                for channel in batch
            )
        )
        if cancel_token is not None and cancel_token.cancelled:
            log.info("Stream check cancelled during batch at %d/%d", start, total)
            return
        for result in results:
            if result.reachable:
                online_ids.add(result.channel_id)
        checked = min(start + batch_size, total)
        log.debug("Batch done: %d/%d checked, %d online", checked, total, len(online_ids))
        yield ProbeUpdate(
            checked=checked,
            total=total,
            online=len(online_ids),
            online_ids=frozenset(online_ids),
        )

    log.info("Stream check finished: %d/%d channel(s) online", len(online_ids), total)


class StreamProber:
    """Own an :mod:`aiohttp` session and run liveness checks through it."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        max_streams_per_channel: int = DEFAULT_MAX_STREAMS_PER_CHANNEL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        user_agent: Optional[str] = None,
    ) -> None:
        self.timeout = timeout
        self.max_streams_per_channel = max_streams_per_channel
        self.batch_size = batch_size
        self.user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "StreamProber":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def open(self) -> None:
        if self._session is not None and not self._session.closed:
            return
        headers = {"User-Agent": self.user_agent} if self.user_agent else None
        # One connection per concurrently probed stream is enough.
        connector = TCPConnector(
            limit=self.batch_size * self.max_streams_per_channel,
            ttl_dns_cache=300,
        )
        self._session = aiohttp.ClientSession(connector=connector, headers=headers)
        log.debug("Opened probe session (timeout=%.1fs)", self.timeout)

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()
            log.debug("Closed probe session")

    async def probe(self, url: str) -> bool:
        if self._session is None or self._session.closed:
            await self.open()
        assert self._session is not None
        return await probe_stream(self._session, url, timeout=self.timeout)

    def probe_online(
        self,
        channels: Sequence[Channel],
        streams: Iterable[Stream] | Mapping[str, Sequence[Stream]],
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[ProbeUpdate]:
        return probe_online(
            channels,
            streams,
            probe=self.probe,
            max_streams_per_channel=self.max_streams_per_channel,
            batch_size=self.batch_size,
            cancel_token=cancel_token,
        )


__all__ = [
    "CancellationToken",
    "ProbeFunc",
    "ProbeResult",
    "ProbeSession",
    "ProbeUpdate",
    "StreamProber",
    "check_channel_online",
    "probe_online",
    "probe_stream",
]
