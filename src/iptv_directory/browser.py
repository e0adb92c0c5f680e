"""Navigation state for the directory: home, countries, channels and player."""
from __future__ import annotations

import asyncio
import enum
from typing import (
    TYPE_CHECKING,
    AsyncIterator,
    Callable,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

from .catalog import (
    CatalogClient,
    CatalogError,
    Channel,
    Country,
    Logo,
    Stream,
    available_channels,
    filter_channels,
    filter_countries,
    group_streams,
    logo_for_channel,
    order_countries,
)
from .logging_utils import get_logger
from .prober import CancellationToken, ProbeSession, ProbeUpdate

if TYPE_CHECKING:  # pragma: no cover - only for typing
    from .playback import PlaybackController, PlaybackOutcome

log = get_logger(__name__)

COUNTRIES_ERROR = "Failed to load countries. Please try again."
CHANNELS_ERROR = "Failed to load channels. Please try again."
STREAMS_EXHAUSTED_ERROR = "All streams failed. Try another channel."


class View(enum.Enum):
    HOME = "home"
    COUNTRIES = "countries"
    CHANNELS = "channels"
    PLAYER = "player"


class ChannelStatus(enum.Enum):
    ONLINE = "online"
    CHECKING = "checking"
    UNCONFIRMED = "unconfirmed"


class LivenessProber(Protocol):
    def probe_online(
        self,
        channels: Sequence[Channel],
        streams: Mapping[str, Sequence[Stream]],
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[ProbeUpdate]:
        ...


class Browser:
    """Drive the directory views and own the active probe session.

    Only one probe session exists at a time. Selecting another country, going
    back, or skipping the check cancels it; listeners are notified after every
    state change so the UI can re-render.
    """

    def __init__(
        self,
        catalog: CatalogClient,
        prober: LivenessProber,
        *,
        pinned_countries: Sequence[str] = (),
    ) -> None:
        self.catalog = catalog
        self.prober = prober
        self.pinned_countries = list(pinned_countries)
        self.view = View.HOME
        self.countries: list[Country] = []
        self._countries_by_name: list[Country] = []
        self.channels: list[Channel] = []
        self.streams_by_channel: dict[str, list[Stream]] = {}
        self.logos: list[Logo] = []
        self.selected_country: Optional[Country] = None
        self.selected_channel: Optional[Channel] = None
        self.selected_stream: Optional[Stream] = None
        self.stream_index = 0
        self.stream_started = False
        self.search_term = ""
        self.error: Optional[str] = None
        self.loading = False
        self.session: Optional[ProbeSession] = None
        self._probe_task: Optional[asyncio.Task[None]] = None
        self._listeners: list[Callable[[], None]] = []

    # -- listeners -------------------------------------------------------

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:  # pragma: no cover - diagnostic safeguard
                log.exception("Browser listener failed")

    # -- probe session ---------------------------------------------------

    @property
    def checking(self) -> bool:
        return self.session is not None and self.session.checking

    @property
    def online_ids(self) -> frozenset[str]:
        return self.session.online_ids if self.session is not None else frozenset()

    async def _cancel_probe(self) -> None:
        session, task = self.session, self._probe_task
        self._probe_task = None
        if session is not None:
            session.cancel()
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _start_probe(self) -> None:
        session = ProbeSession(total=len(self.channels))
        self.session = session
        if not self.channels:
            session.mark_finished()
            return
        channels = list(self.channels)
        streams = self.streams_by_channel
        self._probe_task = asyncio.create_task(self._run_probe(session, channels, streams))

    async def _run_probe(
        self,
        session: ProbeSession,
        channels: Sequence[Channel],
        streams: Mapping[str, Sequence[Stream]],
    ) -> None:
        updates = self.prober.probe_online(channels, streams, cancel_token=session.token)
        try:
            async for update in updates:
                if session is not self.session or session.cancelled:
                    break
                session.apply(update)
                self._notify()
        except asyncio.CancelledError:
            session.cancel()
            raise
        except Exception:
            log.exception("Stream check failed; showing all channels")
        finally:
            aclose = getattr(updates, "aclose", None)
            if aclose is not None:
                await aclose()
            session.mark_finished()
        if session is self.session:
            self._notify()

    def skip_checking(self) -> None:
        """Stop the running check; every channel stays visible."""

        if self.session is None or not self.session.checking:
            return
        log.info(
            "Skipping stream check at %d/%d", self.session.checked, self.session.total
        )
        self.session.cancel()
        self._notify()

    # -- navigation ------------------------------------------------------

    async def show_countries(self) -> None:
        self.loading = True
        self.error = None
        self._notify()
        try:
            countries = await self.catalog.fetch_countries()
        except CatalogError as exc:
            log.error("Unable to load countries: %s", exc)
            self.error = COUNTRIES_ERROR
        else:
            self._countries_by_name = countries
            self.countries = order_countries(countries, self.pinned_countries)
            self.search_term = ""
            self.view = View.COUNTRIES
        finally:
            self.loading = False
        self._notify()

    async def select_country(self, country: Country) -> None:
        """Load and show the channels of ``country`` and start checking them."""

        await self._cancel_probe()
        self.session = None
        self.selected_country = country
        self.search_term = ""
        self.loading = True
        self.error = None
        self._notify()
        try:
            channels, streams, logos = await asyncio.gather(
                self.catalog.fetch_channels(),
                self.catalog.fetch_streams(),
                self.catalog.fetch_logos(),
            )
        except CatalogError as exc:
            log.error("Unable to load channels for %s: %s", country.code, exc)
            self.error = CHANNELS_ERROR
            self.loading = False
            self._notify()
            return
        grouped = group_streams(streams)
        self.channels = available_channels(channels, grouped, country.code)
        self.streams_by_channel = {
            channel.id: grouped[channel.id] for channel in self.channels
        }
        self.logos = logos
        self.loading = False
        self.view = View.CHANNELS
        log.info("Showing %d channel(s) for %s", len(self.channels), country.name)
        self._start_probe()
        self._notify()

    async def reload(self) -> None:
        """Drop cached catalog data and reload the current view."""

        self.catalog.clear_cache()
        if self.view is View.COUNTRIES:
            await self.show_countries()
        elif self.view is View.CHANNELS and self.selected_country is not None:
            await self.select_country(self.selected_country)

    def set_pinned_countries(self, codes: Sequence[str]) -> None:
        self.pinned_countries = list(codes)
        self.countries = order_countries(self._countries_by_name, self.pinned_countries)
        self._notify()

    def set_search(self, term: str) -> None:
        self.search_term = term
        self._notify()

    def visible_countries(self) -> list[Country]:
        return filter_countries(self.countries, self.search_term)

    def visible_channels(self) -> list[Channel]:
        """Channels to display after the search filter and the liveness filter.

        Unconfirmed channels are only hidden once a completed check confirmed at
        least one channel; while checking, after a skip, or when nothing was
        confirmed, the full list is shown.
        """

        matches = filter_channels(self.channels, self.search_term)
        session = self.session
        if (
            session is None
            or session.checking
            or session.cancelled
            or not session.online_ids
        ):
            return matches
        return [channel for channel in matches if channel.id in session.online_ids]

    def channel_status(self, channel: Channel) -> ChannelStatus:
        if channel.id in self.online_ids:
            return ChannelStatus.ONLINE
        if self.checking:
            return ChannelStatus.CHECKING
        return ChannelStatus.UNCONFIRMED

    def summary(self) -> str:
        session = self.session
        total = len(self.channels)
        if session is None:
            return f"{total} channels available"
        if session.checking:
            return (
                f"Checking streams… {session.checked}/{session.total} "
                f"({session.online} online)"
            )
        if session.cancelled:
            return f"Stream check skipped; showing all {total} channels"
        if not session.online_ids:
            if total == 0:
                return "No channels available"
            return f"No online channels confirmed; showing all {total} channels"
        hidden = total - len(session.online_ids)
        return f"{len(session.online_ids)} online channels ({hidden} offline hidden)"

    def streams_for(self, channel: Channel) -> list[Stream]:
        return list(self.streams_by_channel.get(channel.id, ()))

    def logo_for(self, channel: Channel) -> Optional[str]:
        return logo_for_channel(self.logos, channel.id)

    def select_channel(self, channel: Channel) -> Optional[Stream]:
        """Open the player on the first stream of ``channel``."""

        streams = self.streams_for(channel)
        if not streams:
            log.debug("Channel %s has no streams; ignoring selection", channel.id)
            return None
        self.selected_channel = channel
        self.stream_index = 0
        self.selected_stream = streams[0]
        self.stream_started = False
        self.error = None
        self.view = View.PLAYER
        log.info("Selected channel %s (%d stream(s))", channel.name, len(streams))
        self._notify()
        return self.selected_stream

    def select_stream(self, index: int) -> Optional[Stream]:
        if self.selected_channel is None:
            return None
        streams = self.streams_for(self.selected_channel)
        if not 0 <= index < len(streams):
            return None
        self.stream_index = index
        self.selected_stream = streams[index]
        self.stream_started = False
        self.error = None
        self._notify()
        return self.selected_stream

    def next_stream(self) -> Optional[Stream]:
        """Advance to the next stream of the selected channel, if any is left."""

        if self.selected_channel is None:
            return None
        streams = self.streams_for(self.selected_channel)
        next_index = self.stream_index + 1
        if next_index < len(streams):
            log.info(
                "Trying stream %d/%d for %s",
                next_index + 1,
                len(streams),
                self.selected_channel.name,
            )
            return self.select_stream(next_index)
        log.warning("All streams failed for %s", self.selected_channel.name)
        self.error = STREAMS_EXHAUSTED_ERROR
        self.stream_started = False
        self._notify()
        return None

    def mark_stream_started(self, stream: Stream) -> None:
        if stream is self.selected_stream:
            self.stream_started = True
            self._notify()

    async def play(self, controller: "PlaybackController") -> Optional["PlaybackOutcome"]:
        """Play the selected channel, falling back to its next stream on failure."""

        from .playback import PlaybackOutcome

        channel = self.selected_channel
        stream = self.selected_stream
        outcome: Optional[PlaybackOutcome] = None
        while stream is not None and channel is self.selected_channel:
            outcome = await controller.play(
                stream, title=channel.name if channel else None, on_started=self.mark_stream_started
            )
            if outcome is not PlaybackOutcome.FAILED:
                break
            if stream is not self.selected_stream:
                # The user picked another stream while this one was failing.
                stream = self.selected_stream
                continue
            stream = self.next_stream()
        return outcome

    async def go_back(self) -> None:
        self.search_term = ""
        self.error = None
        await self._cancel_probe()
        if self.view is View.COUNTRIES:
            self.view = View.HOME
        elif self.view is View.CHANNELS:
            self.view = View.COUNTRIES
            self.selected_country = None
            self.session = None
            self.channels = []
            self.streams_by_channel = {}
        elif self.view is View.PLAYER:
            self.view = View.CHANNELS
            self.selected_channel = None
            self.selected_stream = None
            self.stream_index = 0
            self.stream_started = False
        self._notify()

    async def close(self) -> None:
        await self._cancel_probe()


__all__ = [
    "Browser",
    "CHANNELS_ERROR",
    "COUNTRIES_ERROR",
    "ChannelStatus",
    "LivenessProber",
    "STREAMS_EXHAUSTED_ERROR",
    "View",
]
