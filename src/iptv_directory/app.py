"""Textual application for browsing the IPTV directory."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

try:
    from textual import events, on, work
    from textual.app import App, ComposeResult
    from textual.binding import Binding
    from textual.containers import Horizontal, Vertical
    from textual.reactive import reactive
    from textual.widgets import (
        Button,
        ContentSwitcher,
        Footer,
        Header,
        Input,
        Label,
        ListItem,
        ListView,
        Static,
    )
    from textual.worker import Worker
except ModuleNotFoundError as exc:  # pragma: no cover - dependency guard
    raise ModuleNotFoundError(
        "The 'textual' package is required to run iptv_directory. "
        "Install dependencies with 'pip install -e .[dev]'."
    ) from exc

from rich.markup import escape

from .browser import Browser, ChannelStatus, View
from .catalog import CatalogClient, Channel, Country, Stream
from .config import CONFIG_PATH, AppConfig, save_config
from .log_viewer import LogViewer
from .logging_utils import configure_logging, get_logger
from .playback import PlaybackController, PlaybackOutcome, probe_player
from .prober import StreamProber
from .themes import CUSTOM_THEMES, DEFAULT_THEME_NAME

log = get_logger(__name__)

_VIEW_IDS = {
    View.HOME: "home-view",
    View.COUNTRIES: "countries-view",
    View.CHANNELS: "channels-view",
    View.PLAYER: "player-view",
}

_STATUS_MARKERS = {
    ChannelStatus.ONLINE: "[green]●[/]",
    ChannelStatus.CHECKING: "[dim]○[/]",
    ChannelStatus.UNCONFIRMED: "[dim]·[/]",
}

WELCOME_TEXT = (
    "[b]IPTV Directory[/b]\n\n"
    "Browse free-to-air channels from around the world. Pick a country, let the\n"
    "directory check which channels answer right now, and open one in your\n"
    "media player. Press [b]Enter[/b] to start."
)


def progress_bar(fraction: float, width: int = 28) -> str:
    """Return a block-character progress bar for ``fraction`` (0.0 to 1.0)."""

    clamped = max(0.0, min(fraction, 1.0))
    filled = max(0, min(width, int(round(clamped * width))))
    return f"{'█' * filled}{'░' * (width - filled)}"


class CountryListItem(ListItem):
    def __init__(self, country: Country, *, pinned: bool = False) -> None:
        self.country = country
        self.pinned = pinned
        prefix = "★ " if pinned else ""
        label = f"{prefix}{escape(country.label)} [dim]{escape(country.code)}[/]"
        super().__init__(Label(label, markup=True))


class ChannelListItem(ListItem):
    """Render a channel with its liveness marker."""

    def __init__(self, channel: Channel, status: ChannelStatus) -> None:
        self.channel = channel
        self._status = status
        self._label = Label("", markup=True)
        super().__init__(self._label)
        self._refresh_label()

    def set_status(self, status: ChannelStatus) -> None:
        if status is self._status:
            return
        self._status = status
        self._refresh_label()

    def _refresh_label(self) -> None:
        categories = ", ".join(self.channel.categories[:2])
        suffix = f" [dim]{escape(categories)}[/]" if categories else ""
        self._label.update(
            f"{_STATUS_MARKERS[self._status]} {escape(self.channel.name)}{suffix}"
        )
        self.set_class(self._status is ChannelStatus.CHECKING, "-checking")


class StreamListItem(ListItem):
    def __init__(self, index: int, stream: Stream, *, current: bool) -> None:
        self.stream_index = index
        marker = "▶ " if current else "  "
        title = stream.title or f"Stream {index + 1}"
        quality = f" [dim]{escape(stream.quality)}[/]" if stream.quality else ""
        super().__init__(Label(f"{marker}{escape(title)}{quality}", markup=True))


class SearchInput(Input):
    """Search field that hands arrow navigation to the list below it."""

    def __init__(self, *, target: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.target = target

    def on_key(self, event: events.Key) -> None:  # pragma: no cover - UI callback
        if event.key in ("down", "up"):
            app = getattr(self, "app", None)
            if isinstance(app, DirectoryApp):
                event.stop()
                app.call_after_refresh(app.focus_list, self.target)
                return
        handler = getattr(super(), "on_key", None)
        if callable(handler):
            handler(event)


class StatusBar(Static):
    """A simple status bar widget."""

    status: reactive[str] = reactive("Ready")

    def watch_status(self, status: str) -> None:
        self.update(status)


class ProbeProgress(Static):
    """Progress line for the stream check of the selected country."""

    def show_progress(self, *, checked: int, total: int, online: int) -> None:
        self.display = True
        fraction = checked / total if total else 1.0
        self.update(
            f"Checking streams… {checked}/{total} [green]({online} online)[/]\n"
            f"[{progress_bar(fraction)}]"
        )

    def show_summary(self, text: str) -> None:
        self.display = True
        self.update(escape(text))


DEFAULT_CSS = """
#views {
    height: 1fr;
}

#home-view,
#countries-view,
#channels-view,
#player-view,
#logs-view {
    layout: vertical;
    height: 1fr;
    padding: 1;
}

#welcome {
    padding: 1 2;
    border: heavy $primary;
    margin-bottom: 1;
}

#channels-title,
#player-title {
    text-style: bold;
    padding-bottom: 1;
}

#probe-progress {
    border: heavy $surface;
    padding: 0 1;
    min-height: 3;
}

#channel-toolbar,
#player-actions {
    layout: horizontal;
    height: auto;
}

#channel-search {
    width: 1fr;
}

#country-list,
#channel-list,
#stream-list,
#log-viewer {
    height: 1fr;
}

#player-info {
    border: heavy $surface;
    padding: 1;
    min-height: 8;
}

#player-actions Button {
    width: 1fr;
}

ChannelListItem.-checking {
    opacity: 80%;
}

#log-viewer {
    border: heavy $surface;
    padding: 0 1;
    overflow-y: auto;
}

StatusBar {
    padding: 0 1;
}
"""


class DirectoryApp(App[None]):
    """Main Textual application."""

    CSS = DEFAULT_CSS
    TITLE = "IPTV Directory"
    BINDINGS = [
        Binding("ctrl+c", "quit", "Quit"),
        Binding("q", "quit", "Quit"),
        Binding("escape", "go_back", "Back"),
        Binding("/", "focus_search", "Search"),
        Binding("k", "skip_checking", "Skip check"),
        Binding("n", "next_stream", "Next stream"),
        Binding("s", "stop_playback", "Stop"),
        Binding("r", "reload", "Reload"),
        Binding("f", "toggle_pin", "Pin country"),
        Binding("ctrl+shift+p", "probe_player", "Probe player"),
        Binding("f4", "toggle_logs", "Logs"),
    ]

    def __init__(
        self,
        config: AppConfig,
        *,
        config_path: Optional[Path] = None,
        preferred_player: Optional[str] = None,
        theme: Optional[str] = None,
        catalog: Optional[CatalogClient] = None,
        prober: Optional[StreamProber] = None,
    ) -> None:
        super().__init__()
        for custom in CUSTOM_THEMES.values():
            self.register_theme(custom)
        self._apply_requested_theme(theme or config.theme)
        self._config = config
        self._config_path = config_path or CONFIG_PATH
        self._catalog = catalog or CatalogClient(
            config.catalog_url,
            timeout=config.request_timeout,
            user_agent=config.user_agent,
        )
        self._prober = prober or StreamProber(
            timeout=config.probe_timeout,
            max_streams_per_channel=config.max_streams_per_channel,
            batch_size=config.batch_size,
            user_agent=config.user_agent,
        )
        self.browser = Browser(
            self._catalog, self._prober, pinned_countries=config.favorite_countries
        )
        self._controller = PlaybackController(
            preferred_player=preferred_player or config.preferred_player,
            load_timeout=config.load_timeout,
        )
        self._playback_worker: Optional[Worker] = None
        self._rendered_countries: tuple[str, ...] = ()
        self._rendered_channels: tuple[str, ...] = ()
        self._channel_items: dict[str, ChannelListItem] = {}
        self._rendered_streams: tuple[Any, ...] = ()
        self._showing_logs = False
        self._probing_player = False
        log.info(
            "DirectoryApp initialized (catalog=%s, batch=%d, streams/channel=%d)",
            config.catalog_url,
            config.batch_size,
            config.max_streams_per_channel,
        )

    def _apply_requested_theme(self, requested: Optional[str]) -> None:
        if requested and requested in CUSTOM_THEMES:
            self.theme = requested
            return
        if requested:
            log.warning(
                "Requested theme '%s' is unavailable; falling back to %s",
                requested,
                DEFAULT_THEME_NAME,
            )
        self.theme = DEFAULT_THEME_NAME

    def compose(self) -> ComposeResult:
        yield Header()
        with ContentSwitcher(initial="home-view", id="views"):
            with Vertical(id="home-view"):
                yield Static(WELCOME_TEXT, id="welcome")
                yield Button("Browse countries", id="browse", variant="primary")
            with Vertical(id="countries-view"):
                yield SearchInput(
                    target="#country-list",
                    placeholder="Search countries…",
                    id="country-search",
                )
                yield ListView(id="country-list")
            with Vertical(id="channels-view"):
                yield Label("", id="channels-title")
                yield ProbeProgress("", id="probe-progress")
                with Horizontal(id="channel-toolbar"):
                    yield SearchInput(
                        target="#channel-list",
                        placeholder="Search channels…",
                        id="channel-search",
                    )
                    yield Button("Skip checking", id="skip-check", variant="warning")
                yield ListView(id="channel-list")
            with Vertical(id="player-view"):
                yield Label("", id="player-title")
                yield Static("", id="player-info")
                yield ListView(id="stream-list")
                with Horizontal(id="player-actions"):
                    yield Button("Play", id="play", variant="success")
                    yield Button("Next stream", id="next-stream")
                    yield Button("Stop", id="stop", variant="warning")
            with Vertical(id="logs-view"):
                yield LogViewer(id="log-viewer")
        yield StatusBar(id="status")
        yield Footer()

    def on_mount(self) -> None:
        log.debug("Application mounted")
        configure_logging(console=False)
        self.browser.add_listener(self._refresh_view)
        self._refresh_view()
        self.query_one("#browse", Button).focus()

    async def on_unmount(self) -> None:
        self._controller.stop()
        await self.browser.close()
        await self._prober.close()
        configure_logging(console=True)

    # -- helpers ---------------------------------------------------------

    def _set_status(self, message: str) -> None:
        log.debug("Status update: %s", message)
        try:
            self.query_one(StatusBar).status = message
        except Exception:
            log.debug("Dropping status update; status bar unavailable")

    def focus_list(self, selector: str) -> None:
        list_view = self.query_one(selector, ListView)
        list_view.focus()
        if list_view.index is None and len(list_view):
            list_view.index = 0

    def _refresh_view(self) -> None:
        browser = self.browser
        if not self._showing_logs:
            self.query_one("#views", ContentSwitcher).current = _VIEW_IDS[browser.view]
        if browser.view is View.COUNTRIES:
            self._render_countries()
        elif browser.view is View.CHANNELS:
            self._render_channels()
        elif browser.view is View.PLAYER:
            self._render_player()
        if browser.error:
            self._set_status(browser.error)
        elif browser.loading:
            self._set_status("Loading catalog…")
        elif browser.view is View.CHANNELS:
            self._set_status(browser.summary())
        elif browser.view is View.COUNTRIES:
            self._set_status(f"{len(browser.countries)} countries")

    def _render_countries(self) -> None:
        countries = self.browser.visible_countries()
        codes = tuple(country.code for country in countries)
        signature = codes + tuple(sorted(self._config.favorite_countries))
        if signature == self._rendered_countries:
            return
        self._rendered_countries = signature
        list_view = self.query_one("#country-list", ListView)
        list_view.clear()
        list_view.extend(
            CountryListItem(country, pinned=self._config.is_favorite_country(country.code))
            for country in countries
        )

    def _render_channels(self) -> None:
        browser = self.browser
        country = browser.selected_country
        title = f"{country.label} channels" if country else "Channels"
        self.query_one("#channels-title", Label).update(escape(title))

        progress = self.query_one(ProbeProgress)
        session = browser.session
        if session is not None and session.checking:
            progress.show_progress(
                checked=session.checked, total=session.total, online=session.online
            )
        else:
            progress.show_summary(browser.summary())
        self.query_one("#skip-check", Button).display = browser.checking

        channels = browser.visible_channels()
        ids = tuple(channel.id for channel in channels)
        if ids != self._rendered_channels:
            self._rendered_channels = ids
            self._channel_items = {
                channel.id: ChannelListItem(channel, browser.channel_status(channel))
                for channel in channels
            }
            list_view = self.query_one("#channel-list", ListView)
            list_view.clear()
            list_view.extend(self._channel_items.values())
            return
        for channel in channels:
            item = self._channel_items.get(channel.id)
            if item is not None:
                item.set_status(browser.channel_status(channel))

    def _render_player(self) -> None:
        browser = self.browser
        channel = browser.selected_channel
        stream = browser.selected_stream
        if channel is None:
            return
        self.query_one("#player-title", Label).update(escape(channel.name))
        streams = browser.streams_for(channel)
        lines = []
        if channel.categories:
            lines.append(f"Categories: {escape(', '.join(channel.categories))}")
        if channel.network:
            lines.append(f"Network: {escape(channel.network)}")
        if channel.website:
            lines.append(f"Website: {escape(channel.website)}")
        logo = browser.logo_for(channel)
        if logo:
            lines.append(f"Logo: {escape(logo)}")
        if stream is not None:
            lines.append(
                f"Stream {browser.stream_index + 1}/{len(streams)}: {escape(stream.label)}"
            )
        if browser.error:
            lines.append(f"[red]{escape(browser.error)}[/]")
        elif browser.stream_started:
            lines.append("[green]Playing in external player[/]")
        elif self._playback_worker is not None and not self._playback_worker.is_finished:
            lines.append("Loading stream…")
        self.query_one("#player-info", Static).update("\n".join(lines))

        signature = (channel.id, browser.stream_index, len(streams))
        if signature != self._rendered_streams:
            self._rendered_streams = signature
            list_view = self.query_one("#stream-list", ListView)
            list_view.clear()
            list_view.extend(
                StreamListItem(index, item, current=index == browser.stream_index)
                for index, item in enumerate(streams)
            )

    # -- playback --------------------------------------------------------

    def _start_playback(self) -> None:
        self._stop_playback_worker()
        self._playback_worker = self.run_worker(
            self._play_selected(), group="playback", exclusive=True
        )
        self._refresh_view()

    def _stop_playback_worker(self) -> None:
        self._controller.stop()
        worker = self._playback_worker
        if worker is not None and not worker.is_finished:
            worker.cancel()
        self._playback_worker = None

    async def _play_selected(self) -> None:
        channel = self.browser.selected_channel
        if channel is None:
            return
        self._set_status(f"Opening {channel.name}…")
        try:
            outcome = await self.browser.play(self._controller)
        except RuntimeError as exc:
            log.error("Unable to start playback for %s: %s", channel.name, exc)
            self._set_status(str(exc))
            return
        if outcome is PlaybackOutcome.FINISHED:
            self._set_status(f"Playback finished for {channel.name}")
        elif outcome is PlaybackOutcome.FAILED and self.browser.error:
            self._set_status(self.browser.error)
        elif outcome is PlaybackOutcome.STOPPED:
            self._set_status(f"Stopped {channel.name}")
        self._refresh_view()

    # -- actions ---------------------------------------------------------

    def action_browse(self) -> None:
        self.run_worker(self.browser.show_countries(), group="catalog", exclusive=True)

    async def action_go_back(self) -> None:
        if self._showing_logs:
            self.action_toggle_logs()
            return
        if self.browser.view is View.HOME:
            return
        if self.browser.view is View.PLAYER:
            self._stop_playback_worker()
        for search_id in ("#country-search", "#channel-search"):
            self.query_one(search_id, Input).value = ""
        await self.browser.go_back()

    def action_focus_search(self) -> None:
        view = self.browser.view
        if view is View.COUNTRIES:
            self.query_one("#country-search", Input).focus()
        elif view is View.CHANNELS:
            self.query_one("#channel-search", Input).focus()
        else:
            self._set_status("Search is available in the country and channel lists")

    def action_skip_checking(self) -> None:
        if not self.browser.checking:
            self._set_status("No stream check is running")
            return
        self.browser.skip_checking()

    def action_next_stream(self) -> None:
        if self.browser.view is not View.PLAYER:
            return
        if self.browser.next_stream() is not None:
            self._start_playback()

    def action_stop_playback(self) -> None:
        if self.browser.view is View.PLAYER:
            self._stop_playback_worker()
            self._refresh_view()

    def action_reload(self) -> None:
        if self.browser.view in (View.COUNTRIES, View.CHANNELS):
            self._rendered_countries = ()
            self._rendered_channels = ()
            self.run_worker(self.browser.reload(), group="catalog", exclusive=True)

    def action_toggle_pin(self) -> None:
        if self.browser.view is not View.COUNTRIES:
            return
        list_view = self.query_one("#country-list", ListView)
        item = list_view.highlighted_child
        if not isinstance(item, CountryListItem):
            return
        pinned = self._config.toggle_favorite_country(item.country.code)
        self.browser.set_pinned_countries(self._config.favorite_countries)
        try:
            save_config(self._config, self._config_path)
        except OSError as exc:
            log.error("Failed to save configuration: %s", exc)
            self._set_status(f"Failed to save configuration: {exc}")
            return
        verb = "Pinned" if pinned else "Unpinned"
        self._set_status(f"{verb} {item.country.name}")

    def action_toggle_logs(self) -> None:
        self._showing_logs = not self._showing_logs
        switcher = self.query_one("#views", ContentSwitcher)
        switcher.current = "logs-view" if self._showing_logs else _VIEW_IDS[self.browser.view]

    @work(thread=True, exclusive=True, group="player-probe")
    def action_probe_player(self) -> None:
        if self._probing_player:
            return
        self._probing_player = True
        try:
            summary = probe_player(preferred=self._controller.preferred_player)
        except RuntimeError as exc:
            self.call_from_thread(self._set_status, f"Player probe failed: {exc}")
        else:
            self.call_from_thread(self._set_status, f"Player available: {summary}")
        finally:
            self._probing_player = False

    # -- events ----------------------------------------------------------

    @on(Button.Pressed, "#browse")
    def _on_browse(self, _: Button.Pressed) -> None:
        self.action_browse()

    @on(Button.Pressed, "#skip-check")
    def _on_skip(self, _: Button.Pressed) -> None:
        self.action_skip_checking()

    @on(Button.Pressed, "#play")
    def _on_play(self, _: Button.Pressed) -> None:
        self._start_playback()

    @on(Button.Pressed, "#next-stream")
    def _on_next(self, _: Button.Pressed) -> None:
        self.action_next_stream()

    @on(Button.Pressed, "#stop")
    def _on_stop(self, _: Button.Pressed) -> None:
        self.action_stop_playback()

    @on(Input.Changed, "#country-search")
    @on(Input.Changed, "#channel-search")
    def _on_search_changed(self, event: Input.Changed) -> None:
        self.browser.set_search(event.value)

    @on(ListView.Selected, "#country-list")
    def _on_country_selected(self, event: ListView.Selected) -> None:
        item = event.item
        if not isinstance(item, CountryListItem):
            return
        self._rendered_channels = ()
        self.query_one("#channel-search", Input).value = ""
        self.run_worker(
            self.browser.select_country(item.country), group="catalog", exclusive=True
        )

    @on(ListView.Selected, "#channel-list")
    def _on_channel_selected(self, event: ListView.Selected) -> None:
        item = event.item
        if not isinstance(item, ChannelListItem):
            return
        if self.browser.select_channel(item.channel) is not None:
            self._rendered_streams = ()
            self._start_playback()

    @on(ListView.Selected, "#stream-list")
    def _on_stream_selected(self, event: ListView.Selected) -> None:
        item = event.item
        if not isinstance(item, StreamListItem):
            return
        if self.browser.select_stream(item.stream_index) is not None:
            self._start_playback()


__all__ = ["DirectoryApp", "progress_bar"]
