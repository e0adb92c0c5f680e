"""Unit tests for DirectoryApp helpers."""

import asyncio
import importlib.util

import pytest

if importlib.util.find_spec("textual") is None:  # pragma: no cover - optional dependency
    pytest.skip("textual is not installed", allow_module_level=True)

from iptv_directory.catalog import Channel, Country, Logo, Stream
from iptv_directory.prober import ProbeUpdate

SPAIN = Country("Spain", "ES", flag="🇪🇸")

CHANNELS = [
    Channel("a.es", "Alpha", "ES", categories=("news",)),
    Channel("b.es", "Bravo", "ES"),
    Channel("c.es", "Charlie", "ES"),
]


class FakeCatalog:
    def __init__(self) -> None:
        self.cleared = 0

    async def fetch_countries(self):
        return [Country("Brazil", "BR"), SPAIN]

    async def fetch_channels(self):
        return list(CHANNELS)

    async def fetch_streams(self):
        return [
            Stream("http://a/1", channel="a.es"),
            Stream("http://b/1", channel="b.es"),
            Stream("http://c/1", channel="c.es"),
        ]

    async def fetch_logos(self):
        return [Logo("a.es", "http://logo/a.png")]

    def clear_cache(self) -> None:
        self.cleared += 1


class FakeProber:
    def __init__(self) -> None:
        self.closed = False

    async def probe_online(self, channels, streams, *, cancel_token=None):
        yield ProbeUpdate(checked=2, total=3, online=1, online_ids=frozenset({"a.es"}))
        yield ProbeUpdate(checked=3, total=3, online=2, online_ids=frozenset({"a.es", "c.es"}))

    async def close(self) -> None:
        self.closed = True


def _make_app(**kwargs):
    from iptv_directory.app import DirectoryApp
    from iptv_directory.config import AppConfig

    return DirectoryApp(
        kwargs.pop("config", AppConfig()),
        catalog=FakeCatalog(),
        prober=FakeProber(),
        **kwargs,
    )


async def _wait_for(pilot, predicate, attempts: int = 50) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await pilot.pause()
    raise AssertionError("condition not reached")


def test_custom_themes_registered() -> None:
    app = _make_app()

    assert "broadcast-night" in app.available_themes
    assert "broadcast-day" in app.available_themes
    assert app.theme == "broadcast-night"


def test_config_theme_used_when_provided() -> None:
    from iptv_directory.config import AppConfig

    app = _make_app(config=AppConfig(theme="broadcast-day"))
    assert app.theme == "broadcast-day"

    app = _make_app(theme="no-such-theme")
    assert app.theme == "broadcast-night"


def test_progress_bar_bounds() -> None:
    from iptv_directory.app import progress_bar

    assert progress_bar(0.0, width=4) == "░░░░"
    assert progress_bar(0.5, width=4) == "██░░"
    assert progress_bar(3.0, width=4) == "████"


def test_browse_flow_filters_channels_after_check() -> None:
    from textual.widgets import ContentSwitcher, ListView

    from iptv_directory.app import ChannelListItem, CountryListItem
    from iptv_directory.browser import View

    app = _make_app()

    async def run_app() -> None:
        async with app.run_test() as pilot:
            switcher = app.query_one("#views", ContentSwitcher)
            assert switcher.current == "home-view"

            await pilot.click("#browse")
            await _wait_for(pilot, lambda: app.browser.view is View.COUNTRIES)
            await _wait_for(
                pilot, lambda: len(app.query_one("#country-list", ListView).query(CountryListItem)) == 2
            )
            assert switcher.current == "countries-view"

            await app.browser.select_country(SPAIN)
            await _wait_for(pilot, lambda: not app.browser.checking)
            await _wait_for(
                pilot,
                lambda: len(app.query_one("#channel-list", ListView).query(ChannelListItem)) == 2,
            )
            assert switcher.current == "channels-view"
            items = app.query_one("#channel-list", ListView).query(ChannelListItem)
            assert [item.channel.id for item in items] == ["a.es", "c.es"]

            await app.action_go_back()
            await pilot.pause()
            assert app.browser.view is View.COUNTRIES
            assert switcher.current == "countries-view"

    asyncio.run(run_app())
    assert app._prober.closed


def test_favorite_countries_listed_first_and_marked() -> None:
    from textual.widgets import ListView

    from iptv_directory.app import CountryListItem
    from iptv_directory.browser import View
    from iptv_directory.config import AppConfig

    app = _make_app(config=AppConfig(favorite_countries=["ES"]))

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.click("#browse")
            await _wait_for(pilot, lambda: app.browser.view is View.COUNTRIES)
            list_view = app.query_one("#country-list", ListView)
            await _wait_for(pilot, lambda: len(list_view.query(CountryListItem)) == 2)
            items = list(list_view.query(CountryListItem))
            assert [(item.country.code, item.pinned) for item in items] == [
                ("ES", True),
                ("BR", False),
            ]

    asyncio.run(run_app())



def test_log_viewer_surfaces_messages() -> None:
    from textual.widgets import ContentSwitcher

    from iptv_directory.app import LogViewer
    from iptv_directory.logging_utils import get_logger

    app = _make_app()

    async def run_app() -> None:
        async with app.run_test() as pilot:
            app.action_toggle_logs()
            await pilot.pause()
            assert app.query_one("#views", ContentSwitcher).current == "logs-view"

            viewer = app.query_one(LogViewer)
            get_logger("tests.app").info("Hello from tests")
            await pilot.pause()

            assert any("Hello from tests" in message for message in viewer.get_messages())

            app.action_toggle_logs()
            await pilot.pause()
            assert app.query_one("#views", ContentSwitcher).current == "home-view"

    asyncio.run(run_app())
