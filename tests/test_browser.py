"""Tests for the navigation state machine in :mod:`iptv_directory.browser`."""

from __future__ import annotations

import asyncio
from typing import Mapping, Optional, Sequence

import pytest

from iptv_directory.browser import (
    CHANNELS_ERROR,
    COUNTRIES_ERROR,
    STREAMS_EXHAUSTED_ERROR,
    Browser,
    ChannelStatus,
    View,
)
from iptv_directory.catalog import CatalogError, Channel, Country, Logo, Stream
from iptv_directory.playback import PlaybackOutcome
from iptv_directory.prober import CancellationToken, ProbeUpdate

SPAIN = Country("Spain", "ES")
BRAZIL = Country("Brazil", "BR")

CHANNELS = [
    Channel("a.es", "Alpha", "ES"),
    Channel("b.es", "Bravo", "ES", alt_names=("Beta",)),
    Channel("c.es", "Charlie", "ES"),
    Channel("g.br", "Globo", "BR"),
]
STREAMS = [
    Stream("http://a/1", channel="a.es"),
    Stream("http://b/1", channel="b.es"),
    Stream("http://b/2", channel="b.es"),
    Stream("http://b/3", channel="b.es"),
    Stream("http://c/1", channel="c.es"),
    Stream("http://g/1", channel="g.br"),
]


class FakeCatalog:
    def __init__(self, *, fail: Optional[str] = None) -> None:
        self.fail = fail
        self.cleared = 0

    async def fetch_countries(self) -> list[Country]:
        if self.fail == "countries":
            raise CatalogError("down")
        return [BRAZIL, SPAIN]

    async def fetch_channels(self) -> list[Channel]:
        if self.fail == "channels":
            raise CatalogError("down")
        return list(CHANNELS)

    async def fetch_streams(self) -> list[Stream]:
        return list(STREAMS)

    async def fetch_logos(self) -> list[Logo]:
        return [Logo("a.es", "http://logo/a.png")]

    def clear_cache(self) -> None:
        self.cleared += 1


class ScriptedProber:
    """Yield pre-baked updates, pausing on a gate between them."""

    def __init__(self, updates: Sequence[ProbeUpdate], *, pause: bool = False) -> None:
        self.updates = list(updates)
        self.pause = pause
        self.gate = asyncio.Event()
        self.runs = 0
        self.tokens: list[CancellationToken] = []

    async def probe_online(
        self,
        channels: Sequence[Channel],
        streams: Mapping[str, Sequence[Stream]],
        *,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.runs += 1
        if cancel_token is not None:
            self.tokens.append(cancel_token)
        for update in self.updates:
            if self.pause:
                await self.gate.wait()
                self.gate.clear()
            if cancel_token is not None and cancel_token.cancelled:
                return
            yield update


async def _settle(browser: Browser) -> None:
    task = browser._probe_task
    if task is not None:
        await asyncio.wait_for(task, timeout=1.0)


def _finished_updates(*online: str) -> list[ProbeUpdate]:
    return [
        ProbeUpdate(checked=2, total=3, online=len(online[:1]), online_ids=frozenset(online[:1])),
        ProbeUpdate(checked=3, total=3, online=len(online), online_ids=frozenset(online)),
    ]


def test_show_countries_orders_pinned_first() -> None:
    browser = Browser(FakeCatalog(), ScriptedProber([]), pinned_countries=["ES"])
    asyncio.run(browser.show_countries())

    assert browser.view is View.COUNTRIES
    assert [country.code for country in browser.countries] == ["ES", "BR"]

    browser.set_pinned_countries([])
    assert [country.code for country in browser.countries] == ["BR", "ES"]


def test_country_load_failure_keeps_home_view() -> None:
    browser = Browser(FakeCatalog(fail="countries"), ScriptedProber([]))
    asyncio.run(browser.show_countries())

    assert browser.view is View.HOME
    assert browser.error == COUNTRIES_ERROR
    assert not browser.loading


def test_channel_load_failure_reports_error() -> None:
    browser = Browser(FakeCatalog(fail="channels"), ScriptedProber([]))

    async def scenario() -> None:
        await browser.show_countries()
        await browser.select_country(SPAIN)

    asyncio.run(scenario())
    assert browser.view is View.COUNTRIES
    assert browser.error == CHANNELS_ERROR


def test_completed_check_shows_only_online_channels() -> None:
    prober = ScriptedProber(_finished_updates("a.es", "c.es"))
    browser = Browser(FakeCatalog(), prober)

    async def scenario() -> None:
        await browser.select_country(SPAIN)
        await _settle(browser)

    asyncio.run(scenario())

    assert browser.view is View.CHANNELS
    assert [channel.id for channel in browser.channels] == ["a.es", "b.es", "c.es"]
    assert [channel.id for channel in browser.visible_channels()] == ["a.es", "c.es"]
    assert browser.channel_status(CHANNELS[1]) is ChannelStatus.UNCONFIRMED
    assert browser.summary() == "2 online channels (1 offline hidden)"


def test_nothing_confirmed_shows_every_channel() -> None:
    browser = Browser(FakeCatalog(), ScriptedProber(_finished_updates()))

    async def scenario() -> None:
        await browser.select_country(SPAIN)
        await _settle(browser)

    asyncio.run(scenario())

    assert len(browser.visible_channels()) == 3
    assert browser.summary().startswith("No online channels confirmed")


def test_all_channels_visible_while_checking_and_after_skip() -> None:
    prober = ScriptedProber(_finished_updates("a.es"), pause=True)
    browser = Browser(FakeCatalog(), prober)

    async def scenario() -> None:
        await browser.select_country(SPAIN)
        assert browser.checking
        assert len(browser.visible_channels()) == 3
        assert browser.channel_status(CHANNELS[0]) is ChannelStatus.CHECKING

        prober.gate.set()
        for _ in range(5):
            await asyncio.sleep(0)
        assert browser.session.checked == 2
        assert browser.channel_status(CHANNELS[0]) is ChannelStatus.ONLINE
        assert len(browser.visible_channels()) == 3

        browser.skip_checking()
        prober.gate.set()
        await _settle(browser)

    asyncio.run(scenario())

    assert browser.session.cancelled
    assert browser.session.checked == 2
    assert len(browser.visible_channels()) == 3
    assert browser.summary().startswith("Stream check skipped")


def test_search_filters_visible_channels() -> None:
    browser = Browser(FakeCatalog(), ScriptedProber(_finished_updates()))

    async def scenario() -> None:
        await browser.select_country(SPAIN)
        await _settle(browser)

    asyncio.run(scenario())
    browser.set_search("beta")
    assert [channel.id for channel in browser.visible_channels()] == ["b.es"]


def test_selecting_another_country_cancels_running_check() -> None:
    prober = ScriptedProber(_finished_updates("a.es"), pause=True)
    browser = Browser(FakeCatalog(), prober)

    async def scenario() -> None:
        await browser.select_country(SPAIN)
        await asyncio.sleep(0)
        first_session = browser.session
        await browser.select_country(BRAZIL)
        await asyncio.sleep(0)
        assert first_session.cancelled
        assert browser.session is not first_session
        await browser.close()

    asyncio.run(scenario())
    assert prober.runs == 2
    assert prober.tokens[0].cancelled
    assert [channel.id for channel in browser.channels] == ["g.br"]


def test_go_back_walks_views_and_cancels_probe() -> None:
    prober = ScriptedProber(_finished_updates("a.es"), pause=True)
    browser = Browser(FakeCatalog(), prober)

    async def scenario() -> None:
        await browser.show_countries()
        await browser.select_country(SPAIN)
        session = browser.session
        browser.select_channel(CHANNELS[0])
        assert browser.view is View.PLAYER

        await browser.go_back()
        assert browser.view is View.CHANNELS
        assert session.cancelled

        await browser.go_back()
        assert browser.view is View.COUNTRIES
        assert browser.channels == []

        await browser.go_back()
        assert browser.view is View.HOME

    asyncio.run(scenario())


def test_next_stream_exhaustion_sets_error() -> None:
    browser = Browser(FakeCatalog(), ScriptedProber([]))

    async def scenario() -> None:
        await browser.select_country(SPAIN)
        await _settle(browser)

    asyncio.run(scenario())

    assert browser.select_channel(CHANNELS[1]).url == "http://b/1"
    assert browser.next_stream().url == "http://b/2"
    assert browser.next_stream().url == "http://b/3"
    assert browser.stream_index == 2
    assert browser.next_stream() is None
    assert browser.error == STREAMS_EXHAUSTED_ERROR


def test_logo_lookup() -> None:
    browser = Browser(FakeCatalog(), ScriptedProber([]))
    asyncio.run(browser.select_country(SPAIN))
    assert browser.logo_for(CHANNELS[0]) == "http://logo/a.png"
    assert browser.logo_for(CHANNELS[2]) is None


def test_reload_clears_catalog_cache() -> None:
    catalog = FakeCatalog()
    browser = Browser(catalog, ScriptedProber([]))

    async def scenario() -> None:
        await browser.show_countries()
        await browser.reload()

    asyncio.run(scenario())
    assert catalog.cleared == 1
    assert browser.view is View.COUNTRIES


class FakeController:
    def __init__(self, outcomes: dict[str, PlaybackOutcome]) -> None:
        self.outcomes = outcomes
        self.played: list[str] = []

    async def play(self, stream: Stream, *, title=None, on_started=None) -> PlaybackOutcome:
        self.played.append(stream.url)
        outcome = self.outcomes.get(stream.url, PlaybackOutcome.FAILED)
        if outcome is PlaybackOutcome.FINISHED and on_started is not None:
            on_started(stream)
        return outcome


@pytest.mark.parametrize(
    ("outcomes", "expected_played", "expected_outcome", "expected_error"),
    [
        (
            {"http://b/2": PlaybackOutcome.FINISHED},
            ["http://b/1", "http://b/2"],
            PlaybackOutcome.FINISHED,
            None,
        ),
        (
            {},
            ["http://b/1", "http://b/2", "http://b/3"],
            PlaybackOutcome.FAILED,
            STREAMS_EXHAUSTED_ERROR,
        ),
        (
            {"http://b/1": PlaybackOutcome.STOPPED},
            ["http://b/1"],
            PlaybackOutcome.STOPPED,
            None,
        ),
    ],
)
def test_play_falls_back_through_streams(
    outcomes, expected_played, expected_outcome, expected_error
) -> None:
    browser = Browser(FakeCatalog(), ScriptedProber([]))
    controller = FakeController(outcomes)

    async def scenario() -> Optional[PlaybackOutcome]:
        await browser.select_country(SPAIN)
        browser.select_channel(CHANNELS[1])
        return await browser.play(controller)

    assert asyncio.run(scenario()) is expected_outcome
    assert controller.played == expected_played
    assert browser.error == expected_error
    if expected_outcome is PlaybackOutcome.FINISHED:
        assert browser.stream_started


def test_listeners_are_notified() -> None:
    browser = Browser(FakeCatalog(), ScriptedProber([]))
    events: list[View] = []
    browser.add_listener(lambda: events.append(browser.view))

    asyncio.run(browser.show_countries())

    assert events[0] is View.HOME
    assert events[-1] is View.COUNTRIES
