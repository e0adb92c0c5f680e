"""Command line entry point for the IPTV directory."""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Iterable, Optional

from . import __version__
from .catalog import CatalogClient, CatalogError, available_channels, group_streams
from .config import CONFIG_PATH, AppConfig, load_config
from .logging_utils import configure_logging, get_log_file_path, get_logger
from .prober import StreamProber
from .themes import CUSTOM_THEMES

log = get_logger(__name__)


def _sorted_theme_names() -> list[str]:
    return sorted(CUSTOM_THEMES)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {number}")
    return number


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Browse free IPTV channels by country and play them"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_PATH,
        help="Path to configuration file (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override IPTV_DIRECTORY_LOG_LEVEL for this invocation",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help=(
            "Write logs to this file instead of the default or"
            " IPTV_DIRECTORY_LOG_FILE"
        ),
    )
    parser.add_argument(
        "--player",
        dest="preferred_player",
        default=None,
        help=(
            "Preferred media player executable (mpv, vlc or ffplay; defaults to"
            " the configured player, then auto-detect)"
        ),
    )
    theme_names = ", ".join(_sorted_theme_names())
    parser.add_argument(
        "--theme",
        default=None,
        help=f"Select the application theme. Available options: {theme_names}.",
    )
    parser.add_argument(
        "--list-themes",
        action="store_true",
        help="List available themes and exit.",
    )
    parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=None,
        help="Number of channels checked concurrently per batch",
    )
    parser.add_argument(
        "--max-streams",
        type=_positive_int,
        default=None,
        help="Number of streams sampled per channel when checking",
    )
    parser.add_argument(
        "--check",
        metavar="COUNTRY",
        default=None,
        help="Check the channels of a country code without the UI and exit.",
    )
    parser.add_argument(
        "--channel-logs",
        metavar="NAME",
        default=None,
        help="Print log entries mentioning the given channel and exit.",
    )
    return parser.parse_args(argv)


def _print_channel_logs(channel_name: str) -> None:
    """Write log entries that reference *channel_name* to stdout."""

    log_path = get_log_file_path()
    if log_path is None:
        print("File logging is not enabled; set --log-file or IPTV_DIRECTORY_LOG_FILE.")
        return

    if not log_path.exists():
        print(f"No log file found at {log_path}")
        return

    token = channel_name.lower()
    matches = 0
    print(f"Log file: {log_path}")
    with log_path.open("r", encoding="utf8", errors="replace") as handle:
        for raw_line in handle:
            line = raw_line.rstrip("\n")
            if token in line.lower():
                print(line)
                matches += 1

    if matches == 0:
        print(f"No log entries mentioning '{channel_name}' were found.")


async def run_check(
    config: AppConfig,
    country_code: str,
    *,
    catalog: Optional[CatalogClient] = None,
    prober: Optional[StreamProber] = None,
) -> int:
    """Probe one country's channels and print the ones that answered.

    Returns the process exit status.
    """

    catalog = catalog or CatalogClient(
        config.catalog_url, timeout=config.request_timeout, user_agent=config.user_agent
    )
    code = country_code.strip().upper()
    try:
        countries = await catalog.fetch_countries()
        country = next((item for item in countries if item.code == code), None)
        if country is None:
            print(f"Unknown country code: {country_code}", file=sys.stderr)
            return 2
        channels, streams = await asyncio.gather(
            catalog.fetch_channels(), catalog.fetch_streams()
        )
    except CatalogError as exc:
        print(f"Failed to load the catalog: {exc}", file=sys.stderr)
        return 1

    grouped = group_streams(streams)
    selected = available_channels(channels, grouped, country.code)
    print(f"{country.label}: {len(selected)} channel(s) with streams")
    if not selected:
        return 0

    prober = prober or StreamProber(
        timeout=config.probe_timeout,
        max_streams_per_channel=config.max_streams_per_channel,
        batch_size=config.batch_size,
        user_agent=config.user_agent,
    )
    online_ids: frozenset[str] = frozenset()
    async with prober:
        async for update in prober.probe_online(selected, grouped):
            print(f"Checked {update.checked}/{update.total} ({update.online} online)")
            online_ids = update.online_ids

    online = [channel for channel in selected if channel.id in online_ids]
    if not online:
        print("No online channels confirmed.")
        return 0
    print(f"{len(online)} online channel(s):")
    for channel in online:
        print(f"  {channel.name} [{channel.id}]")
    return 0


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    if args.list_themes:
        for theme_name in _sorted_theme_names():
            print(theme_name)
        return
    configure_logging(
        level=args.log_level,
        log_file=str(args.log_file) if args.log_file is not None else None,
    )
    if args.channel_logs:
        _print_channel_logs(args.channel_logs)
        return
    log.info("CLI invoked with config=%s", args.config)
    config = load_config(args.config)
    if args.batch_size is not None:
        config.batch_size = args.batch_size
    if args.max_streams is not None:
        config.max_streams_per_channel = args.max_streams

    if args.check:
        try:
            status = asyncio.run(run_check(config, args.check))
        except KeyboardInterrupt:
            raise SystemExit(130) from None
        if status:
            raise SystemExit(status)
        return

    from .app import DirectoryApp

    app = DirectoryApp(
        config,
        config_path=args.config,
        preferred_player=args.preferred_player,
        theme=args.theme,
    )
    log.info("Launching Textual application")
    try:
        app.run()
    except KeyboardInterrupt:
        log.info("Keyboard interrupt received; exiting application")
        if app.is_running:
            app.exit()
        raise SystemExit(130) from None


__all__ = ["main", "parse_args", "run_check"]
