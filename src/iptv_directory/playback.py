"""External player launching and the stream fallback policy."""
from __future__ import annotations

import asyncio
import enum
import json
import os
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, Sequence
from uuid import uuid4

from .catalog import Stream
from .config import DEFAULT_LOAD_TIMEOUT
from .logging_utils import get_logger


DEFAULT_PLAYER_CANDIDATES: Sequence[str] = ("mpv", "vlc", "ffplay")

PLAYER_PROBE_TIMEOUT_ENV = "IPTV_DIRECTORY_PLAYER_PROBE_TIMEOUT"
DEFAULT_PLAYER_PROBE_TIMEOUT = 10.0

MAX_NETWORK_RETRIES = 2

log = get_logger(__name__)


class PlaybackErrorKind(enum.Enum):
    NETWORK = "network"
    MEDIA = "media"
    OTHER = "other"


class PlaybackAction(enum.Enum):
    RETRY = "retry"
    RECOVER = "recover"
    NEXT_STREAM = "next-stream"


class PlaybackOutcome(enum.Enum):
    FINISHED = "finished"
    STOPPED = "stopped"
    FAILED = "failed"


class FallbackPolicy:
    """Decide what to do after a fatal playback error on the current stream.

    Network errors are retried in place up to ``max_network_retries`` times
    before moving on, decode errors are recovered in place, anything else moves
    straight to the next stream.
    """

    def __init__(
        self,
        max_network_retries: int = MAX_NETWORK_RETRIES,
        max_media_recoveries: Optional[int] = None,
    ) -> None:
        self.max_network_retries = max_network_retries
        self.max_media_recoveries = max_media_recoveries
        self.network_retries = 0
        self.media_recoveries = 0

    def reset(self) -> None:
        self.network_retries = 0
        self.media_recoveries = 0

    def on_fatal_error(self, kind: PlaybackErrorKind) -> PlaybackAction:
        if kind is PlaybackErrorKind.NETWORK:
            if self.network_retries < self.max_network_retries:
                self.network_retries += 1
                return PlaybackAction.RETRY
            return PlaybackAction.NEXT_STREAM
        if kind is PlaybackErrorKind.MEDIA:
            if (
                self.max_media_recoveries is None
                or self.media_recoveries < self.max_media_recoveries
            ):
                self.media_recoveries += 1
                return PlaybackAction.RECOVER
            return PlaybackAction.NEXT_STREAM
        return PlaybackAction.NEXT_STREAM


@dataclass(slots=True)
class PlayerCommand:
    """Describe a player invocation."""

    executable: str
    args: list[str]
    ipc_path: Optional[str] = None
    cleanup_paths: tuple[Path, ...] = ()

    def as_sequence(self) -> list[str]:
        return [self.executable, *self.args]

    def cleanup(self) -> None:
        for path in self.cleanup_paths:
            try:
                if path.is_dir():
                    shutil.rmtree(path, ignore_errors=True)
                elif path.exists():
                    path.unlink()
            except OSError:  # pragma: no cover - cleanup best-effort
                log.debug("Failed to remove %s", path, exc_info=True)


@dataclass(slots=True)
class PlayerHandle:
    """Return value from :func:`launch_player` containing process metadata."""

    process: asyncio.subprocess.Process
    command: PlayerCommand


def detect_player(
    preferred: Optional[str] = None,
    *,
    candidates: Iterable[str] = DEFAULT_PLAYER_CANDIDATES,
) -> Optional[str]:
    """Return the path to the first available player executable."""

    search_order: list[str] = []
    if preferred:
        search_order.append(str(preferred))
    for candidate in candidates:
        if candidate not in search_order:
            search_order.append(candidate)
    for executable in search_order:
        path = shutil.which(executable)
        if path:
            log.info("Selected player executable: %s (from candidate %s)", path, executable)
            return path
        log.debug("Player candidate %s not found on PATH", executable)
    return None


def _prepare_mpv_ipc() -> tuple[Optional[str], tuple[Path, ...]]:
    """Return an IPC path suitable for mpv along with cleanup targets."""

    if os.name == "nt":
        return rf"\\.\pipe\iptv_directory_{uuid4().hex}", ()
    temp_dir = Path(tempfile.mkdtemp(prefix="iptv_directory_mpv_"))
    return str(temp_dir / "ipc.sock"), (temp_dir,)


def _player_probe_timeout() -> float:
    raw_value = os.getenv(PLAYER_PROBE_TIMEOUT_ENV)
    if raw_value is None:
        return DEFAULT_PLAYER_PROBE_TIMEOUT
    try:
        timeout = float(raw_value)
    except ValueError:
        log.warning(
            "Invalid %s value %r; using default %.1f seconds",
            PLAYER_PROBE_TIMEOUT_ENV,
            raw_value,
            DEFAULT_PLAYER_PROBE_TIMEOUT,
        )
        return DEFAULT_PLAYER_PROBE_TIMEOUT
    if timeout <= 0:
        log.warning("%s must be positive; using default", PLAYER_PROBE_TIMEOUT_ENV)
        return DEFAULT_PLAYER_PROBE_TIMEOUT
    return timeout


def build_player_command(
    stream: Stream, *, title: Optional[str] = None, preferred: Optional[str] = None
) -> PlayerCommand:
    """Construct a player command for ``stream``."""

    executable = detect_player(preferred)
    if executable is None:
        log.error("Unable to locate supported media player")
        raise RuntimeError("No supported media player found (mpv, vlc, ffplay)")
    args: list[str] = []
    cleanup_paths: tuple[Path, ...] = ()
    ipc_path: Optional[str] = None
    name = Path(executable).name.lower()
    label = title or stream.label
    if name.startswith("mpv"):
        ipc_path, cleanup_paths = _prepare_mpv_ipc()
        args.extend(
            [
                "--force-window=immediate",
                "--player-operation-mode=pseudo-gui",
                "--no-terminal",
                "--hwdec=auto-safe",
                "--cache=yes",
                f"--force-media-title={label}",
                f"--input-ipc-server={ipc_path}",
            ]
        )
        if stream.user_agent:
            args.append(f"--user-agent={stream.user_agent}")
        if stream.referrer:
            args.append(f"--referrer={stream.referrer}")
    elif name.startswith("vlc"):
        args.extend(["--play-and-exit", f"--meta-title={label}"])
        if stream.user_agent:
            args.append(f"--http-user-agent={stream.user_agent}")
        if stream.referrer:
            args.append(f"--http-referrer={stream.referrer}")
    elif name.startswith("ffplay"):
        args.extend(["-autoexit", "-window_title", label])
        if stream.user_agent:
            args.extend(["-user_agent", stream.user_agent])
    command = PlayerCommand(
        executable=executable,
        args=[*args, stream.url],
        ipc_path=ipc_path,
        cleanup_paths=cleanup_paths,
    )
    log.info("Built player command for %s: %s", label, command.as_sequence())
    return command


async def launch_player(
    stream: Stream, *, title: Optional[str] = None, preferred: Optional[str] = None
) -> PlayerHandle:
    """Launch a media player for ``stream``."""

    command = build_player_command(stream, title=title, preferred=preferred)
    process = await asyncio.create_subprocess_exec(
        *command.as_sequence(),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        env=os.environ.copy(),
    )
    log.debug("Spawned player PID %s for %s", getattr(process, "pid", "unknown"), stream.url)
    return PlayerHandle(process=process, command=command)


def probe_player(preferred: Optional[str] = None) -> str:
    """Invoke the preferred player with ``--version`` to verify availability."""

    executable = detect_player(preferred)
    if executable is None:
        raise RuntimeError("No supported media player found (mpv, vlc, ffplay)")
    timeout = _player_probe_timeout()
    version_flag = "-version" if Path(executable).name.lower().startswith("ffplay") else "--version"
    try:
        result = subprocess.run(
            [executable, version_flag],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise RuntimeError(
            f"{Path(executable).name} {version_flag} timed out after {timeout:.1f} seconds. "
            f"Increase the timeout via the {PLAYER_PROBE_TIMEOUT_ENV} environment variable."
        ) from exc
    except (OSError, subprocess.SubprocessError) as exc:  # pragma: no cover - unexpected spawn failure
        raise RuntimeError(f"Player probe failed: {exc}") from exc
    if result.returncode != 0:
        output = result.stderr.strip() or result.stdout.strip()
        raise RuntimeError(
            f"{Path(executable).name} {version_flag} exited with {result.returncode}: {output}"
        )
    output = result.stdout.strip() or result.stderr.strip()
    summary = output.splitlines()[0] if output else Path(executable).name
    log.info("Player probe succeeded using %s: %s", executable, summary)
    return summary


_NETWORK_HINTS = ("loading failed", "network", "http", "connection", "timed out", "tls")
_MEDIA_HINTS = ("unrecognized file format", "no audio or video", "demux", "decod", "codec")


def classify_end_file(event: dict[str, object]) -> Optional[PlaybackErrorKind]:
    """Map an mpv ``end-file`` IPC event to an error kind (``None`` if not an error)."""

    if event.get("reason") != "error":
        return None
    detail = str(event.get("file_error") or "").lower()
    if any(hint in detail for hint in _MEDIA_HINTS):
        return PlaybackErrorKind.MEDIA
    if any(hint in detail for hint in _NETWORK_HINTS):
        return PlaybackErrorKind.NETWORK
    return PlaybackErrorKind.OTHER


def classify_exit_code(returncode: Optional[int]) -> Optional[PlaybackErrorKind]:
    """Map a player exit code to an error kind (``None`` for a clean exit).

    mpv exits with 2 when the file could not be played at all, which for live
    streams almost always means the source was unreachable.
    """

    if returncode in (None, 0):
        return None
    if returncode == 2:
        return PlaybackErrorKind.NETWORK
    return PlaybackErrorKind.OTHER


class _Attempt:
    """Track a single player process until it starts, fails or exits."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.error: Optional[PlaybackErrorKind] = None


async def _connect_ipc(
    ipc_path: str, retries: int = 50, delay: float = 0.1
) -> Optional[tuple[asyncio.StreamReader, asyncio.StreamWriter]]:
    for _ in range(retries):
        try:
            return await asyncio.open_unix_connection(ipc_path)
        except (FileNotFoundError, ConnectionRefusedError):
            await asyncio.sleep(delay)
    log.warning("Unable to connect to mpv IPC server at %s", ipc_path)
    return None


async def _watch_mpv_events(ipc_path: str, attempt: _Attempt) -> None:
    connection = await _connect_ipc(ipc_path)
    if connection is None:
        attempt.started.set()
        return
    reader, writer = connection
    try:
        # Catches a stream that started before the connection was made.
        command = {"command": ["observe_property", 1, "playback-time"]}
        writer.write((json.dumps(command) + "\n").encode("utf-8"))
        try:
            await writer.drain()
        except (ConnectionError, OSError) as exc:
            log.debug("mpv IPC closed before observing playback: %s", exc)
            return
        while True:
            line = await reader.readline()
            if not line:
                break
            try:
                payload = json.loads(line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                continue
            event = payload.get("event") if isinstance(payload, dict) else None
            if event in ("file-loaded", "playback-restart"):
                attempt.started.set()
            elif event == "property-change":
                if payload.get("name") == "playback-time" and payload.get("data") is not None:
                    attempt.started.set()
            elif event == "end-file":
                kind = classify_end_file(payload)
                if kind is not None:
                    log.warning("mpv reported %s error: %s", kind.value, payload.get("file_error"))
                    attempt.error = kind
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):  # pragma: no cover - socket already gone
            pass


class PlaybackController:
    """Play one stream at a time in an external player, retrying per policy."""

    def __init__(
        self,
        *,
        preferred_player: Optional[str] = None,
        load_timeout: float = DEFAULT_LOAD_TIMEOUT,
        policy: Optional[FallbackPolicy] = None,
        launcher: Callable[..., Awaitable[PlayerHandle]] = launch_player,
        on_started: Optional[Callable[[Stream], None]] = None,
    ) -> None:
        self.preferred_player = preferred_player
        self.load_timeout = load_timeout
        # Relaunching mpv is heavier than an in-place decoder reset, so cap it.
        self.policy = policy or FallbackPolicy(max_media_recoveries=3)
        self._launcher = launcher
        self._on_started = on_started
        self._handle: Optional[PlayerHandle] = None
        self._stop_requested = False

    @property
    def running(self) -> bool:
        handle = self._handle
        return handle is not None and handle.process.returncode is None

    async def play(
        self,
        stream: Stream,
        *,
        title: Optional[str] = None,
        on_started: Optional[Callable[[Stream], None]] = None,
    ) -> PlaybackOutcome:
        """Play ``stream`` until it ends, is stopped, or must be abandoned."""

        notify = on_started or self._on_started
        self.policy.reset()
        self._stop_requested = False
        while True:
            kind, started = await self._run_once(stream, title, notify)
            if self._stop_requested:
                return PlaybackOutcome.STOPPED
            if kind is None:
                return PlaybackOutcome.FINISHED
            action = self.policy.on_fatal_error(kind)
            log.info(
                "Stream %s failed (%s, %s); next action: %s",
                stream.url,
                kind.value,
                "after start" if started else "before start",
                action.value,
            )
            if action is PlaybackAction.NEXT_STREAM:
                return PlaybackOutcome.FAILED

    async def _run_once(
        self,
        stream: Stream,
        title: Optional[str],
        notify: Optional[Callable[[Stream], None]],
    ) -> tuple[Optional[PlaybackErrorKind], bool]:
        handle = await self._launcher(stream, title=title, preferred=self.preferred_player)
        self._handle = handle
        attempt = _Attempt()
        watcher: Optional[asyncio.Task[None]] = None
        if handle.command.ipc_path and sys.platform != "win32":
            watcher = asyncio.create_task(_watch_mpv_events(handle.command.ipc_path, attempt))
        else:
            attempt.started.set()
        exit_wait = asyncio.create_task(handle.process.wait())
        started_wait = asyncio.create_task(attempt.started.wait())
        try:
            done, _ = await asyncio.wait(
                {exit_wait, started_wait},
                timeout=self.load_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not done:
                log.warning("Stream %s did not start within %.0fs", stream.url, self.load_timeout)
                self._terminate(handle)
                await exit_wait
                return attempt.error or PlaybackErrorKind.OTHER, False
            started = attempt.started.is_set()
            if started and notify is not None:
                notify(stream)
            returncode = await exit_wait
            if watcher is not None:
                try:
                    await asyncio.wait_for(watcher, timeout=1.0)
                except asyncio.TimeoutError:
                    pass
            return attempt.error or classify_exit_code(returncode), started
        except asyncio.CancelledError:
            self._terminate(handle)
            raise
        finally:
            for task in (watcher, exit_wait, started_wait):
                if task is not None and not task.done():
                    task.cancel()
            handle.command.cleanup()
            if self._handle is handle:
                self._handle = None

    def _terminate(self, handle: PlayerHandle) -> None:
        if handle.process.returncode is not None:
            return
        try:
            handle.process.terminate()
        except ProcessLookupError:  # pragma: no cover - process already gone
            pass

    def stop(self) -> None:
        """Terminate the running player, if any."""

        self._stop_requested = True
        handle = self._handle
        if handle is not None:
            log.info("Stopping player for %s", handle.command.args[-1])
            self._terminate(handle)


__all__ = [
    "DEFAULT_PLAYER_CANDIDATES",
    "FallbackPolicy",
    "PlaybackAction",
    "PlaybackController",
    "PlaybackErrorKind",
    "PlaybackOutcome",
    "PlayerCommand",
    "PlayerHandle",
    "build_player_command",
    "classify_end_file",
    "classify_exit_code",
    "detect_player",
    "launch_player",
    "probe_player",
]
