import asyncio
import json
import shutil
import subprocess
import sys
from typing import Optional

import pytest

from iptv_directory import playback as playback_module
from iptv_directory.catalog import Stream
from iptv_directory.playback import (
    FallbackPolicy,
    PlaybackAction,
    PlaybackController,
    PlaybackErrorKind,
    PlaybackOutcome,
    PlayerCommand,
    PlayerHandle,
    build_player_command,
    classify_end_file,
    classify_exit_code,
    detect_player,
    probe_player,
)

STREAM = Stream(url="http://example/live.m3u8", channel="demo.xx", title="Demo", quality="720p")


def test_detect_player_prefers_preferred(monkeypatch):
    calls = []

    def fake_which(cmd: str):
        calls.append(cmd)
        return "/usr/bin/vlc" if cmd == "vlc" else None

    monkeypatch.setattr(shutil, "which", fake_which)
    assert detect_player("vlc") == "/usr/bin/vlc"
    assert calls[0] == "vlc"


def test_build_player_command_raises_when_missing(monkeypatch):
    monkeypatch.setattr(shutil, "which", lambda _: None)
    with pytest.raises(RuntimeError):
        build_player_command(STREAM)


def test_build_player_command_adds_mpv_flags(monkeypatch):
    monkeypatch.setattr(shutil, "which", lambda cmd: f"/usr/bin/{cmd}")
    stream = Stream(
        url="http://example/stream",
        channel="demo.xx",
        referrer="http://example/",
        user_agent="DemoAgent/1.0",
    )
    command = build_player_command(stream, title="Demo TV")
    try:
        assert command.executable == "/usr/bin/mpv"
        assert command.args[:3] == [
            "--force-window=immediate",
            "--player-operation-mode=pseudo-gui",
            "--no-terminal",
        ]
        assert "--force-media-title=Demo TV" in command.args
        assert "--user-agent=DemoAgent/1.0" in command.args
        assert "--referrer=http://example/" in command.args
        assert command.args[-1] == stream.url
        assert command.ipc_path is not None
        assert f"--input-ipc-server={command.ipc_path}" in command.args
        assert command.cleanup_paths
        for path in command.cleanup_paths:
            assert path.exists()
    finally:
        command.cleanup()
    for path in command.cleanup_paths:
        assert not path.exists()


def test_build_player_command_for_vlc(monkeypatch):
    monkeypatch.setattr(shutil, "which", lambda cmd: f"/usr/bin/{cmd}")
    stream = Stream(url="http://example/vlc", user_agent="Agent")
    command = build_player_command(stream, preferred="vlc")
    assert command.executable == "/usr/bin/vlc"
    assert command.args == [
        "--play-and-exit",
        "--meta-title=http://example/vlc",
        "--http-user-agent=Agent",
        "http://example/vlc",
    ]
    assert command.ipc_path is None


def test_probe_player_success(monkeypatch):
    monkeypatch.setattr(playback_module, "detect_player", lambda preferred=None, **kwargs: "/usr/bin/mpv")

    class Result:
        returncode = 0
        stdout = "mpv 0.37.0"
        stderr = ""

    monkeypatch.setattr(playback_module.subprocess, "run", lambda *args, **kwargs: Result())
    assert probe_player().startswith("mpv")


def test_probe_player_failure(monkeypatch):
    monkeypatch.setattr(playback_module, "detect_player", lambda preferred=None, **kwargs: "/usr/bin/mpv")

    class Result:
        returncode = 1
        stdout = ""
        stderr = "fatal error"

    monkeypatch.setattr(playback_module.subprocess, "run", lambda *args, **kwargs: Result())
    with pytest.raises(RuntimeError):
        probe_player()


def test_probe_player_timeout(monkeypatch):
    monkeypatch.setattr(playback_module, "detect_player", lambda preferred=None, **kwargs: "/usr/bin/mpv")

    def fake_run(*args, **kwargs):
        raise subprocess.TimeoutExpired(cmd=args[0], timeout=kwargs["timeout"])

    monkeypatch.setattr(playback_module.subprocess, "run", fake_run)
    monkeypatch.setenv(playback_module.PLAYER_PROBE_TIMEOUT_ENV, "2.5")

    with pytest.raises(RuntimeError) as excinfo:
        probe_player()

    assert "timed out after 2.5 seconds" in str(excinfo.value)


def test_policy_retries_network_errors_twice():
    policy = FallbackPolicy()
    actions = [policy.on_fatal_error(PlaybackErrorKind.NETWORK) for _ in range(3)]
    assert actions == [PlaybackAction.RETRY, PlaybackAction.RETRY, PlaybackAction.NEXT_STREAM]

    policy.reset()
    assert policy.on_fatal_error(PlaybackErrorKind.NETWORK) is PlaybackAction.RETRY


def test_policy_recovers_media_errors_and_skips_others():
    policy = FallbackPolicy()
    for _ in range(10):
        assert policy.on_fatal_error(PlaybackErrorKind.MEDIA) is PlaybackAction.RECOVER
    assert policy.on_fatal_error(PlaybackErrorKind.OTHER) is PlaybackAction.NEXT_STREAM

    capped = FallbackPolicy(max_media_recoveries=1)
    assert capped.on_fatal_error(PlaybackErrorKind.MEDIA) is PlaybackAction.RECOVER
    assert capped.on_fatal_error(PlaybackErrorKind.MEDIA) is PlaybackAction.NEXT_STREAM


def test_classify_end_file_events():
    assert classify_end_file({"event": "end-file", "reason": "eof"}) is None
    assert (
        classify_end_file({"reason": "error", "file_error": "loading failed"})
        is PlaybackErrorKind.NETWORK
    )
    assert (
        classify_end_file({"reason": "error", "file_error": "unrecognized file format"})
        is PlaybackErrorKind.MEDIA
    )
    assert classify_end_file({"reason": "error"}) is PlaybackErrorKind.OTHER


def test_classify_exit_code():
    assert classify_exit_code(0) is None
    assert classify_exit_code(None) is None
    assert classify_exit_code(2) is PlaybackErrorKind.NETWORK
    assert classify_exit_code(1) is PlaybackErrorKind.OTHER


class FakeProcess:
    """Process stub exiting with a fixed code, or hanging until terminated."""

    def __init__(self, exit_code: Optional[int]) -> None:
        self._exit_code = exit_code
        self._done = asyncio.Event()
        self.returncode: Optional[int] = None
        self.pid = 4242
        self.terminated = False

    async def wait(self) -> int:
        if self._exit_code is None:
            await self._done.wait()
        else:
            await asyncio.sleep(0)
        self.returncode = self._exit_code
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if self._exit_code is None:
            self._exit_code = -15
        self._done.set()


class FakeLauncher:
    def __init__(self, exit_codes, *, ipc_path: Optional[str] = None) -> None:
        self.exit_codes = list(exit_codes)
        self.ipc_path = ipc_path
        self.processes: list[FakeProcess] = []

    async def __call__(self, stream, *, title=None, preferred=None) -> PlayerHandle:
        process = FakeProcess(self.exit_codes.pop(0) if self.exit_codes else None)
        self.processes.append(process)
        command = PlayerCommand(
            executable="/usr/bin/mpv", args=[stream.url], ipc_path=self.ipc_path
        )
        return PlayerHandle(process=process, command=command)


@pytest.mark.parametrize(
    ("exit_codes", "expected_outcome", "expected_launches"),
    [
        ([0], PlaybackOutcome.FINISHED, 1),
        ([2, 0], PlaybackOutcome.FINISHED, 2),
        ([2, 2, 2], PlaybackOutcome.FAILED, 3),
        ([1], PlaybackOutcome.FAILED, 1),
    ],
)
def test_controller_applies_fallback_policy(exit_codes, expected_outcome, expected_launches):
    launcher = FakeLauncher(exit_codes)
    started: list[Stream] = []
    controller = PlaybackController(launcher=launcher, load_timeout=1.0)

    outcome = asyncio.run(controller.play(STREAM, on_started=started.append))

    assert outcome is expected_outcome
    assert len(launcher.processes) == expected_launches
    assert started == [STREAM] * expected_launches
    assert not controller.running


def test_controller_times_out_when_stream_never_starts(tmp_path):
    launcher = FakeLauncher([None], ipc_path=str(tmp_path / "missing.sock"))
    started: list[Stream] = []
    controller = PlaybackController(launcher=launcher, load_timeout=0.05)

    outcome = asyncio.run(controller.play(STREAM, on_started=started.append))

    assert outcome is PlaybackOutcome.FAILED
    assert launcher.processes[0].terminated
    assert started == []


def test_controller_stop_terminates_player():
    launcher = FakeLauncher([None])
    controller = PlaybackController(launcher=launcher, load_timeout=1.0)

    async def scenario() -> PlaybackOutcome:
        task = asyncio.create_task(controller.play(STREAM))
        while not launcher.processes:
            await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert controller.running
        controller.stop()
        return await asyncio.wait_for(task, timeout=1.0)

    assert asyncio.run(scenario()) is PlaybackOutcome.STOPPED
    assert launcher.processes[0].terminated


async def _fake_mpv_server(path, received):
    """Answer ``observe_property`` for ``playback-time`` as a playing mpv would."""

    async def handle(reader, writer):
        while True:
            line = await reader.readline()
            if not line:
                break
            request = json.loads(line)
            received.append(request)
            if request.get("command") == ["observe_property", 1, "playback-time"]:
                event = {"event": "property-change", "id": 1, "name": "playback-time", "data": 1.5}
                writer.write((json.dumps(event) + "\n").encode("utf-8"))
                await writer.drain()
        writer.close()

    return await asyncio.start_unix_server(handle, path=path)


def _error_only_handler(message):
    async def handle(reader, writer):
        writer.write((json.dumps(message) + "\n").encode("utf-8"))
        await writer.drain()
        while await reader.readline():
            pass
        writer.close()

    return handle


@pytest.mark.skipif(sys.platform == "win32", reason="mpv IPC uses unix sockets")
def test_controller_detects_start_from_observed_playback_time(tmp_path):
    ipc_path = str(tmp_path / "ipc.sock")
    launcher = FakeLauncher([None], ipc_path=ipc_path)
    received: list[dict] = []
    started: list[Stream] = []

    def finish(stream: Stream) -> None:
        started.append(stream)
        process = launcher.processes[0]
        process._exit_code = 0
        process._done.set()

    async def scenario() -> PlaybackOutcome:
        server = await _fake_mpv_server(ipc_path, received)
        try:
            controller = PlaybackController(launcher=launcher, load_timeout=5.0)
            return await controller.play(STREAM, on_started=finish)
        finally:
            server.close()
            await server.wait_closed()

    assert asyncio.run(scenario()) is PlaybackOutcome.FINISHED
    assert started == [STREAM]
    assert {"command": ["observe_property", 1, "playback-time"]} in received
    assert not launcher.processes[0].terminated


@pytest.mark.skipif(sys.platform == "win32", reason="mpv IPC uses unix sockets")
def test_controller_timeout_keeps_reported_network_error(tmp_path):
    ipc_path = str(tmp_path / "ipc.sock")
    launcher = FakeLauncher([None, None, None], ipc_path=ipc_path)
    end_file = {"event": "end-file", "reason": "error", "file_error": "loading failed"}

    async def scenario() -> PlaybackOutcome:
        server = await asyncio.start_unix_server(
            _error_only_handler(end_file), path=ipc_path
        )
        try:
            controller = PlaybackController(launcher=launcher, load_timeout=0.3)
            return await controller.play(STREAM)
        finally:
            server.close()
            await server.wait_closed()

    assert asyncio.run(scenario()) is PlaybackOutcome.FAILED
    # Network errors are retried twice before moving on; "other" would stop after one.
    assert len(launcher.processes) == 3
    assert all(process.terminated for process in launcher.processes)