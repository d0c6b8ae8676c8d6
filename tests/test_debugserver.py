import asyncio
import time

import psutil
import pytest

from launchkit import config, debugserver, proc
from launchkit.debugserver import DebugServerController, DebugServerState
from launchkit.errors import StateError, ToolInvocationError
from launchkit.models import DestinationKind, LaunchResult
from launchkit.proc import ProcessResult

LAUNCH = LaunchResult(pid=4821, bundle_id="com.example.Demo", destination_id="SIM-1", app_path="/out/Demo.app")


class FakeServer:
    def __init__(self, returncode=None, stdout="", stderr=""):
        self.args = ["/fake/debugserver", "localhost:6667", "--attach", "4821"]
        self.pid = 999
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.terminated = False

    async def wait(self):
        return self.returncode

    async def terminate(self):
        self.terminated = True


@pytest.fixture
def env(monkeypatch, clock):
    """Patch every side effect of the controller; returns a dict of knobs."""
    knobs = {"alive": True, "listening": [], "server": FakeServer(), "spawned": [], "cleanups": []}

    async def fake_cleanup(port, timeout=None):
        knobs["cleanups"].append(port)

    async def fake_path():
        return "/fake/debugserver"

    async def fake_spawn(args, cwd=None, env=None):
        knobs["spawned"].append(args)
        return knobs["server"]

    async def fake_listening(port):
        return knobs["listening"].pop(0) if knobs["listening"] else False

    monkeypatch.setattr(debugserver, "cleanup", fake_cleanup)
    monkeypatch.setattr(debugserver, "debugserver_path", fake_path)
    monkeypatch.setattr(debugserver, "is_port_listening", fake_listening)
    monkeypatch.setattr(proc, "spawn", fake_spawn)
    monkeypatch.setattr(psutil, "pid_exists", lambda pid: knobs["alive"])
    monkeypatch.setattr(debugserver, "_now", clock.time)
    monkeypatch.setattr(debugserver, "_sleep", clock.sleep)
    monkeypatch.setattr(config, "DEBUGSERVER_READY_MODE", "poll")
    monkeypatch.setattr(config, "DEBUGSERVER_READY_TIMEOUT", 10)
    monkeypatch.setattr(config, "DEBUGSERVER_POLL_INTERVAL", 0.2)
    return knobs


def test_ready_once_port_is_listening(env, clock):
    env["listening"] = [False, False, True]
    ctl = DebugServerController(6667)

    session = asyncio.run(ctl.start(LAUNCH, DestinationKind.SIMULATOR))

    assert session.port == 6667
    assert session.process is env["server"]
    assert env["cleanups"] == [6667]
    assert env["spawned"] == [["/fake/debugserver", "localhost:6667", "--attach", "4821"]]
    assert ctl.warnings == []
    assert ctl.states == [
        DebugServerState.IDLE,
        DebugServerState.CLEANING_UP,
        DebugServerState.STARTING,
        DebugServerState.WAITING_FOR_READY,
        DebugServerState.READY,
    ]
    assert len(clock.sleeps) == 2


def test_early_exit_fails_immediately_with_exit_code(env, clock):
    env["server"] = FakeServer(returncode=1, stdout="", stderr="error: failed to attach to process 4821")
    ctl = DebugServerController(6667)

    with pytest.raises(ToolInvocationError) as exc_info:
        asyncio.run(ctl.start(LAUNCH, DestinationKind.SIMULATOR))

    err = exc_info.value
    assert "code 1" in err.message
    assert "failed to attach" in err.output
    assert clock.now < config.DEBUGSERVER_READY_TIMEOUT
    assert ctl.state == DebugServerState.FAILED


def test_dead_target_is_state_error_naming_pid(env):
    env["alive"] = False
    ctl = DebugServerController(6667)

    with pytest.raises(StateError) as exc_info:
        asyncio.run(ctl.start(LAUNCH, DestinationKind.SIMULATOR))

    assert "4821" in exc_info.value.message
    assert exc_info.value.destination == "SIM-1"
    assert env["spawned"] == []
    assert ctl.states[-2:] == [DebugServerState.STARTING, DebugServerState.FAILED]


def test_timeout_assumes_ready_with_warning(env, clock):
    ctl = DebugServerController(6667)

    session = asyncio.run(ctl.start(LAUNCH, DestinationKind.SIMULATOR))

    assert session.process is env["server"]
    assert ctl.state == DebugServerState.READY
    assert len(ctl.warnings) == 1
    assert "6667" in ctl.warnings[0]
    assert clock.now >= 10


def test_settle_mode_skips_port_polling(env, clock, monkeypatch):
    monkeypatch.setattr(config, "DEBUGSERVER_READY_MODE", "settle")
    monkeypatch.setattr(config, "DEBUGSERVER_SETTLE_DELAY", 2)

    async def must_not_poll(port):
        raise AssertionError("port polled in settle mode")

    monkeypatch.setattr(debugserver, "is_port_listening", must_not_poll)
    ctl = DebugServerController(6667)

    asyncio.run(ctl.start(LAUNCH, DestinationKind.SIMULATOR))

    assert ctl.state == DebugServerState.READY
    assert ctl.warnings == []
    assert clock.now >= 2


def test_device_only_waits(env, clock, monkeypatch):
    monkeypatch.setattr(config, "DEVICE_SETTLE_DELAY", 1)
    ctl = DebugServerController(6667)
    device_launch = LaunchResult(pid=912, bundle_id="com.example.Demo", destination_id="DEV-1", app_path="/x.ipa")

    session = asyncio.run(ctl.start(device_launch, DestinationKind.DEVICE))

    assert session.process is None
    assert session.kind == DestinationKind.DEVICE
    assert env["spawned"] == []
    assert env["cleanups"] == []
    assert clock.sleeps == [1]
    assert ctl.states == [DebugServerState.IDLE, DebugServerState.STARTING, DebugServerState.READY]


def test_cleanup_swallows_errors(monkeypatch):
    async def failing(port):
        raise psutil.AccessDenied(1)

    monkeypatch.setattr(debugserver, "_kill_stale", failing)
    asyncio.run(debugserver.cleanup(6667, timeout=1))


def test_cleanup_is_bounded(monkeypatch):
    async def hangs(port):
        await asyncio.sleep(30)

    monkeypatch.setattr(debugserver, "_kill_stale", hangs)

    async def scenario():
        await asyncio.wait_for(debugserver.cleanup(6667, timeout=0.05), timeout=5)

    asyncio.run(scenario())


def test_cleanup_bounded_when_process_scan_blocks(monkeypatch):
    def slow_scan():
        time.sleep(0.5)

    async def no_listeners(port):
        return []

    monkeypatch.setattr(debugserver, "_kill_debugservers", slow_scan)
    monkeypatch.setattr(debugserver, "listening_pids", no_listeners)

    async def scenario():
        started = time.monotonic()
        await debugserver.cleanup(6667, timeout=0.05)
        return time.monotonic() - started

    assert asyncio.run(scenario()) < 0.4


def test_listening_pids_parses_lsof(monkeypatch):
    async def fake_run(cmd, **kwargs):
        assert "-iTCP:6667" in cmd
        return ProcessResult(args=cmd, returncode=0, stdout="123\n456\n", stderr="")

    monkeypatch.setattr(proc, "run", fake_run)
    assert asyncio.run(debugserver.listening_pids(6667)) == [123, 456]


def test_debugserver_path_override(monkeypatch):
    monkeypatch.setattr(config, "DEBUGSERVER_PATH", "/opt/debugserver")
    assert asyncio.run(debugserver.debugserver_path()) == "/opt/debugserver"
