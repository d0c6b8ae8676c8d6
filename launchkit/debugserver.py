"""Start a local debugserver attached to a freshly launched simulator app.

States: idle -> cleaning_up -> starting -> waiting_for_ready -> ready | failed

For a physical device nothing is spawned here; the debugger attaches through
devicectl, so the controller only waits a short settle delay.
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from enum import Enum
from typing import Callable

import psutil

from launchkit import config, proc
from launchkit.errors import LaunchError, NotFoundError, StateError, ToolInvocationError
from launchkit.models import DebugSession, DestinationKind, LaunchResult

DEBUGSERVER_NAME = "debugserver"

_sleep = asyncio.sleep
_now = time.monotonic


def _log(msg: str) -> None:
    print(f"[debugserver] {msg}", file=sys.stderr)


class DebugServerState(str, Enum):
    IDLE = "idle"
    CLEANING_UP = "cleaning_up"
    STARTING = "starting"
    WAITING_FOR_READY = "waiting_for_ready"
    READY = "ready"
    FAILED = "failed"


async def debugserver_path() -> str:
    """DEBUGSERVER_PATH, or the debugserver shipped inside the selected Xcode."""
    if config.DEBUGSERVER_PATH:
        return config.DEBUGSERVER_PATH
    result = await proc.run(["xcode-select", "-p"])
    developer_dir = result.stdout.strip()
    path = os.path.normpath(os.path.join(
        developer_dir, "..", "SharedFrameworks", "LLDB.framework",
        "Versions", "A", "Resources", DEBUGSERVER_NAME,
    ))
    if not os.path.exists(path):
        raise NotFoundError(
            "debugserver not found in the selected Xcode",
            probed=[path],
            remediation=[
                "Check Xcode is installed: xcode-select -p",
                "Set DEBUGSERVER_PATH to a debugserver binary",
            ],
        )
    return path


async def listening_pids(port: int) -> list[int]:
    """PIDs with a TCP socket listening on `port` (lsof exits 1 when there are none)."""
    result = await proc.run(
        ["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"],
        timeout=config.PORT_QUERY_TIMEOUT,
        check=False,
    )
    return [int(token) for token in result.stdout.split() if token.isdigit()]


async def is_port_listening(port: int) -> bool:
    try:
        return bool(await listening_pids(port))
    except LaunchError as exc:
        _log(f"Port query failed: {exc.message}")
        return False


def _kill_pid(pid: int) -> None:
    if pid == os.getpid():
        return
    try:
        psutil.Process(pid).kill()
        _log(f"Killed pid {pid}")
    except psutil.Error as exc:
        _log(f"Could not kill pid {pid}: {exc}")


def _kill_debugservers() -> None:
    for p in psutil.process_iter(["name"]):
        if p.info.get("name") == DEBUGSERVER_NAME:
            _kill_pid(p.pid)


async def _kill_stale(port: int) -> None:
    # process_iter blocks; run it off the loop so the cleanup timeout can fire
    await asyncio.to_thread(_kill_debugservers)
    try:
        pids = await listening_pids(port)
    except LaunchError as exc:
        _log(f"Could not list processes on port {port}: {exc.message}")
        return
    for pid in pids:
        _kill_pid(pid)


async def cleanup(port: int, timeout: float | None = None) -> None:
    """Kill leftover debugservers and whatever holds `port`. Never raises."""
    if timeout is None:
        timeout = config.CLEANUP_TIMEOUT
    try:
        settled, _ = await proc.settle_within(_kill_stale(port), timeout)
        if not settled:
            _log(f"Cleanup did not finish within {timeout}s, continuing")
    except (LaunchError, psutil.Error, OSError) as exc:
        _log(f"Cleanup failed, continuing: {exc}")


def _early_exit_error(server: proc.BackgroundProcess, port: int) -> ToolInvocationError:
    code = server.returncode
    error = ToolInvocationError(
        f"debugserver exited with code {code} before listening on port {port}",
        command=server.args,
        returncode=code if code is not None else -1,
        stdout=server.stdout,
        stderr=server.stderr,
        remediation=[
            f"Check nothing else is using port {port}: lsof -i :{port}",
            "Check the app is still running in the simulator",
            "Enable Developer Mode: DevToolsSecurity -enable",
        ],
    )
    error.output = "\n".join([
        "stdout:", server.stdout.strip() or "[empty]",
        "stderr:", server.stderr.strip() or "[empty]",
    ])
    return error


class DebugServerController:
    def __init__(self, port: int, report: Callable[[str], None] | None = None):
        self.port = port
        self.report = report or (lambda _msg: None)
        self.state = DebugServerState.IDLE
        self.states = [DebugServerState.IDLE]
        self.warnings: list[str] = []
        self.server: proc.BackgroundProcess | None = None

    def _enter(self, state: DebugServerState) -> None:
        self.state = state
        self.states.append(state)
        _log(f"-> {state.value}")

    async def start(self, launch_result: LaunchResult, kind: DestinationKind) -> DebugSession:
        try:
            if kind == DestinationKind.DEVICE:
                self._enter(DebugServerState.STARTING)
                await _sleep(config.DEVICE_SETTLE_DELAY)
                self._enter(DebugServerState.READY)
                return DebugSession(port=self.port, kind=kind)

            self._enter(DebugServerState.CLEANING_UP)
            await cleanup(self.port)

            self._enter(DebugServerState.STARTING)
            self._check_alive(launch_result)
            path = await debugserver_path()
            self.server = await proc.spawn([path, f"localhost:{self.port}", "--attach", str(launch_result.pid)])

            self._enter(DebugServerState.WAITING_FOR_READY)
            await self._wait_ready(self.server)
        except LaunchError:
            self._enter(DebugServerState.FAILED)
            raise
        except asyncio.CancelledError:
            if self.server is not None:
                await self.server.terminate()
            raise

        self._enter(DebugServerState.READY)
        return DebugSession(port=self.port, kind=kind, process=self.server)

    def _check_alive(self, launch_result: LaunchResult) -> None:
        if psutil.pid_exists(launch_result.pid):
            return
        raise StateError(
            f"App process {launch_result.pid} is no longer running; "
            "the app crashed before the debugger could attach.",
            destination=launch_result.destination_id,
            remediation=[
                "Check the simulator log for a crash report: xcrun simctl spawn booted log show --last 1m",
                "Run without --debug to see whether the app starts at all",
            ],
        )

    async def _wait_ready(self, server: proc.BackgroundProcess) -> None:
        settle = config.DEBUGSERVER_READY_MODE == "settle"
        limit = config.DEBUGSERVER_SETTLE_DELAY if settle else config.DEBUGSERVER_READY_TIMEOUT
        started = _now()
        while True:
            if server.returncode is not None:
                await server.wait()
                raise _early_exit_error(server, self.port)
            if not settle and await is_port_listening(self.port):
                _log(f"Listening on port {self.port} after {_now() - started:.1f}s")
                return
            if _now() - started >= limit:
                break
            await _sleep(config.DEBUGSERVER_POLL_INTERVAL)

        if settle:
            _log(f"Assuming ready after {limit}s settle delay")
            return
        warning = (
            f"debugserver was not seen listening on port {self.port} within {limit:.0f}s; "
            "continuing on the assumption that it is ready"
        )
        _log(f"WARNING: {warning}")
        self.warnings.append(warning)
