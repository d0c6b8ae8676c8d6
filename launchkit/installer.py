"""Install and launch an app on a simulator or device.

The Installer walks an explicit state machine:

    idle -> terminating -> installing
         -> (install_timed_out -> restarting_destination -> installing)*
         -> launching -> launched | failed

Only an install *timeout* on a simulator takes the restart loop, and at most
config.INSTALL_ATTEMPTS installs are attempted. Every visited state is kept in
`Installer.states` so a run can be inspected afterwards.
"""

from __future__ import annotations

import asyncio
import os
import re
import sys
from enum import Enum
from typing import Callable

from launchkit import config, devicectl, proc, simctl
from launchkit.errors import LaunchError, LaunchTimeoutError, NotFoundError, ToolInvocationError
from launchkit.models import Destination, DestinationKind, LaunchResult, RunOptions

# simctl prints "<bundle-id>: <pid>"
_SIM_PID = re.compile(r":\s*(\d+)\s*$")
# devicectl reports the on-device executable as a file:// URL inside the .app
_DEVICE_APP_URL = re.compile(r"^file://(.*\.app)(?:/|$)")

_sleep = asyncio.sleep


def _log(msg: str) -> None:
    print(f"[installer] {msg}", file=sys.stderr)


class InstallerState(str, Enum):
    IDLE = "idle"
    TERMINATING = "terminating"
    INSTALLING = "installing"
    INSTALL_TIMED_OUT = "install_timed_out"
    RESTARTING_DESTINATION = "restarting_destination"
    LAUNCHING = "launching"
    LAUNCHED = "launched"
    FAILED = "failed"


def parse_simulator_pid(output: str) -> int:
    """Extract the pid from `simctl launch` output such as "com.example.App: 4821"."""
    for line in reversed(output.strip().splitlines()):
        m = _SIM_PID.search(line)
        if m and int(m.group(1)) > 0:
            return int(m.group(1))
    raise NotFoundError(
        "Could not find a process id in the launch output",
        remediation=["The app may have failed to start; check the simulator log"],
        output=output or "[no output]",
    )


def parse_device_pid(payload: dict) -> int:
    """Extract result.process.processIdentifier from a devicectl launch record."""
    process = ((payload or {}).get("result") or {}).get("process") or {}
    pid = process.get("processIdentifier")
    if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
        raise NotFoundError(
            "Could not find a process id in the devicectl launch output",
            remediation=["Check the device screen for a launch error", "Unlock the device and try again"],
            output=str(payload) if payload else "[no output]",
        )
    return pid


def parse_device_app_path(payload: dict) -> str:
    """On-device path of the launched .app bundle, or "" when devicectl did not report it."""
    process = ((payload or {}).get("result") or {}).get("process") or {}
    m = _DEVICE_APP_URL.match(str(process.get("executable") or ""))
    return m.group(1) if m else ""


def child_env(kind: DestinationKind, env: dict[str, str]) -> dict[str, str]:
    if kind == DestinationKind.SIMULATOR:
        return simctl.child_env(env)
    return devicectl.child_env(env)


def _install_remediation(kind: DestinationKind) -> list[str]:
    if kind == DestinationKind.SIMULATOR:
        return [
            "Check available disk space for the simulator",
            "Run: xcrun simctl shutdown all, then try again",
            "Erase the simulator: xcrun simctl erase <udid>",
        ]
    return [
        "Unlock the device and keep it unlocked during install",
        "Check the USB cable or network connection to the device",
        "Check the provisioning profile includes this device",
    ]


class Installer:
    """One install-and-launch attempt against one destination."""

    def __init__(
        self,
        destination: Destination,
        bundle_id: str,
        app_path: str,
        options: RunOptions,
        report: Callable[[str], None] | None = None,
    ):
        self.destination = destination
        self.bundle_id = bundle_id
        self.app_path = app_path
        self.options = options
        self.report = report or (lambda _msg: None)
        self.state = InstallerState.IDLE
        self.states = [InstallerState.IDLE]
        self.install_attempts = 0

    @property
    def kind(self) -> DestinationKind:
        return self.destination.kind

    def _enter(self, state: InstallerState) -> None:
        self.state = state
        self.states.append(state)
        _log(f"-> {state.value}")

    async def run(self) -> LaunchResult:
        try:
            await self._terminate_previous()
            await self._install()
            pid, remote_app_path = await self._launch()
        except LaunchError:
            self._enter(InstallerState.FAILED)
            raise
        self._enter(InstallerState.LAUNCHED)
        return LaunchResult(
            pid=pid,
            bundle_id=self.bundle_id,
            destination_id=self.destination.udid,
            app_path=self.app_path,
            remote_app_path=remote_app_path,
        )

    async def _terminate_previous(self) -> None:
        self._enter(InstallerState.TERMINATING)
        udid = self.destination.udid
        if self.kind == DestinationKind.SIMULATOR:
            call = simctl.terminate(udid, self.bundle_id)
        else:
            call = devicectl.terminate(udid, self.bundle_id)
        try:
            settled, _ = await proc.settle_within(call, config.TERMINATE_TIMEOUT)
            if not settled:
                _log("Terminate did not finish in time, continuing")
        except LaunchError as exc:
            # Nothing running is the normal case
            _log(f"Terminate ignored: {exc.message}")

    async def _install_once(self) -> None:
        udid = self.destination.udid
        if self.kind == DestinationKind.SIMULATOR:
            await simctl.install(udid, self.app_path, timeout=config.INSTALL_TIMEOUT)
        else:
            await devicectl.install(udid, self.app_path, timeout=config.INSTALL_TIMEOUT)

    async def _install(self) -> None:
        while True:
            self._enter(InstallerState.INSTALLING)
            self.install_attempts += 1
            try:
                await self._install_once()
                return
            except LaunchTimeoutError as exc:
                self._enter(InstallerState.INSTALL_TIMED_OUT)
                if self.kind != DestinationKind.SIMULATOR or self.install_attempts >= config.INSTALL_ATTEMPTS:
                    raise LaunchTimeoutError(
                        f"Installation timed out after {self.install_attempts} attempt(s) "
                        f"on {self.destination.name} ({self.destination.udid})",
                        exc.elapsed,
                        remediation=_install_remediation(self.kind),
                        output=exc.output,
                    ) from exc
                self.report(
                    f"   Install timed out, restarting simulator "
                    f"(attempt {self.install_attempts + 1}/{config.INSTALL_ATTEMPTS})..."
                )
                self._enter(InstallerState.RESTARTING_DESTINATION)
                await self._restart_simulator()
            except ToolInvocationError as exc:
                raise ToolInvocationError(
                    f"Failed to install app on {self.destination.name} ({self.destination.udid})",
                    command=exc.command,
                    returncode=exc.returncode,
                    stdout=exc.stdout,
                    stderr=exc.stderr,
                    remediation=exc.remediation or _install_remediation(self.kind),
                ) from exc

    async def _restart_simulator(self) -> None:
        udid = self.destination.udid
        try:
            await simctl.shutdown(udid)
        except ToolInvocationError as exc:
            _log(f"Shutdown before reboot failed, continuing: {exc.output}")
        await _sleep(config.SHUTDOWN_SETTLE_DELAY)
        await simctl.boot(udid)
        await simctl.wait_for_boot(udid, config.BOOT_TIMEOUT)

    async def _launch(self) -> tuple[int, str]:
        self._enter(InstallerState.LAUNCHING)
        env = child_env(self.kind, self.options.env)
        udid = self.destination.udid
        if self.kind == DestinationKind.SIMULATOR:
            output = await simctl.launch(
                udid,
                self.bundle_id,
                args=self.options.args,
                env=env,
                wait_for_debugger=self.options.debug,
            )
            return parse_simulator_pid(output), ""

        json_path = devicectl.temp_json_path("launch")
        try:
            await devicectl.launch(
                udid,
                self.bundle_id,
                json_path,
                args=self.options.args,
                env=env,
                start_stopped=self.options.debug,
            )
            payload = devicectl.read_json(json_path)
        finally:
            try:
                os.unlink(json_path)
            except OSError:
                pass
        return parse_device_pid(payload), parse_device_app_path(payload)
