"""Destination readiness checks run before anything is installed.

Simulators: exactly one simulator is booted, the requested one.
Devices: paired, reachable, and unlocked (waiting a bounded time for the unlock).
"""

import asyncio
import sys
import time
from typing import Callable

from thefuzz import process as fuzzy

from launchkit import config, devicectl, simctl
from launchkit.errors import LaunchError, LaunchTimeoutError, StateError, ToolInvocationError
from launchkit.models import Destination, DestinationKind, DeviceDestination, SimulatorDestination

_sleep = asyncio.sleep
_now = time.monotonic


def _log(msg: str) -> None:
    print(f"[gatekeeper] {msg}", file=sys.stderr)


def _suggest(wanted: str, devices: list[dict], limit: int = 3) -> list[str]:
    names = sorted({d.get("name", "") for d in devices if d.get("name")})
    if not names:
        return []
    return [name for name, score in fuzzy.extract(wanted, names, limit=limit) if score >= 60]


async def bring_simulator_to_front() -> None:
    try:
        await simctl.open_simulator_app()
    except ToolInvocationError as exc:
        _log(f"Could not open Simulator.app: {exc.output}")


async def ensure_single_simulator(udid_or_name: str) -> SimulatorDestination:
    """Shut down every other booted simulator and boot the requested one.

    Calling this twice with the same target issues no shutdown or boot the
    second time.
    """
    devices = await simctl.list_devices()
    target = simctl.find_in(devices, udid_or_name)
    if target is None:
        remediation = []
        suggestions = _suggest(udid_or_name, devices)
        if suggestions:
            remediation.append("Did you mean: " + ", ".join(suggestions) + "?")
        remediation.append("List simulators with: xcrun simctl list devices available")
        raise StateError(
            f"Simulator not found: {udid_or_name}",
            destination=udid_or_name,
            remediation=remediation,
        )

    udid = target["udid"]
    for dev in devices:
        if dev.get("state") == "Booted" and dev.get("udid") != udid:
            _log(f"Shutting down other booted simulator: {dev.get('name')} ({dev.get('udid')})")
            try:
                await simctl.shutdown(dev["udid"])
            except LaunchError as exc:
                _log(f"Could not shut down {dev.get('udid')}, continuing: {exc.message}")

    if target.get("state") != "Booted":
        await simctl.boot(udid)
        await simctl.wait_for_boot(udid, config.BOOT_TIMEOUT)

    await bring_simulator_to_front()
    return SimulatorDestination(udid=udid, name=target.get("name", udid), booted=True)


def _transport_remediation(transport: str) -> list[str]:
    if transport == "localNetwork":
        return [
            "Make sure the device and this Mac are on the same WiFi network",
            "Open Xcode > Window > Devices and Simulators and check the device is listed",
            "Connect the device with a USB cable and try again",
        ]
    return [
        "Check the USB cable is connected and the device is on",
        "Unlock the device and accept the 'Trust This Computer' prompt",
        "Open Xcode > Window > Devices and Simulators and check the device is listed",
    ]


async def ensure_device_connected(destination: DeviceDestination) -> DeviceDestination:
    """Re-query the device and fail unless it is paired and its tunnel is usable."""
    info = await devicectl.find_device(destination.udid)
    if info is None:
        raise StateError(
            f"Device not found: {destination.name or destination.udid}",
            destination=destination.udid,
            remediation=_transport_remediation(destination.transport),
        )

    conn = devicectl.connection_properties(info)
    props = info.get("deviceProperties") or {}
    refreshed = DeviceDestination(
        udid=destination.udid,
        name=props.get("name") or destination.name,
        lock_state=destination.lock_state,
        transport=conn.get("transportType") or destination.transport,
        paired=conn.get("pairingState") == "paired",
        tunnel_state=conn.get("tunnelState", ""),
    )

    if not refreshed.paired:
        raise StateError(
            f"Device {refreshed.name} ({refreshed.udid}) is not paired with this Mac",
            destination=refreshed.udid,
            remediation=_transport_remediation(refreshed.transport),
        )
    if refreshed.tunnel_state == "unavailable":
        raise StateError(
            f"Device {refreshed.name} ({refreshed.udid}) is not reachable (tunnel unavailable)",
            destination=refreshed.udid,
            remediation=_transport_remediation(refreshed.transport),
        )
    return refreshed


async def wait_for_unlock(
    udid: str,
    on_waiting: Callable[[int], None] | None = None,
    timeout: float | None = None,
    interval: float | None = None,
) -> None:
    """Return once the device is unlocked, calling `on_waiting(elapsed)` after each locked poll.

    Returns immediately, without callbacks, when the device is already unlocked.
    """
    if timeout is None:
        timeout = config.UNLOCK_TIMEOUT
    if interval is None:
        interval = config.UNLOCK_POLL_INTERVAL

    if not await devicectl.is_locked(udid):
        return

    _log(f"Device {udid} is locked, waiting up to {timeout:.0f}s for unlock")
    started = _now()
    while True:
        await _sleep(interval)
        elapsed = _now() - started
        if elapsed >= timeout:
            raise LaunchTimeoutError(
                f"Device is still locked after {elapsed:.0f} seconds.",
                elapsed,
                remediation=[
                    "Unlock the device with its passcode or Face ID",
                    "Disable auto-lock while debugging (Settings > Display & Brightness > Auto-Lock)",
                ],
            )
        if on_waiting is not None:
            on_waiting(int(round(elapsed)))
        if not await devicectl.is_locked(udid):
            _log(f"Device {udid} unlocked after {elapsed:.0f}s")
            return


async def ensure_ready(
    destination: Destination,
    on_waiting: Callable[[int], None] | None = None,
) -> Destination:
    """Gate installation on the destination being usable; returns the refreshed destination."""
    if destination.kind == DestinationKind.SIMULATOR:
        return await ensure_single_simulator(destination.udid or destination.name)

    refreshed = await ensure_device_connected(destination)
    await wait_for_unlock(refreshed.udid, on_waiting)
    return refreshed
