"""Wrapper around xcrun simctl for simulator lifecycle, install and launch."""

import asyncio
import json
import re
import sys
import time

from launchkit import config, proc
from launchkit.errors import LaunchTimeoutError, ToolInvocationError

CHILD_ENV_PREFIX = "SIMCTL_CHILD_"

# Match lines like:  iPhone 17 Pro (50ADC92B-...) (Shutdown)
_DEVICE_LINE = re.compile(r"^\s+(.+?)\s+\(([0-9A-F-]{36})\)\s+\((.+?)\)")
# Match runtime headers like:  -- iOS 17.5 --
_RUNTIME_LINE = re.compile(r"^--\s+(.+?)\s+--$")

_sleep = asyncio.sleep
_now = time.monotonic


def _log(msg: str) -> None:
    print(f"[simctl] {msg}", file=sys.stderr)


async def _run(args: list[str], timeout: float | None = None, env: dict[str, str] | None = None,
               check: bool = True) -> proc.ProcessResult:
    """Run an xcrun simctl command and return the result."""
    cmd = [config.XCRUN, "simctl"] + args
    _log(f"Running: {' '.join(cmd)}")
    result = await proc.run(cmd, env=env, timeout=timeout, check=check)
    if result.returncode != 0 and result.stderr.strip():
        _log(f"stderr: {result.stderr.strip()}")
    return result


def _parse_text_listing(text: str) -> list[dict]:
    """Parse the plain `simctl list devices` output."""
    devices = []
    runtime = ""
    for line in text.splitlines():
        m = _RUNTIME_LINE.match(line)
        if m:
            runtime = m.group(1)
            continue
        m = _DEVICE_LINE.match(line)
        if m and runtime:
            state = m.group(3)
            devices.append({
                "name": m.group(1).strip(),
                "udid": m.group(2),
                "state": state,
                "isAvailable": "unavailable" not in state.lower(),
                "runtime": runtime,
            })
    return devices


async def list_devices() -> list[dict]:
    """List every simulator known to simctl.

    Returns list of dicts with at least: name, udid, state, runtime.
    """
    result = await _run(["list", "devices", "--json"])
    try:
        data = json.loads(result.stdout)
        by_runtime = data.get("devices") or {}
    except json.JSONDecodeError:
        by_runtime = {}

    if by_runtime:
        devices = []
        for runtime, entries in by_runtime.items():
            for dev in entries:
                devices.append(dict(dev, runtime=runtime))
        return devices

    _log("JSON listing empty or invalid, falling back to text format")
    result = await _run(["list", "devices"])
    return _parse_text_listing(result.stdout)


def find_in(devices: list[dict], udid_or_name: str) -> dict | None:
    """Find a simulator by exact UDID, then by name."""
    for dev in devices:
        if dev.get("udid") == udid_or_name:
            return dev
    for dev in devices:
        if dev.get("name") == udid_or_name:
            return dev
    return None


async def find_device(udid_or_name: str) -> dict | None:
    return find_in(await list_devices(), udid_or_name)


async def boot(udid: str) -> None:
    _log(f"Booting simulator {udid}...")
    result = await _run(["boot", udid], check=False)
    if result.returncode != 0:
        # "Unable to boot device in current state: Booted" is not a real error
        if "current state: Booted" in result.stderr:
            _log(f"Simulator {udid} was already booted")
            return
        raise ToolInvocationError(
            f"Failed to boot simulator {udid}",
            command=result.args,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            remediation=[
                "Quit Simulator.app and try again",
                "Run: xcrun simctl shutdown all",
                "Check available disk space",
            ],
        )
    _log(f"Successfully booted {udid}")


async def shutdown(udid: str) -> None:
    _log(f"Shutting down simulator {udid}...")
    result = await _run(["shutdown", udid], check=False)
    if result.returncode != 0:
        if "current state: Shutdown" in result.stderr:
            _log(f"Simulator {udid} was already shut down")
            return
        raise ToolInvocationError(
            f"Failed to shut down simulator {udid}",
            command=result.args,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    _log(f"Successfully shut down {udid}")


async def wait_for_boot(udid: str, timeout: float) -> None:
    """Poll once per second until the simulator reports Booted."""
    started = _now()
    while _now() - started < timeout:
        dev = find_in(await list_devices(), udid)
        if dev and dev.get("state") == "Booted":
            return
        await _sleep(1)

    elapsed = _now() - started
    raise LaunchTimeoutError(
        f"Simulator failed to boot within {round(elapsed)} seconds.\nSimulator UDID: {udid}",
        elapsed,
        remediation=[
            "Quit Simulator.app and try again",
            "Run: xcrun simctl shutdown all",
            "Restart your Mac if simulators are consistently stuck",
            "Check Console.app for CoreSimulator errors",
        ],
    )


async def open_simulator_app() -> None:
    """Bring Simulator.app up without stealing focus (one window per booted device)."""
    await proc.run(["open", "-g", "-a", "Simulator"])


async def terminate(udid: str, bundle_id: str) -> None:
    await _run(["terminate", udid, bundle_id])


async def install(udid: str, app_path: str, timeout: float | None = None) -> None:
    await _run(["install", udid, app_path], timeout=timeout)


def child_env(env: dict[str, str]) -> dict[str, str]:
    """Rename variables so simctl forwards them to the app instead of consuming them."""
    return {f"{CHILD_ENV_PREFIX}{key}": value for key, value in env.items()}


async def launch(
    udid: str,
    bundle_id: str,
    args: list[str] | None = None,
    env: dict[str, str] | None = None,
    wait_for_debugger: bool = False,
) -> str:
    """Launch an installed app and return simctl's stdout ("<bundle-id>: <pid>").

    `env` must already carry the SIMCTL_CHILD_ prefix (see child_env).
    """
    cmd = ["launch"]
    if wait_for_debugger:
        cmd.append("--wait-for-debugger")
    # Extra safety in case another instance started since terminate
    cmd.append("--terminate-running-process")
    cmd += [udid, bundle_id]
    cmd += list(args or [])
    result = await _run(cmd, env=env)
    return result.stdout
