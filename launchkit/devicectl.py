"""Wrapper around xcrun devicectl for physical devices.

devicectl reports structured results only through `--json-output <file>`, so
every query here writes to a temporary file and reads it back.
"""

from __future__ import annotations

import json
import os
import sys
import tempfile

from launchkit import config, proc
from launchkit.errors import ToolInvocationError

CHILD_ENV_PREFIX = "DEVICECTL_CHILD_"

_PASSCODE_ERROR_PATTERNS = (
    "The device is passcode protected",
    "DTDKRemoteDeviceConnection: Failed to start remote service",
    "Code=811",
    "Code=-402653158",
    "MobileDeviceErrorCode=(0xE800001A)",
    "com.apple.mobile.notification_proxy",
)


def _log(msg: str) -> None:
    print(f"[devicectl] {msg}", file=sys.stderr)


def is_passcode_error(stderr: str) -> bool:
    return any(pattern in stderr for pattern in _PASSCODE_ERROR_PATTERNS)


async def _run(args: list[str], timeout: float | None = None, env: dict[str, str] | None = None) -> proc.ProcessResult:
    """Run an xcrun devicectl command and return the result."""
    cmd = [config.XCRUN, "devicectl"] + args
    _log(f"Running: {' '.join(cmd)}")
    try:
        return await proc.run(cmd, env=env, timeout=timeout)
    except ToolInvocationError as exc:
        _log(f"stderr: {exc.stderr.strip()}")
        if is_passcode_error(exc.stderr):
            exc.message = f"Device passcode protection error in devicectl (exit code: {exc.returncode})"
            exc.args = (exc.message,)
            exc.remediation = ["Unlock the device", "Keep it unlocked until the app has launched"]
        raise


def temp_json_path(prefix: str) -> str:
    fd, path = tempfile.mkstemp(prefix=f"{prefix}-", suffix=".json")
    os.close(fd)
    return path


def read_json(path: str) -> dict:
    try:
        with open(path) as f:
            text = f.read()
    except OSError:
        return {}
    if not text.strip():
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        _log(f"invalid JSON in {path}")
        return {}
    return data if isinstance(data, dict) else {}


async def _run_json(args: list[str], prefix: str, timeout: float | None = None) -> dict:
    path = temp_json_path(prefix)
    try:
        await _run(args + ["--json-output", path], timeout=timeout)
        return read_json(path)
    finally:
        try:
            os.unlink(path)
        except OSError:
            pass


async def list_devices() -> list[dict]:
    data = await _run_json(["list", "devices", "--timeout", "10"], prefix="devices")
    return list((data.get("result") or {}).get("devices") or [])


async def find_device(udid: str) -> dict | None:
    """Find a device by identifier or hardware UDID (case-insensitive)."""
    wanted = udid.lower()
    for dev in await list_devices():
        identifier = str(dev.get("identifier", "")).lower()
        hw_udid = str((dev.get("hardwareProperties") or {}).get("udid", "")).lower()
        if wanted in (identifier, hw_udid):
            return dev
    return None


def connection_properties(device: dict) -> dict:
    return device.get("connectionProperties") or {}


async def lock_state(udid: str) -> str:
    """Return "unlocked", "locked", "passcode-locked" or "" when unreported."""
    data = await _run_json(["device", "info", "lockState", "--device", udid], prefix="device-info")
    return str((data.get("result") or {}).get("lockState") or "")


async def is_locked(udid: str) -> bool:
    """Best-effort lock check; a failing query counts as unlocked."""
    try:
        state = await lock_state(udid)
    except ToolInvocationError as exc:
        _log(f"Could not determine lock state of {udid}, assuming unlocked: {exc.message}")
        return False
    if not state:
        return False
    return state != "unlocked"


async def terminate(udid: str, bundle_id: str) -> None:
    await _run(["device", "process", "terminate", "--device", udid, bundle_id])


async def install(udid: str, app_path: str, timeout: float | None = None) -> None:
    await _run(["device", "install", "app", "--device", udid, app_path], timeout=timeout)


def child_env(env: dict[str, str]) -> dict[str, str]:
    """Rename variables so devicectl forwards them to the app instead of consuming them."""
    return {f"{CHILD_ENV_PREFIX}{key}": value for key, value in env.items()}


async def launch(
    udid: str,
    bundle_id: str,
    json_output: str,
    args: list[str] | None = None,
    env: dict[str, str] | None = None,
    start_stopped: bool = False,
) -> None:
    """Launch an installed app; the launch record is written to `json_output`.

    `env` must already carry the DEVICECTL_CHILD_ prefix (see child_env).
    """
    cmd = ["device", "process", "launch", "--device", udid]
    if start_stopped:
        cmd.append("--start-stopped")
    cmd += ["--terminate-existing", "--json-output", json_output, bundle_id]
    cmd += list(args or [])
    await _run(cmd, env=env)
