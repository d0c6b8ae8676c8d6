"""Ask the IDE's LLDB extension to attach to the launched app."""

import json
import sys
import urllib.parse
from enum import Enum

from launchkit import config, proc
from launchkit.errors import LaunchError
from launchkit.models import DestinationKind, LaunchResult

LLDB_EXTENSION_URL = "vscode://vadimcn.vscode-lldb/launch/config"
IDE_TIMEOUT = 15


def _log(msg: str) -> None:
    print(f"[attacher] {msg}", file=sys.stderr)


class AttachStatus(str, Enum):
    STARTED = "started"
    NOT_STARTED = "not_started"


def _local_target(launch_result: LaunchResult) -> str:
    # lldb cannot load symbols from an .ipa archive
    if not launch_result.app_path.endswith(".app"):
        return ""
    return f'target create "{launch_result.app_path}"'


def attach_config(port: int, kind: DestinationKind, launch_result: LaunchResult) -> dict:
    """CodeLLDB "custom" request: a local target for symbols, then connect or attach."""
    cfg = {
        "type": "lldb",
        "request": "custom",
        "name": f"Attach to {launch_result.bundle_id}",
    }
    local_target = _local_target(launch_result)
    if local_target:
        cfg["targetCreateCommands"] = [local_target]
    if kind == DestinationKind.SIMULATOR:
        cfg["processCreateCommands"] = [f"gdb-remote localhost:{port}"]
    else:
        # keep the app running after attach instead of stopping on SIGSTOP
        cfg["initCommands"] = [
            "platform select remote-ios",
            "process handle SIGSTOP -p true -s false -n false",
        ]
        if launch_result.remote_app_path:
            cfg["preRunCommands"] = [
                "script lldb.target.module[0].SetPlatformFileSpec("
                f"lldb.SBFileSpec('{launch_result.remote_app_path}'))",
            ]
        cfg["processCreateCommands"] = [
            f"device select {launch_result.destination_id}",
            f"device process attach --continue --pid {launch_result.pid}",
        ]
    return cfg


def attach_url(cfg: dict) -> str:
    return f"{LLDB_EXTENSION_URL}?{urllib.parse.quote(json.dumps(cfg))}"


async def attach(port: int, kind: DestinationKind, launch_result: LaunchResult) -> AttachStatus:
    """Hand the attach configuration to the IDE. Never raises for IDE failures."""
    url = attach_url(attach_config(port, kind, launch_result))
    cmd = [config.IDE_BIN, "--open-url", url]
    _log(f"Running: {' '.join(cmd)}")
    try:
        await proc.run(cmd, timeout=IDE_TIMEOUT)
    except LaunchError as exc:
        _log(f"IDE did not accept the debug session: {exc.message}")
        return AttachStatus.NOT_STARTED
    return AttachStatus.STARTED


def manual_instructions(port: int, kind: DestinationKind, launch_result: LaunchResult) -> str:
    local_target = _local_target(launch_result)
    targets = [local_target] if local_target else []
    if kind == DestinationKind.SIMULATOR:
        commands = targets + [f"process connect connect://localhost:{port}"]
    else:
        # the platform has to be selected before the target is created
        commands = ["platform select remote-ios"] + targets + [
            f"device select {launch_result.destination_id}",
            f"device process attach --continue --pid {launch_result.pid}",
        ]
    lines = [f"Attach manually to {launch_result.bundle_id} (pid {launch_result.pid}):", "  $ lldb"]
    lines.extend(f"  (lldb) {c}" for c in commands)
    return "\n".join(lines)
