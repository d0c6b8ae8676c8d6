"""
config.py - Environment loading for the build/launch/debug orchestrator.

Values come from `.env` in the project root, then `~/.env`, then the process
environment. Durations are in seconds.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

load_dotenv(_PROJECT_ROOT / ".env")
load_dotenv(Path.home() / ".env")

# ── Tools ────────────────────────────────────────────────────────────────────
XCRUN: str = os.getenv("XCRUN", "xcrun")
BAZEL_BIN: str = os.getenv("BAZEL_BIN", "bazel")
CODESIGN: str = os.getenv("CODESIGN", "codesign")
IDE_BIN: str = os.getenv("IDE_BIN", "code")

# ── Debugging ────────────────────────────────────────────────────────────────
DEBUG_PORT: int = int(os.getenv("DEBUG_PORT", "6667"))
DEBUGSERVER_PATH: str = os.getenv("DEBUGSERVER_PATH", "")
DEBUGSERVER_READY_MODE: str = os.getenv("DEBUGSERVER_READY_MODE", "poll")
DEBUGSERVER_READY_TIMEOUT: float = float(os.getenv("DEBUGSERVER_READY_TIMEOUT", "10"))
DEBUGSERVER_POLL_INTERVAL: float = float(os.getenv("DEBUGSERVER_POLL_INTERVAL", "0.2"))
DEBUGSERVER_SETTLE_DELAY: float = float(os.getenv("DEBUGSERVER_SETTLE_DELAY", "2"))
DEVICE_SETTLE_DELAY: float = float(os.getenv("DEVICE_SETTLE_DELAY", "1"))
CLEANUP_TIMEOUT: float = float(os.getenv("CLEANUP_TIMEOUT", "2"))
PORT_QUERY_TIMEOUT: float = float(os.getenv("PORT_QUERY_TIMEOUT", "0.5"))

# ── Install / launch ─────────────────────────────────────────────────────────
TERMINATE_TIMEOUT: float = float(os.getenv("TERMINATE_TIMEOUT", "5"))
INSTALL_TIMEOUT: float = float(os.getenv("INSTALL_TIMEOUT", "200"))
INSTALL_ATTEMPTS: int = int(os.getenv("INSTALL_ATTEMPTS", "2"))
BOOT_TIMEOUT: float = float(os.getenv("BOOT_TIMEOUT", "60"))
SHUTDOWN_SETTLE_DELAY: float = float(os.getenv("SHUTDOWN_SETTLE_DELAY", "3"))

# ── Devices ──────────────────────────────────────────────────────────────────
UNLOCK_TIMEOUT: float = float(os.getenv("UNLOCK_TIMEOUT", "120"))
UNLOCK_POLL_INTERVAL: float = float(os.getenv("UNLOCK_POLL_INTERVAL", "1"))

# ── Workspace ────────────────────────────────────────────────────────────────
WORKSPACE_SEARCH_DEPTH: int = int(os.getenv("WORKSPACE_SEARCH_DEPTH", "10"))
WORKSPACE_MARKERS: tuple[str, ...] = ("MODULE.bazel", "WORKSPACE", "WORKSPACE.bazel")
OUTPUT_DIR_NAME: str = "bazel-bin"

# ── Artifacts ────────────────────────────────────────────────────────────────
LAUNCH_STATE_DIR: Path = _PROJECT_ROOT / os.getenv("LAUNCH_STATE_DIR", "_artifacts/launches")


def validate() -> list[str]:
    problems = []
    if DEBUGSERVER_READY_MODE not in ("poll", "settle"):
        problems.append(f"DEBUGSERVER_READY_MODE must be 'poll' or 'settle', got '{DEBUGSERVER_READY_MODE}'")
    if INSTALL_ATTEMPTS < 1:
        problems.append("INSTALL_ATTEMPTS must be at least 1")
    if not 0 < DEBUG_PORT < 65536:
        problems.append(f"DEBUG_PORT out of range: {DEBUG_PORT}")
    return problems


def print_config_summary():
    print(f"  xcrun:            {XCRUN}")
    print(f"  bazel:            {BAZEL_BIN}")
    print(f"  IDE CLI:          {IDE_BIN}")
    print(f"  Debug port:       {DEBUG_PORT}")
    print(f"  debugserver:      {DEBUGSERVER_PATH or '(from xcode-select)'}")
    print(f"  Ready mode:       {DEBUGSERVER_READY_MODE} (timeout: {DEBUGSERVER_READY_TIMEOUT}s)")
    print(f"  Install timeout:  {INSTALL_TIMEOUT}s x {INSTALL_ATTEMPTS} attempts")
    print(f"  Unlock timeout:   {UNLOCK_TIMEOUT}s")
    print(f"  Launch state:     {LAUNCH_STATE_DIR}")
