"""Bazel build invocation with destination-specific flags."""

import sys

from launchkit import config, proc
from launchkit.errors import ToolInvocationError
from launchkit.models import BuildMode, BuildTarget, DestinationKind

SIMULATOR_PLATFORM_FLAG = "--platforms=@build_bazel_apple_support//platforms:ios_sim_arm64"
DEVICE_CPU_FLAG = "--ios_multi_cpus=arm64"

_MODE_FLAGS = {
    BuildMode.DEBUG: ["--compilation_mode=dbg", "--copt=-g", "--strip=never"],
    BuildMode.RELEASE_WITH_SYMBOLS: ["--compilation_mode=opt", "--copt=-g", "--strip=never"],
    BuildMode.RELEASE: [],
}


def _log(msg: str) -> None:
    print(f"[builder] {msg}", file=sys.stderr)


def build_flags(kind: DestinationKind, mode: BuildMode) -> list[str]:
    platform = SIMULATOR_PLATFORM_FLAG if kind == DestinationKind.SIMULATOR else DEVICE_CPU_FLAG
    return [platform] + _MODE_FLAGS[mode]


async def build(target: BuildTarget, kind: DestinationKind, mode: BuildMode) -> proc.ProcessResult:
    """Run `bazel build` for the target from its package directory."""
    cmd = [config.BAZEL_BIN, "build", target.build_label] + build_flags(kind, mode)
    _log(f"Running: {' '.join(cmd)} (cwd={target.package_path})")
    try:
        return await proc.run(cmd, cwd=target.package_path or None)
    except ToolInvocationError as exc:
        raise ToolInvocationError(
            f"Build failed for {target.build_label} (exit code: {exc.returncode})",
            command=exc.command,
            returncode=exc.returncode,
            stdout=exc.stdout,
            stderr=exc.stderr,
            remediation=[
                "Check the build output above for compiler or BUILD file errors",
                f"Run: {config.BAZEL_BIN} build {target.build_label}",
                f"Run: {config.BAZEL_BIN} clean and build again",
            ],
        ) from exc
