import asyncio

import pytest

from launchkit import builder
from launchkit.errors import ToolInvocationError
from launchkit.models import BuildMode, BuildTarget, DestinationKind


def test_build_flags_simulator_debug():
    assert builder.build_flags(DestinationKind.SIMULATOR, BuildMode.DEBUG) == [
        "--platforms=@build_bazel_apple_support//platforms:ios_sim_arm64",
        "--compilation_mode=dbg",
        "--copt=-g",
        "--strip=never",
    ]


def test_build_flags_device_release():
    assert builder.build_flags(DestinationKind.DEVICE, BuildMode.RELEASE) == ["--ios_multi_cpus=arm64"]


def test_build_flags_release_with_symbols():
    flags = builder.build_flags(DestinationKind.DEVICE, BuildMode.RELEASE_WITH_SYMBOLS)
    assert "--compilation_mode=opt" in flags
    assert "--strip=never" in flags


def test_build_runs_from_package_directory(monkeypatch):
    seen = {}

    async def fake_run(cmd, cwd=None, **kwargs):
        seen["cmd"] = cmd
        seen["cwd"] = cwd

    monkeypatch.setattr(builder.proc, "run", fake_run)
    target = BuildTarget.from_label("//Apps/Demo:Demo", "/src/ws/Apps/Demo")

    asyncio.run(builder.build(target, DestinationKind.SIMULATOR, BuildMode.RELEASE))

    assert seen["cmd"][1:3] == ["build", "//Apps/Demo:Demo"]
    assert seen["cwd"] == "/src/ws/Apps/Demo"


def test_build_failure_suggests_clean(monkeypatch):
    async def failing_run(cmd, **kwargs):
        raise ToolInvocationError("bazel failed", command=cmd, returncode=1, stderr="ERROR: no such target")

    monkeypatch.setattr(builder.proc, "run", failing_run)
    target = BuildTarget.from_label("//Apps/Demo:Demo", "/src/ws/Apps/Demo")

    with pytest.raises(ToolInvocationError) as exc_info:
        asyncio.run(builder.build(target, DestinationKind.DEVICE, BuildMode.DEBUG))

    err = exc_info.value
    assert "//Apps/Demo:Demo" in err.message
    assert err.output == "ERROR: no such target"
    assert any("clean" in step for step in err.remediation)
