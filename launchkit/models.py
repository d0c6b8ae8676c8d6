"""Data model shared by every step of a build/launch/debug run."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Literal, Union

if TYPE_CHECKING:
    from launchkit.proc import BackgroundProcess


class TargetKind(str, Enum):
    BINARY = "binary"
    LIBRARY = "library"
    TEST = "test"


class DestinationKind(str, Enum):
    SIMULATOR = "simulator"
    DEVICE = "device"


class BuildMode(str, Enum):
    DEBUG = "debug"
    RELEASE = "release"
    RELEASE_WITH_SYMBOLS = "release-with-symbols"


class RunStatus(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    FAILED = "failed"


@dataclass(frozen=True)
class BuildTarget:
    """A Bazel target as reported by target discovery."""

    build_label: str
    package_path: str
    name: str
    kind: TargetKind = TargetKind.BINARY

    @staticmethod
    def from_label(build_label: str, package_path: str, kind: TargetKind = TargetKind.BINARY) -> "BuildTarget":
        """Build a target from `//pkg/path:name`, deriving the name from the label."""
        label = build_label.strip()
        if ":" in label:
            name = label.rsplit(":", 1)[1]
        else:
            name = label.rstrip("/").rsplit("/", 1)[-1]
        return BuildTarget(build_label=label, package_path=package_path, name=name, kind=kind)


@dataclass(frozen=True)
class SimulatorDestination:
    udid: str
    name: str
    booted: bool = False
    kind: Literal[DestinationKind.SIMULATOR] = DestinationKind.SIMULATOR


@dataclass(frozen=True)
class DeviceDestination:
    udid: str
    name: str
    lock_state: str = ""
    transport: str = ""
    paired: bool = True
    tunnel_state: str = ""
    kind: Literal[DestinationKind.DEVICE] = DestinationKind.DEVICE


Destination = Union[SimulatorDestination, DeviceDestination]


@dataclass
class RunOptions:
    """Caller-supplied options for one run."""

    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    debug: bool = False
    port: int = 6667
    build_mode: BuildMode | None = None
    skip_build: bool = False

    def effective_build_mode(self) -> BuildMode:
        if self.build_mode is not None:
            return self.build_mode
        return BuildMode.DEBUG if self.debug else BuildMode.RELEASE


@dataclass(frozen=True)
class BuildArtifactLocation:
    path: str
    workspace_root: str
    probed: tuple[str, ...] = ()


@dataclass(frozen=True)
class LaunchResult:
    pid: int
    bundle_id: str
    destination_id: str
    app_path: str
    # device only: where the bundle lives on the device
    remote_app_path: str = ""


@dataclass
class DebugSession:
    port: int
    kind: DestinationKind
    process: "BackgroundProcess | None" = None


@dataclass
class RunOutcome:
    status: RunStatus
    run_id: str
    launch_result: LaunchResult | None = None
    warnings: list[str] = field(default_factory=list)
    error: str = ""
    debug_session: DebugSession | None = None
