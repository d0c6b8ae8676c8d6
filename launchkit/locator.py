"""Find the app bundle Bazel produced for a target.

The label is mapped to a path under the output symlink directory (`bazel-bin`)
of the workspace root, which is found by walking up from the package directory.
"""

import os
import sys

from launchkit import config
from launchkit.errors import NotFoundError
from launchkit.models import BuildArtifactLocation, BuildTarget, DestinationKind


def _log(msg: str) -> None:
    print(f"[locator] {msg}", file=sys.stderr)


def label_to_path(build_label: str) -> str:
    """`//Apps/Demo:Demo` -> `Apps/Demo/Demo`."""
    path = build_label.strip()
    if path.startswith("//"):
        path = path[2:]
    return path.replace(":", "/").strip("/")


def find_workspace_root(start: str, max_depth: int | None = None) -> str | None:
    """Walk upward from `start` looking for a workspace marker file."""
    if max_depth is None:
        max_depth = config.WORKSPACE_SEARCH_DEPTH
    current = os.path.abspath(start)
    for _ in range(max_depth):
        for marker in config.WORKSPACE_MARKERS:
            if os.path.exists(os.path.join(current, marker)):
                return current
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return None


def candidate_paths(base: str, build_label: str, kind: DestinationKind) -> list[str]:
    """Ordered artifact candidates under `<base>/bazel-bin` for one destination kind."""
    stem = os.path.join(base, config.OUTPUT_DIR_NAME, label_to_path(build_label))
    if kind == DestinationKind.DEVICE:
        return [stem + ".ipa", stem + ".app"]
    return [stem + ".app"]


def locate(target: BuildTarget, kind: DestinationKind) -> BuildArtifactLocation:
    """Return the first existing candidate, or raise NotFoundError listing every probe."""
    package_path = os.path.abspath(target.package_path or os.getcwd())
    root = find_workspace_root(package_path)
    if root is None:
        _log(f"No workspace marker found above {package_path}, probing the package directory only")

    bases = []
    for base in (root, package_path):
        if base and base not in bases:
            bases.append(base)

    probed = []
    for base in bases:
        for candidate in candidate_paths(base, target.build_label, kind):
            probed.append(candidate)
            if os.path.exists(candidate):
                _log(f"Found artifact: {candidate}")
                return BuildArtifactLocation(
                    path=candidate,
                    workspace_root=root or package_path,
                    probed=tuple(probed),
                )

    raise NotFoundError(
        f"Could not find build output for {target.build_label}",
        probed=probed,
        remediation=[
            "Make sure the build finished successfully",
            "Check that the target is an ios_application",
            f"Check that {config.OUTPUT_DIR_NAME} points at the current output base",
        ],
    )
