"""Bundle identification and pre-install fix-ups (permissions, ad-hoc signing)."""

import os
import plistlib
import re
import sys
import zipfile
from xml.parsers.expat import ExpatError

from launchkit import config, proc
from launchkit.errors import NotFoundError, ToolInvocationError
from launchkit.models import DestinationKind

BUNDLE_ID_KEY = "CFBundleIdentifier"

_IPA_PLIST = re.compile(r"^Payload/[^/]+\.app/Info\.plist$")

# plistlib raises ExpatError (not InvalidFileException) for truncated XML
_PLIST_ERRORS = (plistlib.InvalidFileException, ExpatError, ValueError)


def _log(msg: str) -> None:
    print(f"[preparer] {msg}", file=sys.stderr)


def _unreadable(plist_path: str, exc: Exception) -> NotFoundError:
    return NotFoundError(
        f"Failed to read Info.plist.\nPlist path: {plist_path}\nError: {exc}",
        remediation=["Rebuild the app bundle", f"Clean build: {config.BAZEL_BIN} clean"],
    )


def _as_dict(info, plist_path: str) -> dict:
    if not isinstance(info, dict):
        raise NotFoundError(
            f"Info.plist does not contain a dictionary.\nPlist path: {plist_path}",
            remediation=["Rebuild the app bundle"],
        )
    return info


def _read_bundle_plist(app_path: str) -> dict:
    plist_path = os.path.join(app_path, "Info.plist")
    if not os.path.isfile(plist_path):
        try:
            contents = sorted(os.listdir(app_path))[:20]
        except OSError:
            contents = []
        _log(f"Info.plist not found. Bundle contents: {contents}")
        raise NotFoundError(
            f"Info.plist not found in app bundle.\nExpected at: {plist_path}\nApp bundle: {app_path}",
            remediation=[
                f"Clean build: {config.BAZEL_BIN} clean",
                "Rebuild the target",
                "Check the build rules produce a valid .app structure",
            ],
        )
    try:
        with open(plist_path, "rb") as f:
            info = plistlib.load(f)
    except _PLIST_ERRORS as exc:
        raise _unreadable(plist_path, exc) from exc
    return _as_dict(info, plist_path)


def _read_ipa_plist(ipa_path: str) -> dict:
    try:
        archive = zipfile.ZipFile(ipa_path)
    except zipfile.BadZipFile as exc:
        raise NotFoundError(
            f"Package is not a valid zip archive: {ipa_path}\nError: {exc}",
            remediation=["Rebuild the target", f"Clean build: {config.BAZEL_BIN} clean"],
        ) from exc
    with archive:
        names = [n for n in archive.namelist() if _IPA_PLIST.match(n)]
        if not names:
            raise NotFoundError(
                f"Info.plist not found in package.\nExpected at: Payload/<App>.app/Info.plist\nPackage: {ipa_path}",
                remediation=["Rebuild the target", "Check the .ipa was produced by an ios_application rule"],
            )
        plist_path = f"{ipa_path}!{names[0]}"
        try:
            with archive.open(names[0]) as f:
                info = plistlib.load(f)
        except (zipfile.BadZipFile, *_PLIST_ERRORS) as exc:
            raise _unreadable(plist_path, exc) from exc
    return _as_dict(info, plist_path)


def identify(artifact_path: str) -> str:
    """Read CFBundleIdentifier from the artifact's Info.plist.

    A missing bundle, a missing Info.plist and a missing key are reported as
    separate NotFoundErrors.
    """
    if not os.path.exists(artifact_path):
        raise NotFoundError(
            f"App bundle not found at: {artifact_path}",
            remediation=["Check the build completed successfully", "Rebuild the target"],
        )

    if artifact_path.endswith(".ipa") and os.path.isfile(artifact_path):
        info = _read_ipa_plist(artifact_path)
        plist_path = f"{artifact_path}!Payload/*.app/Info.plist"
    else:
        info = _read_bundle_plist(artifact_path)
        plist_path = os.path.join(artifact_path, "Info.plist")

    bundle_id = info.get(BUNDLE_ID_KEY)
    if not isinstance(bundle_id, str) or not bundle_id.strip():
        raise NotFoundError(
            f"Failed to read bundle identifier from Info.plist.\nPlist path: {plist_path}",
            remediation=[
                f"Open Info.plist and verify {BUNDLE_ID_KEY} exists",
                "Rebuild the app bundle",
                "Check the build rules set a bundle identifier",
            ],
        )
    bundle_id = bundle_id.strip()
    _log(f"Bundle ID: {bundle_id}")
    return bundle_id


def fix_permissions(app_path: str) -> None:
    """Equivalent of `chmod -R 755`."""
    os.chmod(app_path, 0o755)
    for root, dirs, files in os.walk(app_path):
        for name in dirs + files:
            path = os.path.join(root, name)
            if not os.path.islink(path):
                os.chmod(path, 0o755)


async def resign(app_path: str) -> None:
    await proc.run([
        config.CODESIGN, "--force", "--sign", "-", "--timestamp=none",
        "--preserve-metadata=identifier,entitlements,flags",
        app_path,
    ])


async def verify_signature(app_path: str) -> None:
    await proc.run([config.CODESIGN, "--verify", "--verbose", app_path])


async def prepare(artifact_path: str, kind: DestinationKind) -> list[str]:
    """Make the artifact installable. Failures come back as warnings, never raised."""
    warnings = []
    if kind == DestinationKind.SIMULATOR:
        try:
            fix_permissions(artifact_path)
        except OSError as exc:
            warnings.append(f"Could not fix permissions on {artifact_path}: {exc}")
        try:
            await resign(artifact_path)
        except ToolInvocationError as exc:
            warnings.append(f"Ad-hoc re-signing failed: {exc.output}")
    else:
        try:
            await verify_signature(artifact_path)
        except ToolInvocationError as exc:
            warnings.append(
                f"Code signature verification failed: {exc.output}\n"
                "Device installs need a valid signature and provisioning profile."
            )

    for warning in warnings:
        _log(f"WARNING: {warning}")
    return warnings
