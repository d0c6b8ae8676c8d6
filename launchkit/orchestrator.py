"""Build, install, launch and (optionally) debug one target on one destination.

Steps run strictly in order; a LaunchError from any step ends the run:

    gatekeeper -> build -> locate -> identify/prepare -> install/launch
        -> save last-launched -> [debug server -> attach]
"""

import sys
from typing import Callable

from launchkit import attacher, builder, gatekeeper, launch_state, locator, preparer
from launchkit.debugserver import DebugServerController
from launchkit.errors import LaunchError
from launchkit.installer import Installer
from launchkit.models import (
    BuildTarget,
    DebugSession,
    Destination,
    DestinationKind,
    RunOptions,
    RunOutcome,
    RunStatus,
)


def _log(msg: str) -> None:
    print(f"[orchestrator] {msg}", file=sys.stderr)


def _print_report(msg: str) -> None:
    print(msg, flush=True)


class _Progress:
    """Numbered step lines plus a matching telemetry event per step."""

    def __init__(self, run_id: str, total: int, report: Callable[[str], None]):
        self.run_id = run_id
        self.total = total
        self.report = report
        self.index = 0

    def step(self, name: str, text: str) -> None:
        self.index += 1
        self.report(f"Step {self.index}/{self.total}: {text}")
        launch_state.append_event(self.run_id, {"type": "step", "step": name, "index": self.index})

    def info(self, text: str) -> None:
        self.report(f"   {text}")

    def warn(self, text: str) -> None:
        self.report(f"   WARNING: {text}")
        launch_state.append_event(self.run_id, {"type": "warning", "message": text})


async def build_and_launch(
    target: BuildTarget,
    destination: Destination,
    options: RunOptions,
    run_id: str,
    report: Callable[[str], None] = _print_report,
) -> RunOutcome:
    """Run every step; raises LaunchError on the first fatal failure."""
    progress = _Progress(run_id, 6 if options.debug else 4, report)
    kind = destination.kind
    warnings: list[str] = []

    def warn(text: str) -> None:
        warnings.append(text)
        progress.warn(text)

    report(f"Checking {kind.value} {destination.name or destination.udid}...")
    destination = await gatekeeper.ensure_ready(
        destination,
        on_waiting=lambda elapsed: progress.info(f"Device is locked, please unlock it... ({elapsed}s)"),
    )
    progress.info(f"{destination.name} ({destination.udid}) is ready")

    mode = options.effective_build_mode()
    if options.skip_build:
        progress.step("build", f"Skipping build of {target.build_label}")
    else:
        progress.step("build", f"Building {target.build_label} ({mode.value})...")
        await builder.build(target, kind, mode)

    progress.step("locate", "Locating app bundle...")
    location = locator.locate(target, kind)
    progress.info(f"Found: {location.path}")

    progress.step("prepare", "Preparing app...")
    bundle_id = preparer.identify(location.path)
    progress.info(f"Bundle ID: {bundle_id}")
    for warning in await preparer.prepare(location.path, kind):
        warn(warning)

    progress.step("launch", f"Installing and launching on {destination.name}...")
    installer = Installer(destination, bundle_id, location.path, options, report=report)
    launch_result = await installer.run()
    progress.info(f"Launched with PID {launch_result.pid}")
    launch_state.save_last_launched(run_id, launch_result, target.build_label, kind)
    if kind == DestinationKind.SIMULATOR:
        await gatekeeper.bring_simulator_to_front()

    if not options.debug:
        return RunOutcome(status=RunStatus.SUCCESS, run_id=run_id, launch_result=launch_result, warnings=warnings)

    progress.step("debugserver", f"Starting debug server on port {options.port}...")
    controller = DebugServerController(options.port, report=report)
    session: DebugSession = await controller.start(launch_result, kind)
    for warning in controller.warnings:
        warn(warning)

    progress.step("attach", "Attaching debugger...")
    status = await attacher.attach(options.port, kind, launch_result)
    outcome = RunOutcome(
        status=RunStatus.SUCCESS,
        run_id=run_id,
        launch_result=launch_result,
        warnings=warnings,
        debug_session=session,
    )
    if status == attacher.AttachStatus.NOT_STARTED:
        outcome.status = RunStatus.WARNING
        warn("The IDE did not start a debug session.\n" + attacher.manual_instructions(options.port, kind, launch_result))
    else:
        progress.info("Debugger attach requested")
    return outcome


async def run(
    target: BuildTarget,
    destination: Destination,
    options: RunOptions,
    report: Callable[[str], None] = _print_report,
) -> RunOutcome:
    """Like build_and_launch, but a LaunchError becomes a failed RunOutcome."""
    run_id = launch_state.new_run_id()
    launch_state.append_event(run_id, {
        "type": "run_started",
        "build_label": target.build_label,
        "destination_kind": destination.kind.value,
        "destination_id": destination.udid,
        "debug": options.debug,
    })
    try:
        outcome = await build_and_launch(target, destination, options, run_id, report)
    except LaunchError as exc:
        _log(f"Run {run_id} failed ({exc.category}): {exc.message}")
        outcome = RunOutcome(status=RunStatus.FAILED, run_id=run_id, error=exc.render())
        launch_state.append_event(run_id, {
            "type": "run_finished",
            "status": outcome.status.value,
            "category": exc.category,
            "error": exc.message,
        })
        return outcome

    launch_state.append_event(run_id, {
        "type": "run_finished",
        "status": outcome.status.value,
        "pid": outcome.launch_result.pid if outcome.launch_result else None,
        "warnings": len(outcome.warnings),
    })
    return outcome
