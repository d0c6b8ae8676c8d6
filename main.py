#!/usr/bin/env python3
"""launchkit - build, install, launch and debug a Bazel app on a simulator or device.

Usage:
    python main.py --label //Apps/Demo:Demo --simulator "iPhone 16"
    python main.py --label //Apps/Demo:Demo --simulator "iPhone 16" --debug --env LOG=1 -- -verbose -AppleLanguages "(en)"
    python main.py --label //Apps/Demo:Demo --package-path ~/src/demo --device 00008110-0012345678901234 --debug
    python main.py --show-last

Arguments after a bare `--` are passed to the app unchanged. `--arg=-verbose`
(with the `=`) adds a single argument the same way.
"""

import argparse
import asyncio
import json
import os
import sys

from launchkit import config, launch_state, orchestrator
from launchkit.models import (
    BuildMode,
    BuildTarget,
    DeviceDestination,
    RunOptions,
    RunStatus,
    SimulatorDestination,
)


def log(msg: str) -> None:
    print(f"[main] {msg}", file=sys.stderr)


def parse_env(pairs: list[str]) -> dict[str, str]:
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"--env expects KEY=VALUE, got '{pair}'")
        env[key] = value
    return env


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="launchkit - build, launch and debug Bazel-built apps on simulators and devices"
    )
    parser.add_argument("--label", type=str, help="Bazel label of the app, e.g. //Apps/Demo:Demo")
    parser.add_argument(
        "--package-path",
        default=os.getcwd(),
        help="Directory to build from (default: current directory)",
    )
    dest = parser.add_mutually_exclusive_group()
    dest.add_argument("--simulator", metavar="UDID_OR_NAME", help="Run on this simulator")
    dest.add_argument("--device", metavar="UDID", help="Run on this physical device")
    parser.add_argument("--debug", action="store_true", help="Launch paused and attach the debugger")
    parser.add_argument(
        "--port",
        type=int,
        default=config.DEBUG_PORT,
        help=f"debugserver port (default: {config.DEBUG_PORT})",
    )
    parser.add_argument(
        "--arg",
        dest="app_args",
        action="append",
        default=[],
        help="Argument passed to the app (repeatable; use --arg=-flag for dashed values, or put them after --)",
    )
    parser.add_argument(
        "--env",
        dest="app_env",
        action="append",
        default=[],
        help="KEY=VALUE environment variable for the app (repeatable)",
    )
    parser.add_argument(
        "--build-mode",
        choices=[m.value for m in BuildMode],
        help="Build mode (default: debug with --debug, else release)",
    )
    parser.add_argument("--skip-build", action="store_true", help="Use the existing build output")
    parser.add_argument("--show-last", action="store_true", help="Print the last launched app and exit")
    parser.add_argument("--show-config", action="store_true", help="Print the effective configuration and exit")
    return parser


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse launchkit options; everything after the first bare `--` goes to the app."""
    app_args: list[str] = []
    if "--" in argv:
        split = argv.index("--")
        argv, app_args = argv[:split], argv[split + 1:]
    args = build_parser().parse_args(argv)
    args.app_args = list(args.app_args) + app_args
    return args


async def _run(args: argparse.Namespace) -> int:
    target = BuildTarget.from_label(args.label, os.path.abspath(os.path.expanduser(args.package_path)))
    if args.device:
        destination = DeviceDestination(udid=args.device, name=args.device)
    else:
        destination = SimulatorDestination(udid=args.simulator, name=args.simulator)
    options = RunOptions(
        args=list(args.app_args),
        env=parse_env(args.app_env),
        debug=args.debug,
        port=args.port,
        build_mode=BuildMode(args.build_mode) if args.build_mode else None,
        skip_build=args.skip_build,
    )

    outcome = await orchestrator.run(target, destination, options)

    print("\n" + "=" * 60, file=sys.stderr)
    if outcome.status == RunStatus.FAILED:
        print("LAUNCH FAILED", file=sys.stderr)
        print("=" * 60, file=sys.stderr)
        print(outcome.error, file=sys.stderr)
        print(f"\nRun: {outcome.run_id}", file=sys.stderr)
        return 1

    result = outcome.launch_result
    print(f"LAUNCH {'SUCCESS' if outcome.status == RunStatus.SUCCESS else 'SUCCESS WITH WARNINGS'}", file=sys.stderr)
    print("=" * 60, file=sys.stderr)
    print(f"App:  {result.bundle_id}", file=sys.stderr)
    print(f"PID:  {result.pid}", file=sys.stderr)
    print(f"Run:  {outcome.run_id}", file=sys.stderr)
    if outcome.warnings:
        print(f"\nWarnings ({len(outcome.warnings)}):", file=sys.stderr)
        for w in outcome.warnings:
            print(f"  - {w}", file=sys.stderr)
    print("=" * 60, file=sys.stderr)

    session = outcome.debug_session
    if session is not None and session.process is not None:
        log(f"debugserver running on port {session.port} (pid {session.process.pid}), Ctrl-C to stop")
        code = await session.process.wait()
        log(f"debugserver exited with code {code}")
    return 0


def main():
    parser = build_parser()
    args = parse_args(sys.argv[1:])

    if args.show_config:
        config.print_config_summary()
        problems = config.validate()
        for problem in problems:
            print(f"  ERROR: {problem}", file=sys.stderr)
        sys.exit(1 if problems else 0)

    if args.show_last:
        record = launch_state.load_last_launched()
        if record is None:
            print("No app has been launched yet", file=sys.stderr)
            sys.exit(1)
        print(json.dumps(record, indent=2))
        sys.exit(0)

    if not args.label or not (args.simulator or args.device):
        parser.error("--label and one of --simulator/--device are required")
    try:
        parse_env(args.app_env)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))

    problems = config.validate()
    if problems:
        for problem in problems:
            print(f"FATAL: {problem}", file=sys.stderr)
        sys.exit(1)

    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        log("Interrupted")
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
