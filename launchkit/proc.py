"""Async subprocess helpers shared by every tool wrapper.

`run()` executes a command to completion and captures its output, `settle_within()`
races an awaitable against a timer, and `spawn()` starts a long-lived child
whose output is accumulated in the background.

Cancellation: if the awaiting task is cancelled, the child is killed before the
CancelledError propagates, so a cancelled run never leaves a tool behind.
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from dataclasses import dataclass
from typing import Any, Awaitable

from launchkit.errors import ToolInvocationError, ToolTimeoutError

DRAIN_GRACE = 1.0


def _log(msg: str) -> None:
    print(f"[proc] {msg}", file=sys.stderr)


@dataclass
class ProcessResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _merged_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if not env:
        return None
    merged = dict(os.environ)
    merged.update(env)
    return merged


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


async def _drain(stream: asyncio.StreamReader | None, sink: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        sink.append(chunk)


async def _stop_drains(drains: list[asyncio.Future]) -> None:
    # a grandchild can keep the pipes open after the child was killed
    _, pending = await asyncio.wait(drains, timeout=DRAIN_GRACE)
    for task in pending:
        task.cancel()
    await asyncio.gather(*drains, return_exceptions=True)


def _text(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode(errors="replace")


async def _finish(proc: asyncio.subprocess.Process, drains: list[asyncio.Future]) -> None:
    await proc.wait()
    # asyncio.wait leaves the drains running if this is cancelled by a timeout
    await asyncio.wait(drains)


async def run(
    args: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    check: bool = True,
) -> ProcessResult:
    """Run a command and return its captured output.

    Raises ToolTimeoutError when `timeout` elapses, and ToolInvocationError on a
    non-zero exit when `check` is set (or when the binary cannot be started).
    """
    started = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=_merged_env(env),
        )
    except (FileNotFoundError, PermissionError) as exc:
        raise ToolInvocationError(
            f"Could not start '{args[0]}'",
            command=args,
            returncode=127,
            stderr=str(exc),
        ) from exc

    out: list[bytes] = []
    err: list[bytes] = []
    drains = [
        asyncio.ensure_future(_drain(proc.stdout, out)),
        asyncio.ensure_future(_drain(proc.stderr, err)),
    ]
    try:
        await asyncio.wait_for(_finish(proc, drains), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        await _stop_drains(drains)
        partial = "\n".join(s for s in (_text(err).strip(), _text(out).strip()) if s)
        raise ToolTimeoutError(args, time.monotonic() - started, output=partial) from None
    except asyncio.CancelledError:
        _log(f"Cancelled, killing: {' '.join(args)}")
        await _kill(proc)
        await _stop_drains(drains)
        raise

    result = ProcessResult(
        args=list(args),
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=_text(out),
        stderr=_text(err),
    )
    if check and not result.ok:
        raise ToolInvocationError(
            f"Error executing '{args[0]}' (exit code: {result.returncode})",
            command=args,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result


async def settle_within(aw: Awaitable[Any], timeout: float) -> tuple[bool, Any]:
    """Wait for `aw` for at most `timeout` seconds.

    Returns (True, result) if it settled in time, (False, None) otherwise.
    Exceptions raised by `aw` propagate.
    """
    try:
        return True, await asyncio.wait_for(aw, timeout=timeout)
    except asyncio.TimeoutError:
        return False, None


class BackgroundProcess:
    """A spawned child whose stdout/stderr are drained into buffers."""

    def __init__(self, args: list[str], proc: asyncio.subprocess.Process):
        self.args = list(args)
        self._proc = proc
        self._stdout: list[bytes] = []
        self._stderr: list[bytes] = []
        self._pumps = [
            asyncio.ensure_future(_drain(proc.stdout, self._stdout)),
            asyncio.ensure_future(_drain(proc.stderr, self._stderr)),
        ]

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def stdout(self) -> str:
        return _text(self._stdout)

    @property
    def stderr(self) -> str:
        return _text(self._stderr)

    async def wait(self) -> int:
        code = await self._proc.wait()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        return code

    async def terminate(self) -> None:
        await _kill(self._proc)
        await asyncio.gather(*self._pumps, return_exceptions=True)


async def spawn(args: list[str], cwd: str | None = None, env: dict[str, str] | None = None) -> BackgroundProcess:
    """Start a long-running child without waiting for it."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=_merged_env(env),
        )
    except (FileNotFoundError, PermissionError) as exc:
        raise ToolInvocationError(
            f"Could not start '{args[0]}'",
            command=args,
            returncode=127,
            stderr=str(exc),
        ) from exc
    _log(f"Spawned pid={proc.pid}: {' '.join(args)}")
    return BackgroundProcess(args, proc)
