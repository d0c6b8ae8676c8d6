"""Failure taxonomy for the build/launch/debug workflow.

Every error carries a short message, numbered remediation steps and whatever
tool output was captured, so the operator can reproduce the failing step by
hand. `render()` produces the text shown at the end of a failed run.
"""

from __future__ import annotations


class LaunchError(Exception):
    """Base class for orchestration failures."""

    category = "error"

    def __init__(self, message: str, remediation: list[str] | None = None, output: str = ""):
        super().__init__(message)
        self.message = message
        self.remediation = list(remediation or [])
        self.output = output

    def render(self) -> str:
        lines = [self.message]
        if self.output.strip():
            lines.append("")
            lines.append("Tool output:")
            lines.extend(f"  {line}" for line in self.output.strip().splitlines())
        if self.remediation:
            lines.append("")
            lines.append("Try:")
            lines.extend(f"{i}. {step}" for i, step in enumerate(self.remediation, start=1))
        return "\n".join(lines)


class NotFoundError(LaunchError):
    """An artifact, metadata file or field does not exist. Not retryable."""

    category = "not_found"

    def __init__(
        self,
        message: str,
        probed: list[str] | None = None,
        remediation: list[str] | None = None,
        output: str = "",
    ):
        self.probed = list(probed or [])
        if self.probed:
            message = message + "\nTried:\n" + "\n".join(f"  - {p}" for p in self.probed)
        super().__init__(message, remediation, output)


class LaunchTimeoutError(LaunchError):
    """A bounded wait (install, unlock, boot, readiness) ran out."""

    category = "timeout"

    def __init__(self, message: str, elapsed: float, remediation: list[str] | None = None, output: str = ""):
        super().__init__(message, remediation, output)
        self.elapsed = elapsed


class ToolTimeoutError(LaunchTimeoutError):
    """An external command was killed because it exceeded its timeout."""

    def __init__(self, command: list[str], elapsed: float, output: str = ""):
        super().__init__(f"'{' '.join(command)}' timed out after {elapsed:.0f}s", elapsed, output=output)
        self.command = list(command)


class ToolInvocationError(LaunchError):
    """An external command exited non-zero (or could not be started)."""

    category = "tool"

    def __init__(
        self,
        message: str,
        command: list[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        remediation: list[str] | None = None,
    ):
        output = stderr.strip() or stdout.strip() or "[no error output]"
        super().__init__(message, remediation, output)
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class StateError(LaunchError):
    """The destination or target process is not in a usable state."""

    category = "state"

    def __init__(self, message: str, destination: str = "", remediation: list[str] | None = None, output: str = ""):
        super().__init__(message, remediation, output)
        self.destination = destination
