"""Structured failures for every Docker CLI interaction.

A failure is one value of a closed enumeration (:class:`FailureKind`) plus the
payload that kind carries.  Failures travel across API boundaries inside a
single exception type, :class:`DockerError`; callers branch on
``err.failure.kind`` rather than on exception subclasses.

Build failures with the per-kind constructors (``Failure.timeout(...)``,
``Failure.command_failed(...)``) so each one is always exactly one kind.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class FailureKind(enum.Enum):
    TOOL_NOT_FOUND = "tool_not_found"
    DAEMON_NOT_RUNNING = "daemon_not_running"
    COMMAND_FAILED = "command_failed"
    TIMEOUT = "timeout"
    RESOURCE_NOT_FOUND = "resource_not_found"
    INVALID_CONFIG = "invalid_config"
    UNSUPPORTED_BY_RUNTIME = "unsupported_by_runtime"


@dataclass(frozen=True)
class Failure:
    """One classified failure.  Only the fields relevant to ``kind`` are set."""

    kind: FailureKind
    message: str
    command: str | None = None
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration: float | None = None  # seconds elapsed before the timeout fired
    identifier: str | None = None  # container / image / network id
    runtime: str | None = None

    # -- constructors -----------------------------------------------------

    @classmethod
    def tool_not_found(cls, binary: str) -> Failure:
        return cls(
            kind=FailureKind.TOOL_NOT_FOUND,
            message=f"{binary} executable not found in PATH",
            command=binary,
        )

    @classmethod
    def daemon_not_running(
        cls,
        command: str | None = None,
        *,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> Failure:
        return cls(
            kind=FailureKind.DAEMON_NOT_RUNNING,
            message="Docker daemon is not running",
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )

    @classmethod
    def command_failed(cls, command: str, exit_code: int, stdout: str, stderr: str) -> Failure:
        detail = (stderr.strip() or stdout.strip())[:200]
        return cls(
            kind=FailureKind.COMMAND_FAILED,
            message=f"Command '{command}' failed with exit code {exit_code}: {detail}",
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )

    @classmethod
    def timeout(cls, duration: float, command: str | None = None) -> Failure:
        return cls(
            kind=FailureKind.TIMEOUT,
            message=f"Command timed out after {duration:.2f}s",
            command=command,
            duration=duration,
        )

    @classmethod
    def resource_not_found(
        cls,
        identifier: str,
        *,
        command: str | None = None,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> Failure:
        return cls(
            kind=FailureKind.RESOURCE_NOT_FOUND,
            message=f"Resource not found: {identifier}",
            identifier=identifier,
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )

    @classmethod
    def invalid_config(cls, message: str) -> Failure:
        return cls(kind=FailureKind.INVALID_CONFIG, message=message)

    @classmethod
    def unsupported_by_runtime(cls, command: str, runtime: str) -> Failure:
        return cls(
            kind=FailureKind.UNSUPPORTED_BY_RUNTIME,
            message=f"Command '{command}' is not supported by {runtime}",
            command=command,
            runtime=runtime,
        )


class DockerError(Exception):
    """Raised for every classified failure; ``.failure`` holds the details."""

    def __init__(self, failure: Failure) -> None:
        super().__init__(failure.message)
        self.failure = failure

    @property
    def kind(self) -> FailureKind:
        return self.failure.kind


def is_retryable(failure: Failure) -> bool:
    """Whether a failure kind is inherently transient.

    Timeouts and an unreachable daemon can clear up on their own; everything
    else needs the caller to change something first.
    """
    match failure.kind:
        case FailureKind.TIMEOUT | FailureKind.DAEMON_NOT_RUNNING:
            return True
        case (
            FailureKind.TOOL_NOT_FOUND
            | FailureKind.COMMAND_FAILED
            | FailureKind.RESOURCE_NOT_FOUND
            | FailureKind.INVALID_CONFIG
            | FailureKind.UNSUPPORTED_BY_RUNTIME
        ):
            return False


# Output fragments that mark a command failure as a network or registry hiccup.
_TRANSIENT_MARKERS = (
    "connection refused",
    "connection reset",
    "connection timed out",
    "network is unreachable",
    "temporary failure in name resolution",
    "tls handshake timeout",
    "i/o timeout",
    "toomanyrequests",
    "rate limit",
    "503 service unavailable",
    "502 bad gateway",
    "port is already allocated",
)


def looks_transient(failure: Failure) -> bool:
    """Heuristic: does a COMMAND_FAILED's output read like a transient error?

    Checks stderr, falling back to stdout when stderr is empty.
    """
    if failure.kind is not FailureKind.COMMAND_FAILED:
        return False
    text = (failure.stderr if failure.stderr.strip() else failure.stdout).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)
