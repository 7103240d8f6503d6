"""Data models for dockhand."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ExecutionResult:
    """Captured output of one finished child process.

    A non-zero ``exit_code`` is reported here neutrally; whether it is an
    error is decided by the command that ran it.
    """

    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def stdout_lines(self) -> list[str]:
        return [line for line in self.stdout.splitlines() if line.strip()]

    def stderr_lines(self) -> list[str]:
        return [line for line in self.stderr.splitlines() if line.strip()]


@dataclass(frozen=True)
class CommandPreview:
    """The command line a command would run, for logging and dry runs."""

    command_line: str
    args: tuple[str, ...]

    def __str__(self) -> str:
        return self.command_line


@dataclass(frozen=True)
class ContainerSummary:
    """One row of ``docker ps`` output."""

    id: str
    names: str = ""
    image: str = ""
    command: str = ""
    created: str = ""
    state: str = ""
    status: str = ""
    ports: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.names.removeprefix("/")

    @property
    def is_running(self) -> bool:
        # State is authoritative when present; a paused container's Status also reads "Up ..."
        if self.state:
            return self.state == "running"
        return self.status.startswith("Up") and "(Paused)" not in self.status

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> ContainerSummary:
        """Build from one ``docker ps --format '{{json .}}'`` line."""
        return cls(
            id=raw.get("ID", ""),
            names=raw.get("Names", ""),
            image=raw.get("Image", ""),
            command=raw.get("Command", ""),
            created=raw.get("CreatedAt", ""),
            state=raw.get("State", ""),
            status=raw.get("Status", ""),
            ports=raw.get("Ports", ""),
            labels=parse_labels(raw.get("Labels", "")),
        )

    @classmethod
    def from_json_line(cls, line: str) -> ContainerSummary:
        return cls.from_json(json.loads(line))


def parse_labels(raw: str | dict[str, str] | None) -> dict[str, str]:
    """Parse the ``k1=v1,k2=v2`` label string docker ps prints.

    Podman prints labels as a JSON object instead; that is passed through.
    """
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    labels: dict[str, str] = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if sep:
            labels[key.strip()] = value
    return labels


@dataclass(frozen=True)
class ManagedResource:
    """A container created under lifecycle tracking."""

    id: str
    session_id: str
    created_at: int  # epoch milliseconds
