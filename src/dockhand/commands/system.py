"""System-level subcommands used for probing the installation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from dockhand.commands.base import DockerCommand, ExitPolicy
from dockhand.types import ExecutionResult

if TYPE_CHECKING:
    from dockhand.platform import Runtime


@dataclass(frozen=True)
class VersionCommand(DockerCommand[str]):
    """``docker version``.  Exit policy: RAISE (a down daemon is an error)."""

    exit_policy = ExitPolicy.RAISE

    format: str | None = "{{.Client.Version}}"

    def build_args(self) -> list[str]:
        args = ["version"]
        if self.format:
            args += ["--format", self.format]
        return args

    def parse(self, result: ExecutionResult) -> str:
        return result.stdout.strip()


@dataclass(frozen=True)
class ContextShowCommand(DockerCommand[str]):
    """``docker context show``.  Exit policy: RAISE."""

    exit_policy = ExitPolicy.RAISE

    def build_args(self) -> list[str]:
        return ["context", "show"]

    def parse(self, result: ExecutionResult) -> str:
        return result.stdout.strip()


@dataclass(frozen=True)
class BuilderLsCommand(DockerCommand[list[str]]):
    """``docker builder ls``.  Exit policy: RAISE.

    Returns the raw table rows after the header.  Podman has no builder
    instances and is rejected before anything is spawned.
    """

    exit_policy = ExitPolicy.RAISE

    def build_args(self) -> list[str]:
        return ["builder", "ls"]

    def is_supported(self, runtime: Runtime) -> bool:
        return runtime.supports_builder_command("ls")

    def parse(self, result: ExecutionResult) -> list[str]:
        return result.stdout_lines()[1:]
