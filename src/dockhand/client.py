"""High-level entry point: one runner, one registry, one retry policy.

    from dockhand.client import get_docker

    docker = get_docker()
    cid = docker.run(RunCommand("alpine", command=("sleep", "60")))
    docker.stop(cid)

:func:`get_docker` assembles the process-wide instance from settings on
first use.  Libraries and tests should build a :class:`Docker` explicitly.
"""

from __future__ import annotations

import threading
from typing import TypeVar

from dockhand.commands.base import DockerCommand
from dockhand.commands.container import PsCommand, RmCommand, RunCommand, StopCommand
from dockhand.commands.system import VersionCommand
from dockhand.config import Settings, get_settings
from dockhand.guard import ManagedContainer
from dockhand.lifecycle import SessionRegistry
from dockhand.platform import Runtime, get_platform
from dockhand.readiness import WaitStrategy
from dockhand.retry import DEFAULT_POLICY, RetryPolicy
from dockhand.runner import ProcessRunner
from dockhand.types import ContainerSummary

T = TypeVar("T")


class Docker:
    def __init__(
        self,
        runner: ProcessRunner,
        registry: SessionRegistry | None = None,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ) -> None:
        self.runner = runner
        self.registry = registry or SessionRegistry(runner)
        self.retry_policy = retry_policy

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> Docker:
        s = settings or get_settings()
        runner = _runner_from_settings(s)
        registry = SessionRegistry(runner)
        registry.configure(s.lifecycle.to_config())
        return cls(runner, registry, s.retry.to_policy())

    def execute(self, command: DockerCommand[T], *, retry: bool = False) -> T:
        if retry:
            return command.run_with_retry(self.runner, self.retry_policy)
        return command.run(self.runner)

    async def execute_async(self, command: DockerCommand[T], *, retry: bool = False) -> T:
        if retry:
            return await command.run_with_retry_async(self.runner, self.retry_policy)
        return await command.run_async(self.runner)

    def run(self, command: RunCommand) -> str:
        """Start a managed container (labelled and tracked for cleanup)."""
        return self.registry.provision(command)

    async def run_async(self, command: RunCommand) -> str:
        return await self.registry.provision_async(command)

    def stop(self, container: str, time: int | None = None) -> None:
        self.execute(StopCommand(container, time=time))

    def rm(self, container: str, force: bool = False) -> None:
        self.execute(RmCommand(container, force=force))
        self.registry.untrack(container)

    def ps(self, all: bool = False) -> list[ContainerSummary]:
        return self.execute(PsCommand(all=all).as_json())

    def version(self) -> str:
        return self.execute(VersionCommand(), retry=True)

    def managed(
        self,
        command: RunCommand,
        *,
        wait: WaitStrategy | None = None,
        ready_timeout: float = 60.0,
        keep_on_failure: bool = False,
    ) -> ManagedContainer:
        return ManagedContainer(
            self.registry,
            command,
            wait=wait,
            ready_timeout=ready_timeout,
            keep_on_failure=keep_on_failure,
        )


def _runner_from_settings(s: Settings) -> ProcessRunner:
    ex = s.executor
    options = {
        "default_timeout": ex.default_timeout,
        "dry_run": ex.dry_run,
        "kill_grace": ex.kill_grace,
    }
    if ex.binary:
        return ProcessRunner(ex.binary, **options)
    if ex.detect_platform:
        return ProcessRunner.for_platform(get_platform(ex.runtime), **options)
    runtime = Runtime.from_name(ex.runtime) if ex.runtime else Runtime.DOCKER
    return ProcessRunner(runtime.cli, runtime=runtime, **options)


_docker: Docker | None = None
_docker_lock = threading.Lock()


def get_docker() -> Docker:
    """Lazy singleton: built from :func:`get_settings` on first access."""
    global _docker  # noqa: PLW0603
    if _docker is None:
        with _docker_lock:
            if _docker is None:
                _docker = Docker.from_settings()
    return _docker
