"""Container runtime detection: Docker, Podman, or a Docker-compatible desktop.

Probes the installed CLI once, classifies it against a fixed set of known
runtimes, and caches the result for the rest of the process.  What is
installed cannot change mid-process, so the cache is never invalidated.
"""

from __future__ import annotations

import enum
import os
import shutil
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path

from dockhand.commands.base import DockerCommand
from dockhand.commands.system import ContextShowCommand, VersionCommand
from dockhand.errors import DockerError
from dockhand.logger import logger
from dockhand.runner import ProcessRunner

_PROBE_TIMEOUT = 10.0


class Runtime(enum.Enum):
    """Docker-compatible runtimes and the CLI each one is driven through."""

    DOCKER = "docker"
    PODMAN = "podman"
    COLIMA = "colima"
    ORBSTACK = "orbstack"
    RANCHER_DESKTOP = "rancher-desktop"
    DOCKER_DESKTOP = "docker-desktop"

    @property
    def cli(self) -> str:
        return "podman" if self is Runtime.PODMAN else "docker"

    def supports_builder_command(self, subcommand: str) -> bool:
        """Podman has no buildx builder instances; only pruning the cache works."""
        if self is Runtime.PODMAN:
            return subcommand == "prune"
        return True

    @classmethod
    def from_name(cls, name: str) -> Runtime:
        normalized = name.strip().lower().replace("_", "-")
        for runtime in cls:
            if runtime.value == normalized:
                return runtime
        raise ValueError(f"Unknown container runtime: {name!r}")


class HostOS(enum.Enum):
    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"
    UNKNOWN = "unknown"

    @classmethod
    def detect(cls) -> HostOS:
        if sys.platform.startswith("linux"):
            return cls.LINUX
        if sys.platform == "darwin":
            return cls.MACOS
        if sys.platform in ("win32", "cygwin"):
            return cls.WINDOWS
        return cls.UNKNOWN


@dataclass(frozen=True)
class PlatformInfo:
    """What is installed and how to reach it."""

    runtime: Runtime
    version: str
    host_os: HostOS
    socket_path: Path | None
    environment: dict[str, str] = field(default_factory=dict)


def _probe(binary: str, command: DockerCommand[str]) -> str | None:
    """Run a probe command; return its parsed output, or None if it failed."""
    runner = ProcessRunner(binary, default_timeout=_PROBE_TIMEOUT)
    try:
        return command.run(runner)
    except (DockerError, OSError) as exc:
        logger.debug(
            "Platform probe failed",
            command=command.preview(binary).command_line,
            err=str(exc),
        )
        return None


def detect_runtime_kind() -> Runtime:
    """Classify the installed runtime.

    Priority: a working ``podman`` → ``docker context show`` naming a known
    desktop distribution → plain Docker.
    """
    if shutil.which("podman") and _probe("podman", VersionCommand(format=None)) is not None:
        return Runtime.PODMAN

    if shutil.which("docker"):
        context = (_probe("docker", ContextShowCommand()) or "").lower()
        if "colima" in context:
            return Runtime.COLIMA
        if "orbstack" in context:
            return Runtime.ORBSTACK
        if "rancher" in context:
            return Runtime.RANCHER_DESKTOP
        if "desktop" in context:
            return Runtime.DOCKER_DESKTOP

    return Runtime.DOCKER


def detect_version(runtime: Runtime) -> str:
    return _probe(runtime.cli, VersionCommand()) or "unknown"


def detect_socket_path(host_os: HostOS, runtime: Runtime) -> Path | None:
    """DOCKER_HOST wins when it names a unix socket; otherwise per-OS defaults."""
    docker_host = os.environ.get("DOCKER_HOST", "")
    if docker_host.startswith("unix://"):
        return Path(docker_host.removeprefix("unix://"))

    match host_os:
        case HostOS.LINUX:
            return Path("/var/run/docker.sock")
        case HostOS.MACOS:
            if runtime is Runtime.COLIMA:
                return Path.home() / ".colima" / "default" / "docker.sock"
            return Path("/var/run/docker.sock")
        case _:
            # Windows talks over named pipes
            return None


def _environment_for(host_os: HostOS, runtime: Runtime, socket_path: Path | None) -> dict[str, str]:
    if socket_path is not None and host_os is HostOS.MACOS and runtime is Runtime.COLIMA:
        return {"DOCKER_HOST": f"unix://{socket_path.absolute()}"}
    return {}


def detect_platform(runtime_override: str | None = None) -> PlatformInfo:
    """Probe the local installation.  Prefer :func:`get_platform` (cached)."""
    host_os = HostOS.detect()
    runtime = Runtime.from_name(runtime_override) if runtime_override else detect_runtime_kind()
    socket_path = detect_socket_path(host_os, runtime)
    return PlatformInfo(
        runtime=runtime,
        version=detect_version(runtime),
        host_os=host_os,
        socket_path=socket_path,
        environment=_environment_for(host_os, runtime, socket_path),
    )


_platform: PlatformInfo | None = None
_platform_lock = threading.Lock()


def get_platform(runtime_override: str | None = None) -> PlatformInfo:
    """Lazy singleton: caches the result of detect_platform().

    *runtime_override* only matters on the first call.
    """
    global _platform  # noqa: PLW0603
    if _platform is None:
        with _platform_lock:
            if _platform is None:
                _platform = detect_platform(runtime_override)
                logger.info(
                    "Container runtime detected",
                    runtime=_platform.runtime.value,
                    version=_platform.version,
                    cli=_platform.runtime.cli,
                )
    return _platform
