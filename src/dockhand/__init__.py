"""Typed builders over the Docker-compatible CLI, with session-scoped cleanup."""

from dockhand.client import Docker, get_docker
from dockhand.errors import DockerError, Failure, FailureKind, is_retryable
from dockhand.guard import ManagedContainer
from dockhand.lifecycle import LifecycleConfig, SessionRegistry
from dockhand.platform import PlatformInfo, Runtime, get_platform
from dockhand.retry import RetryPolicy, run_with_retry, run_with_retry_async
from dockhand.runner import LineStream, ProcessRunner
from dockhand.types import ContainerSummary, ExecutionResult

__all__ = [
    "ContainerSummary",
    "Docker",
    "DockerError",
    "ExecutionResult",
    "Failure",
    "FailureKind",
    "LifecycleConfig",
    "LineStream",
    "ManagedContainer",
    "PlatformInfo",
    "ProcessRunner",
    "RetryPolicy",
    "Runtime",
    "SessionRegistry",
    "get_docker",
    "get_platform",
    "is_retryable",
    "run_with_retry",
    "run_with_retry_async",
]
