"""Command contract shared by every CLI subcommand.

A command is a frozen value: ``build_args()`` turns its fields into an
argument vector, ``run()``/``run_async()`` hand that vector to a
:class:`~dockhand.runner.ProcessRunner`, and ``parse()`` turns the captured
output into the command's result type.

Every concrete command declares an :class:`ExitPolicy`:

- ``RAISE``: a non-zero exit becomes a ``DockerError`` carrying the full
  stdout, stderr and exit code.
- ``RETURN``: the raw result reaches ``parse()`` untouched, for commands
  whose job is to report an exit code (``wait``, ``exec``).

Leaving it undeclared is a ``TypeError`` at class-definition time.
"""

from __future__ import annotations

import dataclasses
import enum
import re
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Generic, TypeVar

from dockhand.errors import DockerError, Failure
from dockhand.retry import DEFAULT_POLICY, RetryPolicy, run_with_retry, run_with_retry_async
from dockhand.types import CommandPreview, ExecutionResult

if TYPE_CHECKING:
    from dockhand.platform import Runtime
    from dockhand.runner import ProcessRunner

T = TypeVar("T")
C = TypeVar("C", bound="DockerCommand")  # type: ignore[type-arg]


class ExitPolicy(enum.Enum):
    RAISE = "raise"
    RETURN = "return"


_NOT_FOUND_RE = re.compile(
    r"no such (?:container|object|image|network|volume):\s*(?P<id>\S+)",
    re.IGNORECASE,
)
_DAEMON_DOWN_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
)


def classify_failure(
    command_line: str,
    result: ExecutionResult,
    *,
    identifier: str | None = None,
) -> DockerError:
    """Turn a failed result into the most specific ``DockerError``.

    The tool's own stdout/stderr and exit code are kept on every kind.
    """
    text = result.stderr or result.stdout
    lowered = text.lower()

    if any(marker in lowered for marker in _DAEMON_DOWN_MARKERS):
        return DockerError(
            Failure.daemon_not_running(
                command_line,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        )

    match = _NOT_FOUND_RE.search(text)
    if match:
        return DockerError(
            Failure.resource_not_found(
                match.group("id").strip("'\""),
                command=command_line,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        )
    if identifier is not None and "not found" in lowered and identifier.lower() in lowered:
        return DockerError(
            Failure.resource_not_found(
                identifier,
                command=command_line,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        )

    return DockerError(
        Failure.command_failed(command_line, result.exit_code, result.stdout, result.stderr)
    )


@dataclass(frozen=True, kw_only=True)
class DockerCommand(Generic[T]):
    """Base for all commands.  Subclasses add fields and implement
    ``build_args`` and ``parse``.
    """

    exit_policy: ClassVar[ExitPolicy]

    raw_args: tuple[str, ...] = ()
    timeout: float | None = None

    def __init_subclass__(cls, **kwargs: object) -> None:
        super().__init_subclass__(**kwargs)
        if not cls.__name__.startswith("_") and not hasattr(cls, "exit_policy"):
            raise TypeError(f"{cls.__name__} must declare an exit_policy")

    # -- to implement -------------------------------------------------------

    def build_args(self) -> list[str]:
        raise NotImplementedError

    def parse(self, result: ExecutionResult) -> T:
        raise NotImplementedError

    def is_supported(self, runtime: Runtime) -> bool:
        return True

    @property
    def target(self) -> str | None:
        """Identifier reported when the CLI says the resource is missing."""
        return None

    # -- escape hatch -------------------------------------------------------

    def with_arg(self: C, arg: str) -> C:
        """Append one raw token after the computed arguments."""
        return dataclasses.replace(self, raw_args=(*self.raw_args, arg))

    def with_args(self: C, *args: str) -> C:
        """Append raw tokens after the computed arguments."""
        return dataclasses.replace(self, raw_args=(*self.raw_args, *args))

    def with_timeout(self: C, seconds: float) -> C:
        return dataclasses.replace(self, timeout=seconds)

    # -- execution ----------------------------------------------------------

    def args(self) -> list[str]:
        return [*self.build_args(), *self.raw_args]

    def preview(self, binary: str = "docker") -> CommandPreview:
        args = self.args()
        return CommandPreview(command_line=shlex.join([binary, *args]), args=tuple(args))

    def run(self, runner: ProcessRunner) -> T:
        """Execute and block until the result is parsed."""
        args = self._prepare(runner)
        result = runner.run(args, self.timeout)
        return self._finish(runner, args, result)

    async def run_async(self, runner: ProcessRunner) -> T:
        """Execute without blocking the event loop."""
        args = self._prepare(runner)
        result = await runner.run_async(args, self.timeout)
        return self._finish(runner, args, result)

    def run_with_retry(self, runner: ProcessRunner, policy: RetryPolicy = DEFAULT_POLICY) -> T:
        return run_with_retry(policy, lambda: self.run(runner))

    async def run_with_retry_async(
        self,
        runner: ProcessRunner,
        policy: RetryPolicy = DEFAULT_POLICY,
    ) -> T:
        return await run_with_retry_async(policy, lambda: self.run_async(runner))

    def _prepare(self, runner: ProcessRunner) -> list[str]:
        args = self.args()
        if runner.runtime is not None and not self.is_supported(runner.runtime):
            subcommand = " ".join(self.build_args()[:2])
            raise DockerError(Failure.unsupported_by_runtime(subcommand, runner.runtime.value))
        return args

    def check_result(self, command_line: str, result: ExecutionResult) -> None:
        """Raise for RETURN-policy outcomes that are errors all the same.

        *command_line* names the binary the runner actually invoked.
        """

    def _finish(self, runner: ProcessRunner, args: list[str], result: ExecutionResult) -> T:
        command_line = shlex.join([runner.binary, *args])
        if self.exit_policy is ExitPolicy.RAISE and not result.success:
            raise classify_failure(command_line, result, identifier=self.target)
        self.check_result(command_line, result)
        return self.parse(result)
