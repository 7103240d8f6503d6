"""Container subcommands: run, stop, rm, ps, wait, exec, inspect, logs, port."""

from __future__ import annotations

import dataclasses
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from dockhand.commands.base import DockerCommand, ExitPolicy, classify_failure
from dockhand.errors import DockerError, Failure
from dockhand.types import ContainerSummary, ExecutionResult

JSON_FORMAT = "{{json .}}"

# docker ps aligns its table with runs of spaces; single spaces occur inside cells.
_COLUMN_SPLIT = re.compile(r"\s{2,}")


@dataclass(frozen=True)
class RunCommand(DockerCommand[str]):
    """``docker run``.  Returns the container id (detached) or its stdout.

    Exit policy: RAISE. A container that cannot be created is an error.
    """

    exit_policy = ExitPolicy.RAISE

    image: str
    command: tuple[str, ...] = ()
    name: str | None = None
    detach: bool = True
    remove: bool = False
    labels: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    ports: tuple[str, ...] = ()  # "8080:80" style publish specs
    network: str | None = None

    def with_labels(self, labels: Mapping[str, str]) -> RunCommand:
        return dataclasses.replace(self, labels={**self.labels, **labels})

    def with_name(self, name: str) -> RunCommand:
        return dataclasses.replace(self, name=name)

    def build_args(self) -> list[str]:
        args = ["run"]
        if self.detach:
            args.append("--detach")
        if self.remove:
            args.append("--rm")
        if self.name:
            args += ["--name", self.name]
        for key, value in self.labels.items():
            args += ["--label", f"{key}={value}"]
        for key, value in self.env.items():
            args += ["--env", f"{key}={value}"]
        for spec in self.ports:
            args += ["--publish", spec]
        if self.network:
            args += ["--network", self.network]
        args.append(self.image)
        args.extend(self.command)
        return args

    def parse(self, result: ExecutionResult) -> str:
        if not self.detach:
            return result.stdout
        # Pull progress can precede the id on stdout; the id is the last line.
        lines = result.stdout_lines()
        return lines[-1].strip() if lines else ""

    @property
    def target(self) -> str | None:
        return self.image


@dataclass(frozen=True)
class StopCommand(DockerCommand[None]):
    """``docker stop``.  Exit policy: RAISE."""

    exit_policy = ExitPolicy.RAISE

    container: str
    time: int | None = None  # grace period in seconds before SIGKILL
    signal: str | None = None

    def build_args(self) -> list[str]:
        args = ["stop"]
        if self.time is not None:
            args += ["--time", str(self.time)]
        if self.signal:
            args += ["--signal", self.signal]
        args.append(self.container)
        return args

    def parse(self, result: ExecutionResult) -> None:
        return None

    @property
    def target(self) -> str | None:
        return self.container


@dataclass(frozen=True)
class RmCommand(DockerCommand[None]):
    """``docker rm``.  Exit policy: RAISE."""

    exit_policy = ExitPolicy.RAISE

    container: str
    force: bool = False
    volumes: bool = False

    def build_args(self) -> list[str]:
        args = ["rm"]
        if self.force:
            args.append("--force")
        if self.volumes:
            args.append("--volumes")
        args.append(self.container)
        return args

    def parse(self, result: ExecutionResult) -> None:
        return None

    @property
    def target(self) -> str | None:
        return self.container


@dataclass(frozen=True)
class PsCommand(DockerCommand[list[ContainerSummary]]):
    """``docker ps``.  Exit policy: RAISE.

    Output is parsed according to the requested shape: JSON lines when
    ``format`` is ``{{json .}}``, bare ids when ``quiet``, otherwise the
    default table (columns separated by two or more spaces).
    """

    exit_policy = ExitPolicy.RAISE

    all: bool = False
    filters: tuple[str, ...] = ()
    format: str | None = None
    quiet: bool = False
    no_trunc: bool = False

    def with_filter(self, expression: str) -> PsCommand:
        return dataclasses.replace(self, filters=(*self.filters, expression))

    def with_label_filter(self, label: str) -> PsCommand:
        return self.with_filter(f"label={label}")

    def as_json(self) -> PsCommand:
        return dataclasses.replace(self, format=JSON_FORMAT, quiet=False)

    def ids(self) -> PsCommand:
        return dataclasses.replace(self, quiet=True, format=None)

    def build_args(self) -> list[str]:
        args = ["ps"]
        if self.all:
            args.append("--all")
        for expression in self.filters:
            args += ["--filter", expression]
        if self.format:
            args += ["--format", self.format]
        if self.quiet:
            args.append("--quiet")
        if self.no_trunc:
            args.append("--no-trunc")
        return args

    def parse(self, result: ExecutionResult) -> list[ContainerSummary]:
        lines = result.stdout_lines()
        if self.format == JSON_FORMAT:
            return [ContainerSummary.from_json_line(line) for line in lines]
        if self.quiet:
            return [ContainerSummary(id=line.strip()) for line in lines]
        return parse_ps_table(lines)


def parse_ps_table(lines: list[str]) -> list[ContainerSummary]:
    """Parse the default ``docker ps`` table, skipping the header row.

    PORTS is often blank, which collapses the row to six cells; NAMES is
    always the last cell.
    """
    summaries: list[ContainerSummary] = []
    for line in lines[1:]:
        cells = _COLUMN_SPLIT.split(line.strip())
        if len(cells) < 6:
            continue
        ports = cells[5] if len(cells) >= 7 else ""
        summaries.append(
            ContainerSummary(
                id=cells[0],
                image=cells[1],
                command=cells[2].strip('"'),
                created=cells[3],
                status=cells[4],
                ports=ports,
                names=cells[-1],
            )
        )
    return summaries


@dataclass(frozen=True)
class WaitCommand(DockerCommand[list[int]]):
    """``docker wait``.  Returns each container's exit code.

    Exit policy: RETURN. A container that exited non-zero is the answer,
    not an error.  Only a wait that produced no exit codes at all (unknown
    container, daemon down) raises.
    """

    exit_policy = ExitPolicy.RETURN

    containers: tuple[str, ...]

    def build_args(self) -> list[str]:
        return ["wait", *self.containers]

    def check_result(self, command_line: str, result: ExecutionResult) -> None:
        if not result.success and not self.parse(result):
            raise classify_failure(
                command_line,
                result,
                identifier=self.containers[0] if self.containers else None,
            )

    def parse(self, result: ExecutionResult) -> list[int]:
        return [int(line.strip()) for line in result.stdout_lines() if line.strip().isdigit()]


@dataclass(frozen=True)
class ExecCommand(DockerCommand[ExecutionResult]):
    """``docker exec``.  Returns the captured result with the child's exit code.

    Exit policy: RETURN. The caller decides what a non-zero exit means.
    A missing container still raises RESOURCE_NOT_FOUND.
    """

    exit_policy = ExitPolicy.RETURN

    container: str
    command: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    user: str | None = None
    workdir: str | None = None
    detach: bool = False

    def build_args(self) -> list[str]:
        args = ["exec"]
        if self.detach:
            args.append("--detach")
        for key, value in self.env.items():
            args += ["--env", f"{key}={value}"]
        if self.user:
            args += ["--user", self.user]
        if self.workdir:
            args += ["--workdir", self.workdir]
        args.append(self.container)
        args.extend(self.command)
        return args

    def check_result(self, command_line: str, result: ExecutionResult) -> None:
        if not result.success and "no such container" in result.stderr.lower():
            raise DockerError(
                Failure.resource_not_found(
                    self.container,
                    command=command_line,
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
            )

    def parse(self, result: ExecutionResult) -> ExecutionResult:
        return result

    @property
    def target(self) -> str | None:
        return self.container


@dataclass(frozen=True)
class InspectCommand(DockerCommand[str]):
    """``docker inspect``, optionally with a Go template.  Exit policy: RAISE.

    Returns stdout stripped; interpreting the JSON is left to the caller.
    """

    exit_policy = ExitPolicy.RAISE

    target_id: str
    format: str | None = None

    def build_args(self) -> list[str]:
        args = ["inspect"]
        if self.format:
            args += ["--format", self.format]
        args.append(self.target_id)
        return args

    def parse(self, result: ExecutionResult) -> str:
        return result.stdout.strip()

    def parse_json(self, result: ExecutionResult) -> list[dict]:
        return json.loads(result.stdout or "[]")

    @property
    def target(self) -> str | None:
        return self.target_id


@dataclass(frozen=True)
class LogsCommand(DockerCommand[str]):
    """``docker logs``.  Exit policy: RAISE.

    The CLI replays the container's stderr on its own stderr, so both
    streams are returned joined.
    """

    exit_policy = ExitPolicy.RAISE

    container: str
    tail: int | None = None
    since: str | None = None
    timestamps: bool = False

    def build_args(self) -> list[str]:
        args = ["logs"]
        if self.tail is not None:
            args += ["--tail", str(self.tail)]
        if self.since:
            args += ["--since", self.since]
        if self.timestamps:
            args.append("--timestamps")
        args.append(self.container)
        return args

    def parse(self, result: ExecutionResult) -> str:
        if not result.stderr:
            return result.stdout
        if not result.stdout:
            return result.stderr
        return f"{result.stdout}\n{result.stderr}"

    @property
    def target(self) -> str | None:
        return self.container


@dataclass(frozen=True)
class PortCommand(DockerCommand[list[str]]):
    """``docker port``.  Returns ``host:port`` bindings.  Exit policy: RAISE."""

    exit_policy = ExitPolicy.RAISE

    container: str
    port: int | None = None

    def build_args(self) -> list[str]:
        args = ["port", self.container]
        if self.port is not None:
            args.append(str(self.port))
        return args

    def parse(self, result: ExecutionResult) -> list[str]:
        # With a port: "0.0.0.0:49153"; without: "80/tcp -> 0.0.0.0:49153"
        return [line.split("->")[-1].strip() for line in result.stdout_lines()]

    @property
    def target(self) -> str | None:
        return self.container
