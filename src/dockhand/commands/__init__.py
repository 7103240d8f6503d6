"""Typed builders for container CLI subcommands."""

from dockhand.commands.base import DockerCommand, ExitPolicy, classify_failure
from dockhand.commands.container import (
    JSON_FORMAT,
    ExecCommand,
    InspectCommand,
    LogsCommand,
    PortCommand,
    PsCommand,
    RmCommand,
    RunCommand,
    StopCommand,
    WaitCommand,
    parse_ps_table,
)
from dockhand.commands.system import BuilderLsCommand, ContextShowCommand, VersionCommand

__all__ = [
    "JSON_FORMAT",
    "BuilderLsCommand",
    "ContextShowCommand",
    "DockerCommand",
    "ExecCommand",
    "ExitPolicy",
    "InspectCommand",
    "LogsCommand",
    "PortCommand",
    "PsCommand",
    "RmCommand",
    "RunCommand",
    "StopCommand",
    "VersionCommand",
    "WaitCommand",
    "classify_failure",
    "parse_ps_table",
]
