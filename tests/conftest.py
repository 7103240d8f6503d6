"""Shared test fixtures for dockhand."""

from __future__ import annotations

import json
from collections.abc import Sequence

import pytest

from dockhand.runner import ProcessRunner
from dockhand.types import ExecutionResult

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------


def ok(stdout: str = "", stderr: str = "") -> ExecutionResult:
    return ExecutionResult(stdout=stdout, stderr=stderr, exit_code=0)


def fail(stderr: str = "boom", exit_code: int = 1, stdout: str = "") -> ExecutionResult:
    return ExecutionResult(stdout=stdout, stderr=stderr, exit_code=exit_code)


def ps_json_line(
    cid: str,
    *,
    name: str = "c",
    image: str = "alpine",
    state: str = "running",
    labels: dict[str, str] | None = None,
) -> str:
    """One line of ``docker ps --format '{{json .}}'`` output."""
    return json.dumps(
        {
            "ID": cid,
            "Names": name,
            "Image": image,
            "Command": '"sleep 60"',
            "CreatedAt": "2024-01-01 00:00:00 +0000 UTC",
            "State": state,
            "Status": "Up 1 minute" if state == "running" else "Exited (0) 1 minute ago",
            "Ports": "",
            "Labels": ",".join(f"{k}={v}" for k, v in (labels or {}).items()),
        }
    )


class FakeRunner(ProcessRunner):
    """Records argument vectors instead of spawning anything.

    Outcomes are scripted by argument prefix; the most recently registered
    matching prefix wins.  Unmatched calls succeed with empty output.

        runner = FakeRunner()
        runner.on("rm", result=fail("No such container: abc"))
        runner.on("ps", result=ok(ps_json_line("abc")))
    """

    def __init__(self, *, binary: str = "docker", runtime=None) -> None:
        super().__init__(binary, runtime=runtime)
        self.calls: list[list[str]] = []
        self.timeouts: list[float | None] = []
        self._script: list[tuple[tuple[str, ...], ExecutionResult | BaseException]] = []

    def on(self, *prefix: str, result: ExecutionResult | BaseException) -> FakeRunner:
        self._script.append((prefix, result))
        return self

    def run(self, args: Sequence[str], timeout: float | None = None) -> ExecutionResult:
        argv = list(args)
        self.calls.append(argv)
        self.timeouts.append(timeout)
        for prefix, outcome in reversed(self._script):
            if tuple(argv[: len(prefix)]) == prefix:
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
        return ok()

    async def run_async(self, args: Sequence[str], timeout: float | None = None) -> ExecutionResult:
        return self.run(args, timeout)

    def subcommands(self) -> list[str]:
        """First token of every recorded call, in order."""
        return [argv[0] for argv in self.calls]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    """Each test starts without cached settings, platform, or client."""
    monkeypatch.setattr("dockhand.config._settings", None)
    monkeypatch.setattr("dockhand.platform._platform", None)
    monkeypatch.setattr("dockhand.client._docker", None)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep DOCKHAND_* variables and any local dockhand.toml out of tests."""
    import os

    for var in list(os.environ):
        if var.startswith("DOCKHAND_"):
            monkeypatch.delenv(var)
    monkeypatch.chdir(tmp_path)
