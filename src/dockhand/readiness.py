"""Wait strategies: poll a freshly started container until it is usable.

Each strategy answers one question per poll ("is it ready yet?").
:func:`wait_until_ready` drives the polling loop, bails out early if the
container stops running, and raises a TIMEOUT failure at the deadline.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field

import aiohttp

from dockhand.commands.container import ExecCommand, InspectCommand, LogsCommand
from dockhand.errors import DockerError, Failure
from dockhand.logger import logger
from dockhand.runner import ProcessRunner


@dataclass(frozen=True)
class Running:
    """Ready as soon as the container reports State.Running."""

    async def check(self, runner: ProcessRunner, container: str) -> bool:
        return await _is_running(runner, container)


@dataclass(frozen=True)
class ForPort:
    """Ready once a TCP connection to *host*:*port* succeeds."""

    port: int
    host: str = "127.0.0.1"

    async def check(self, runner: ProcessRunner, container: str) -> bool:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=2.0
            )
        except (OSError, TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


@dataclass(frozen=True)
class ForHttp:
    """Ready once *url* answers with *status* (or any non-5xx if *any_non_5xx*)."""

    url: str
    status: int = 200
    any_non_5xx: bool = False
    headers: dict[str, str] = field(default_factory=dict)

    async def check(self, runner: ProcessRunner, container: str) -> bool:
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=5),
            ) as session:
                async with session.get(self.url, headers=self.headers or None) as resp:
                    return resp.status == self.status or (self.any_non_5xx and resp.status < 500)
        except (aiohttp.ClientError, OSError, TimeoutError):
            return False


@dataclass(frozen=True)
class ForLogMessage:
    """Ready once the container's logs match *pattern* (a regex)."""

    pattern: str

    async def check(self, runner: ProcessRunner, container: str) -> bool:
        logs = await LogsCommand(container).run_async(runner)
        return re.search(self.pattern, logs) is not None


@dataclass(frozen=True)
class ForCommand:
    """Ready once *command* exits 0 inside the container."""

    command: tuple[str, ...]

    async def check(self, runner: ProcessRunner, container: str) -> bool:
        result = await ExecCommand(container, self.command).run_async(runner)
        return result.success


WaitStrategy = Running | ForPort | ForHttp | ForLogMessage | ForCommand


async def _is_running(runner: ProcessRunner, container: str) -> bool:
    state = await InspectCommand(container, format="{{.State.Running}}").run_async(runner)
    return state.strip().lower() == "true"


async def wait_until_ready(
    runner: ProcessRunner,
    container: str,
    strategy: WaitStrategy,
    timeout: float = 60.0,
    poll_interval: float = 0.5,
) -> None:
    """Poll *strategy* until it passes.

    Raises:
        DockerError: TIMEOUT once *timeout* seconds pass without success,
            or COMMAND_FAILED if the container stops running meanwhile.
    """
    start = time.monotonic()
    deadline = start + timeout

    while True:
        if await strategy.check(runner, container):
            logger.info(
                "Container ready",
                container=container,
                strategy=type(strategy).__name__,
                elapsed_ms=round((time.monotonic() - start) * 1000),
            )
            return

        if not isinstance(strategy, Running) and not await _is_running(runner, container):
            raise DockerError(
                Failure.command_failed(
                    f"wait for {container}",
                    exit_code=-1,
                    stdout="",
                    stderr=f"container {container} exited before becoming ready",
                )
            )

        if time.monotonic() >= deadline:
            logger.warning("Container not ready before deadline", container=container, timeout=timeout)
            raise DockerError(
                Failure.timeout(time.monotonic() - start, command=f"wait for {container}")
            )
        await asyncio.sleep(poll_interval)
