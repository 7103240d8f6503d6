"""Process runner: spawn the container CLI, drain its output, enforce timeouts.

Provides:
  - ProcessRunner.run(): blocking execution, returns an ExecutionResult
  - ProcessRunner.run_async(): same semantics without blocking the event loop
  - ProcessRunner.stream(): a LineStream of stdout lines, with the exit code once done

Both ``run`` flavours go through :class:`_Execution`: the child is spawned
with ``subprocess.Popen`` and drained with ``communicate()``, which reads
stdout and stderr concurrently so a chatty child can never fill one pipe
while we block on the other.  The async flavour hands the blocking drain to
a worker thread via ``asyncio.to_thread``.

Timeouts and cancellation share :meth:`_Execution.terminate`: SIGTERM,
then SIGKILL once the grace period runs out.  A non-zero exit code is not an
error here; the command layer decides that.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import subprocess
import threading
import time
from collections.abc import AsyncGenerator, AsyncIterator, Mapping, Sequence
from typing import TYPE_CHECKING

from dockhand.errors import DockerError, Failure
from dockhand.logger import logger
from dockhand.types import ExecutionResult

if TYPE_CHECKING:
    from dockhand.platform import PlatformInfo, Runtime

DEFAULT_TIMEOUT = 30.0


class _Execution:
    """One spawned child process and the single path that terminates it."""

    def __init__(
        self,
        argv: list[str],
        *,
        env: Mapping[str, str] | None,
        kill_grace: float,
    ) -> None:
        self.argv = argv
        self.command_line = shlex.join(argv)
        self._kill_grace = kill_grace
        self._lock = threading.Lock()
        self._terminating = False
        try:
            self.proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=dict(env) if env is not None else None,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as exc:
            raise DockerError(Failure.tool_not_found(argv[0])) from exc
        self.started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def collect(self, timeout: float | None) -> ExecutionResult:
        """Drain both pipes, wait for exit, and return the captured result.

        Raises ``DockerError(TIMEOUT)`` after terminating the child if
        *timeout* elapses first.  Any other interruption (KeyboardInterrupt,
        errors while reading) also terminates the child before propagating.
        """
        try:
            stdout, stderr = self.proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            elapsed = self.elapsed
            logger.warning(
                "Command timed out, terminating",
                command=self.command_line,
                timeout=timeout,
                pid=self.proc.pid,
            )
            self.terminate()
            self._drain_after_kill()
            raise DockerError(Failure.timeout(elapsed, command=self.command_line)) from None
        except BaseException:
            self.terminate()
            raise

        return ExecutionResult(
            stdout=stdout or "",
            stderr=stderr or "",
            exit_code=self.proc.returncode,
        )

    def terminate(self, *, block: bool = True) -> None:
        """SIGTERM the child, escalating to SIGKILL after the grace period.

        With ``block=False`` the escalation (and reaping) happens on a daemon
        thread, so the caller (an event loop) never stalls.  Safe to call
        repeatedly and after the child has already exited.
        """
        with self._lock:
            if self._terminating or self.proc.poll() is not None:
                return
            self._terminating = True

        if not block:
            threading.Thread(
                target=self._terminate_and_reap,
                name=f"dockhand-terminate-{self.proc.pid}",
                daemon=True,
            ).start()
            return
        self._terminate_and_reap()

    def _terminate_and_reap(self) -> None:
        try:
            self.proc.terminate()
        except ProcessLookupError:
            return
        try:
            self.proc.wait(timeout=self._kill_grace)
        except subprocess.TimeoutExpired:
            self._kill_if_alive()
            self.proc.wait()

    def _kill_if_alive(self) -> None:
        if self.proc.poll() is None:
            logger.warning(
                "Child ignored SIGTERM, killing",
                command=self.command_line,
                pid=self.proc.pid,
            )
            try:
                self.proc.kill()
            except ProcessLookupError:
                pass

    def _drain_after_kill(self) -> None:
        # A grandchild can keep the pipes open after the child is gone.
        try:
            self.proc.communicate(timeout=self._kill_grace)
        except subprocess.TimeoutExpired:
            for pipe in (self.proc.stdout, self.proc.stderr):
                if pipe is not None:
                    pipe.close()


class ProcessRunner:
    """Runs argument vectors against one container CLI binary.

    Args:
        binary: CLI to invoke (``docker``, ``podman``, ...).
        environment: Extra variables merged over ``os.environ`` for the child.
        default_timeout: Seconds applied when a call passes no timeout;
            ``None`` waits forever.
        dry_run: Log the command line and return an empty success instead of
            spawning anything.
        kill_grace: Seconds between SIGTERM and SIGKILL on timeout/cancel.
        runtime: Detected runtime, used by commands to reject unsupported
            subcommands.
    """

    def __init__(
        self,
        binary: str = "docker",
        *,
        environment: Mapping[str, str] | None = None,
        default_timeout: float | None = DEFAULT_TIMEOUT,
        dry_run: bool = False,
        kill_grace: float = 2.0,
        runtime: Runtime | None = None,
    ) -> None:
        self.binary = binary
        self.environment = dict(environment or {})
        self.default_timeout = default_timeout
        self.dry_run = dry_run
        self.kill_grace = kill_grace
        self.runtime = runtime

    @classmethod
    def for_platform(cls, info: PlatformInfo, **kwargs: object) -> ProcessRunner:
        """Build a runner that targets the detected runtime's CLI."""
        return cls(
            info.runtime.cli,
            environment=info.environment,
            runtime=info.runtime,
            **kwargs,  # type: ignore[arg-type]
        )

    # -- public API ---------------------------------------------------------

    def run(self, args: Sequence[str], timeout: float | None = None) -> ExecutionResult:
        """Execute ``<binary> *args`` and block until it finishes."""
        argv = self._argv(args)
        if self.dry_run:
            return self._dry_run(argv)
        execution = self._spawn(argv)
        result = execution.collect(self._effective_timeout(timeout))
        self._log_finished(execution, result)
        return result

    async def run_async(
        self,
        args: Sequence[str],
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Execute ``<binary> *args`` without blocking the event loop.

        Cancelling the awaiting task terminates the child before the
        cancellation propagates.
        """
        argv = self._argv(args)
        if self.dry_run:
            return self._dry_run(argv)
        execution = self._spawn(argv)
        try:
            result = await asyncio.to_thread(execution.collect, self._effective_timeout(timeout))
        except asyncio.CancelledError:
            logger.debug("Execution cancelled, terminating child", command=execution.command_line)
            execution.terminate(block=False)
            raise
        self._log_finished(execution, result)
        return result

    def stream(self, args: Sequence[str]) -> LineStream:
        """Async iterator over the stdout lines of ``<binary> *args``.

        The child is spawned on first iteration.  Leaving the ``async for`` early (break, cancel, ``aclose()``)
        terminates the child.  Once the lines run out, the handle's
        ``exit_code`` and ``stderr`` report how the child finished.
        """
        return LineStream(self, self._argv(args))

    # -- internals ----------------------------------------------------------

    def _argv(self, args: Sequence[str]) -> list[str]:
        return [self.binary, *args]

    def _effective_timeout(self, timeout: float | None) -> float | None:
        return timeout if timeout is not None else self.default_timeout

    def _env(self) -> dict[str, str] | None:
        if not self.environment:
            return None
        return {**os.environ, **self.environment}

    def _spawn(self, argv: list[str]) -> _Execution:
        logger.debug("Executing", command=shlex.join(argv))
        return _Execution(argv, env=self._env(), kill_grace=self.kill_grace)

    def _dry_run(self, argv: list[str]) -> ExecutionResult:
        logger.info("Dry run, not executing", command=shlex.join(argv))
        return ExecutionResult(stdout="", stderr="", exit_code=0)

    @staticmethod
    def _log_finished(execution: _Execution, result: ExecutionResult) -> None:
        logger.debug(
            "Command completed",
            command=execution.command_line,
            exit_code=result.exit_code,
            elapsed_ms=round(execution.elapsed * 1000),
        )


class LineStream:
    """Stdout of one streaming child, line by line.

    stderr is drained on a background thread so it cannot block the child.
    ``exit_code`` stays ``None`` until stdout is exhausted and the child has
    exited; a non-zero exit is reported there, not raised.

        stream = runner.stream(["logs", "--follow", cid])
        async for line in stream:
            ...
        if not stream.success:
            log.warning("logs failed", stderr=stream.stderr)
    """

    def __init__(self, runner: ProcessRunner, argv: list[str]) -> None:
        self.command_line = shlex.join(argv)
        self.exit_code: int | None = None
        self.stderr = ""
        self._lines = self._read(runner, argv)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._lines

    async def aclose(self) -> None:
        await self._lines.aclose()

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    async def _read(self, runner: ProcessRunner, argv: list[str]) -> AsyncGenerator[str, None]:
        if runner.dry_run:
            runner._dry_run(argv)
            self.exit_code = 0
            return
        execution = runner._spawn(argv)
        proc = execution.proc
        assert proc.stdout is not None
        assert proc.stderr is not None

        stderr_chunks: list[str] = []
        stderr_reader = threading.Thread(
            target=lambda: stderr_chunks.append(proc.stderr.read()),  # type: ignore[union-attr]
            daemon=True,
        )
        stderr_reader.start()

        lines = iter(proc.stdout)
        try:
            while True:
                line = await asyncio.to_thread(next, lines, None)
                if line is None:
                    break
                yield line.rstrip("\n")
            exit_code = await asyncio.to_thread(proc.wait)
            await asyncio.to_thread(stderr_reader.join)
            self.stderr = "".join(stderr_chunks)
            self.exit_code = exit_code
            if exit_code != 0:
                logger.warning(
                    "Stream exited non-zero",
                    command=self.command_line,
                    exit_code=exit_code,
                    stderr=self.stderr[-500:],
                )
            else:
                logger.debug("Stream finished", command=self.command_line)
        finally:
            execution.terminate(block=False)
