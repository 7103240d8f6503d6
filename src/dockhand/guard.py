"""Scoped container ownership.

    async with ManagedContainer(registry, RunCommand("redis:7"), wait=ForPort(6379)) as c:
        ...  # c.id is running and ready

The container is provisioned through the registry (so it carries the
session labels and is swept at exit if this block never finishes), and is
stopped and removed exactly once when the block exits.
"""

from __future__ import annotations

import asyncio
from types import TracebackType

from dockhand.commands.container import RunCommand
from dockhand.lifecycle import SessionRegistry
from dockhand.logger import logger
from dockhand.readiness import WaitStrategy, wait_until_ready


class ManagedContainer:
    def __init__(
        self,
        registry: SessionRegistry,
        command: RunCommand,
        *,
        wait: WaitStrategy | None = None,
        ready_timeout: float = 60.0,
        stop_timeout: float | None = None,
        keep_on_failure: bool = False,
    ) -> None:
        self.registry = registry
        self.command = command
        self.wait = wait
        self.ready_timeout = ready_timeout
        self.stop_timeout = registry.config.stop_timeout if stop_timeout is None else stop_timeout
        self.keep_on_failure = keep_on_failure
        self._id: str | None = None
        self._cleaned = False
        self._lock = asyncio.Lock()

    @property
    def id(self) -> str:
        if self._id is None:
            raise RuntimeError("container not started")
        return self._id

    async def start(self) -> str:
        self._id = await self.registry.provision_async(self.command)
        if self.wait is not None:
            try:
                await wait_until_ready(
                    self.registry.runner, self._id, self.wait, timeout=self.ready_timeout
                )
            except BaseException:
                await self.cleanup()
                raise
        return self._id

    async def cleanup(self) -> None:
        """Stop and remove the container.  Safe to call more than once.

        Removal goes through the registry, so a sweep that already claimed
        the container (the exit hook, ``cleanup_all``) is not repeated here.
        A failed removal leaves the container tracked.
        """
        async with self._lock:
            if self._cleaned or self._id is None:
                return
            self._cleaned = True
            await self.registry.remove_async(self._id, force=True, grace=self.stop_timeout)

    async def __aenter__(self) -> ManagedContainer:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is not None and self.keep_on_failure:
            logger.info("Keeping container after failure", container=self._id)
            return
        await self.cleanup()
