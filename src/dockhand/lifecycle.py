"""Session-scoped tracking and cleanup of managed containers.

Every container provisioned through a :class:`SessionRegistry` is stamped
with three labels:

  - ``dockhand.managed=true``: marks it as ours (the orphan query filter)
  - ``dockhand.session=<id>``: the registry's short session id
  - ``dockhand.created=<epoch ms>``: when it was provisioned

There is no ledger on disk: the labels on the containers themselves are the
durable state.  If a process dies before its exit hook runs, the next
process finds those containers with :meth:`SessionRegistry.find_orphans`
(managed label present, session label not ours) and sweeps them.

Cleanup is best-effort: each container is stopped with a bounded grace
period and then removed; a failure on one container is logged and the sweep
moves on.  Sweeps return the number of containers actually removed.
"""

from __future__ import annotations

import asyncio
import atexit
import signal
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from types import FrameType

from dockhand.commands.container import PsCommand, RmCommand, RunCommand, StopCommand
from dockhand.errors import DockerError, Failure, FailureKind
from dockhand.logger import logger
from dockhand.runner import ProcessRunner
from dockhand.types import ContainerSummary, ManagedResource

LABEL_PREFIX = "dockhand"
LABEL_MANAGED = f"{LABEL_PREFIX}.managed"
LABEL_SESSION = f"{LABEL_PREFIX}.session"
LABEL_CREATED = f"{LABEL_PREFIX}.created"

# Added on top of the stop grace so the CLI call itself cannot hang forever;
# also the whole budget for the rm that follows.
_CALL_SLACK = 5.0


def new_session_id() -> str:
    """Short random token, readable in ``docker ps`` output."""
    return uuid.uuid4().hex[:8]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class LifecycleConfig:
    """Lifecycle knobs.  Built by the caller; the registry reads no environment.

    ``shutdown_stop_timeout`` caps the stop grace inside the exit hook, since
    the host may kill the process if the hook runs long.
    """

    enable_shutdown_hook: bool = True
    stop_timeout: float = 10.0
    shutdown_stop_timeout: float = 3.0
    cleanup_on_shutdown: bool = True
    handle_sigterm: bool = False

    def __post_init__(self) -> None:
        for name in ("stop_timeout", "shutdown_stop_timeout"):
            value = getattr(self, name)
            if value < 0:
                raise DockerError(Failure.invalid_config(f"{name} must be >= 0, got {value}"))

    @property
    def shutdown_grace(self) -> float:
        return min(self.stop_timeout, self.shutdown_stop_timeout)


class _OnceFlag:
    """Thread-safe compare-and-set boolean."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._set = False

    def set_once(self) -> bool:
        """Set the flag; True only for the caller that flipped it."""
        with self._lock:
            if self._set:
                return False
            self._set = True
            return True

    def __bool__(self) -> bool:
        return self._set


class _TrackedSet:
    """Lock-guarded map of container id → record.

    Readers get snapshots, so iterating never races with track/untrack.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, ManagedResource] = {}

    def add(self, record: ManagedResource) -> bool:
        with self._lock:
            if record.id in self._items:
                return False
            self._items[record.id] = record
            return True

    def discard(self, container_id: str) -> bool:
        with self._lock:
            return self._items.pop(container_id, None) is not None

    def claim(self, ids: Iterable[str]) -> list[ManagedResource]:
        """Atomically take whichever of *ids* are present out of the set.

        Only the caller holding a claimed record may sweep that container.
        """
        with self._lock:
            popped = [self._items.pop(container_id, None) for container_id in ids]
        return [record for record in popped if record is not None]

    def restore(self, record: ManagedResource) -> None:
        with self._lock:
            self._items.setdefault(record.id, record)

    def snapshot(self) -> list[ManagedResource]:
        with self._lock:
            return list(self._items.values())

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __contains__(self, container_id: object) -> bool:
        with self._lock:
            return container_id in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class SessionRegistry:
    """Tracks the containers this process created and guarantees their cleanup.

    Construct one per process (see :func:`dockhand.client.get_docker`) and
    pass it to whatever provisions containers.  Tests build their own with a
    fake runner and call :meth:`reset` between cases.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        config: LifecycleConfig | None = None,
        *,
        session_id: str | None = None,
    ) -> None:
        self.runner = runner
        self.session_id = session_id or new_session_id()
        self._config = config or LifecycleConfig()
        self._tracked = _TrackedSet()
        self._hook_installed = _OnceFlag()
        self._sigterm_installed = _OnceFlag()

    # -- configuration ------------------------------------------------------

    @property
    def config(self) -> LifecycleConfig:
        return self._config

    def configure(self, config: LifecycleConfig) -> None:
        """Replace the config and install the exit hook if it asks for one.

        The hook is installed at most once per registry no matter how often
        this is called, or from how many threads.
        """
        self._config = config
        self._ensure_shutdown_hook()

    @property
    def shutdown_hook_installed(self) -> bool:
        return bool(self._hook_installed)

    def managed_labels(self) -> dict[str, str]:
        """Labels to stamp on a container at creation time."""
        return {
            LABEL_MANAGED: "true",
            LABEL_SESSION: self.session_id,
            LABEL_CREATED: str(_now_ms()),
        }

    # -- tracking -----------------------------------------------------------

    def track(self, container_id: str, *, created_at: int | None = None) -> None:
        """Start tracking *container_id*.  Tracking twice is a no-op."""
        record = ManagedResource(
            id=container_id,
            session_id=self.session_id,
            created_at=created_at if created_at is not None else _now_ms(),
        )
        if self._tracked.add(record):
            logger.debug("Tracking container", container=container_id, session=self.session_id)

    def untrack(self, container_id: str) -> None:
        """Stop tracking *container_id* (e.g. after removing it by hand).

        Untracking an unknown id is a no-op.
        """
        if self._tracked.discard(container_id):
            logger.debug("Untracked container", container=container_id)

    def tracked(self) -> set[str]:
        return {record.id for record in self._tracked.snapshot()}

    def records(self) -> list[ManagedResource]:
        return self._tracked.snapshot()

    def is_tracked(self, container_id: str) -> bool:
        return container_id in self._tracked

    # -- provisioning -------------------------------------------------------

    def provision(self, command: RunCommand) -> str:
        """Run *command* with the managed labels applied and track the result."""
        labels = self.managed_labels()
        container_id = command.with_labels(labels).run(self.runner)
        self.track(container_id, created_at=int(labels[LABEL_CREATED]))
        return container_id

    async def provision_async(self, command: RunCommand) -> str:
        labels = self.managed_labels()
        container_id = await command.with_labels(labels).run_async(self.runner)
        self.track(container_id, created_at=int(labels[LABEL_CREATED]))
        return container_id

    # -- discovery ----------------------------------------------------------

    def list_managed(self) -> list[ContainerSummary]:
        """All containers carrying the managed label, from any session.

        A failed listing is logged and reported as empty.
        """
        command = PsCommand(all=True).with_label_filter(f"{LABEL_MANAGED}=true").as_json()
        try:
            return command.run(self.runner)
        except (DockerError, OSError) as exc:
            logger.warning("Failed to list managed containers", err=str(exc))
            return []

    def find_orphans(self) -> list[ContainerSummary]:
        """Managed containers stamped by some other session."""
        orphans: list[ContainerSummary] = []
        for container in self.list_managed():
            session = container.labels.get(LABEL_SESSION)
            if session is not None and session != self.session_id:
                orphans.append(container)
        return orphans

    # -- cleanup ------------------------------------------------------------

    def cleanup_all(self, force: bool = True, *, grace: float | None = None) -> int:
        """Stop and remove every tracked container.

        Successfully removed containers are untracked; failures stay tracked
        so a later sweep can retry them.  Containers already claimed by an
        overlapping sweep are left to that sweep.
        """
        ids = [record.id for record in self._tracked.snapshot()]
        if not ids:
            logger.debug("No tracked containers to clean up")
            return 0
        logger.info("Cleaning up tracked containers", count=len(ids), session=self.session_id)
        return self._sweep(ids, force=force, grace=grace, tracked_only=True)

    async def cleanup_all_async(self, force: bool = True) -> int:
        return await asyncio.to_thread(self.cleanup_all, force)

    def remove(self, container_id: str, *, force: bool = True, grace: float | None = None) -> bool:
        """Stop and remove one tracked container.

        Returns False without touching the CLI when *container_id* is not
        tracked (never provisioned here, or another sweep owns it), and
        False when removal fails, in which case it stays tracked.
        """
        return self._sweep([container_id], force=force, grace=grace, tracked_only=True) == 1

    async def remove_async(
        self,
        container_id: str,
        *,
        force: bool = True,
        grace: float | None = None,
    ) -> bool:
        return await asyncio.to_thread(self.remove, container_id, force=force, grace=grace)

    def cleanup_orphans(self, force: bool = True) -> int:
        """Sweep containers left behind by sessions that never cleaned up."""
        logger.info("Looking for orphaned containers", session=self.session_id)
        orphans = self.find_orphans()
        if not orphans:
            logger.debug("No orphaned containers found")
            return 0
        logger.info("Found orphaned containers", count=len(orphans))
        return self._sweep([c.id for c in orphans], force=force)

    def cleanup(
        self,
        predicate: Callable[[ContainerSummary], bool],
        force: bool = True,
    ) -> int:
        """Sweep managed containers (any session) selected by *predicate*."""
        selected = [c for c in self.list_managed() if predicate(c)]
        if not selected:
            logger.debug("No containers match cleanup predicate")
            return 0
        logger.info("Cleaning up containers matching predicate", count=len(selected))
        return self._sweep([c.id for c in selected], force=force)

    def reset(self) -> None:
        """Forget tracked containers and restore the default config (for tests)."""
        self._tracked.clear()
        self._config = LifecycleConfig()

    def _sweep(
        self,
        ids: Iterable[str],
        *,
        force: bool,
        grace: float | None = None,
        tracked_only: bool = False,
    ) -> int:
        ids = list(ids)
        claimed = {record.id: record for record in self._tracked.claim(ids)}
        if tracked_only:
            ids = [container_id for container_id in ids if container_id in claimed]
        stop_grace = self._config.stop_timeout if grace is None else grace
        cleaned = 0
        try:
            for container_id in ids:
                try:
                    self._remove_container(container_id, force=force, grace=stop_grace)
                except (DockerError, OSError) as exc:
                    logger.warning(
                        "Failed to clean up container", container=container_id, err=str(exc)
                    )
                    continue
                if claimed.pop(container_id, None) is not None:
                    logger.debug("Untracked container", container=container_id)
                cleaned += 1
        finally:
            # Failed or never reached: tracked again for a later sweep
            for record in claimed.values():
                self._tracked.restore(record)
        return cleaned

    def _remove_container(self, container_id: str, *, force: bool, grace: float) -> None:
        """Stop (best-effort) and then remove one container, each call time-bounded.

        A container that is already gone counts as removed.
        """
        stop = StopCommand(container_id, time=int(grace)).with_timeout(grace + _CALL_SLACK)
        try:
            stop.run(self.runner)
        except (DockerError, OSError) as exc:
            logger.debug("Stop failed, removing anyway", container=container_id, err=str(exc))

        try:
            RmCommand(container_id, force=force).with_timeout(_CALL_SLACK).run(self.runner)
        except DockerError as exc:
            if exc.kind is not FailureKind.RESOURCE_NOT_FOUND:
                raise
            logger.debug("Container already gone", container=container_id)
            return
        logger.debug("Removed container", container=container_id)

    # -- shutdown -----------------------------------------------------------

    def _ensure_shutdown_hook(self) -> None:
        if self._config.enable_shutdown_hook and self._hook_installed.set_once():
            atexit.register(self._on_exit)
            logger.debug("Registered exit hook", session=self.session_id)
        if self._config.handle_sigterm and self._sigterm_installed.set_once():
            _install_sigterm_exit()

    def _on_exit(self) -> None:
        if not self._config.cleanup_on_shutdown:
            return
        if not len(self._tracked):
            return
        logger.info("Process exiting, cleaning up containers", count=len(self._tracked))
        self.cleanup_all(force=True, grace=self._config.shutdown_grace)


def _exit_on_sigterm(signum: int, frame: FrameType | None) -> None:
    raise SystemExit(128 + signum)


def _install_sigterm_exit() -> None:
    """Turn SIGTERM into a normal interpreter exit so atexit hooks run.

    Only replaces the default disposition, and only from the main thread.
    """
    if threading.current_thread() is not threading.main_thread():
        logger.warning("SIGTERM handler can only be installed from the main thread")
        return
    if signal.getsignal(signal.SIGTERM) is not signal.SIG_DFL:
        logger.debug("SIGTERM already handled, leaving it alone")
        return
    signal.signal(signal.SIGTERM, _exit_on_sigterm)
    logger.debug("Installed SIGTERM exit handler")
