"""Tests for the session registry: tracking, orphan detection, cleanup sweeps."""

from __future__ import annotations

import signal
import threading
from unittest.mock import patch

import pytest
from conftest import FakeRunner, fail, ok, ps_json_line

from dockhand.commands.container import RunCommand
from dockhand.errors import DockerError, FailureKind
from dockhand.lifecycle import (
    LABEL_CREATED,
    LABEL_MANAGED,
    LABEL_SESSION,
    LifecycleConfig,
    SessionRegistry,
    new_session_id,
)


def _registry(runner: FakeRunner | None = None, **config) -> SessionRegistry:
    return SessionRegistry(
        runner or FakeRunner(),
        LifecycleConfig(enable_shutdown_hook=False, **config),
        session_id="mine0001",
    )


def _managed_ps(*rows: tuple[str, str | None]) -> str:
    """ps JSON output for (container id, session id or None) pairs."""
    lines = []
    for cid, session in rows:
        labels = {LABEL_MANAGED: "true"}
        if session is not None:
            labels[LABEL_SESSION] = session
        lines.append(ps_json_line(cid, labels=labels))
    return "\n".join(lines) + "\n"


class TestLifecycleConfig:
    def test_defaults(self):
        c = LifecycleConfig()
        assert c.enable_shutdown_hook
        assert c.stop_timeout == 10.0
        assert c.shutdown_stop_timeout == 3.0
        assert c.cleanup_on_shutdown

    def test_shutdown_grace_is_capped(self):
        assert LifecycleConfig(stop_timeout=10, shutdown_stop_timeout=3).shutdown_grace == 3
        assert LifecycleConfig(stop_timeout=1, shutdown_stop_timeout=3).shutdown_grace == 1

    def test_negative_timeout_is_invalid(self):
        with pytest.raises(DockerError) as exc_info:
            LifecycleConfig(stop_timeout=-1)
        assert exc_info.value.kind is FailureKind.INVALID_CONFIG


class TestSessionIdentity:
    def test_session_ids_are_short_and_distinct(self):
        ids = {new_session_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(len(i) == 8 for i in ids)

    def test_generated_when_not_given(self):
        assert len(SessionRegistry(FakeRunner()).session_id) == 8

    def test_managed_labels(self):
        labels = _registry().managed_labels()
        assert labels[LABEL_MANAGED] == "true"
        assert labels[LABEL_SESSION] == "mine0001"
        assert labels[LABEL_CREATED].isdigit()


class TestTracking:
    def test_track_is_idempotent(self):
        r = _registry()
        r.track("a")
        r.track("a")
        assert r.tracked() == {"a"}
        assert len(r.records()) == 1
        assert r.records()[0].session_id == "mine0001"

    def test_untrack_is_idempotent(self):
        r = _registry()
        r.track("a")
        r.untrack("a")
        r.untrack("a")
        r.untrack("never-tracked")
        assert r.tracked() == set()

    def test_tracked_returns_snapshot(self):
        r = _registry()
        r.track("a")
        snap = r.tracked()
        r.track("b")
        assert snap == {"a"}

    def test_concurrent_tracking(self):
        r = _registry()

        def worker(n: int) -> None:
            for i in range(200):
                r.track(f"{n}-{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(r.tracked()) == 8 * 200


class TestProvision:
    def test_provision_labels_and_tracks(self):
        runner = FakeRunner().on("run", result=ok("cid123\n"))
        r = _registry(runner)
        cid = r.provision(RunCommand("alpine", command=("sleep", "60")))
        assert cid == "cid123"
        assert r.is_tracked("cid123")
        argv = runner.calls[0]
        assert f"{LABEL_MANAGED}=true" in argv
        assert f"{LABEL_SESSION}=mine0001" in argv
        assert any(a.startswith(f"{LABEL_CREATED}=") for a in argv)
        assert argv[-3:] == ["alpine", "sleep", "60"]

    def test_failed_provision_tracks_nothing(self):
        runner = FakeRunner().on("run", result=fail("pull access denied", exit_code=125))
        r = _registry(runner)
        with pytest.raises(DockerError):
            r.provision(RunCommand("ghost"))
        assert r.tracked() == set()

    @pytest.mark.asyncio
    async def test_provision_async(self):
        runner = FakeRunner().on("run", result=ok("cid999\n"))
        r = _registry(runner)
        assert await r.provision_async(RunCommand("alpine")) == "cid999"
        assert r.tracked() == {"cid999"}


class TestCleanupAll:
    def test_stops_then_removes_each_tracked_container(self):
        runner = FakeRunner()
        r = _registry(runner, stop_timeout=4)
        r.track("c1")
        r.track("c2")

        assert r.cleanup_all() == 2
        assert r.tracked() == set()
        by_container: dict[str, list[list[str]]] = {}
        for argv in runner.calls:
            by_container.setdefault(argv[-1], []).append(argv)
        for cid in ("c1", "c2"):
            assert by_container[cid] == [
                ["stop", "--time", "4", cid],
                ["rm", "--force", cid],
            ]

    def test_non_force_rm(self):
        runner = FakeRunner()
        r = _registry(runner)
        r.track("c1")
        r.cleanup_all(force=False)
        assert runner.calls[-1] == ["rm", "c1"]

    def test_empty_is_noop(self):
        runner = FakeRunner()
        assert _registry(runner).cleanup_all() == 0
        assert runner.calls == []

    def test_stop_failure_still_removes(self):
        runner = FakeRunner().on("stop", result=fail("container is not running"))
        r = _registry(runner)
        r.track("c1")
        assert r.cleanup_all() == 1
        assert runner.subcommands() == ["stop", "rm"]

    def test_continues_past_failures(self):
        runner = FakeRunner()
        runner.on("rm", "--force", "bad", result=fail("permission denied"))
        r = _registry(runner)
        for cid in ("good1", "bad", "good2"):
            r.track(cid)

        assert r.cleanup_all() == 2
        assert r.tracked() == {"bad"}

    def test_already_gone_counts_as_removed(self):
        runner = FakeRunner().on("rm", result=fail("Error: No such container: c1"))
        r = _registry(runner)
        r.track("c1")
        assert r.cleanup_all() == 1
        assert r.tracked() == set()

    def test_os_error_is_contained(self):
        runner = FakeRunner().on("rm", result=OSError("fork failed"))
        r = _registry(runner)
        r.track("c1")
        assert r.cleanup_all() == 0
        assert r.tracked() == {"c1"}

    def test_explicit_grace(self):
        runner = FakeRunner()
        r = _registry(runner)
        r.track("c1")
        r.cleanup_all(grace=1.0)
        assert runner.calls[0] == ["stop", "--time", "1", "c1"]
        assert runner.timeouts[0] == pytest.approx(6.0)

    def test_rm_is_time_bounded_without_default_timeout(self):
        runner = FakeRunner()
        runner.default_timeout = None
        r = _registry(runner)
        r.track("c1")
        r.cleanup_all(grace=1.0)
        assert runner.subcommands() == ["stop", "rm"]
        assert runner.timeouts == [pytest.approx(6.0), pytest.approx(5.0)]

    def test_overlapping_sweeps_remove_once(self):
        stop_entered = threading.Event()
        release = threading.Event()

        class SlowStop(FakeRunner):
            def run(self, args, timeout=None):
                if args[0] == "stop":
                    stop_entered.set()
                    release.wait(5)
                return super().run(args, timeout)

        runner = SlowStop()
        r = _registry(runner)
        r.track("c1")
        counts: list[int] = []
        first = threading.Thread(target=lambda: counts.append(r.cleanup_all()))
        first.start()
        assert stop_entered.wait(5)

        # The first sweep is parked inside stop; this one must not touch c1
        counts.append(r.cleanup_all())
        release.set()
        first.join(5)

        assert sorted(counts) == [0, 1]
        assert runner.subcommands() == ["stop", "rm"]
        assert r.tracked() == set()

    def test_failed_removal_is_tracked_again(self):
        runner = FakeRunner().on("rm", result=fail("device or resource busy"))
        r = _registry(runner)
        r.track("c1", created_at=123)
        assert r.cleanup_all() == 0
        assert [(rec.id, rec.created_at) for rec in r.records()] == [("c1", 123)]

    @pytest.mark.asyncio
    async def test_async_variant(self):
        runner = FakeRunner()
        r = _registry(runner)
        r.track("c1")
        assert await r.cleanup_all_async() == 1


class TestRemove:
    def test_removes_tracked_container(self):
        runner = FakeRunner()
        r = _registry(runner)
        r.track("c1")
        assert r.remove("c1", grace=1.0)
        assert runner.calls == [["stop", "--time", "1", "c1"], ["rm", "--force", "c1"]]
        assert runner.timeouts == [pytest.approx(6.0), pytest.approx(5.0)]
        assert r.tracked() == set()

    def test_untracked_id_is_left_alone(self):
        runner = FakeRunner()
        assert not _registry(runner).remove("someone-elses")
        assert runner.calls == []

    def test_failure_keeps_tracking(self):
        runner = FakeRunner().on("rm", result=fail("permission denied"))
        r = _registry(runner)
        r.track("c1")
        assert not r.remove("c1")
        assert r.tracked() == {"c1"}

    @pytest.mark.asyncio
    async def test_remove_async(self):
        runner = FakeRunner()
        r = _registry(runner, stop_timeout=3)
        r.track("c1")
        assert await r.remove_async("c1")
        assert runner.calls[0] == ["stop", "--time", "3", "c1"]
        assert r.tracked() == set()


class TestOrphans:
    def test_orphans_are_other_sessions_only(self):
        runner = FakeRunner().on(
            "ps",
            result=ok(_managed_ps(("m1", "mine0001"), ("o1", "gone0001"), ("o2", "gone0002"), ("n1", None))),
        )
        r = _registry(runner)
        assert [c.id for c in r.find_orphans()] == ["o1", "o2"]
        assert runner.calls[0] == [
            "ps",
            "--all",
            "--filter",
            f"label={LABEL_MANAGED}=true",
            "--format",
            "{{json .}}",
        ]

    def test_two_sessions_see_each_other_as_orphans(self):
        output = ok(_managed_ps(("a1", "sessionA"), ("a2", "sessionA"), ("b1", "sessionB")))
        a = SessionRegistry(FakeRunner().on("ps", result=output), session_id="sessionA")
        b = SessionRegistry(FakeRunner().on("ps", result=output), session_id="sessionB")
        assert [c.id for c in a.find_orphans()] == ["b1"]
        assert [c.id for c in b.find_orphans()] == ["a1", "a2"]

    def test_cleanup_orphans_leaves_own_containers(self):
        runner = FakeRunner().on("ps", result=ok(_managed_ps(("m1", "mine0001"), ("o1", "old00001"))))
        r = _registry(runner)
        r.track("m1")

        assert r.cleanup_orphans() == 1
        removed = [argv[-1] for argv in runner.calls if argv[0] == "rm"]
        assert removed == ["o1"]
        assert r.tracked() == {"m1"}

    def test_listing_failure_is_empty(self):
        runner = FakeRunner().on("ps", result=fail("Cannot connect to the Docker daemon"))
        r = _registry(runner)
        assert r.find_orphans() == []
        assert r.cleanup_orphans() == 0

    def test_cleanup_with_predicate(self):
        runner = FakeRunner().on("ps", result=ok(_managed_ps(("m1", "mine0001"), ("o1", "old00001"))))
        r = _registry(runner)
        r.track("m1")
        assert r.cleanup(lambda c: c.id == "m1") == 1
        assert [argv[-1] for argv in runner.calls if argv[0] == "rm"] == ["m1"]
        assert r.tracked() == set()


class TestShutdownHook:
    def test_hook_not_installed_until_configured(self):
        with patch("dockhand.lifecycle.atexit.register") as mock_register:
            SessionRegistry(FakeRunner())
        mock_register.assert_not_called()

    def test_configure_installs_hook_once(self):
        r = SessionRegistry(FakeRunner())
        with patch("dockhand.lifecycle.atexit.register") as mock_register:
            threads = [
                threading.Thread(target=r.configure, args=(LifecycleConfig(),)) for _ in range(10)
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            r.configure(LifecycleConfig(stop_timeout=2))
        mock_register.assert_called_once_with(r._on_exit)
        assert r.shutdown_hook_installed
        assert r.config.stop_timeout == 2

    def test_disabled_hook_is_not_installed(self):
        r = SessionRegistry(FakeRunner())
        with patch("dockhand.lifecycle.atexit.register") as mock_register:
            r.configure(LifecycleConfig(enable_shutdown_hook=False))
        mock_register.assert_not_called()

    def test_exit_hook_uses_capped_grace(self):
        runner = FakeRunner()
        r = _registry(runner, stop_timeout=30, shutdown_stop_timeout=2)
        r.track("c1")
        r._on_exit()
        assert runner.calls[0] == ["stop", "--time", "2", "c1"]
        assert r.tracked() == set()

    def test_exit_hook_never_waits_unbounded(self):
        runner = FakeRunner()
        runner.default_timeout = None
        r = _registry(runner, stop_timeout=30, shutdown_stop_timeout=2)
        r.track("c1")
        r._on_exit()
        assert runner.subcommands() == ["stop", "rm"]
        assert None not in runner.timeouts
        assert runner.timeouts == [pytest.approx(7.0), pytest.approx(5.0)]

    def test_exit_hook_respects_cleanup_flag(self):
        runner = FakeRunner()
        r = _registry(runner, cleanup_on_shutdown=False)
        r.track("c1")
        r._on_exit()
        assert runner.calls == []

    def test_sigterm_handler_only_replaces_default(self):
        r = SessionRegistry(FakeRunner())
        with (
            patch("dockhand.lifecycle.signal.getsignal", return_value=signal.SIG_DFL),
            patch("dockhand.lifecycle.signal.signal") as mock_signal,
        ):
            r.configure(LifecycleConfig(enable_shutdown_hook=False, handle_sigterm=True))
        mock_signal.assert_called_once()
        assert mock_signal.call_args.args[0] == signal.SIGTERM

        r2 = SessionRegistry(FakeRunner())
        with (
            patch("dockhand.lifecycle.signal.getsignal", return_value=lambda *a: None),
            patch("dockhand.lifecycle.signal.signal") as mock_signal,
        ):
            r2.configure(LifecycleConfig(enable_shutdown_hook=False, handle_sigterm=True))
        mock_signal.assert_not_called()


class TestReset:
    def test_reset_clears_state_and_config(self):
        r = _registry(stop_timeout=1)
        r.track("a")
        r.reset()
        assert r.tracked() == set()
        assert r.config == LifecycleConfig()
