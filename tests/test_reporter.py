"""Tests for the status reporter and the SQLite transition store."""

from __future__ import annotations

import asyncio

import pytest

from conftest import fast_spec
from startgate.health.fsm import HealthStateMachine, ServiceState
from startgate.orchestrator.state import SystemSnapshot
from startgate.reporting.reporter import StatusReporter
from startgate.reporting.store import TransitionStore


def transitions(service_id="db"):
    fsm = HealthStateMachine(service_id, fast_spec())
    return [fsm.mark_waiting(), fsm.start_probing(0.0), fsm.fail("gone")]


def snap(version):
    return SystemSnapshot.build({}, version)


@pytest.fixture
def store(tmp_path):
    s = TransitionStore(tmp_path / "transitions.db")
    yield s
    s.close()


# ── StatusReporter ───────────────────────────────────────────────────────────


class TestStatusReporter:
    def test_events_in_publish_order(self) -> None:
        reporter = StatusReporter()
        reporter.begin("run1", snap(1))
        for i, t in enumerate(transitions(), start=2):
            reporter.publish(snap(i), t)
        events = reporter.events()
        assert [e.to_state for e in events] == [
            ServiceState.WAITING, ServiceState.PROBING, ServiceState.FAILED,
        ]
        assert reporter.snapshot().version == 4

    def test_events_filter_and_since(self) -> None:
        reporter = StatusReporter()
        for t in transitions("db") + transitions("api"):
            reporter.publish(snap(1), t)
        assert len(reporter.events(service_id="api")) == 3
        assert [e.service_id for e in reporter.events(since=4)] == ["api", "api"]

    def test_publish_without_transition_only_swaps_snapshot(self) -> None:
        reporter = StatusReporter()
        reporter.publish(snap(7))
        assert reporter.events() == []
        assert reporter.snapshot().version == 7

    def test_subscriber_receives_then_sentinel(self) -> None:
        async def go():
            reporter = StatusReporter()
            q = reporter.subscribe()
            for t in transitions():
                reporter.publish(snap(1), t)
            reporter.close("failed", "gone")
            items = []
            while True:
                item = await q.get()
                if item is None:
                    return items
                items.append(item)

        items = asyncio.run(go())
        assert len(items) == 3

    def test_full_queue_drops_but_still_ends(self) -> None:
        async def go():
            reporter = StatusReporter()
            q = reporter.subscribe(maxsize=1)
            for t in transitions():
                reporter.publish(snap(1), t)
            assert q.qsize() == 1
            reporter.close("failed", None)
            return q.get_nowait()

        assert asyncio.run(go()) is None

    def test_subscribe_after_close(self) -> None:
        async def go():
            reporter = StatusReporter()
            reporter.close("all_healthy", None)
            return [t async for t in reporter.stream()]

        assert asyncio.run(go()) == []

    def test_unsubscribe(self) -> None:
        async def go():
            reporter = StatusReporter()
            q = reporter.subscribe()
            reporter.unsubscribe(q)
            reporter.publish(snap(1), transitions()[0])
            return q.qsize()

        assert asyncio.run(go()) == 0

    def test_listener_errors_are_contained(self) -> None:
        reporter = StatusReporter()
        seen = []

        def broken(t):
            raise ValueError("listener bug")

        reporter.add_listener(broken)
        reporter.add_listener(seen.append)
        reporter.publish(snap(1), transitions()[0])
        assert len(seen) == 1

    def test_to_dict(self) -> None:
        reporter = StatusReporter()
        reporter.begin("run1", snap(1))
        reporter.publish(snap(2), transitions()[0])
        d = reporter.to_dict()
        assert d["run_id"] == "run1"
        assert d["closed"] is False
        assert d["events"][0]["to_state"] == "waiting"


# ── TransitionStore (SQLite) ─────────────────────────────────────────────────


class TestTransitionStore:
    def test_run_lifecycle(self, store) -> None:
        store.start_run("run1")
        for t in transitions():
            store.record_transition("run1", t)
        store.finish_run("run1", "failed", "service 'db' failed: gone")

        rows = store.get_transitions("run1")
        assert [r["to_state"] for r in rows] == ["waiting", "probing", "failed"]
        assert rows[-1]["reason"] == "gone"

        (run,) = store.get_runs()
        assert run["aggregate"] == "failed"
        assert run["ended_at"]

    def test_filter_by_service(self, store) -> None:
        store.start_run("run1")
        for t in transitions("db") + transitions("api"):
            store.record_transition("run1", t)
        assert len(store.get_transitions("run1", service_id="api")) == 3

    def test_reporter_persists(self, store) -> None:
        reporter = StatusReporter(store=store)
        reporter.begin("run2", snap(1))
        for t in transitions():
            reporter.publish(snap(1), t)
        reporter.close("failed", "gone")
        assert len(store.get_transitions("run2")) == 3
        assert store.get_runs()[0]["reason"] == "gone"

    def test_cleanup_old(self, store) -> None:
        store.start_run("run1")
        assert store.cleanup_old(days=30) == 0
        assert store.cleanup_old(days=-1) == 1
        assert store.get_runs() == []
