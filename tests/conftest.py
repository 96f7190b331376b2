"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from typing import Any

import pytest

from startgate.errors import ProbeFailure, ProbeTimeout
from startgate.orchestrator.engine import Orchestrator, RunResult
from startgate.orchestrator.graph import DependencyGraph
from startgate.reporting.reporter import StatusReporter
from startgate.services.models import ProbeKind, ProbeSpec, ServiceDescriptor


class ScriptedProbe:
    """Fake probe replaying a script of outcomes; the last step repeats.

    Steps: "ok", "fail", "timeout".
    """

    def __init__(self, script: Iterable[str] = ("ok",), delay: float = 0.0) -> None:
        self.script = list(script)
        self.delay = delay
        self.calls = 0

    def execute(self, target: str, timeout: float) -> str:
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if step == "ok":
            return f"{target} ok"
        if step == "timeout":
            raise ProbeTimeout(f"{target} timed out")
        raise ProbeFailure(f"{target} refused")


def fast_spec(**overrides: Any) -> ProbeSpec:
    """A command probe spec with test-friendly timings."""
    fields: dict[str, Any] = {
        "kind": ProbeKind.COMMAND,
        "target": "check",
        "interval_seconds": 0.05,
        "timeout_seconds": 0.04,
        "jitter": 0.0,
    }
    fields.update(overrides)
    return ProbeSpec(**fields)


@pytest.fixture
def make_service() -> Callable[..., ServiceDescriptor]:
    """Factory: make_service("api", deps=["db"], retries=2)."""

    def _make(service_id: str, deps: Iterable[str] = (), **probe_overrides: Any) -> ServiceDescriptor:
        probe_overrides.setdefault("target", f"check-{service_id}")
        return ServiceDescriptor(
            id=service_id,
            depends_on=frozenset(deps),
            probe=fast_spec(**probe_overrides),
        )

    return _make


@pytest.fixture
def orchestrate() -> Callable[..., tuple[RunResult, Orchestrator]]:
    """Run a graph to completion with scripted probes.

    ``probes`` maps service id -> ScriptedProbe; missing ids always succeed.
    """

    def _run(
        descriptors: list[ServiceDescriptor],
        probes: dict[str, ScriptedProbe] | None = None,
        deadline_seconds: float | None = None,
        reporter: StatusReporter | None = None,
        max_workers: int = 4,
    ) -> tuple[RunResult, Orchestrator]:
        probes = probes if probes is not None else {}
        for d in descriptors:
            probes.setdefault(d.id, ScriptedProbe(["ok"]))

        orchestrator = Orchestrator(
            DependencyGraph(descriptors),
            reporter=reporter,
            deadline_seconds=deadline_seconds,
            probe_factory=lambda d: probes[d.id],
            max_workers=max_workers,
        )
        result = asyncio.run(asyncio.wait_for(orchestrator.run(), timeout=10))
        return result, orchestrator

    return _run
