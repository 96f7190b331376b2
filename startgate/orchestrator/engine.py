"""Startup orchestrator — activates monitors in dependency order.

Flow:
  waiting -> roots probing -> healthy unblocks dependents -> ... -> verdict

Monitors run as one asyncio task each and report transitions through a
single queue. The orchestrator is the only place where one service's
transition affects another (activation, fail-fast propagation), and the
only writer of the published SystemSnapshot.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from ..config import settings
from ..errors import DeadlineExceeded, DependencyFailed, ReadinessError, ServiceFailed
from ..health.fsm import ServiceSnapshot, ServiceState, Transition
from ..health.monitor import HealthMonitor
from ..health.probes import Probe, build_probe
from ..reporting.reporter import StatusReporter
from ..services.models import ServiceDescriptor
from .graph import DependencyGraph
from .state import Aggregate, SystemSnapshot

logger = logging.getLogger(__name__)

DEADLINE_REASON = "startup deadline exceeded"

# Exit codes for the CLI wrapper
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEGRADED = 2
EXIT_INVALID = 3
EXIT_INTERRUPTED = 130


@dataclass
class ServiceDiagnostic:
    """What an operator needs to debug one service that is not healthy."""

    service_id: str
    state: ServiceState
    consecutive_failures: int
    last_message: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "last_message": self.last_message,
            "reason": self.reason,
        }


@dataclass
class RunResult:
    """Terminal outcome of one orchestration run."""

    snapshot: SystemSnapshot
    run_id: str = ""
    reason: str | None = None
    error: ReadinessError | None = None
    deadline_exceeded: bool = False
    aggregate_at_deadline: Aggregate | None = None
    duration_seconds: float = 0.0
    diagnostics: list[ServiceDiagnostic] = field(default_factory=list)

    @property
    def aggregate(self) -> Aggregate:
        return self.snapshot.aggregate

    @property
    def ok(self) -> bool:
        return self.aggregate is Aggregate.ALL_HEALTHY

    @property
    def exit_code(self) -> int:
        """0 healthy, 2 deadline hit, 1 a service failed first.

        The deadline can only fire while the aggregate is degraded, so a
        deadline run always exits 2.
        """
        if self.ok:
            return EXIT_OK
        if self.deadline_exceeded:
            return EXIT_DEGRADED
        return EXIT_FAILED

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "aggregate": self.aggregate.value,
            "reason": self.reason,
            "deadline_exceeded": self.deadline_exceeded,
            "aggregate_at_deadline": (
                self.aggregate_at_deadline.value if self.aggregate_at_deadline else None
            ),
            "duration_seconds": round(self.duration_seconds, 3),
            "exit_code": self.exit_code,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "snapshot": self.snapshot.to_dict(),
        }


def _default_probe(descriptor: ServiceDescriptor) -> Probe:
    return build_probe(descriptor.probe)


async def next_transition(
    queue: asyncio.Queue[Transition], timeout: float | None,
) -> Transition | None:
    """Next queued transition, or None once ``timeout`` expires.

    The getter is a task of its own, so an item taken off the queue as the
    timeout fires is returned rather than lost.
    """
    getter = asyncio.ensure_future(queue.get())
    try:
        await asyncio.wait({getter}, timeout=timeout)
    finally:
        if not getter.done():
            getter.cancel()
            await asyncio.gather(getter, return_exceptions=True)

    if not getter.cancelled():
        return getter.result()
    if not queue.empty():
        return queue.get_nowait()
    return None


class Orchestrator:
    """Brings a dependency graph up and blocks until it is ready or not.

    Usage:
        orchestrator = Orchestrator(graph, deadline_seconds=120)
        result = await orchestrator.run()
    """

    def __init__(
        self,
        graph: DependencyGraph,
        reporter: StatusReporter | None = None,
        deadline_seconds: float | None = None,
        probe_factory: Callable[[ServiceDescriptor], Probe] | None = None,
        max_workers: int | None = None,
        history_limit: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.graph = graph
        self.reporter = reporter or StatusReporter(queue_size=settings.subscriber_queue_size)
        self.deadline_seconds = deadline_seconds or None  # 0 disables
        self.run_id = uuid.uuid4().hex[:8]
        self._probe_factory = probe_factory or _default_probe
        # one worker per monitor, so no probe waits for a free thread
        self._max_workers = max(len(graph), max_workers or settings.probe_workers)
        self._clock = clock

        limit = history_limit or settings.history_limit
        self.monitors: dict[str, HealthMonitor] = {
            d.id: HealthMonitor(d, probe=self._probe_factory(d), clock=clock, history_limit=limit)
            for d in graph.descriptors()
        }
        self._services: dict[str, ServiceSnapshot] = {
            sid: m.status.snapshot() for sid, m in self.monitors.items()
        }
        self._version = 0
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._queue: asyncio.Queue[Transition] | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._forced: set[str] = set()
        self._root_cause: tuple[str, str] | None = None
        self._started = False

    @property
    def snapshot(self) -> SystemSnapshot:
        return self.reporter.snapshot()

    @property
    def active_services(self) -> list[str]:
        """Services whose monitor task has been started, in activation order."""
        return list(self._tasks)

    # -- run -------------------------------------------------------------------

    async def run(self) -> RunResult:
        """Block until all services are healthy, one fails, or the deadline hits."""
        if self._started:
            raise RuntimeError("Orchestrator.run() can only be called once")
        self._started = True

        self._queue = asyncio.Queue()
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="probe",
        )
        started = self._clock()
        deadline_at = started + self.deadline_seconds if self.deadline_seconds else None
        deadline_hit = False
        aggregate_at_deadline: Aggregate | None = None
        expired: list[str] = []

        self.reporter.begin(self.run_id, self._build_snapshot())
        logger.info(
            "Run %s started: %d services, deadline=%s",
            self.run_id, len(self.graph),
            f"{self.deadline_seconds:g}s" if self.deadline_seconds else "none",
        )

        verdict_reached = False
        try:
            for monitor in self.monitors.values():
                self._apply(monitor.mark_waiting())
            for sid in self.graph.roots():
                self._activate(sid)

            while self.snapshot.aggregate is Aggregate.DEGRADED:
                timeout = None if deadline_at is None else max(deadline_at - self._clock(), 0.0)
                transition = await next_transition(self._queue, timeout)
                if transition is not None:
                    self._handle(transition)
                    continue

                # Transitions that arrived with the deadline still count
                while not self._queue.empty() and self.snapshot.aggregate is Aggregate.DEGRADED:
                    self._handle(self._queue.get_nowait(), activate=False)
                if self.snapshot.aggregate is Aggregate.DEGRADED:
                    deadline_hit = True
                    aggregate_at_deadline = self.snapshot.aggregate
                    expired = self._expire()
                break
            verdict_reached = True
        finally:
            # After an all-healthy verdict later transitions are steady-state
            # noise and are not applied to the terminal snapshot.
            drain = not verdict_reached or self.snapshot.aggregate is not Aggregate.ALL_HEALTHY
            await self._shutdown(drain=drain)

        result = self._result(
            duration=self._clock() - started,
            deadline_hit=deadline_hit,
            aggregate_at_deadline=aggregate_at_deadline,
            expired=expired,
        )
        self.reporter.close(result.aggregate.value, result.reason)
        logger.info(
            "Run %s finished: %s in %.1fs%s",
            self.run_id, result.aggregate.value, result.duration_seconds,
            f" ({result.reason})" if result.reason else "",
        )
        return result

    # -- transitions -----------------------------------------------------------

    def _handle(self, transition: Transition, activate: bool = True) -> None:
        self._apply(transition)
        sid = transition.service_id

        if transition.to_state is ServiceState.HEALTHY and activate:
            healthy = {s for s, snap in self._services.items() if snap.state is ServiceState.HEALTHY}
            for dependent in self.graph.unblocked_by(sid, healthy):
                if dependent not in self._tasks and self.monitors[dependent].state is ServiceState.WAITING:
                    self._activate(dependent)

        elif transition.to_state is ServiceState.FAILED:
            if sid not in self._forced and self._root_cause is None:
                self._root_cause = (sid, transition.reason)
            for dependent in self.graph.transitive_dependents(sid):
                self._force_fail(dependent, str(DependencyFailed(dependent, sid)))

    def _apply(self, transition: Transition) -> None:
        """Fold one transition into the service map and publish a new snapshot."""
        self._services[transition.service_id] = transition.status
        self.reporter.publish(self._build_snapshot(), transition)

        level = logging.WARNING if transition.to_state in (
            ServiceState.UNHEALTHY, ServiceState.FAILED,
        ) else logging.INFO
        logger.log(
            level, "%s: %s -> %s (%s)",
            transition.service_id, transition.from_state.value,
            transition.to_state.value, transition.reason,
        )

    def _build_snapshot(self) -> SystemSnapshot:
        self._version += 1
        return SystemSnapshot.build(self._services, self._version)

    # -- monitors --------------------------------------------------------------

    def _activate(self, service_id: str) -> None:
        monitor = self.monitors[service_id]
        logger.info("Activating monitor for %s", service_id)
        self._tasks[service_id] = asyncio.create_task(
            self._supervise(monitor), name=f"monitor-{service_id}",
        )

    async def _supervise(self, monitor: HealthMonitor) -> None:
        """Run a monitor; a crash fails the service instead of stalling the run."""
        assert self._queue is not None
        try:
            await monitor.run(self._queue.put_nowait, self._executor)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Monitor for %s crashed", monitor.service_id)
            transition = monitor.fail(f"monitor crashed: {type(e).__name__}: {e}")
            if transition:
                self._queue.put_nowait(transition)

    def _force_fail(self, service_id: str, reason: str) -> None:
        """Cancel a service's monitor and fail it without probing again."""
        assert self._queue is not None
        task = self._tasks.get(service_id)
        if task and not task.done():
            task.cancel()
        transition = self.monitors[service_id].fail(reason)
        if transition:
            self._forced.add(service_id)
            self._queue.put_nowait(transition)

    def _expire(self) -> list[str]:
        """Deadline hit: fail every service that has not become healthy."""
        pending = [
            sid for sid, m in self.monitors.items()
            if m.state not in (ServiceState.HEALTHY, ServiceState.FAILED)
        ]
        logger.warning(
            "Startup deadline of %gs exceeded; not healthy: %s",
            self.deadline_seconds, ", ".join(pending) or "none",
        )
        for sid in pending:
            self._force_fail(sid, DEADLINE_REASON)
        return pending

    async def _shutdown(self, drain: bool) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if drain and self._queue is not None:
            while not self._queue.empty():
                self._handle(self._queue.get_nowait(), activate=False)
            self._services = {sid: m.status.snapshot() for sid, m in self.monitors.items()}
            self.reporter.publish(self._build_snapshot())

        if self._executor is not None:
            self._executor.shutdown(wait=False)

    # -- result ----------------------------------------------------------------

    def _result(
        self,
        duration: float,
        deadline_hit: bool,
        aggregate_at_deadline: Aggregate | None,
        expired: list[str],
    ) -> RunResult:
        snapshot = self.snapshot
        diagnostics = [
            ServiceDiagnostic(
                service_id=s.service_id,
                state=s.state,
                consecutive_failures=s.consecutive_failures,
                last_message=s.last_message,
                reason=s.reason,
            )
            for s in snapshot.not_healthy()
        ]

        reason: str | None = None
        error: ReadinessError | None = None
        if snapshot.aggregate is not Aggregate.ALL_HEALTHY:
            if deadline_hit:
                error = DeadlineExceeded(self.deadline_seconds or 0.0, expired)
                reason = DEADLINE_REASON
            elif self._root_cause is not None:
                error = ServiceFailed(*self._root_cause)
                reason = str(error)
            else:
                reason = "run ended before all services were healthy"

        return RunResult(
            snapshot=snapshot,
            run_id=self.run_id,
            reason=reason,
            error=error,
            deadline_exceeded=deadline_hit,
            aggregate_at_deadline=aggregate_at_deadline,
            duration_seconds=duration,
            diagnostics=diagnostics,
        )
