"""Health monitor — drives one service's probe schedule and state machine.

The monitor never talks to other services. Every transition it makes is
handed to ``emit`` (the orchestrator's queue) in the order it happened.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from concurrent.futures import Executor

from ..services.models import ServiceDescriptor
from .fsm import HealthStateMachine, ServiceState, ServiceStatus, Transition
from .probes import Probe, ProbeResult, build_probe, execute_probe

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Owns one service's probe loop and readiness state.

    Lifecycle:
        monitor = HealthMonitor(descriptor)
        monitor.mark_waiting()
        task = asyncio.create_task(monitor.run(queue.put_nowait, executor))
        ...
        task.cancel()
    """

    def __init__(
        self,
        descriptor: ServiceDescriptor,
        probe: Probe | None = None,
        clock: Callable[[], float] = time.monotonic,
        history_limit: int = 20,
        rng: random.Random | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.spec = descriptor.probe
        self.probe = probe or build_probe(self.spec)
        self.fsm = HealthStateMachine(descriptor.id, self.spec, history_limit=history_limit)
        self._clock = clock
        self._rng = rng or random.Random()

    @property
    def service_id(self) -> str:
        return self.descriptor.id

    @property
    def state(self) -> ServiceState:
        return self.fsm.state

    @property
    def status(self) -> ServiceStatus:
        return self.fsm.status

    @property
    def last_result(self) -> ProbeResult | None:
        history = self.fsm.status.history
        return history[-1] if history else None

    def mark_waiting(self) -> Transition:
        return self.fsm.mark_waiting()

    def fail(self, reason: str) -> Transition | None:
        return self.fsm.fail(reason)

    async def run(
        self,
        emit: Callable[[Transition], None],
        executor: Executor | None = None,
    ) -> None:
        """Probe until the service fails or the task is cancelled."""
        emit(self.fsm.start_probing(self._clock()))
        logger.info(
            "Probing %s (%s %s, every %gs)",
            self.service_id, self.spec.kind.value, self.spec.target, self.spec.interval_seconds,
        )

        while self.fsm.state is not ServiceState.FAILED:
            started = self._clock()
            result = await execute_probe(self.service_id, self.probe, self.spec, executor)
            logger.debug(
                "Probe %s: %s (%dms) %s",
                self.service_id, result.outcome.value, result.latency_ms, result.message,
            )

            for transition in self.fsm.record(result, self._clock()):
                emit(transition)
            if self.fsm.state is ServiceState.FAILED:
                break

            await asyncio.sleep(self.next_delay(self._clock() - started))

    def next_delay(self, elapsed: float) -> float:
        """Seconds until the next probe slot, with jitter against bursts."""
        interval = self.spec.interval_seconds
        if self.spec.jitter:
            interval *= 1 + self._rng.uniform(-self.spec.jitter, self.spec.jitter)
        return max(interval - elapsed, 0.0)
