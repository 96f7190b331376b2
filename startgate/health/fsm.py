"""Per-service readiness state machine.

    pending -> waiting -> probing -> healthy <-> unhealthy -> failed

Any state may jump straight to ``failed`` (dependency failed, deadline).
Failures inside the start period are recorded but never counted, so a
service warming up is not mistaken for a broken one.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import IllegalTransitionError
from ..services.models import ProbeSpec
from .probes import ProbeResult

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    PENDING = "pending"
    WAITING = "waiting"
    PROBING = "probing"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[ServiceState, frozenset[ServiceState]] = {
    ServiceState.PENDING: frozenset({ServiceState.WAITING, ServiceState.FAILED}),
    ServiceState.WAITING: frozenset({ServiceState.PROBING, ServiceState.FAILED}),
    ServiceState.PROBING: frozenset(
        {ServiceState.HEALTHY, ServiceState.UNHEALTHY, ServiceState.FAILED}
    ),
    ServiceState.HEALTHY: frozenset({ServiceState.UNHEALTHY, ServiceState.FAILED}),
    ServiceState.UNHEALTHY: frozenset({ServiceState.HEALTHY, ServiceState.FAILED}),
    ServiceState.FAILED: frozenset(),
}

# States in which probe results are fed to the machine
_PROBED_STATES = frozenset({ServiceState.PROBING, ServiceState.HEALTHY, ServiceState.UNHEALTHY})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ServiceSnapshot:
    """Point-in-time copy of one service's status."""

    service_id: str
    state: ServiceState
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    probes_run: int = 0
    last_transition_at: str = ""
    last_message: str = ""
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "consecutive_successes": self.consecutive_successes,
            "consecutive_failures": self.consecutive_failures,
            "probes_run": self.probes_run,
            "last_transition_at": self.last_transition_at,
            "last_message": self.last_message,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Transition:
    """One state change of one service."""

    service_id: str
    from_state: ServiceState
    to_state: ServiceState
    reason: str
    sequence: int
    status: ServiceSnapshot
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "service_id": self.service_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "reason": self.reason,
            "sequence": self.sequence,
            "consecutive_failures": self.status.consecutive_failures,
            "last_message": self.status.last_message,
        }


@dataclass
class ServiceStatus:
    """Mutable status of one service, owned by its state machine."""

    service_id: str
    state: ServiceState = ServiceState.PENDING
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    probes_run: int = 0
    last_transition_at: str = field(default_factory=_now_iso)
    last_message: str = ""
    reason: str = ""
    history: deque[ProbeResult] = field(default_factory=lambda: deque(maxlen=20))

    def snapshot(self) -> ServiceSnapshot:
        return ServiceSnapshot(
            service_id=self.service_id,
            state=self.state,
            consecutive_successes=self.consecutive_successes,
            consecutive_failures=self.consecutive_failures,
            probes_run=self.probes_run,
            last_transition_at=self.last_transition_at,
            last_message=self.last_message,
            reason=self.reason,
        )


class HealthStateMachine:
    """Applies probe results to one service's status under its probe spec.

    Pure bookkeeping: no I/O, no clocks of its own. Callers pass monotonic
    ``now`` values so grace windows are testable.
    """

    def __init__(self, service_id: str, spec: ProbeSpec, history_limit: int = 20) -> None:
        self.service_id = service_id
        self.spec = spec
        self.status = ServiceStatus(
            service_id=service_id, history=deque(maxlen=max(history_limit, 1)),
        )
        self._sequence = 0
        self._probing_since: float | None = None

    @property
    def state(self) -> ServiceState:
        return self.status.state

    def in_grace(self, now: float) -> bool:
        """True while failures are not yet counted against the budget."""
        if self._probing_since is None:
            return False
        return now - self._probing_since < self.spec.start_period_seconds

    # -- lifecycle -------------------------------------------------------------

    def mark_waiting(self) -> Transition:
        return self._transition(ServiceState.WAITING, "dependency graph ready")

    def start_probing(self, now: float) -> Transition:
        transition = self._transition(ServiceState.PROBING, "dependencies healthy")
        self._probing_since = now
        return transition

    def fail(self, reason: str) -> Transition | None:
        """Force ``failed``; returns None if the service already failed."""
        if self.status.state is ServiceState.FAILED:
            return None
        return self._transition(ServiceState.FAILED, reason)

    # -- probe results ---------------------------------------------------------

    def record(self, result: ProbeResult, now: float) -> list[Transition]:
        """Feed one probe result; returns the transitions it caused, in order."""
        status = self.status
        if status.state not in _PROBED_STATES:
            logger.debug(
                "Ignoring probe result for %s in state %s", self.service_id, status.state.value,
            )
            return []

        status.history.append(result)
        status.probes_run += 1
        status.last_message = result.message

        if result.ok:
            status.consecutive_successes += 1
            status.consecutive_failures = 0
            if (
                status.state in (ServiceState.PROBING, ServiceState.UNHEALTHY)
                and status.consecutive_successes >= self.spec.success_threshold
            ):
                return [self._transition(
                    ServiceState.HEALTHY,
                    f"{status.consecutive_successes} consecutive successful probe(s)",
                )]
            return []

        status.consecutive_successes = 0
        if self.in_grace(now):
            logger.debug(
                "%s: %s during start period (not counted): %s",
                self.service_id, result.outcome.value, result.message,
            )
            return []

        status.consecutive_failures += 1
        transitions = []
        if status.state in (ServiceState.PROBING, ServiceState.HEALTHY):
            transitions.append(self._transition(
                ServiceState.UNHEALTHY, f"probe {result.outcome.value}: {result.message}",
            ))
        if status.consecutive_failures >= self.spec.retries:
            transitions.append(self._transition(
                ServiceState.FAILED,
                f"{status.consecutive_failures} consecutive failed probe(s), "
                f"last: {result.message}",
            ))
        return transitions

    # -- internals -------------------------------------------------------------

    def _transition(self, to_state: ServiceState, reason: str) -> Transition:
        from_state = self.status.state
        if to_state not in ALLOWED_TRANSITIONS[from_state]:
            raise IllegalTransitionError(self.service_id, from_state, to_state)

        self._sequence += 1
        self.status.state = to_state
        self.status.reason = reason
        self.status.last_transition_at = _now_iso()
        return Transition(
            service_id=self.service_id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            sequence=self._sequence,
            status=self.status.snapshot(),
            timestamp=self.status.last_transition_at,
        )
