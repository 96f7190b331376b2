"""System-wide readiness snapshot and its derived aggregate."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

from ..health.fsm import ServiceSnapshot, ServiceState


class Aggregate(str, Enum):
    ALL_HEALTHY = "all_healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


def compute_aggregate(states: Iterable[ServiceState]) -> Aggregate:
    """Failed if anything failed, all_healthy if everything is healthy."""
    states = list(states)
    if any(s is ServiceState.FAILED for s in states):
        return Aggregate.FAILED
    if all(s is ServiceState.HEALTHY for s in states):
        return Aggregate.ALL_HEALTHY
    return Aggregate.DEGRADED


@dataclass(frozen=True)
class SystemSnapshot:
    """Immutable view of every service's status at one instant.

    A new snapshot replaces the old one on every transition; a reader
    holding a reference always sees a consistent picture.
    """

    services: Mapping[str, ServiceSnapshot] = field(
        default_factory=lambda: MappingProxyType({})
    )
    aggregate: Aggregate = Aggregate.DEGRADED
    version: int = 0
    updated_at: str = ""

    @classmethod
    def build(cls, services: Mapping[str, ServiceSnapshot], version: int) -> SystemSnapshot:
        frozen = MappingProxyType(dict(services))
        return cls(
            services=frozen,
            aggregate=compute_aggregate(s.state for s in frozen.values()),
            version=version,
            updated_at=datetime.now(timezone.utc).isoformat(),
        )

    def state_of(self, service_id: str) -> ServiceState | None:
        snap = self.services.get(service_id)
        return snap.state if snap else None

    def not_healthy(self) -> list[ServiceSnapshot]:
        return [s for s in self.services.values() if s.state is not ServiceState.HEALTHY]

    def to_dict(self) -> dict[str, Any]:
        return {
            "aggregate": self.aggregate.value,
            "version": self.version,
            "updated_at": self.updated_at,
            "services": {sid: s.to_dict() for sid, s in self.services.items()},
        }
