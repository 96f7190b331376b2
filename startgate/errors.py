"""Error taxonomy for registry loading, graph construction, probing and runs."""

from __future__ import annotations

from typing import Any


class ReadinessError(Exception):
    """Base class for every error raised by startgate."""


class RegistryError(ReadinessError):
    """Raised when the service registry cannot be read or fails validation."""

    def __init__(self, message: str, issues: list[dict[str, Any]] | None = None) -> None:
        self.issues = issues or []
        super().__init__(message)


class GraphConstructionError(ReadinessError):
    """Raised when the dependency graph is cyclic or references unknown ids.

    ``issues`` is a list of ``GraphIssue`` objects, one per offending edge.
    """

    def __init__(self, issues: list[Any]) -> None:
        self.issues = list(issues)
        kinds = sorted({i.kind for i in self.issues})
        super().__init__(
            f"Invalid dependency graph: {len(self.issues)} issue(s) ({', '.join(kinds)})"
        )

    def to_list(self) -> list[dict[str, Any]]:
        return [i.to_dict() for i in self.issues]


class IllegalTransitionError(ReadinessError):
    """Raised when a state machine is asked to make a jump it does not allow."""

    def __init__(self, service_id: str, from_state: Any, to_state: Any) -> None:
        self.service_id = service_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal transition for '{service_id}': {from_state.value} -> {to_state.value}"
        )


class ProbeFailure(ReadinessError):
    """A probe ran and the target did not pass."""


class ProbeTimeout(ReadinessError):
    """A probe did not complete within its per-attempt timeout."""


class DependencyFailed(ReadinessError):
    """A service was failed because one of its dependencies failed."""

    def __init__(self, service_id: str, dependency_id: str) -> None:
        self.service_id = service_id
        self.dependency_id = dependency_id
        super().__init__(f"dependency '{dependency_id}' failed")


class ServiceFailed(ReadinessError):
    """A service exhausted its failure budget during startup."""

    def __init__(self, service_id: str, reason: str) -> None:
        self.service_id = service_id
        self.reason = reason
        super().__init__(f"service '{service_id}' failed: {reason}")


class DeadlineExceeded(ReadinessError):
    """The global startup deadline expired before the system was healthy."""

    def __init__(self, deadline_seconds: float, service_ids: list[str]) -> None:
        self.deadline_seconds = deadline_seconds
        self.service_ids = service_ids
        super().__init__(
            f"startup deadline exceeded after {deadline_seconds:g}s "
            f"({len(service_ids)} service(s) not healthy: {', '.join(service_ids)})"
        )
