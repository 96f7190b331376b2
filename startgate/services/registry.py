"""Service registry — loads services.yaml into typed descriptors.

Single source of truth for what gets probed and in which order.
The orchestrator, the CLI and the HTTP surface all consume this.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ..config import settings
from ..errors import RegistryError
from .models import ServiceDescriptor

logger = logging.getLogger(__name__)


# ── Registry ─────────────────────────────────────────────────────────────────


class ServiceRegistry:
    """Loads and caches service descriptors and profiles from a YAML file."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path or settings.registry_path)
        self._services: list[ServiceDescriptor] = []
        self._profiles: dict[str, list[str]] = {}
        self._deadline_seconds: float | None = None
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> list[ServiceDescriptor]:
        """Parse the registry file and return the descriptor list.

        Raises ``RegistryError`` listing every problem found, so a broken
        registry is reported in full before anything is probed.
        """
        if self._loaded and not force:
            return self._services

        if not self._path.exists():
            raise RegistryError(f"Registry file not found: {self._path}")

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise RegistryError(f"Failed to parse {self._path}: {e}") from e

        if not isinstance(raw, dict):
            raise RegistryError(f"{self._path}: top level must be a mapping")

        services, issues = _parse_services(raw.get("services") or [])
        profiles, profile_issues = _parse_profiles(
            raw.get("profiles") or {}, {s.id for s in services},
        )
        issues.extend(profile_issues)

        deadline = raw.get("deadline_seconds")
        if deadline is not None and (not isinstance(deadline, (int, float)) or deadline < 0):
            issues.append({
                "kind": "invalid_deadline",
                "message": f"deadline_seconds must be a non-negative number, got {deadline!r}",
            })
            deadline = None

        if issues:
            raise RegistryError(
                f"{self._path}: {len(issues)} registry problem(s)", issues=issues,
            )

        self._services = services
        self._profiles = profiles
        self._deadline_seconds = float(deadline) if deadline is not None else None
        self._loaded = True
        logger.info("Loaded %d services from %s", len(services), self._path)
        return self._services

    @property
    def services(self) -> list[ServiceDescriptor]:
        return self.load()

    @property
    def profiles(self) -> dict[str, list[str]]:
        self.load()
        return self._profiles

    @property
    def deadline_seconds(self) -> float | None:
        """Deadline declared in the registry file, if any."""
        self.load()
        return self._deadline_seconds

    def effective_deadline(self, override: float | None = None) -> float | None:
        """Explicit override, else the registry's value, else settings (0 = none)."""
        if override is not None:
            deadline = override
        elif self.deadline_seconds is not None:
            deadline = self.deadline_seconds
        else:
            deadline = settings.startup_deadline_seconds
        return deadline or None

    def get(self, service_id: str) -> ServiceDescriptor | None:
        return next((s for s in self.services if s.id == service_id), None)

    def select(self, profile: str | None = None) -> list[ServiceDescriptor]:
        """Return the services of ``profile`` plus everything they depend on.

        With no profile every registered service is returned. Unknown
        dependency ids are kept on the descriptors so graph construction
        can report them.
        """
        services = self.services
        if not profile:
            return list(services)

        if profile not in self._profiles:
            raise RegistryError(
                f"Unknown profile '{profile}'",
                issues=[{
                    "kind": "unknown_profile",
                    "profile": profile,
                    "available": sorted(self._profiles),
                }],
            )

        by_id = {s.id: s for s in services}
        wanted: set[str] = set()
        stack = list(self._profiles[profile])
        while stack:
            sid = stack.pop()
            if sid in wanted or sid not in by_id:
                continue
            wanted.add(sid)
            stack.extend(by_id[sid].depends_on)

        pulled_in = wanted - set(self._profiles[profile])
        if pulled_in:
            logger.info(
                "Profile '%s' pulls in dependencies: %s", profile, ", ".join(sorted(pulled_in)),
            )
        return [s for s in services if s.id in wanted]

    def to_dict(self) -> dict[str, Any]:
        """Serialize the registry for the API."""
        return {
            "path": str(self._path),
            "deadline_seconds": self.deadline_seconds,
            "profiles": self.profiles,
            "services": [s.model_dump(mode="json") for s in self.services],
        }

    def reload(self) -> list[ServiceDescriptor]:
        """Force reload from disk."""
        return self.load(force=True)


# ── Parsers ──────────────────────────────────────────────────────────────────


def _parse_services(
    entries: list[Any],
) -> tuple[list[ServiceDescriptor], list[dict[str, Any]]]:
    services: list[ServiceDescriptor] = []
    issues: list[dict[str, Any]] = []

    if not isinstance(entries, list):
        return services, [{"kind": "invalid_services", "message": "'services' must be a list"}]

    for idx, entry in enumerate(entries):
        label = entry.get("id", f"#{idx}") if isinstance(entry, dict) else f"#{idx}"
        try:
            services.append(ServiceDescriptor.model_validate(entry))
        except ValidationError as e:
            issues.append({
                "kind": "invalid_service",
                "service_id": label,
                "errors": [
                    {"loc": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in e.errors()
                ],
            })
    return services, issues


def _parse_profiles(
    raw: Any, known_ids: set[str],
) -> tuple[dict[str, list[str]], list[dict[str, Any]]]:
    profiles: dict[str, list[str]] = {}
    issues: list[dict[str, Any]] = []

    if not isinstance(raw, dict):
        return profiles, [{"kind": "invalid_profiles", "message": "'profiles' must be a mapping"}]

    for name, members in raw.items():
        if not isinstance(members, list):
            issues.append({
                "kind": "invalid_profile",
                "profile": name,
                "message": "profile must be a list of service ids",
            })
            continue
        for sid in members:
            if sid not in known_ids:
                issues.append({"kind": "unknown_profile_service", "profile": name, "service_id": sid})
        profiles[str(name)] = [str(m) for m in members]
    return profiles, issues
