"""Pydantic models for service descriptors and their probe specs."""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ProbeKind(str, Enum):
    CONNECTIVITY = "connectivity"
    HANDSHAKE = "handshake"
    COMMAND = "command"


class ProbeSpec(BaseModel):
    """How one service is probed: what, how often, and how patiently."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ProbeKind
    target: str = Field(min_length=1)
    interval_seconds: float = Field(default=5.0, gt=0)
    timeout_seconds: float = Field(default=2.0, gt=0)
    success_threshold: int = Field(default=1, ge=1)
    retries: int = Field(default=3, ge=1)
    start_period_seconds: float = Field(default=0.0, ge=0)
    jitter: float = Field(default=0.1, ge=0, lt=1)

    # handshake only
    method: str = "GET"
    expected_status: int = 200
    expect: str = ""  # regex matched against the response body / banner
    send: str = ""  # bytes written before reading, for line protocols

    @field_validator("expect")
    @classmethod
    def _expect_is_regex(cls, v: str) -> str:
        if v:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"invalid 'expect' pattern: {e}") from e
        return v

    @model_validator(mode="after")
    def _timeout_below_interval(self) -> ProbeSpec:
        if self.timeout_seconds >= self.interval_seconds:
            raise ValueError(
                f"timeout_seconds ({self.timeout_seconds:g}) must be shorter than "
                f"interval_seconds ({self.interval_seconds:g})"
            )
        return self


class ServiceDescriptor(BaseModel):
    """A registered service: its probe and the services it needs healthy first."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    probe: ProbeSpec
    depends_on: frozenset[str] = frozenset()
    description: str = ""

    @field_validator("depends_on", mode="before")
    @classmethod
    def _none_is_empty(cls, v: object) -> object:
        return v if v is not None else frozenset()
