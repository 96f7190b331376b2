"""Probe executor — runs one typed health check and returns a ProbeResult.

Supports: TCP connectivity, protocol handshake (HTTP(S) or a raw line
protocol), and command checks. Each probe raises ``ProbeFailure`` /
``ProbeTimeout`` on failure; ``execute_probe`` turns every error into a
failure or timeout outcome so nothing escapes a monitor's loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import socket
import subprocess
import sys
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

import httpx

from ..errors import ProbeFailure, ProbeTimeout
from ..services.models import ProbeKind, ProbeSpec

logger = logging.getLogger(__name__)


# ── Models ───────────────────────────────────────────────────────────────────


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass
class ProbeResult:
    """Result of a single probe attempt."""

    service_id: str
    outcome: Outcome
    latency_ms: float
    message: str = ""
    timestamp: str = ""

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def to_dict(self) -> dict[str, object]:
        return {
            "service_id": self.service_id,
            "outcome": self.outcome.value,
            "latency_ms": self.latency_ms,
            "message": self.message,
            "timestamp": self.timestamp,
        }


class Probe(Protocol):
    """One health check capability: pass returns a message, failure raises."""

    def execute(self, target: str, timeout: float) -> str: ...


def _split_host_port(target: str) -> tuple[str, int]:
    """Parse ``host:port`` (optionally ``tcp://host:port``)."""
    if "://" in target:
        target = target.split("://", 1)[1]
    host, sep, port = target.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ProbeFailure(f"Invalid target '{target}', expected host:port")
    return host.strip("[]"), int(port)


# ── Probe kinds ──────────────────────────────────────────────────────────────


class ConnectivityProbe:
    """Raw TCP port connectivity check."""

    def execute(self, target: str, timeout: float) -> str:
        host, port = _split_host_port(target)
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
            sock.close()
        except socket.timeout:
            raise ProbeTimeout(f"TCP connect to {host}:{port} timed out ({timeout:g}s)")
        except OSError as e:
            raise ProbeFailure(f"TCP connect to {host}:{port} failed: {e}")
        return f"Port {port} open"


class HandshakeProbe:
    """Protocol handshake — HTTP(S) status/body, or send/expect over TCP."""

    def __init__(
        self,
        method: str = "GET",
        expected_status: int = 200,
        expect: str = "",
        send: str = "",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.method = method
        self.expected_status = expected_status
        self.expect = re.compile(expect) if expect else None
        self.send = send
        self._transport = transport  # injectable for tests

    def execute(self, target: str, timeout: float) -> str:
        if target.startswith(("http://", "https://")):
            return self._http(target, timeout)
        return self._line(target, timeout)

    def _http(self, url: str, timeout: float) -> str:
        try:
            with httpx.Client(
                timeout=timeout, follow_redirects=True, transport=self._transport,
            ) as client:
                resp = client.request(self.method, url)
        except httpx.TimeoutException:
            raise ProbeTimeout(f"{self.method} {url} timed out ({timeout:g}s)")
        except httpx.HTTPError as e:
            raise ProbeFailure(f"{self.method} {url} failed: {type(e).__name__}: {e}")

        if resp.status_code != self.expected_status:
            raise ProbeFailure(f"Expected {self.expected_status}, got {resp.status_code}")
        if self.expect and not self.expect.search(resp.text):
            raise ProbeFailure(
                f"{resp.status_code} but body did not match /{self.expect.pattern}/"
            )
        return f"{resp.status_code} OK"

    def _line(self, target: str, timeout: float) -> str:
        host, port = _split_host_port(target)
        deadline = time.monotonic() + timeout
        received = b""
        try:
            with socket.create_connection((host, port), timeout=timeout) as sock:
                if self.send:
                    sock.sendall(self.send.encode())
                if not self.expect:
                    return f"Handshake with {host}:{port} completed"
                while True:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise socket.timeout()
                    sock.settimeout(remaining)
                    chunk = sock.recv(1024)
                    if not chunk:
                        break
                    received += chunk
                    if self.expect.search(received.decode(errors="replace")):
                        return f"Handshake with {host}:{port} matched /{self.expect.pattern}/"
        except socket.timeout:
            raise ProbeTimeout(f"Handshake with {host}:{port} timed out ({timeout:g}s)")
        except OSError as e:
            raise ProbeFailure(f"Handshake with {host}:{port} failed: {e}")

        shown = received.decode(errors="replace").strip()[:80]
        raise ProbeFailure(
            f"Connection closed before /{self.expect.pattern}/ matched (got {shown!r})"
        )


class CommandProbe:
    """Runs a check command through the shell; exit code 0 passes."""

    def execute(self, target: str, timeout: float) -> str:
        if sys.platform == "win32":
            cmd = ["cmd", "/c", target]
        else:
            cmd = ["sh", "-c", target]

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            raise ProbeFailure(f"Command could not start: {e}")

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_tree(proc)
            raise ProbeTimeout(f"Command timed out after {timeout:g}s")

        if proc.returncode != 0:
            tail = (stderr or stdout).strip().splitlines()
            detail = f": {tail[-1][:200]}" if tail else ""
            raise ProbeFailure(f"Command exited {proc.returncode}{detail}")
        return "Command exited 0"


def _kill_tree(proc: subprocess.Popen[str]) -> None:
    """Kill the command and anything it spawned, then reap it."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass
    proc.communicate()


def build_probe(spec: ProbeSpec) -> Probe:
    """Map a probe kind onto its implementation."""
    if spec.kind is ProbeKind.CONNECTIVITY:
        return ConnectivityProbe()
    if spec.kind is ProbeKind.HANDSHAKE:
        return HandshakeProbe(
            method=spec.method,
            expected_status=spec.expected_status,
            expect=spec.expect,
            send=spec.send,
        )
    if spec.kind is ProbeKind.COMMAND:
        return CommandProbe()
    raise ValueError(f"Unknown probe kind: {spec.kind}")


# ── Executor ─────────────────────────────────────────────────────────────────


async def execute_probe(
    service_id: str,
    probe: Probe,
    spec: ProbeSpec,
    executor: Executor | None = None,
) -> ProbeResult:
    """Run one probe in ``executor`` and classify the outcome.

    The timeout is enforced here as well as inside the probe, so a probe
    that ignores its own timeout still cannot stall the monitor. The clock
    starts when a worker picks the probe up, not when it is queued. Only
    cancellation propagates.
    """
    loop = asyncio.get_running_loop()
    started: asyncio.Future[None] = loop.create_future()

    def run() -> str:
        loop.call_soon_threadsafe(_mark_started, started)
        return probe.execute(spec.target, spec.timeout_seconds)

    t0 = time.perf_counter()
    try:
        pending = loop.run_in_executor(executor, run)
        try:
            # queue time behind other probes is not part of the timeout
            await asyncio.wait({started, pending}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            pending.cancel()
            raise
        t0 = time.perf_counter()
        message = await asyncio.wait_for(pending, timeout=spec.timeout_seconds)
        outcome = Outcome.SUCCESS
    except (ProbeTimeout, asyncio.TimeoutError) as e:
        outcome = Outcome.TIMEOUT
        message = str(e) or f"Probe timed out ({spec.timeout_seconds:g}s)"
    except ProbeFailure as e:
        outcome = Outcome.FAILURE
        message = str(e)
    except Exception as e:
        outcome = Outcome.FAILURE
        message = f"Error: {type(e).__name__}: {e}"

    latency = (time.perf_counter() - t0) * 1000
    return ProbeResult(
        service_id=service_id,
        outcome=outcome,
        latency_ms=round(latency, 1),
        message=str(message),
    )


def _mark_started(started: asyncio.Future[None]) -> None:
    if not started.done():
        started.set_result(None)
