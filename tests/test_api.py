"""Tests for the FastAPI routes."""

from __future__ import annotations

import json
import time
from pathlib import Path

import pytest
import yaml
from fastapi.testclient import TestClient

from conftest import ScriptedProbe
from startgate.api.server import create_app
from startgate.services.registry import ServiceRegistry


def _registry(tmp_path: Path, services: list[dict]) -> ServiceRegistry:
    path = tmp_path / "services.yaml"
    path.write_text(yaml.dump({"deadline_seconds": 5, "services": services}))
    return ServiceRegistry(path)


def _svc(sid, deps=(), **probe):
    return {
        "id": sid,
        "depends_on": list(deps),
        "probe": {
            "kind": "command", "target": f"check-{sid}",
            "interval_seconds": 0.05, "timeout_seconds": 0.04, "jitter": 0, **probe,
        },
    }


def wait_for_result(client: TestClient, attempts: int = 200) -> dict:
    for _ in range(attempts):
        resp = client.get("/api/result")
        if resp.status_code != 202:
            assert resp.status_code == 200
            return resp.json()
        time.sleep(0.02)
    raise AssertionError("run did not finish")


@pytest.fixture
def healthy_client(tmp_path):
    registry = _registry(tmp_path, [_svc("db"), _svc("api", deps=["db"])])
    app = create_app(registry=registry, probe_factory=lambda d: ScriptedProbe(["ok"]))
    with TestClient(app) as client:
        yield client


@pytest.fixture
def failing_client(tmp_path):
    registry = _registry(tmp_path, [_svc("db", retries=1), _svc("api", deps=["db"])])
    probes = {"db": ScriptedProbe(["fail"]), "api": ScriptedProbe(["ok"])}
    app = create_app(registry=registry, probe_factory=lambda d: probes[d.id])
    with TestClient(app) as client:
        yield client


# ── HTTP routes ──────────────────────────────────────────────────────────────


class TestStatusRoutes:
    def test_result_all_healthy(self, healthy_client) -> None:
        data = wait_for_result(healthy_client)
        assert data["finished"] is True
        assert data["aggregate"] == "all_healthy"
        assert data["exit_code"] == 0

    def test_status(self, healthy_client) -> None:
        wait_for_result(healthy_client)
        resp = healthy_client.get("/api/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["aggregate"] == "all_healthy"
        assert data["finished"] is True
        assert data["run_id"]
        assert set(data["services"]) == {"db", "api"}

    def test_transitions(self, healthy_client) -> None:
        wait_for_result(healthy_client)
        data = healthy_client.get("/api/transitions").json()
        api = [t["to_state"] for t in data["transitions"] if t["service_id"] == "api"]
        assert api == ["waiting", "probing", "healthy"]

        only_db = healthy_client.get("/api/transitions", params={"service_id": "db"}).json()
        assert {t["service_id"] for t in only_db["transitions"]} == {"db"}

    def test_graph(self, healthy_client) -> None:
        data = healthy_client.get("/api/graph").json()
        assert data["batches"] == [["db"], ["api"]]
        assert data["edges"] == [{"service_id": "api", "dependency_id": "db"}]

    def test_result_failed(self, failing_client) -> None:
        data = wait_for_result(failing_client)
        assert data["aggregate"] == "failed"
        assert data["exit_code"] == 1
        assert data["reason"].startswith("service 'db' failed")
        api = data["snapshot"]["services"]["api"]
        assert api["reason"] == "dependency 'db' failed"

    def test_stream_after_finish(self, healthy_client) -> None:
        wait_for_result(healthy_client)
        with healthy_client.stream("GET", "/api/stream") as resp:
            assert resp.status_code == 200
            assert resp.headers["content-type"].startswith("text/event-stream")
            body = "".join(resp.iter_text())

        events = [block for block in body.split("\n\n") if block.strip()]
        assert events[0].startswith("event: init")
        assert events[-1].startswith("event: done")
        done = json.loads(events[-1].split("data: ", 1)[1])
        assert done["aggregate"] == "all_healthy"
