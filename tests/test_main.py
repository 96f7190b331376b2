"""Tests for the CLI entry point and its exit codes."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
import yaml

from startgate.main import build_parser, main

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses sh")


def _write(tmp_path: Path, services: list[dict], **extra) -> str:
    path = tmp_path / "services.yaml"
    path.write_text(yaml.dump({"services": services, **extra}))
    return str(path)


def _cmd(sid, target, deps=(), **probe):
    return {
        "id": sid,
        "depends_on": list(deps),
        "probe": {
            "kind": "command", "target": target,
            "interval_seconds": 0.2, "timeout_seconds": 0.15, "jitter": 0,
            **probe,
        },
    }


def run_cli(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc:
        main(argv)
    return exc.value.code


# ── Argument parsing ─────────────────────────────────────────────────────────


class TestParser:
    def test_subcommands(self) -> None:
        args = build_parser().parse_args(["up", "-c", "x.yaml", "--deadline", "30", "--json"])
        assert args.command == "up"
        assert args.config == "x.yaml"
        assert args.deadline == 30.0
        assert args.json is True

    def test_no_command_prints_help(self, capsys) -> None:
        assert run_cli([]) == 1
        assert "usage" in capsys.readouterr().out


# ── validate and plan ────────────────────────────────────────────────────────


class TestValidateAndPlan:
    def test_validate_ok(self, tmp_path, capsys) -> None:
        path = _write(tmp_path, [_cmd("db", "true"), _cmd("api", "true", deps=["db"])])
        assert run_cli(["validate", "-c", path, "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["valid"] is True
        assert data["batches"] == [["db"], ["api"]]

    def test_validate_cycle(self, tmp_path, capsys) -> None:
        path = _write(tmp_path, [
            _cmd("a", "true", deps=["b"]), _cmd("b", "true", deps=["a"]),
        ])
        assert run_cli(["validate", "-c", path, "--json"]) == 3
        data = json.loads(capsys.readouterr().out)
        assert data["valid"] is False
        assert {i["kind"] for i in data["issues"]} == {"cycle"}

    def test_validate_missing_file(self, tmp_path) -> None:
        assert run_cli(["validate", "-c", str(tmp_path / "nope.yaml")]) == 3

    def test_plan(self, tmp_path, capsys) -> None:
        path = _write(tmp_path, [
            _cmd("web", "true", deps=["api"]),
            _cmd("api", "true", deps=["db"]),
            _cmd("db", "true"),
        ])
        assert run_cli(["plan", "-c", path, "--json"]) == 0
        assert json.loads(capsys.readouterr().out)["batches"] == [["db"], ["api"], ["web"]]

    def test_plan_profile(self, tmp_path, capsys) -> None:
        path = _write(
            tmp_path,
            [_cmd("db", "true"), _cmd("api", "true", deps=["db"]), _cmd("docs", "true")],
            profiles={"backend": ["api"]},
        )
        assert run_cli(["plan", "-c", path, "-p", "backend", "--json"]) == 0
        assert json.loads(capsys.readouterr().out)["batches"] == [["db"], ["api"]]


# ── up command ───────────────────────────────────────────────────────────────


@posix_only
class TestUp:
    def test_all_healthy(self, tmp_path, capsys) -> None:
        path = _write(tmp_path, [_cmd("db", "exit 0"), _cmd("api", "exit 0", deps=["db"])])
        assert run_cli(["up", "-c", path, "--json", "--deadline", "10"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["aggregate"] == "all_healthy"

    def test_failed(self, tmp_path, capsys) -> None:
        path = _write(tmp_path, [_cmd("db", "exit 1", retries=1), _cmd("api", "exit 0", deps=["db"])])
        assert run_cli(["up", "-c", path, "--json", "--deadline", "10"]) == 1
        data = json.loads(capsys.readouterr().out)
        assert data["snapshot"]["services"]["api"]["reason"] == "dependency 'db' failed"

    def test_degraded_at_deadline(self, tmp_path) -> None:
        path = _write(tmp_path, [_cmd("db", "exit 1", start_period_seconds=60)])
        assert run_cli(["up", "-c", path, "--json", "--deadline", "0.5"]) == 2

    def test_invalid_config(self, tmp_path) -> None:
        path = _write(tmp_path, [_cmd("api", "exit 0", deps=["db"])])
        assert run_cli(["up", "-c", path]) == 3

    def test_console_output(self, tmp_path, capsys) -> None:
        path = _write(tmp_path, [_cmd("db", "exit 0")])
        assert run_cli(["up", "-c", path, "--deadline", "10"]) == 0
        out = capsys.readouterr().out
        assert "healthy" in out
