"""Entry point for the startgate readiness CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from startgate.config import settings
from startgate.errors import GraphConstructionError, RegistryError
from startgate.health.fsm import ServiceState, Transition
from startgate.orchestrator.engine import (
    EXIT_INTERRUPTED,
    EXIT_INVALID,
    EXIT_OK,
    Orchestrator,
    RunResult,
)
from startgate.orchestrator.graph import DependencyGraph
from startgate.reporting.reporter import StatusReporter
from startgate.reporting.store import TransitionStore
from startgate.services.registry import ServiceRegistry

console = Console()

_STATE_STYLE = {
    ServiceState.PENDING: "dim",
    ServiceState.WAITING: "dim",
    ServiceState.PROBING: "blue",
    ServiceState.HEALTHY: "green",
    ServiceState.UNHEALTHY: "yellow",
    ServiceState.FAILED: "red",
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def _load_graph(args: argparse.Namespace) -> tuple[ServiceRegistry, DependencyGraph]:
    registry = ServiceRegistry(args.config)
    return registry, DependencyGraph(registry.select(args.profile))


def _print_invalid(error: RegistryError | GraphConstructionError, as_json: bool) -> None:
    issues: list[dict[str, Any]]
    if isinstance(error, GraphConstructionError):
        issues = error.to_list()
    else:
        issues = error.issues

    if as_json:
        print(json.dumps({"valid": False, "error": str(error), "issues": issues}, indent=2))
        return

    console.print(f"[bold red]✗ {error}[/bold red]")
    for issue in issues:
        fields = ", ".join(f"{k}={v}" for k, v in issue.items() if k != "kind" and v)
        console.print(f"  [red]{issue.get('kind', 'issue')}[/red] {fields}")


def _print_transition(t: Transition) -> None:
    style = _STATE_STYLE[t.to_state]
    console.print(
        f"[dim]{t.timestamp[11:19]}[/dim] {t.service_id:<16} "
        f"{t.from_state.value} → [{style}]{t.to_state.value}[/{style}]  [dim]{t.reason}[/dim]"
    )


def _print_result(result: RunResult) -> None:
    table = Table(title=f"Run {result.run_id}")
    table.add_column("Service")
    table.add_column("State")
    table.add_column("Failures", justify="right")
    table.add_column("Last message")
    table.add_column("Reason")
    for snap in result.snapshot.services.values():
        style = _STATE_STYLE[snap.state]
        table.add_row(
            snap.service_id,
            f"[{style}]{snap.state.value}[/{style}]",
            str(snap.consecutive_failures),
            snap.last_message,
            snap.reason,
        )
    console.print(table)

    if result.ok:
        console.print(Panel(
            f"All services healthy in {result.duration_seconds:.1f}s", style="bold green",
        ))
    else:
        console.print(Panel(
            f"{result.aggregate.value.upper()}: {result.reason}", style="bold red",
        ))


# ── Commands ─────────────────────────────────────────────────────────────────


def run_up(args: argparse.Namespace) -> int:
    """Start probing and block until ready, failed, or out of time."""
    try:
        registry, graph = _load_graph(args)
    except (RegistryError, GraphConstructionError) as e:
        _print_invalid(e, args.json)
        return EXIT_INVALID

    store = TransitionStore(settings.transition_db_path) if settings.transition_db_path else None
    reporter = StatusReporter(store=store, queue_size=settings.subscriber_queue_size)
    if not args.json:
        reporter.add_listener(_print_transition)

    orchestrator = Orchestrator(
        graph,
        reporter=reporter,
        deadline_seconds=registry.effective_deadline(args.deadline),
    )
    if not args.json:
        deadline = orchestrator.deadline_seconds
        console.print(Panel(
            f"{len(graph)} services, deadline "
            f"{f'{deadline:g}s' if deadline else 'none'}",
            title="startgate up", style="bold blue",
        ))

    try:
        result = asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        return EXIT_INTERRUPTED
    finally:
        if store:
            store.close()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        _print_result(result)
    return result.exit_code


def run_validate(args: argparse.Namespace) -> int:
    """Check the registry and the dependency graph without probing."""
    try:
        _, graph = _load_graph(args)
    except (RegistryError, GraphConstructionError) as e:
        _print_invalid(e, args.json)
        return EXIT_INVALID

    if args.json:
        print(json.dumps({"valid": True, "issues": [], **graph.to_dict()}, indent=2))
    else:
        console.print(
            f"[bold green]✓[/bold green] {len(graph)} services, "
            f"{len(graph.edges())} dependencies, no cycles"
        )
    return EXIT_OK


def run_plan(args: argparse.Namespace) -> int:
    """Print the order in which services will be brought up."""
    try:
        _, graph = _load_graph(args)
    except (RegistryError, GraphConstructionError) as e:
        _print_invalid(e, args.json)
        return EXIT_INVALID

    batches = graph.topological_batches()
    if args.json:
        print(json.dumps({"batches": batches}, indent=2))
        return EXIT_OK

    table = Table(title="Startup plan")
    table.add_column("Wave", justify="right")
    table.add_column("Services")
    table.add_column("Waits for")
    for n, batch in enumerate(batches, start=1):
        deps = sorted({d for sid in batch for d in graph.dependencies_of(sid)})
        table.add_row(str(n), ", ".join(batch), ", ".join(deps) or "-")
    console.print(table)
    return EXIT_OK


def run_server(args: argparse.Namespace) -> int:
    """Run the orchestration behind the HTTP status API."""
    from startgate.api.server import create_app

    console.print(Panel("Starting startgate API server", style="bold green"))
    app = create_app(
        registry=ServiceRegistry(args.config),
        profile=args.profile,
        deadline_seconds=args.deadline,
    )
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, reload=False)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", default=settings.registry_path, help="Service registry YAML")
    common.add_argument("-p", "--profile", default=settings.profile or None, help="Profile to start")
    common.add_argument("--json", action="store_true", help="Machine-readable output")

    parser = argparse.ArgumentParser(description="startgate — wait until a service graph is ready")
    parser.add_argument("--log-level", default=settings.log_level)
    sub = parser.add_subparsers(dest="command")

    up = sub.add_parser("up", parents=[common], help="Probe services and wait for readiness")
    up.add_argument("--deadline", type=float, default=None, help="Global deadline in seconds (0 = none)")

    sub.add_parser("validate", parents=[common], help="Validate the registry and graph")
    sub.add_parser("plan", parents=[common], help="Show the startup order")

    serve = sub.add_parser("serve", parents=[common], help="Start the API server")
    serve.add_argument("--deadline", type=float, default=None)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    commands = {
        "up": run_up,
        "validate": run_validate,
        "plan": run_plan,
        "serve": run_server,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)
    sys.exit(handler(args))


if __name__ == "__main__":
    main()
