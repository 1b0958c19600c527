"""Entry point for the Market Pulse control plane."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pulse.config import settings
from pulse.control.errors import ControlPlaneError

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)


def _components():
    """Build the same component graph the server uses, without serving."""
    from pulse.api.server import build_components, create_app

    app = create_app(settings)
    build_components(app, settings)
    return app.state


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel("Starting Market Pulse control plane", style="bold green"))
    uvicorn.run(
        "pulse.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def init_schedulers(force: bool) -> None:
    console.print("--- Initializing Schedulers ---")
    state = _components()
    for record in state.controls.initialize(force=force):
        console.print(f"[{record.id}] enabled={record.enabled} status={record.status.value}")
    console.print("--- Done ---")


def show_status(as_json: bool) -> None:
    state = _components()
    try:
        snapshot = asyncio.run(state.aggregator.compute_health_snapshot())
    finally:
        state.aggregator.close()
    data = snapshot.to_dict()

    if as_json:
        console.print_json(json.dumps(data))
        return

    style = "bold green" if data["status"] == "ready" else "bold yellow"
    console.print(Panel(f"Status: {data['status']}  ({data['timestamp']})", style=style))
    console.print(f"DB: {data['db']['status']} | users: {data['db'].get('userCount', 0)}")
    console.print(f"Zoho: {data['zoho']['status']}")

    table = Table(title="Schedulers")
    table.add_column("Job")
    table.add_column("Enabled")
    table.add_column("Status")
    table.add_column("Last run")
    for job_id, sched in data["schedulers"].items():
        table.add_row(
            job_id,
            str(sched.get("enabled")),
            sched.get("status", ""),
            sched.get("last_run_timestamp") or "-",
        )
    console.print(table)


def run_job(job_id: str, manual: bool) -> None:
    state = _components()
    try:
        with console.status(f"[bold green]Running {job_id}..."):
            report = asyncio.run(state.runner.run_once(job_id, manual=manual))
    except ControlPlaneError:
        raise
    except Exception as e:
        console.print(f"[bold red]{job_id} error:[/bold red] {e}")
        sys.exit(1)
    if report.ran:
        console.print(f"[green]{report.job_id} {report.outcome.value}[/green] in {report.duration_ms:.0f}ms")
    else:
        console.print(f"[yellow]{report.job_id} skipped: {report.skipped_reason}[/yellow]")


def set_enabled(job_id: str, enabled: bool) -> None:
    state = _components()
    record = state.controls.set_enabled(job_id, enabled, "CLI")
    console.print(f"[{record.id}] enabled={record.enabled} status={record.status.value}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Market Pulse scheduler control plane")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server")

    init_parser = sub.add_parser("init-schedulers", help="Provision control records")
    init_parser.add_argument(
        "--force", action="store_true",
        help="Re-enable every job even if an operator disabled it",
    )

    status_parser = sub.add_parser("status", help="Print the health snapshot")
    status_parser.add_argument("--json", action="store_true", help="Raw JSON output")

    run_parser = sub.add_parser("run", help="Run one tick of a job")
    run_parser.add_argument("job", help="Job id (e.g. umf, news)")
    run_parser.add_argument("--manual", action="store_true", help="Bypass enabled flag + lease")

    for name in ("enable", "disable"):
        p = sub.add_parser(name, help=f"{name.capitalize()} a job")
        p.add_argument("job", help="Job id (e.g. umf, news)")

    args = parser.parse_args()

    try:
        if args.command == "serve":
            run_server()
        elif args.command == "init-schedulers":
            init_schedulers(args.force)
        elif args.command == "status":
            show_status(args.json)
        elif args.command == "run":
            run_job(args.job, args.manual)
        elif args.command in ("enable", "disable"):
            set_enabled(args.job, args.command == "enable")
        else:
            parser.print_help()
            sys.exit(1)
    except ControlPlaneError as e:
        console.print(f"[bold red]Failed:[/bold red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
