"""The ``status`` command: query a running agent's local API."""

from __future__ import annotations

import json
import sys

import click
from rich.markup import escape
from rich.table import Table

from ._common import console


def register_status_commands(main: click.Group) -> None:
    """Register the status command."""

    @main.command("status")
    @click.option("--port", default=9777, help="Agent API port.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def status(port: int, json_out: bool):
        """Show counters and active capture sessions."""
        from ..daemon import get_agent_status

        summary = get_agent_status(port, "/status")
        sessions = get_agent_status(port, "/sessions")

        if summary is None:
            if json_out:
                click.echo(json.dumps({"running": False}))
            else:
                console.print("\n  [yellow]Capture agent is not reachable.[/]\n")
            sys.exit(1)

        if json_out:
            summary["sessions"] = (sessions or {}).get("sessions", [])
            click.echo(json.dumps(summary, indent=2))
            return

        console.print(
            f"\n  Agent PID [cyan]{summary.get('pid')}[/], "
            f"up {int(summary.get('uptime_seconds', 0))}s, "
            f"[bold]{summary.get('active_sessions', 0)}[/] active capture(s)"
        )
        console.print(
            f"  started {summary.get('sessions_started', 0)} | "
            f"stopped {summary.get('sessions_stopped', 0)} "
            f"(forced {summary.get('forced_kills', 0)}) | "
            f"resolve failures {summary.get('resolve_failures', 0)} | "
            f"spawn failures {summary.get('spawn_failures', 0)}"
        )

        rows = (sessions or {}).get("sessions", [])
        if rows:
            table = Table(title="Capture sessions", show_lines=False)
            table.add_column("Workload", style="cyan")
            table.add_column("Files", justify="right")
            table.add_column("PID", justify="right")
            table.add_column("Started")
            table.add_column("Output", style="dim")
            for row in rows:
                table.add_row(
                    row["workload"],
                    str(row["max_files"]),
                    str(row["pid"]),
                    row["started_at"],
                    row["output_pattern"],
                )
            console.print(table)

        for err in summary.get("recent_errors", []):
            console.print(f"  [red]{escape(err)}[/]")
        console.print()
