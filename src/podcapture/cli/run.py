"""The ``run`` command: start the node agent in the foreground."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError

from ..models import LogFormat, ResolverKind, SpecChangePolicy
from ._common import console


def register_run_commands(main: click.Group) -> None:
    """Register the run command."""

    @main.command("run")
    @click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
                  default=None, help="YAML config file (default: $PODCAPTURE_CONFIG).")
    @click.option("--node-name", default=None, help="Node to watch (default: $NODE_NAME).")
    @click.option("--capture-dir", type=click.Path(file_okay=False, path_type=Path),
                  default=None, help="Directory for capture files.")
    @click.option("--resolver", type=click.Choice([k.value for k in ResolverKind]),
                  default=None, help="How to reach a pod's network.")
    @click.option("--grace-period", type=float, default=None,
                  help="Seconds between SIGTERM and SIGKILL.")
    @click.option("--on-spec-change", type=click.Choice([p.value for p in SpecChangePolicy]),
                  default=None, help="Restart or keep a capture whose annotation changed.")
    @click.option("--port", "api_port", type=int, default=None, help="Local status API port.")
    @click.option("--kubeconfig", type=click.Path(dir_okay=False, path_type=Path),
                  default=None, help="Kubeconfig path (default: in-cluster).")
    @click.option("--log-format", type=click.Choice([f.value for f in LogFormat]),
                  default=None, help="Log output format.")
    @click.option("--log-level", default=None, help="Log level (default: INFO).")
    def run(
        config_path: Optional[Path],
        node_name: Optional[str],
        capture_dir: Optional[Path],
        resolver: Optional[str],
        grace_period: Optional[float],
        on_spec_change: Optional[str],
        api_port: Optional[int],
        kubeconfig: Optional[Path],
        log_format: Optional[str],
        log_level: Optional[str],
    ):
        """Run the capture agent until SIGTERM/SIGINT.

        Watches pods on this node and keeps one tcpdump per pod that
        carries the capture annotation. On shutdown every capture is
        stopped and its files removed.
        """
        from ..config import load_config
        from ..daemon import AgentService, configure_logging
        from ..watcher import EventSourceError

        try:
            config = load_config(
                config_path,
                overrides={
                    "node_name": node_name,
                    "capture_dir": capture_dir,
                    "resolver": resolver,
                    "grace_period": grace_period,
                    "on_spec_change": on_spec_change,
                    "api_port": api_port,
                    "kubeconfig": kubeconfig,
                    "log_format": log_format,
                    "log_level": log_level,
                },
            )
        except ValidationError as exc:
            console.print(f"[bold red]Invalid configuration:[/]\n{exc}")
            sys.exit(2)

        if not config.node_name:
            console.print("[bold red]NODE_NAME environment variable is required.[/]")
            sys.exit(2)

        configure_logging(config.log_format, config.log_level)
        svc = AgentService(config)

        console.print(f"\n  [green]Starting capture agent[/] on node [cyan]{config.node_name}[/]")
        console.print(f"  Resolver: {config.resolver.value} | Grace: {config.grace_period}s")
        console.print(f"  Captures: {config.capture_dir}\n")

        try:
            svc.start()
        except EventSourceError as exc:
            console.print(f"[bold red]Cannot watch pods:[/] {exc}")
            sys.exit(1)

        svc.install_signal_handlers()
        svc.run_forever()
