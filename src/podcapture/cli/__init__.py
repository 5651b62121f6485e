"""
podcapture CLI.

The main Click group is defined here; each command group lives in its
own module and is attached through a register function.

Entry point: podcapture.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="podcapture")
def main():
    """podcapture: per-node packet capture for annotated pods."""


from .run import register_run_commands
from .status import register_status_commands

register_run_commands(main)
register_status_commands(main)
