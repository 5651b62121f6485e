"""Shared Rich console for CLI command modules."""

from __future__ import annotations

from rich.console import Console

console = Console()
