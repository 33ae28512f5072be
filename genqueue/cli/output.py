"""
Output Formatting Utilities

Rich table rendering for the genqueue CLI.
"""

import json
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table


class OutputFormatter:
    """Formats queue data for the terminal."""

    def __init__(self, console: Optional[Console] = None, output_format: str = "table"):
        self.console = console or Console()
        self.output_format = output_format

    def print_json(self, data: Any):
        self.console.print_json(json.dumps(data, default=str))

    def print_jobs(self, jobs: List[Dict[str, Any]]):
        if self.output_format == "json":
            self.print_json(jobs)
            return
        if not jobs:
            self.console.print("[yellow]Queue is empty[/yellow]")
            return

        table = Table(title="Queue", show_header=True, header_style="bold cyan")
        table.add_column("Position", style="cyan", justify="right")
        table.add_column("Job", style="green")
        table.add_column("Status")
        table.add_column("Progress", justify="right")
        for job in jobs:
            position = "processing" if job["rank"] == 0 else str(job["rank"])
            table.add_row(position, job["id"], job["status"], f"{job['progress'] * 100:.0f}%")
        self.console.print(table)

    def print_backends(self, backends: List[Dict[str, Any]]):
        if self.output_format == "json":
            self.print_json(backends)
            return
        if not backends:
            self.console.print("[yellow]No backends registered[/yellow]")
            return

        table = Table(title="Backends", show_header=True, header_style="bold cyan")
        table.add_column("Id", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Endpoint")
        table.add_column("Health")
        table.add_column("Max resolution", justify="right")
        table.add_column("Last error")
        colors = {"online": "green", "offline": "red", "unknown": "yellow"}
        for backend in backends:
            health = backend["health"]
            last_error = backend.get("last_error") or {}
            table.add_row(
                backend["backend_id"],
                backend["name"],
                backend["endpoint"],
                f"[{colors.get(health, 'white')}]{health}[/]",
                f"{backend['max_resolution']:,}",
                last_error.get("message", ""),
            )
        self.console.print(table)

    def print_stats(self, title: str, stats: Dict[str, Any]):
        if self.output_format == "json":
            self.print_json(stats)
            return
        table = Table(title=title, show_header=True, header_style="bold cyan")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green", justify="right")
        for key, value in stats.items():
            if isinstance(value, int):
                value = f"{value:,}"
            table.add_row(key.replace("_", " ").title(), str(value))
        self.console.print(table)

    def success(self, message: str):
        self.console.print(f"[bold green]Success:[/bold green] {message}")

    def error(self, message: str):
        self.console.print(f"[bold red]Error:[/bold red] {message}")
