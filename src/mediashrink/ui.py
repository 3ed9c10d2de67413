"""
Rich progress display for sequential processing.

Shows one line per file, a progress bar while the encoder runs, and a
summary table at the end. The bar is only drawn on a colour-capable TTY.
"""

import contextlib
from pathlib import Path
from typing import Iterator, Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from mediashrink.logs import should_use_color
from mediashrink.supervisor import ProgressCallback, ProgressEvent


def fmt_hms(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    if seconds < 0:
        seconds = 0
    s = int(round(seconds))
    h = s // 3600
    m = (s % 3600) // 60
    r = s % 60
    return f"{h:02d}:{m:02d}:{r:02d}"


class ProgressDisplay:
    """Per-file status lines, encode progress bar and run totals."""

    def __init__(self, console: Console, progress_enabled: bool = True):
        self.console = console
        self.enabled = progress_enabled and should_use_color()

        self.ok = 0
        self.skipped = 0
        self.failed = 0

    def file_start(self, index: int, total: int, path: Path) -> None:
        self.console.print()
        self.console.print(f"[bold blue]▶[/bold blue] [{index}/{total}] [cyan]{path.name}[/cyan]", highlight=False)

    def skip(self, reason: str) -> None:
        self.console.print(f"  [yellow]⊘ SKIP[/yellow]: {reason}", highlight=False)
        self.skipped += 1

    def fail(self, error: str) -> None:
        self.console.print(f"  [red]✗ FAILED[/red]: {error}", highlight=False)
        self.failed += 1

    def success(self, elapsed: float, saved_bytes: int = 0) -> None:
        saved = ""
        if saved_bytes > 0:
            saved = f", saved {saved_bytes / (1024 * 1024):.1f} MB"
        self.console.print(f"  [green]✓ OK[/green] in {fmt_hms(elapsed)}{saved}", highlight=False)
        self.ok += 1

    @contextlib.contextmanager
    def encoding(self, name: str) -> Iterator[Optional[ProgressCallback]]:
        """
        Show a progress bar while the block runs.

        Yields the callback to hand to the supervisor, or None when the bar
        is disabled.
        """
        if not self.enabled:
            yield None
            return

        progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}[/bold blue]"),
            BarColumn(bar_width=40),
            TextColumn("[progress.percentage]{task.percentage:>5.1f}%"),
            TextColumn("•"),
            TextColumn("[cyan]{task.fields[speed]}[/cyan]"),
            TextColumn("•"),
            TimeElapsedColumn(),
            TextColumn("→"),
            TimeRemainingColumn(),
            console=self.console,
            transient=True,
        )
        task_id = progress.add_task(name, total=100, speed="0.0x")

        def on_progress(event: ProgressEvent) -> None:
            progress.update(task_id, completed=event.percent, speed=event.speed or "-")

        with progress:
            yield on_progress

    def print_summary(self, total_time: float, deferred_replayed: int = 0) -> None:
        """Print final summary."""
        self.console.print()
        table = Table(title="Summary", box=None, show_header=False)
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")

        table.add_row("✓ Converted", f"[green]{self.ok}[/green]")
        table.add_row("⊘ Skipped", f"[yellow]{self.skipped}[/yellow]")
        table.add_row("✗ Failed", f"[red]{self.failed}[/red]")
        if deferred_replayed:
            table.add_row("↻ Deferred moves", str(deferred_replayed))
        table.add_row("⏱ Total time", fmt_hms(total_time))

        self.console.print(table)
