"""
Run reporting for mediashrink.

Every message carries a severity (information, warning, error) and is sent
to the run log file, the console, or both. Console output is painted with
Rich and respects NO_COLOR and TTY detection.
"""

import datetime
import enum
import os
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console


class Severity(enum.Enum):
    INFORMATION = "INFO"
    WARNING = "WARN"
    ERROR = "ERROR"


class Sink(enum.Flag):
    FILE = enum.auto()
    CONSOLE = enum.auto()
    BOTH = FILE | CONSOLE


_STYLES = {
    Severity.INFORMATION: "cyan",
    Severity.WARNING: "yellow",
    Severity.ERROR: "bold red",
}


def should_use_color() -> bool:
    """Check if color output should be used."""
    if os.getenv("NO_COLOR"):
        return False
    try:
        return sys.stderr.isatty()
    except Exception:
        return False


def make_console() -> Console:
    return Console(stderr=True, no_color=not should_use_color(), highlight=False)


def run_log_path(log_dir: Path, now: Optional[datetime.datetime] = None) -> Path:
    """One log file per run, named by start time."""
    now = now or datetime.datetime.now()
    return log_dir / f"{now:%Y%m%d-%H%M%S}.log"


class Reporter:
    """Writes messages to the run log file and/or the console."""

    def __init__(self, log_path: Optional[Path] = None, console: Optional[Console] = None, verbose: bool = False):
        self.log_path = log_path
        self.console = console if console is not None else make_console()
        self.verbose = verbose
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, message: str, severity: Severity = Severity.INFORMATION, sinks: Sink = Sink.BOTH) -> None:
        if Sink.FILE in sinks and self.log_path is not None:
            stamp = datetime.datetime.now().isoformat(timespec="seconds")
            try:
                with self.log_path.open("a", encoding="utf-8", errors="replace") as lf:
                    lf.write(f"{stamp} [{severity.value}] {message}\n")
            except OSError as e:
                self.console.print(f"[red]Cannot write log {self.log_path}: {e}[/red]")
        if Sink.CONSOLE in sinks:
            self.console.print(message, style=_STYLES[severity], markup=False)

    def info(self, message: str, sinks: Sink = Sink.BOTH) -> None:
        self.write(message, Severity.INFORMATION, sinks)

    def warning(self, message: str, sinks: Sink = Sink.BOTH) -> None:
        self.write(message, Severity.WARNING, sinks)

    def error(self, message: str, sinks: Sink = Sink.BOTH) -> None:
        self.write(message, Severity.ERROR, sinks)

    def debug(self, message: str) -> None:
        """File-only detail, written when verbose."""
        if self.verbose:
            self.write(message, Severity.INFORMATION, Sink.FILE)
