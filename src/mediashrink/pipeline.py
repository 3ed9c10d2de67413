"""
Sequential run orchestration.

A run replays deferred moves left by earlier runs, collects target files and
takes each one through preflight, probe, decision, encode and transition,
one file at a time. Library refresh follows every completed transition.
"""

import enum
import fnmatch
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from mediashrink.config import Config
from mediashrink.decision import DecisionEngine, Skip
from mediashrink.errors import DurationUnavailableError, HaltRequested, LibraryRefreshError, ProbeError
from mediashrink.history import HistoryDB
from mediashrink.library import LibraryClient
from mediashrink.logs import Reporter, Sink
from mediashrink.preflight import preflight
from mediashrink.probe import ProbeResult, resolve_duration, run_probe
from mediashrink.supervisor import EncodeSupervisor
from mediashrink.transition import (
    DeferredMoveQueue,
    FileTransitionManager,
    TransitionOutcome,
    file_size,
    is_marked,
)
from mediashrink.ui import ProgressDisplay

WORK_INFIX = ".encoding."


class FileStatus(enum.Enum):
    CONVERTED = "converted"
    SKIPPED = "skipped"
    REGRESSED = "regressed"
    FAILED = "failed"


@dataclass(frozen=True)
class FileOutcome:
    path: Path
    status: FileStatus
    message: str = ""


@dataclass
class RunReport:
    outcomes: List[FileOutcome] = field(default_factory=list)
    deferred_replayed: int = 0
    halted: bool = False

    def count(self, status: FileStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def exit_code(self) -> int:
        """0 when nothing failed, 1 when some files failed, 2 when halted."""
        if self.halted:
            return 2
        return 1 if self.count(FileStatus.FAILED) else 0


# -------------------- TARGET COLLECTION --------------------


def is_work_or_marked(name: str, cfg: Config) -> bool:
    """In-progress encoder output, or a file already handled by an earlier run."""
    return WORK_INFIX in name or is_marked(Path(name), cfg.skip_marker)


def _matches_pattern(filepath: Path, patterns: Sequence[str]) -> bool:
    """Check if filepath matches any glob patterns."""
    name = filepath.name.lower()
    for pattern in patterns:
        pattern_lower = pattern.lower()
        if fnmatch.fnmatch(name, pattern_lower):
            return True
        if "*" not in pattern and "?" not in pattern and pattern_lower in name:
            return True
    return False


def _in_processed_tree(path: Path, cfg: Config) -> bool:
    if cfg.processed_dir is not None:
        try:
            path.relative_to(cfg.processed_dir)
        except ValueError:
            return False
        return True
    return "processed" in path.parts[:-1]


def _wanted(path: Path, cfg: Config) -> bool:
    name = path.name
    if name.startswith("."):
        return False
    if path.suffix.lower() not in {e.lower() for e in cfg.extensions}:
        return False
    if is_work_or_marked(name, cfg):
        return False
    if _matches_pattern(path, cfg.ignore_patterns):
        return False
    return not _in_processed_tree(path, cfg)


def collect_targets(paths: Sequence[Path], cfg: Config) -> List[Path]:
    """
    Expand files and directories into the sorted list of files to process.

    Raises:
        FileNotFoundError: If a given path does not exist.
    """
    targets: List[Path] = []
    for root in paths:
        root = root.expanduser()
        if root.is_file():
            if _wanted(root, cfg):
                targets.append(root)
            continue
        if not root.is_dir():
            raise FileNotFoundError(f"File not found: {root}")

        if cfg.recursive:
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = [dn for dn in dirnames if not dn.startswith(".")]
                d = Path(dirpath)
                targets.extend(d / fn for fn in filenames if _wanted(d / fn, cfg))
        else:
            targets.extend(p for p in root.iterdir() if p.is_file() and _wanted(p, cfg))

    return sorted(set(targets))


# -------------------- PIPELINE --------------------


class Pipeline:
    """Runs every stage for each target file, one file at a time."""

    def __init__(
        self,
        cfg: Config,
        reporter: Reporter,
        display: Optional[ProgressDisplay] = None,
        prober: Optional[Callable[[Path], ProbeResult]] = None,
        supervisor: Optional[EncodeSupervisor] = None,
        history: Optional[HistoryDB] = None,
        library: Optional[LibraryClient] = None,
        cancel: Optional[threading.Event] = None,
    ):
        if cfg.deferred_dir is None:
            raise ValueError("deferred_dir must be set before running")
        self.cfg = cfg
        self.reporter = reporter
        self.display = display or ProgressDisplay(reporter.console, progress_enabled=False)
        self.prober = prober or (lambda path: run_probe(path, cfg))
        self.engine = DecisionEngine(cfg)
        self.supervisor = supervisor or EncodeSupervisor(cfg, reporter)
        self.deferred = DeferredMoveQueue(cfg.deferred_dir, reporter)
        self.transitions = FileTransitionManager(cfg, reporter, self.prober, self.deferred, history)
        self.library = library
        self.cancel = cancel

    def run(self, paths: Sequence[Path]) -> RunReport:
        report = RunReport()
        report.deferred_replayed = self.deferred.replay()

        targets = collect_targets(paths, self.cfg)
        self.reporter.info(f"{len(targets)} file(s) to examine", Sink.FILE)

        for i, path in enumerate(targets, start=1):
            if self.cancel is not None and self.cancel.is_set():
                break
            self.display.file_start(i, len(targets), path)
            try:
                outcome = self.process(path)
            except HaltRequested as e:
                report.outcomes.append(FileOutcome(path, FileStatus.FAILED, str(e)))
                self.display.fail(str(e))
                self.reporter.error(f"Halting: {e}", Sink.FILE)
                report.halted = True
                break
            report.outcomes.append(outcome)
        return report

    def _fail(self, path: Path, message: str) -> FileOutcome:
        self.reporter.error(f"{path.name}: {message}", Sink.FILE)
        self.display.fail(message)
        if self.cfg.halt_on_error:
            raise HaltRequested(f"{path.name}: {message}")
        return FileOutcome(path, FileStatus.FAILED, message)

    def _skip(self, path: Path, message: str) -> FileOutcome:
        self.reporter.info(f"{path.name}: skipped, {message}", Sink.FILE)
        self.display.skip(message)
        return FileOutcome(path, FileStatus.SKIPPED, message)

    def process(self, path: Path) -> FileOutcome:
        """
        Take one file through every stage.

        Raises:
            HaltRequested: On failure when halt_on_error is set.
        """
        cfg = self.cfg
        started = time.time()

        check = preflight(path, cfg.stable_wait)
        if not check.ok:
            return self._skip(path, check.reason)

        try:
            probe = self.prober(path)
            duration = resolve_duration(probe)
        except DurationUnavailableError as e:
            self.reporter.error(f"{path.name}: {e}", Sink.FILE)
            return self._skip(path, "duration unavailable")
        except ProbeError as e:
            return self._fail(path, str(e))

        size = file_size(path)
        decision = self.engine.decide(path, size, duration, probe)
        if isinstance(decision, Skip):
            return self._skip(path, decision.reason)

        plan = decision
        for reason in plan.reasons:
            self.reporter.info(f"{path.name}: {reason}", Sink.FILE)
        if cfg.dryrun:
            self.reporter.info(f"DRYRUN: {cfg.ffmpeg} {' '.join(plan.arguments())} {plan.destination}")
            return self._skip(path, "dry run")

        with self.display.encoding(path.name) as on_progress:
            result = self.supervisor.run(plan, on_progress, self.cancel)
        if not result.ok:
            detail = result.message
            if result.errors:
                detail += f" ({len(result.errors)} component error(s))"
            return self._fail(path, detail)

        transition = self.transitions.finalize(plan, probe, size)
        if transition.outcome is TransitionOutcome.REGRESSED:
            self.display.skip(transition.message)
            return FileOutcome(path, FileStatus.REGRESSED, transition.message)
        if transition.outcome is not TransitionOutcome.COMPLETED:
            return self._fail(path, transition.message)

        self.display.success(time.time() - started, transition.summary.saved_bytes if transition.summary else 0)
        if transition.final_path is not None and not transition.deferred:
            self._refresh(transition.final_path)
        return FileOutcome(path, FileStatus.CONVERTED, transition.message)

    def _refresh(self, path: Path) -> None:
        if self.library is None:
            return
        try:
            command_id = self.library.refresh(path)
        except LibraryRefreshError as e:
            self.reporter.warning(f"Library refresh failed for {path.name}: {e}")
            return
        if command_id is None:
            self.reporter.warning(f"{path.name} is not known to {self.library.kind}", Sink.FILE)
        else:
            self.reporter.info(f"{self.library.kind} refresh queued for {path.name}", Sink.FILE)
