"""
Post-encode file transitions.

After the encoder exits, the output is validated and either discarded
(too small, larger than the source) or swapped in for the original, which is
moved to a processed tree that mirrors the library layout. Moves that still
fail after their retry budget are written to a JSON sidecar and replayed at
the start of the next run.
"""

import enum
import fcntl
import hashlib
import json
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from mediashrink.config import Config
from mediashrink.decision import EncodePlan, size_per_minute
from mediashrink.errors import DurationUnavailableError, HaltRequested, ProbeError
from mediashrink.history import HistoryDB, StreamSummary, Summary
from mediashrink.logs import Reporter
from mediashrink.probe import ProbeResult, resolve_duration
from mediashrink.retry import RetryPolicy, fixed, retry_on

SIDECAR_SUFFIX = ".move.json"


class TransitionOutcome(enum.Enum):
    COMPLETED = "completed"
    REGRESSED = "regressed"
    TOO_SMALL = "too_small"
    FAILED = "failed"


@dataclass(frozen=True)
class TransitionResult:
    outcome: TransitionOutcome
    final_path: Optional[Path] = None
    summary: Optional[Summary] = None
    message: str = ""
    deferred: bool = False


def file_size(path: Path) -> int:
    """Get file size in bytes, returns 0 on error."""
    try:
        return path.stat().st_size
    except OSError:
        return 0


def marked_path(path: Path, marker: str) -> Path:
    """``movie.mkv`` -> ``movie.<marker>.mkv``."""
    return path.with_name(f"{path.stem}.{marker}{path.suffix}")


def is_marked(path: Path, marker: str) -> bool:
    return path.stem.endswith(f".{marker}")


def processed_path_for(source: Path, cfg: Config) -> Path:
    """Location of the original in the processed tree, mirroring the library layout."""
    root = cfg.processed_dir if cfg.processed_dir is not None else source.parent / "processed"
    if cfg.library_root is not None:
        try:
            return root / source.relative_to(cfg.library_root)
        except ValueError:
            pass
    return root / source.name


# -------------------- SINGLE-ATTEMPT OPERATIONS --------------------


def move_once(source: Path, destination: Path) -> None:
    """Move without overwriting; raises OSError on any failure."""
    if destination.exists():
        raise FileExistsError(f"Destination exists: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(destination))


def rename_once(source: Path, destination: Path) -> None:
    if destination.exists():
        raise FileExistsError(f"Destination exists: {destination}")
    source.rename(destination)


def delete_once(path: Path) -> None:
    path.unlink(missing_ok=True)


# -------------------- DEFERRED MOVES --------------------


class DeferredMoveQueue:
    """
    Moves that could not complete, persisted as one JSON sidecar each.

    Sidecars hold ``LiteralPath`` and ``Destination`` and are named after the
    source file plus a short hash of its full path. Writers and readers take an exclusive lock on the sidecar
    so overlapping runs never consume one twice.
    """

    def __init__(self, directory: Path, reporter: Reporter):
        self.directory = directory
        self.reporter = reporter
        directory.mkdir(parents=True, exist_ok=True)

    def sidecar_for(self, source: Path) -> Path:
        # same name in different folders must not share a sidecar
        digest = hashlib.sha1(str(source).encode("utf-8")).hexdigest()[:8]
        return self.directory / f"{source.name}.{digest}{SIDECAR_SUFFIX}"

    def persist(self, source: Path, destination: Path, **options) -> Path:
        payload = {"LiteralPath": str(source), "Destination": str(destination), **options}
        sidecar = self.sidecar_for(source)
        with sidecar.open("a+", encoding="utf-8") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            fh.seek(0)
            fh.truncate()
            json.dump(payload, fh)
            fh.flush()
            os.fsync(fh.fileno())
        self.reporter.warning(f"Deferred move saved for next run: {source} -> {destination}")
        return sidecar

    def pending(self) -> List[Path]:
        """Sidecars in the order they were written."""
        return sorted(self.directory.glob(f"*{SIDECAR_SUFFIX}"), key=lambda p: (file_mtime(p), p.name))

    def _claim(self, sidecar: Path) -> Optional[dict]:
        """Lock, read and delete one sidecar. None if locked, gone or unreadable."""
        try:
            fh = sidecar.open("r", encoding="utf-8")
        except FileNotFoundError:
            return None
        with fh:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                self.reporter.warning(f"Deferred move {sidecar.name} is locked by another run")
                return None
            if os.fstat(fh.fileno()).st_nlink == 0:
                # consumed by another run between open and lock
                return None
            try:
                data = json.load(fh)
            except json.JSONDecodeError as e:
                self.reporter.error(f"Unreadable deferred move {sidecar.name}: {e}")
                data = None
            sidecar.unlink(missing_ok=True)
        if not isinstance(data, dict) or not data.get("LiteralPath") or not data.get("Destination"):
            return None
        return data

    def replay(self, mover: Callable[[Path, Path], None] = move_once) -> int:
        """
        Replay every pending sidecar once.

        Each sidecar is deleted before its move is attempted; a failed move
        is logged and not persisted again. A chained ``Then`` move runs only
        after its parent move succeeded.

        Returns:
            Number of moves that succeeded.
        """
        moved = 0
        for sidecar in self.pending():
            data = self._claim(sidecar)
            if data is None:
                continue
            if not self._attempt(mover, data):
                continue
            moved += 1
            follow = data.get("Then")
            if isinstance(follow, dict) and follow.get("LiteralPath") and follow.get("Destination"):
                if self._attempt(mover, follow):
                    moved += 1
        return moved

    def _attempt(self, mover: Callable[[Path, Path], None], data: dict) -> bool:
        source, destination = Path(data["LiteralPath"]), Path(data["Destination"])
        try:
            mover(source, destination)
        except OSError as e:
            self.reporter.error(f"Deferred move failed: {source} -> {destination}: {e}")
            return False
        self.reporter.info(f"Deferred move done: {source} -> {destination}")
        return True


def file_mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


# -------------------- TRANSITION MANAGER --------------------


class FileTransitionManager:
    """Validates a finished encode and relocates or discards files."""

    def __init__(
        self,
        cfg: Config,
        reporter: Reporter,
        prober: Callable[[Path], ProbeResult],
        deferred: DeferredMoveQueue,
        history: Optional[HistoryDB] = None,
        move_policy: Optional[RetryPolicy] = None,
        delete_policy: Optional[RetryPolicy] = None,
        rename_policy: Optional[RetryPolicy] = None,
    ):
        self.cfg = cfg
        self.reporter = reporter
        self.prober = prober
        self.deferred = deferred
        self.history = history
        self.move_policy = move_policy or RetryPolicy(cfg.move_attempts, fixed(cfg.move_delay_sec), retry_on(OSError))
        self.delete_policy = delete_policy or RetryPolicy(
            cfg.delete_attempts, fixed(cfg.delete_delay_sec), retry_on(OSError)
        )
        self.rename_policy = rename_policy or RetryPolicy(
            cfg.rename_attempts, fixed(cfg.rename_delay_sec), retry_on(OSError)
        )

    # ---- retried operations ----

    def _retry_hook(self, what: str):
        def hook(attempt: int, error: BaseException) -> None:
            self.reporter.debug(f"{what} attempt {attempt} failed: {error}")

        return hook

    def move(self, source: Path, destination: Path, then: Optional[Tuple[Path, Path]] = None) -> bool:
        """
        Move with retries; on exhaustion persist a deferred move.

        ``then`` is a follow-up move that must only happen after this one; it
        is stored in the same sidecar when this move is deferred.
        """
        try:
            self.move_policy.call(move_once, source, destination, on_retry=self._retry_hook(f"Move {source.name}"))
        except OSError as e:
            self.reporter.error(f"Move failed: {source} -> {destination}: {e}")
            options = {}
            if then is not None:
                options["Then"] = {"LiteralPath": str(then[0]), "Destination": str(then[1])}
            self.deferred.persist(source, destination, **options)
            return False
        return True

    def delete(self, path: Path) -> bool:
        try:
            self.delete_policy.call(delete_once, path, on_retry=self._retry_hook(f"Delete {path.name}"))
        except OSError as e:
            self.reporter.error(f"Delete failed: {path}: {e}")
            return False
        return True

    def rename(self, source: Path, destination: Path) -> bool:
        try:
            self.rename_policy.call(
                rename_once, source, destination, on_retry=self._retry_hook(f"Rename {source.name}")
            )
        except OSError as e:
            self.reporter.error(f"Rename failed: {source} -> {destination}: {e}")
            return False
        return True

    # ---- protocol ----

    def finalize(self, plan: EncodePlan, source_probe: ProbeResult, source_size: int) -> TransitionResult:
        """
        Decide what happens to the output and the original.

        Raises:
            HaltRequested: If the output is too small and halt_on_error is set.
        """
        cfg = self.cfg
        source, output = plan.source, plan.destination

        out_size = file_size(output)
        if out_size < cfg.min_output_bytes:
            self.delete(output)
            message = f"Output too small ({out_size} bytes), discarded; original kept"
            self.reporter.error(f"{source.name}: {message}")
            self._record(source, None, TransitionOutcome.TOO_SMALL, None, message)
            if cfg.halt_on_error:
                raise HaltRequested(f"{source.name}: {message}")
            return TransitionResult(TransitionOutcome.TOO_SMALL, message=message)

        try:
            out_probe = self.prober(output)
        except ProbeError as e:
            self.delete(output)
            message = f"Output could not be probed ({e}), discarded; original kept"
            self.reporter.error(f"{source.name}: {message}")
            self._record(source, None, TransitionOutcome.FAILED, None, message)
            return TransitionResult(TransitionOutcome.FAILED, message=message)

        try:
            out_duration = resolve_duration(out_probe)
        except DurationUnavailableError:
            out_duration = plan.duration

        summary = Summary(
            StreamSummary.of(
                source_size, plan.duration, size_per_minute(source_size, plan.duration), source_probe.primary_video
            ),
            StreamSummary.of(out_size, out_duration, size_per_minute(out_size, out_duration), out_probe.primary_video),
        )

        if out_size >= source_size and not plan.resized and not cfg.force_convert:
            return self._regressed(source, output, summary)
        return self._completed(source, output, summary)

    def _regressed(self, source: Path, output: Path, summary: Summary) -> TransitionResult:
        cfg = self.cfg
        self.delete(output)
        final = None
        if cfg.move_on_completion:
            target = marked_path(source, cfg.skip_marker)
            if self.rename(source, target):
                final = target
        message = (
            f"Output ({summary.destination.size} bytes) is not smaller than the source "
            f"({summary.source.size} bytes), discarded"
        )
        self.reporter.warning(f"{source.name}: {message}")
        self._record(source, final, TransitionOutcome.REGRESSED, summary, message)
        return TransitionResult(TransitionOutcome.REGRESSED, final, summary, message)

    def _completed(self, source: Path, output: Path, summary: Summary) -> TransitionResult:
        cfg = self.cfg
        deferred = False
        if cfg.move_on_completion:
            final = source.with_suffix(f".{cfg.container}")
            if self.move(source, processed_path_for(source, cfg), then=(output, final)):
                if not self.move(output, final):
                    deferred = True
            else:
                deferred = True
        else:
            final = marked_path(source.with_suffix(f".{cfg.container}"), cfg.skip_marker)
            if not self.move(output, final):
                deferred = True

        message = summary.describe()
        self.reporter.info(f"{source.name}: {message}")
        self._record(source, final, TransitionOutcome.COMPLETED, summary, message)
        return TransitionResult(TransitionOutcome.COMPLETED, final, summary, message, deferred)

    def _record(
        self,
        source: Path,
        final: Optional[Path],
        outcome: TransitionOutcome,
        summary: Optional[Summary],
        message: str,
    ) -> None:
        if self.history is not None:
            self.history.record(source, final, outcome.value, summary, message)
