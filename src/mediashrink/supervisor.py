"""
Encoder process supervision.

Per file the supervisor moves through VALIDATING -> ENCODING -> COMPLETED or
FAILED:

- A short validation encode into the null muxer checks that the argument set
  runs. On failure, decoder acceleration flags are stripped one level at a
  time and the validation is retried with exponential backoff.
- The real encode runs with stderr read by a thread into a queue; the
  supervisor alternates between draining the queue and polling the process,
  so a missing line never blocks exit detection.
- Each stderr line is classified as a component error, a fatal error, a
  progress update or noise.
- A process still running when supervision ends is killed.
"""

import enum
import re
import subprocess
import threading
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Callable, List, Optional, Sequence, Tuple

from mediashrink.config import Config
from mediashrink.decision import EncodePlan
from mediashrink.logs import Reporter, Sink
from mediashrink.retry import RetryPolicy, exponential

# Flags removed at each fallback level, in order
FALLBACK_LADDER: Tuple[Tuple[str, ...], ...] = (
    ("-hwaccel_device",),
    ("-hwaccel_output_format",),
    ("-hwaccel", "-hwaccel_device", "-hwaccel_output_format"),
)

COMPONENT_ERROR_RE = re.compile(r"\[(?P<component>[\w:-]+)\s*@\s*(?P<address>0x[0-9a-fA-F]+)\]\s*(?P<message>.*)")
# anchored: stream metadata echoed to stderr can contain "error" anywhere
GENERIC_ERROR_RE = re.compile(r"^\s*(?:error\b|conversion failed)", re.IGNORECASE)
TOLERATED_ERROR_RES = (
    re.compile(r"audio.*error|error.*audio", re.IGNORECASE),
    re.compile(r"invalid data found when processing input", re.IGNORECASE),
)
TIME_RE = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:[.,]\d+)?)")
SPEED_RE = re.compile(r"speed=\s*([0-9]*\.?[0-9]+)x")
FRAME_RE = re.compile(r"^\s*(?:frame|size)=\s*\S+")

POLL_INTERVAL = 0.2


class EncodeState(enum.Enum):
    VALIDATING = "validating"
    ENCODING = "encoding"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ProgressEvent:
    percent: float
    elapsed: float
    total: float
    speed: str = ""


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class EncodeResult:
    state: EncodeState
    returncode: Optional[int] = None
    message: str = ""
    errors: List[str] = field(default_factory=list)
    fatal_line: Optional[str] = None
    arguments: List[str] = field(default_factory=list)
    fallback_level: int = 0

    @property
    def ok(self) -> bool:
        return self.state is EncodeState.COMPLETED


# -------------------- ARGUMENT LADDER --------------------


def strip_flags(args: Sequence[str], flags: Sequence[str]) -> List[str]:
    """Remove each flag and its value, keeping the order of everything else."""
    out: List[str] = []
    skip = False
    for arg in args:
        if skip:
            skip = False
            continue
        if arg in flags:
            skip = True
            continue
        out.append(arg)
    return out


def validation_command(ffmpeg: str, args: Sequence[str], seconds: int) -> List[str]:
    """Bounded test encode into the null muxer."""
    return [ffmpeg, *args, "-t", str(seconds), "-f", "null", "-"]


def _run_returncode(cmd: List[str]) -> int:
    p = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    return p.returncode


# -------------------- PROGRESS --------------------


def parse_timestamp(line: str) -> Optional[float]:
    """Seconds from a ``time=HH:MM:SS.mmm`` token, or None."""
    m = TIME_RE.search(line)
    if not m:
        return None
    return int(m.group(1)) * 3600 + int(m.group(2)) * 60 + float(m.group(3).replace(",", "."))


class ProgressTracker:
    """
    Turns stderr lines into progress events.

    Percentages never decrease, and an event is only produced when the
    percentage strictly increases.
    """

    def __init__(self, total_seconds: float):
        self.total = max(0.0, float(total_seconds))
        self.percent = 0.0
        self.elapsed = 0.0
        self.speed = ""

    def feed(self, line: str) -> Optional[ProgressEvent]:
        m = SPEED_RE.search(line)
        if m:
            self.speed = f"{float(m.group(1)):.2f}x"

        seconds = parse_timestamp(line)
        if seconds is None or self.total <= 0:
            return None
        self.elapsed = max(self.elapsed, seconds)
        percent = round(min(100.0, self.elapsed / self.total * 100.0), 1)
        if percent <= self.percent:
            return None
        self.percent = percent
        return ProgressEvent(percent=percent, elapsed=self.elapsed, total=self.total, speed=self.speed)


def is_fatal(line: str) -> bool:
    """A generic error line that is not one of the tolerated ones."""
    if not GENERIC_ERROR_RE.search(line):
        return False
    return not any(p.search(line) for p in TOLERATED_ERROR_RES)


# -------------------- SUPERVISOR --------------------


def _pump(stream, queue: "Queue[Optional[str]]") -> None:
    try:
        for line in iter(stream.readline, ""):
            queue.put(line.rstrip("\r\n"))
    except (OSError, ValueError):
        pass
    finally:
        queue.put(None)


class EncodeSupervisor:
    """Validates, runs and monitors one encode at a time."""

    def __init__(
        self,
        cfg: Config,
        reporter: Reporter,
        runner: Callable[[List[str]], int] = _run_returncode,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        validation_policy: Optional[RetryPolicy] = None,
    ):
        self.cfg = cfg
        self.reporter = reporter
        self.runner = runner
        self.popen = popen
        self.validation_policy = validation_policy or RetryPolicy(
            max_attempts=cfg.validation_attempts + 1,
            backoff=exponential(cfg.validation_backoff_sec),
        )
        self.state = EncodeState.VALIDATING

    # ---- validating ----

    def validate(self, args: Sequence[str]) -> Tuple[Optional[List[str]], int]:
        """
        Find a runnable argument set.

        Returns:
            (arguments, fallback_level), or (None, level) when every level failed.
        """
        self.state = EncodeState.VALIDATING
        current = list(args)
        attempt = 1
        rc = self.runner(validation_command(self.cfg.ffmpeg, current, self.cfg.validation_seconds))
        if rc == 0:
            return current, 0

        level = 0
        for level, flags in enumerate(FALLBACK_LADDER, start=1):
            if attempt >= self.validation_policy.max_attempts:
                break
            stripped = strip_flags(current, flags)
            if stripped == current:
                continue
            self.reporter.warning(
                f"Validation failed (rc={rc}), retrying without {' '.join(flags)}", Sink.FILE
            )
            self.validation_policy.wait(attempt)
            attempt += 1
            current = stripped
            rc = self.runner(validation_command(self.cfg.ffmpeg, current, self.cfg.validation_seconds))
            if rc == 0:
                return current, level
        return None, level

    # ---- encoding ----

    def run(
        self,
        plan: EncodePlan,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> EncodeResult:
        """Validate then encode ``plan``."""
        args, level = self.validate(plan.arguments())
        if args is None:
            self.state = EncodeState.FAILED
            return EncodeResult(
                EncodeState.FAILED,
                message="validation failed at every acceleration fallback level",
                arguments=plan.arguments(),
                fallback_level=level,
            )
        if level:
            self.reporter.warning(f"Encoding with acceleration fallback level {level}")

        cmd = [self.cfg.ffmpeg, *args, str(plan.destination)]
        self.reporter.debug("CMD: " + subprocess.list2cmdline(cmd))
        result = self.encode(cmd, plan.duration, on_progress, cancel)
        result.arguments = args
        result.fallback_level = level
        return result

    def encode(
        self,
        cmd: List[str],
        duration: float,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> EncodeResult:
        """Run the encoder and monitor its stderr until it exits."""
        self.state = EncodeState.ENCODING
        tracker = ProgressTracker(duration)
        errors: List[str] = []

        process = self.popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
        )
        try:
            queue: "Queue[Optional[str]]" = Queue()
            reader = threading.Thread(target=_pump, args=(process.stderr, queue), daemon=True)
            reader.start()

            eof = False
            while True:
                if cancel is not None and cancel.is_set():
                    process.kill()
                    self.state = EncodeState.FAILED
                    return EncodeResult(EncodeState.FAILED, process.wait(), "cancelled", errors)

                try:
                    line = queue.get(timeout=POLL_INTERVAL)
                except Empty:
                    if eof and process.poll() is not None:
                        break
                    continue

                if line is None:
                    eof = True
                    if process.poll() is not None:
                        break
                    continue

                fatal = self._handle_line(line, tracker, errors, on_progress)
                if fatal:
                    process.kill()
                    rc = process.wait()
                    self.state = EncodeState.FAILED
                    self.reporter.error(f"Fatal encoder error: {line}")
                    return EncodeResult(EncodeState.FAILED, rc, "fatal encoder error", errors, fatal_line=line)

            rc = process.wait()
            if rc != 0:
                self.state = EncodeState.FAILED
                return EncodeResult(EncodeState.FAILED, rc, f"encoder exited with rc={rc}", errors)
            self.state = EncodeState.COMPLETED
            return EncodeResult(EncodeState.COMPLETED, rc, "encode complete", errors)
        finally:
            if process.poll() is None:
                process.kill()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                pass
            if process.stderr is not None:
                process.stderr.close()

    def _handle_line(
        self,
        line: str,
        tracker: ProgressTracker,
        errors: List[str],
        on_progress: Optional[ProgressCallback],
    ) -> bool:
        """Classify one stderr line. Returns True when the line is fatal."""
        m = COMPONENT_ERROR_RE.search(line)
        if m:
            errors.append(f"{m.group('component')}: {m.group('message').strip()}")
            self.reporter.write(line, sinks=Sink.FILE)
            return False
        if is_fatal(line):
            return True

        event = tracker.feed(line)
        if event is not None:
            if on_progress is not None:
                on_progress(event)
            return False
        if TIME_RE.search(line):
            return False

        if self.reporter.verbose:
            self.reporter.debug(line)
        elif line.strip() and not FRAME_RE.search(line):
            self.reporter.write(line, sinks=Sink.FILE)
        return False
