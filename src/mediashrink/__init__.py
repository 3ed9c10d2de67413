"""
mediashrink - batch re-encode a media library to HEVC or AV1.

Each file is probed, checked against size-per-minute and size floors, and
only re-encoded when that is likely to save space. Finished encodes replace
the original, which is kept in a processed tree.

Example usage:
    # As a command-line tool
    $ mediashrink /media/movies
    $ mediashrink --codec av1 --backend nvenc --resolution 1080p movie.mkv

    # As a Python module
    from mediashrink import Config, DecisionEngine, run_probe, resolve_duration

    cfg = Config.for_library(codec="av1")
    probe = run_probe(path, cfg)
    decision = DecisionEngine(cfg).decide(path, path.stat().st_size, resolve_duration(probe), probe)
"""

__version__ = "0.4.0"
__description__ = "Batch media re-encoder with size-based skip rules"

# Public API exports
from mediashrink.config import Config, get_app_dirs, load_config_file
from mediashrink.decision import DecisionEngine, EncodePlan, Skip
from mediashrink.errors import (
    DurationUnavailableError,
    HaltRequested,
    LibraryRefreshError,
    MediaShrinkError,
    ProbeError,
)
from mediashrink.history import HistoryDB
from mediashrink.pipeline import Pipeline, RunReport
from mediashrink.probe import ProbeResult, StreamRecord, parse_streams, resolve_duration, run_probe
from mediashrink.resolution import ResolutionTier, classify
from mediashrink.supervisor import EncodeResult, EncodeSupervisor
from mediashrink.transition import DeferredMoveQueue, FileTransitionManager, TransitionOutcome

__all__ = [
    "__version__",
    # Config
    "Config",
    "get_app_dirs",
    "load_config_file",
    # Probing
    "ProbeResult",
    "StreamRecord",
    "parse_streams",
    "run_probe",
    "resolve_duration",
    # Decisions
    "ResolutionTier",
    "classify",
    "DecisionEngine",
    "EncodePlan",
    "Skip",
    # Encoding
    "EncodeSupervisor",
    "EncodeResult",
    # Transitions
    "FileTransitionManager",
    "DeferredMoveQueue",
    "TransitionOutcome",
    # History
    "HistoryDB",
    # Pipeline
    "Pipeline",
    "RunReport",
    # Errors
    "MediaShrinkError",
    "ProbeError",
    "DurationUnavailableError",
    "HaltRequested",
    "LibraryRefreshError",
]
