"""
Stream metadata parsing and probing.

Contains:
- Typed, immutable stream records built from ffprobe's default text output
- Block parser for [STREAM] and [FORMAT] sections
- ffprobe runner (one invocation per stream kind)
- Duration resolution with three fallback strategies
"""

import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from mediashrink.config import Config
from mediashrink.errors import DurationUnavailableError, ProbeError

STREAM_KINDS = ("audio", "video", "subtitle")

_SELECT_FLAG = {"audio": "a", "video": "v", "subtitle": "s"}

DISPOSITION_PREFIX = "DISPOSITION:"
TAG_PREFIX = "TAG:"

# -------------------- RECORD TYPES --------------------


def _as_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _as_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class Disposition:
    """Per-stream boolean flags (default, forced, hearing_impaired, ...)."""

    flags: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))

    def __getitem__(self, name: str) -> bool:
        return self.flags.get(name, False)

    @property
    def default(self) -> bool:
        return self["default"]

    @property
    def forced(self) -> bool:
        return self["forced"]

    @property
    def hearing_impaired(self) -> bool:
        return self["hearing_impaired"]

    @property
    def attached_pic(self) -> bool:
        return self["attached_pic"]


@dataclass(frozen=True)
class StreamRecord:
    """
    One audio, video or subtitle stream.

    ``fields`` keeps every key exactly as probed, in probe order; tags share
    the namespace so ``TAG:language`` becomes ``language``. Every accessor
    is optional: absent or unparsable values come back as None or "".
    """

    kind: str
    fields: Mapping[str, str]
    disposition: Disposition = field(default_factory=Disposition)

    def get(self, key: str, default: str = "") -> str:
        return self.fields.get(key, default)

    @property
    def index(self) -> Optional[int]:
        return _as_int(self.fields.get("index"))

    @property
    def codec_name(self) -> str:
        return self.get("codec_name").lower()

    @property
    def codec_type(self) -> str:
        return self.get("codec_type").lower()

    @property
    def language(self) -> str:
        return self.get("language").lower()

    @property
    def title(self) -> str:
        return self.get("title")

    @property
    def profile(self) -> str:
        return self.get("profile")

    @property
    def pix_fmt(self) -> str:
        return self.get("pix_fmt").lower()

    @property
    def bits_per_raw_sample(self) -> Optional[int]:
        return _as_int(self.fields.get("bits_per_raw_sample"))

    @property
    def color_primaries(self) -> str:
        return self.get("color_primaries").lower()

    @property
    def color_transfer(self) -> str:
        return self.get("color_transfer").lower()

    @property
    def color_space(self) -> str:
        return self.get("color_space").lower()

    @property
    def width(self) -> int:
        return _as_int(self.fields.get("width")) or 0

    @property
    def height(self) -> int:
        return _as_int(self.fields.get("height")) or 0

    @property
    def duration(self) -> Optional[float]:
        return _as_float(self.fields.get("duration"))

    @property
    def bit_rate(self) -> Optional[int]:
        return _as_int(self.fields.get("bit_rate"))


# -------------------- PARSER --------------------


def _iter_blocks(text: str, name: str) -> Iterator[List[str]]:
    """
    Yield the inner lines of each complete ``[NAME]...[/NAME]`` block.

    A block reopened before it is closed, or still open at the end of the
    text, is malformed and is dropped.
    """
    opener = f"[{name}]".upper()
    closer = f"[/{name}]".upper()
    current: Optional[List[str]] = None
    for raw in text.splitlines():
        line = raw.strip()
        marker = line.upper()
        if marker == opener:
            current = []
        elif marker == closer:
            if current is not None:
                yield current
            current = None
        elif current is not None:
            current.append(line)


def _parse_block(lines: Sequence[str]) -> Tuple[Dict[str, str], Dict[str, bool]]:
    values: Dict[str, str] = {}
    flags: Dict[str, bool] = {}
    for line in lines:
        key, sep, value = line.partition("=")
        if not sep or not key:
            continue
        upper = key.upper()
        if upper.startswith(DISPOSITION_PREFIX):
            name = key[len(DISPOSITION_PREFIX):]
            if name:
                flags[name] = value.strip() == "1"
        elif upper.startswith(TAG_PREFIX):
            name = key[len(TAG_PREFIX):]
            if name:
                values[name] = value
        else:
            values[key] = value
    return values, flags


def parse_streams(text: str, kind: str) -> List[StreamRecord]:
    """
    Parse an ffprobe ``-show_streams`` text dump into stream records.

    Args:
        text: Raw probe output.
        kind: "audio", "video" or "subtitle".

    Returns:
        One record per non-empty, well-formed [STREAM] block, in source order.

    Raises:
        ValueError: If ``kind`` is not a known stream kind.
    """
    if kind not in STREAM_KINDS:
        raise ValueError(f"Unknown stream kind: {kind!r}")

    records = []
    for lines in _iter_blocks(text, "STREAM"):
        values, flags = _parse_block(lines)
        if not values and not flags:
            continue
        records.append(
            StreamRecord(
                kind=kind,
                fields=MappingProxyType(values),
                disposition=Disposition(MappingProxyType(flags)),
            )
        )
    return records


def parse_format(text: str) -> Dict[str, str]:
    """Return the fields of the first [FORMAT] block, or {}."""
    for lines in _iter_blocks(text, "FORMAT"):
        values, _flags = _parse_block(lines)
        return values
    return {}


def serialize_streams(records: Sequence[StreamRecord]) -> str:
    """Render records back into [STREAM] block text."""
    out: List[str] = []
    for record in records:
        out.append("[STREAM]")
        out.extend(f"{k}={v}" for k, v in record.fields.items())
        out.extend(
            f"{DISPOSITION_PREFIX}{k}={1 if v else 0}" for k, v in record.disposition.flags.items()
        )
        out.append("[/STREAM]")
    return "\n".join(out) + ("\n" if out else "")


# -------------------- PROBE RUNNER --------------------


@dataclass(frozen=True)
class ProbeResult:
    """Everything probed from one file."""

    video: Tuple[StreamRecord, ...] = ()
    audio: Tuple[StreamRecord, ...] = ()
    subtitle: Tuple[StreamRecord, ...] = ()
    format: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    raw_text: str = ""

    @property
    def primary_video(self) -> Optional[StreamRecord]:
        """First video stream that is not cover art."""
        for stream in self.video:
            if not stream.disposition.attached_pic:
                return stream
        return self.video[0] if self.video else None


def _run_ffprobe(cmd: List[str], timeout: float) -> Tuple[str, str]:
    try:
        p = subprocess.run(cmd, capture_output=True, text=True, errors="replace", timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ProbeError(f"ffprobe failed to run: {e}") from e
    if p.returncode != 0:
        raise ProbeError(f"ffprobe error (rc={p.returncode}): {p.stderr.strip()[-300:]}")
    return p.stdout, p.stderr


def run_probe(path: Path, cfg: Config, timeout: float = 60.0) -> ProbeResult:
    """
    Probe a file with ffprobe.

    Streams are probed once per kind with ``-select_streams``; the container
    block is probed separately and its stderr banner is kept as raw text for
    the last duration fallback.

    Raises:
        ProbeError: If ffprobe cannot be run or exits non-zero.
    """
    streams: Dict[str, List[StreamRecord]] = {}
    for kind in STREAM_KINDS:
        cmd = [cfg.ffprobe, "-hide_banner", "-show_streams", "-select_streams", _SELECT_FLAG[kind], str(path)]
        out, _err = _run_ffprobe(cmd, timeout)
        streams[kind] = parse_streams(out, kind)

    out, err = _run_ffprobe([cfg.ffprobe, "-hide_banner", "-show_format", str(path)], timeout)
    return ProbeResult(
        video=tuple(streams["video"]),
        audio=tuple(streams["audio"]),
        subtitle=tuple(streams["subtitle"]),
        format=MappingProxyType(parse_format(out)),
        raw_text=out + err,
    )


# -------------------- DURATION --------------------

_RAW_DURATION = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:[.,]\d+)?)")


def resolve_duration(result: ProbeResult) -> float:
    """
    Return the duration in seconds.

    Tries the video stream duration, then the container duration, then a
    ``Duration: HH:MM:SS.xx`` pattern in the raw probe text.

    Raises:
        DurationUnavailableError: If all three strategies fail.
    """
    video = result.primary_video
    if video is not None and video.duration and video.duration > 0:
        return video.duration

    container = _as_float(result.format.get("duration"))
    if container and container > 0:
        return container

    m = _RAW_DURATION.search(result.raw_text)
    if m:
        seconds = int(m.group(1)) * 3600 + int(m.group(2)) * 60 + float(m.group(3).replace(",", "."))
        if seconds > 0:
            return seconds

    raise DurationUnavailableError("No duration in stream, container or raw probe output")
