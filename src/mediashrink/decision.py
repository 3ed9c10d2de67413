"""
Decision logic for mediashrink.

Contains:
- Size-per-minute and absolute size skip rules
- Resize geometry
- 10-bit and HDR detection
- Audio/subtitle language maps and default-disposition overrides
- Encoder argument selection per backend
- EncodePlan, the immutable result handed to the supervisor
"""

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from mediashrink.config import Config
from mediashrink.probe import ProbeResult, StreamRecord
from mediashrink.resolution import ResolutionTier, classify, parse_resolution

MIB = 1024 * 1024
GIB = 1024 * MIB

# Minimum MB per minute worth re-encoding, per source tier
SIZE_PER_MINUTE_THRESHOLDS = {
    ResolutionTier.SD: 5,
    ResolutionTier.DVD: 7,
    ResolutionTier.HD: 15,
    ResolutionTier.FHD: 20,
    ResolutionTier.QHD: 30,
    ResolutionTier.UHD_4K: 40,
}
UNKNOWN_TIER_THRESHOLD = 27

HDR_TRANSFERS = {"pq", "hlg", "smpte2084"}
NO_MAP = {"none", "nomap"}

_KIND_LETTER = {"audio": "a", "subtitle": "s"}


# -------------------- PLAN TYPES --------------------


@dataclass(frozen=True)
class Skip:
    """The file should not be encoded."""

    reason: str


@dataclass(frozen=True)
class Resize:
    width: int
    height: int

    @property
    def filter(self) -> str:
        return f"scale={self.width}:{self.height}"


@dataclass(frozen=True)
class EncodePlan:
    """Everything needed to run one encode."""

    source: Path
    destination: Path
    duration: float
    source_tier: ResolutionTier
    accel_args: Tuple[str, ...] = ()
    video_map: Tuple[str, ...] = ()
    audio_map: Tuple[str, ...] = ()
    subtitle_map: Tuple[str, ...] = ()
    disposition_args: Tuple[str, ...] = ()
    resize: Optional[Resize] = None
    hdr_args: Optional[Tuple[str, ...]] = None
    codec_args: Tuple[str, ...] = ()
    stream_copy_args: Tuple[str, ...] = ()
    ten_bit: bool = False
    reasons: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def resized(self) -> bool:
        return self.resize is not None

    @property
    def hdr(self) -> bool:
        return self.hdr_args is not None

    def arguments(self) -> List[str]:
        """Flat ffmpeg argument list, without the program name and output."""
        args = ["-hide_banner", "-y", *self.accel_args, "-i", str(self.source)]
        args += [*self.video_map, *self.audio_map, *self.subtitle_map]
        if self.resize is not None:
            args += ["-vf", self.resize.filter]
        args += list(self.codec_args)
        if self.hdr_args:
            args += list(self.hdr_args)
        args += [*self.disposition_args, *self.stream_copy_args]
        return args


Decision = Union[EncodePlan, Skip]


# -------------------- PURE HELPERS --------------------


def size_per_minute(size_bytes: int, duration_seconds: float) -> float:
    """Whole MiB divided by whole minutes, minutes rounded up (at least one)."""
    minutes = max(1, math.ceil(duration_seconds / 60.0))
    return (size_bytes // MIB) / minutes


def threshold_for(tier: ResolutionTier) -> int:
    return SIZE_PER_MINUTE_THRESHOLDS.get(tier, UNKNOWN_TIER_THRESHOLD)


def movie_size_floor(tier: ResolutionTier) -> Optional[float]:
    """
    Absolute size (GiB) below which a movie is not worth re-encoding.

    The second HD branch can never be taken; it stays so the historical
    table is unchanged.
    """
    if tier == ResolutionTier.SD:
        return 0.8
    elif tier == ResolutionTier.DVD:
        return 1.2
    elif tier == ResolutionTier.HD:
        return 1.5
    elif tier == ResolutionTier.HD:
        return 3.5
    elif tier == ResolutionTier.FHD:
        return 5.0
    elif tier == ResolutionTier.QHD:
        return 7.0
    elif tier == ResolutionTier.UHD_4K:
        return 9.0
    return None


def is_ten_bit(stream: StreamRecord) -> bool:
    """10-bit if the profile, raw sample depth or pixel format says so."""
    return "10" in stream.profile or stream.bits_per_raw_sample == 10 or "10" in stream.pix_fmt


def hdr_color_args(stream: StreamRecord) -> Optional[Tuple[str, ...]]:
    """Color tag arguments to carry HDR metadata through, or None for SDR."""
    if not (
        is_ten_bit(stream)
        and stream.color_primaries.startswith("bt2020")
        and stream.color_space.startswith("bt2020")
        and stream.color_transfer in HDR_TRANSFERS
    ):
        return None
    return (
        "-color_primaries",
        stream.color_primaries,
        "-color_trc",
        stream.color_transfer,
        "-colorspace",
        stream.color_space,
    )


def _even(value: float) -> int:
    return max(2, int(round(value / 2.0)) * 2)


def scale_target(
    src: Tuple[int, int],
    dst: Tuple[int, int],
    keep_aspect: bool = True,
    force_resize: bool = False,
) -> Optional[Resize]:
    """
    Compute the output frame size.

    Width is constrained to the destination width and height follows the
    source aspect ratio; when the destination is relatively wider than the
    source, height is constrained instead. Portrait/landscape mismatches are
    refused unless ``force_resize``, which stretches to the exact size.
    """
    sw, sh = src
    dw, dh = dst
    if sw <= 0 or sh <= 0 or dw <= 0 or dh <= 0:
        return None
    src_ar = sw / sh
    dst_ar = dw / dh

    if (src_ar <= 1) != (dst_ar <= 1):
        if not force_resize:
            return None
        return Resize(dw, dh)

    if not keep_aspect:
        return Resize(dw, dh)
    if dst_ar > src_ar:
        return Resize(_even(dh * src_ar), dh)
    return Resize(dw, _even(dw / src_ar))


def select_streams(
    streams: Sequence[StreamRecord], kind: str, requested: Optional[str]
) -> Tuple[Tuple[str, ...], List[StreamRecord]]:
    """
    Build -map arguments for one stream kind.

    Returns:
        (map_args, mapped_streams). All streams are mapped by default; a
        language with at least one match maps only that language; "none" or
        "nomap" maps nothing.
    """
    letter = _KIND_LETTER[kind]
    req = (requested or "all").strip().lower()
    if req in NO_MAP:
        return (), []
    if req != "all":
        matches = [s for s in streams if s.language == req and s.index is not None]
        if matches:
            args: List[str] = []
            for s in matches:
                args += ["-map", f"0:{s.index}"]
            return tuple(args), matches
    return ("-map", f"0:{letter}?"), list(streams)


def default_disposition_args(mapped: Sequence[StreamRecord], kind: str, preferred: Optional[str]) -> Tuple[str, ...]:
    """
    Mark the first mapped stream in ``preferred`` language as default.

    Returns nothing when no such stream exists or it is already the default.
    Mapped streams are not changed, only their default flag.
    """
    if not preferred:
        return ()
    lang = preferred.strip().lower()
    letter = _KIND_LETTER[kind]
    target = next((i for i, s in enumerate(mapped) if s.language == lang), None)
    if target is None or mapped[target].disposition.default:
        return ()
    args = [f"-disposition:{letter}:{target}", "default"]
    for i, s in enumerate(mapped):
        if i != target and s.disposition.default:
            args += [f"-disposition:{letter}:{i}", "0"]
    return tuple(args)


# -------------------- ENCODER ARGUMENTS --------------------

ENCODERS = {
    "hevc": {"cpu": "libx265", "qsv": "hevc_qsv", "nvenc": "hevc_nvenc", "vaapi": "hevc_vaapi", "amf": "hevc_amf"},
    "av1": {"cpu": "libsvtav1", "qsv": "av1_qsv", "nvenc": "av1_nvenc", "vaapi": "av1_vaapi", "amf": "av1_amf"},
}

# Presets: p1 (fastest) to p7 (slowest/best quality)
NVENC_PRESETS = {
    "ultrafast": "p1",
    "superfast": "p2",
    "veryfast": "p3",
    "faster": "p4",
    "fast": "p4",
    "medium": "p5",
    "slow": "p6",
    "slower": "p7",
    "veryslow": "p7",
}

# SVT-AV1 presets run 0 (slowest) to 13 (fastest)
SVTAV1_PRESETS = {
    "ultrafast": "12",
    "superfast": "11",
    "veryfast": "10",
    "faster": "9",
    "fast": "8",
    "medium": "7",
    "slow": "5",
    "slower": "4",
    "veryslow": "2",
}

AMF_QUALITY = {
    "ultrafast": "speed",
    "superfast": "speed",
    "veryfast": "speed",
    "faster": "balanced",
    "fast": "balanced",
    "medium": "balanced",
    "slow": "quality",
    "slower": "quality",
    "veryslow": "quality",
}


def video_codec_args(cfg: Config, ten_bit: bool) -> List[str]:
    """ffmpeg video encoding arguments for the configured codec and backend."""
    encoders = ENCODERS.get(cfg.codec)
    if encoders is None:
        raise RuntimeError(f"Unknown codec: {cfg.codec}")
    backend = cfg.backend
    encoder = encoders.get(backend)
    if encoder is None:
        raise RuntimeError(f"Unknown backend: {backend}")
    q = str(cfg.quality)

    if backend == "cpu":
        preset = SVTAV1_PRESETS.get(cfg.preset, cfg.preset) if cfg.codec == "av1" else cfg.preset
        return ["-c:v", encoder, "-preset", preset, "-crf", q, "-pix_fmt", "yuv420p10le" if ten_bit else "yuv420p"]
    if backend == "nvenc":
        return [
            "-c:v",
            encoder,
            "-preset",
            NVENC_PRESETS.get(cfg.preset, "p5"),
            "-rc",
            "vbr",
            "-cq",
            q,
            "-b:v",
            "0",
            "-pix_fmt",
            "p010le" if ten_bit else "yuv420p",
        ]
    if backend == "qsv":
        return ["-c:v", encoder, "-preset", cfg.preset, "-global_quality", q, "-pix_fmt", "p010le" if ten_bit else "nv12"]
    if backend == "vaapi":
        return ["-c:v", encoder, "-qp", q]
    # amf
    return [
        "-c:v",
        encoder,
        "-quality",
        AMF_QUALITY.get(cfg.preset, "balanced"),
        "-rc",
        "cqp",
        "-qp_i",
        q,
        "-qp_p",
        q,
    ]


def accel_args(cfg: Config) -> Tuple[str, ...]:
    """Decoder acceleration flags, in the order the fallback ladder strips them."""
    args: List[str] = []
    if cfg.hwaccel:
        args += ["-hwaccel", cfg.hwaccel]
        if cfg.hwaccel_device:
            args += ["-hwaccel_device", cfg.hwaccel_device]
        if cfg.hwaccel_output_format:
            args += ["-hwaccel_output_format", cfg.hwaccel_output_format]
    return tuple(args)


def stream_copy_args(cfg: Config) -> Tuple[str, ...]:
    subs = "mov_text" if cfg.container == "mp4" else "copy"
    return ("-c:a", "copy", "-c:s", subs, "-map_metadata", "0", "-map_chapters", "0")


def work_path_for(source: Path, cfg: Config) -> Path:
    """Where the encoder writes before the transition renames the result."""
    return source.parent / f"{source.stem}.encoding.{cfg.container}"


# -------------------- ENGINE --------------------


class DecisionEngine:
    """Decides, per file, whether and how to encode."""

    def __init__(self, cfg: Config):
        self.cfg = cfg

    def decide(self, source: Path, size_bytes: int, duration: float, probe: ProbeResult) -> Decision:
        """
        Run the decision rules in order.

        Args:
            source: Input file.
            size_bytes: Input file size.
            duration: Input duration in seconds (already resolved).
            probe: Parsed probe result.

        Returns:
            An EncodePlan, or Skip with the reason.
        """
        cfg = self.cfg
        video = probe.primary_video
        if video is None:
            return Skip("no video stream")

        src_dims = (video.width, video.height)
        tier = classify(*src_dims)
        reasons: List[str] = []

        # 1. compressibility
        spm = size_per_minute(size_bytes, duration)
        threshold = threshold_for(tier)
        if spm < threshold:
            if not cfg.force_convert:
                return Skip(f"{spm:.1f} MB/min is below the {tier.name} threshold of {threshold} MB/min")
            reasons.append(f"forced despite {spm:.1f} MB/min")

        # 2. absolute floors for movies
        if cfg.movie_mode:
            floor = movie_size_floor(tier)
            if floor is not None and size_bytes < floor * GIB:
                if not cfg.force_convert:
                    return Skip(f"{size_bytes / GIB:.2f} GB is below the {tier.name} movie floor of {floor} GB")
                reasons.append(f"forced below {floor} GB movie floor")

        # 3-5. resize
        resize = self._resize_for(src_dims, tier, reasons)

        # codec
        if resize is None and video.codec_name == cfg.codec and not cfg.force_convert:
            return Skip(f"already {cfg.codec}")

        # 6. bit depth / HDR
        ten_bit = is_ten_bit(video)
        hdr = hdr_color_args(video)

        # 7. languages
        audio_map, audio_mapped = select_streams(probe.audio, "audio", cfg.audio_lang)
        sub_map, sub_mapped = select_streams(probe.subtitle, "subtitle", cfg.subtitle_lang)
        disposition = default_disposition_args(
            audio_mapped, "audio", self._preferred(cfg.audio_lang)
        ) + default_disposition_args(sub_mapped, "subtitle", self._preferred(cfg.subtitle_lang))

        video_map = ("-map", f"0:{video.index}") if video.index is not None else ("-map", "0:v:0")

        return EncodePlan(
            source=source,
            destination=work_path_for(source, cfg),
            duration=duration,
            source_tier=tier,
            accel_args=accel_args(cfg),
            video_map=video_map,
            audio_map=audio_map,
            subtitle_map=sub_map,
            disposition_args=disposition,
            resize=resize,
            hdr_args=hdr,
            codec_args=tuple(video_codec_args(cfg, ten_bit)),
            stream_copy_args=stream_copy_args(cfg),
            ten_bit=ten_bit,
            reasons=tuple(reasons),
        )

    def _preferred(self, requested: Optional[str]) -> Optional[str]:
        req = (requested or "all").strip().lower()
        if req in NO_MAP:
            return None
        if req != "all":
            return req
        return self.cfg.default_lang

    def _resize_for(self, src: Tuple[int, int], tier: ResolutionTier, reasons: List[str]) -> Optional[Resize]:
        cfg = self.cfg
        dst = parse_resolution(cfg.resolution)
        if dst is None or not src[0] or not src[1]:
            return None
        dst_tier = classify(*dst)

        forced = cfg.force_convert or cfg.force_resize
        src_area = src[0] * src[1]
        dst_area = dst[0] * dst[1]
        if not forced:
            # an UNKNOWN tier (portrait, odd sizes) never counts as the same tier
            if tier != ResolutionTier.UNKNOWN and dst_tier == tier:
                return None
            if not cfg.scale_up and dst_area >= src_area:
                return None
            if not cfg.scale_down and dst_area <= src_area:
                return None

        resize = scale_target(src, dst, keep_aspect=cfg.keep_aspect, force_resize=cfg.force_resize)
        if resize is None:
            reasons.append("resize refused: orientation differs")
        elif resize.width == src[0] and resize.height == src[1]:
            return None
        return resize
