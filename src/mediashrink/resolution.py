"""
Resolution tiers.

The threshold ladder overlaps in raw numeric ranges; evaluation order is the
tie-break and existing heuristics (skip thresholds, size floors) depend on it.
"""

import re
from enum import IntEnum
from typing import Optional, Tuple


class ResolutionTier(IntEnum):
    """Coarse, ordered resolution bucket."""

    UNKNOWN = 0
    SD = 1
    DVD = 2
    HD = 3
    FHD = 4
    QHD = 5
    UHD_4K = 6
    FUHD_8K = 7


def classify(width: int, height: int) -> ResolutionTier:
    """Map (width, height) to a tier. First matching rung wins."""
    if width == 0 or height == 0:
        return ResolutionTier.UNKNOWN
    if width <= 500 and height <= 400:
        return ResolutionTier.SD
    if width >= 500 and height <= 600:
        return ResolutionTier.DVD
    if width >= 900 and height < 780:
        return ResolutionTier.HD
    if width >= 1400 and height < 1400:
        return ResolutionTier.FHD
    if width >= 2000 and height < 1700:
        return ResolutionTier.QHD
    if width >= 3000 and height <= 2160:
        return ResolutionTier.UHD_4K
    if height > 2160:
        return ResolutionTier.FUHD_8K
    return ResolutionTier.UNKNOWN


# Canonical frame size per tier; each one classifies back to its own tier.
TIER_DIMENSIONS = {
    ResolutionTier.SD: (480, 360),
    ResolutionTier.DVD: (720, 480),
    ResolutionTier.HD: (1280, 720),
    ResolutionTier.FHD: (1920, 1080),
    ResolutionTier.QHD: (2560, 1440),
    ResolutionTier.UHD_4K: (3840, 2160),
    ResolutionTier.FUHD_8K: (7680, 4320),
}

_ALIASES = {
    "sd": ResolutionTier.SD,
    "360p": ResolutionTier.SD,
    "dvd": ResolutionTier.DVD,
    "480p": ResolutionTier.DVD,
    "hd": ResolutionTier.HD,
    "720p": ResolutionTier.HD,
    "fhd": ResolutionTier.FHD,
    "1080p": ResolutionTier.FHD,
    "qhd": ResolutionTier.QHD,
    "1440p": ResolutionTier.QHD,
    "uhd": ResolutionTier.UHD_4K,
    "uhd_4k": ResolutionTier.UHD_4K,
    "4k": ResolutionTier.UHD_4K,
    "2160p": ResolutionTier.UHD_4K,
    "8k": ResolutionTier.FUHD_8K,
    "fuhd_8k": ResolutionTier.FUHD_8K,
    "4320p": ResolutionTier.FUHD_8K,
}


def parse_resolution(text: Optional[str]) -> Optional[Tuple[int, int]]:
    """
    Parse a requested destination resolution.

    Accepts a tier name or alias ("fhd", "1080p", "4k") or explicit "WxH".

    Returns:
        (width, height), or None when the text is empty or not recognised.
    """
    if not text:
        return None
    value = text.strip().lower()
    m = re.fullmatch(r"(\d+)\s*[x:]\s*(\d+)", value)
    if m:
        return int(m.group(1)), int(m.group(2))
    tier = _ALIASES.get(value)
    if tier is None:
        return None
    return TIER_DIMENSIONS[tier]
