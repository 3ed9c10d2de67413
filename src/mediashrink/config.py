"""
Configuration management for mediashrink.

Handles:
- XDG Base Directory compliance
- TOML configuration file loading
- Config dataclass with all options
- Configuration merging (system -> user -> CLI)

A Config instance is built once per run and passed into every component.
There is no module-level configuration state.
"""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

# Python 3.11+ ships tomllib; older interpreters use the tomli backport
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


APP_NAME = "mediashrink"

# -------------------- XDG DIRECTORIES --------------------


def get_xdg_config_home() -> Path:
    """Get XDG config home directory."""
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def get_xdg_state_home() -> Path:
    """Get XDG state home directory."""
    return Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))


def get_app_dirs() -> Dict[str, Path]:
    """Return all application directories, creating them if needed."""
    dirs = {
        "config": get_xdg_config_home() / APP_NAME,
        "state": get_xdg_state_home() / APP_NAME,
        "logs": get_xdg_state_home() / APP_NAME / "logs",
        "deferred": get_xdg_state_home() / APP_NAME / "deferred",
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    return dirs


# -------------------- CONFIGURATION DATACLASS --------------------


@dataclass
class Config:
    """All configuration options for mediashrink."""

    # Tools
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"

    # Target encode
    codec: str = "hevc"  # hevc, av1
    backend: str = "cpu"  # cpu, qsv, nvenc, vaapi, amf
    quality: int = 23  # crf / cq / qp / global_quality depending on backend
    preset: str = "medium"
    container: str = "mkv"

    # Hardware decode acceleration (empty = no acceleration flags)
    hwaccel: str = ""
    hwaccel_device: str = ""
    hwaccel_output_format: str = ""

    # Resizing
    resolution: Optional[str] = None  # e.g. "1080p", "hd", "1280x720"
    scale_up: bool = False
    scale_down: bool = True
    keep_aspect: bool = True

    # Decisions
    force_convert: bool = False
    force_resize: bool = False
    movie_mode: bool = False

    # Languages ("all", "none"/"nomap", or a language code)
    audio_lang: str = "all"
    subtitle_lang: str = "all"
    default_lang: Optional[str] = None  # preferred language marked default

    # Files
    library_root: Optional[Path] = None
    processed_dir: Optional[Path] = None
    move_on_completion: bool = True
    skip_marker: str = "shrunk"
    min_output_bytes: int = 100_000
    extensions: List[str] = field(
        default_factory=lambda: [".mkv", ".mp4", ".avi", ".m4v", ".mov", ".ts", ".wmv"]
    )
    stable_wait: int = 0
    recursive: bool = True
    ignore_patterns: List[str] = field(default_factory=list)

    # Retry budgets
    validation_attempts: int = 3
    validation_backoff_sec: float = 2.0
    validation_seconds: int = 10
    rename_attempts: int = 3
    rename_delay_sec: float = 5.0
    move_attempts: int = 5
    move_delay_sec: float = 15.0
    delete_attempts: int = 5
    delete_delay_sec: float = 15.0

    # Behaviour
    halt_on_error: bool = False
    verbose: bool = False
    dryrun: bool = False
    progress: bool = True

    # State
    state_dir: Optional[Path] = None
    deferred_dir: Optional[Path] = None
    log_dir: Optional[Path] = None

    # Library refresh webhook
    library_kind: str = "radarr"  # radarr, sonarr
    library_url: Optional[str] = None
    library_api_key: Optional[str] = None
    library_timeout: float = 30.0

    @classmethod
    def for_library(cls, **kwargs) -> "Config":
        """
        Create a Config instance for programmatic use.

        Disables the progress display, which is not suitable for library
        callers.

        Example:
            >>> config = Config.for_library(codec="av1", quality=30)
        """
        defaults: Dict[str, Any] = {"progress": False}
        defaults.update(kwargs)
        return cls(**defaults)

    def resolve_dirs(self, app_dirs: Dict[str, Path]) -> None:
        """Fill unset state directories from the XDG application directories."""
        if self.state_dir is None:
            self.state_dir = app_dirs["state"]
        if self.deferred_dir is None:
            self.deferred_dir = app_dirs["deferred"]
        if self.log_dir is None:
            self.log_dir = app_dirs["logs"]


# -------------------- CONFIG FILE LOADING --------------------


def _load_single_config(config_dir: Path) -> Dict[str, Any]:
    """Load config.toml from a single directory."""
    toml_path = config_dir / "config.toml"
    if not toml_path.exists():
        return {}
    try:
        with toml_path.open("rb") as f:
            return dict(tomllib.load(f))
    except (OSError, tomllib.TOMLDecodeError) as e:
        print(f"Warning: Failed to load {toml_path}: {e}", file=sys.stderr)
        return {}


def _deep_merge_dicts(base: dict, override: dict) -> dict:
    """Deep merge two dicts, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def load_config_file(config_dir: Path, system_dir: Path = Path("/etc") / APP_NAME) -> dict:
    """
    Load config with priority:
    1. User config: ~/.config/mediashrink/config.toml (highest priority)
    2. System config: /etc/mediashrink/config.toml (lowest priority, optional)
    """
    system_config = _load_single_config(system_dir) if system_dir.exists() else {}
    user_config = _load_single_config(config_dir)
    return _deep_merge_dicts(system_config, user_config)


def _get_default_config_toml() -> str:
    """Return default config as TOML string."""
    return """# mediashrink configuration file
# This file is auto-generated on first run

[encoding]
codec = "hevc"     # hevc, av1
backend = "cpu"    # cpu, qsv, nvenc, vaapi, amf
quality = 23
preset = "medium"
container = "mkv"

[hwaccel]
# Decoder acceleration; dropped step by step when the validation pass fails
mode = ""
device = ""
output_format = ""

[resize]
# resolution = "1080p"
scale_up = false
scale_down = true
keep_aspect = true

[languages]
audio = "all"
subtitle = "all"
# default = "eng"

[files]
# library_root = "/media/movies"
# processed_dir = "/media/processed"
move_on_completion = true
skip_marker = "shrunk"
stable_wait = 0

[scan]
recursive = true
ignore_patterns = []

[library]
# kind = "radarr"   # radarr, sonarr
# url = "http://localhost:7878"
# api_key = ""
"""


def save_default_config(config_dir: Path) -> Path:
    """Create the default config file if missing. Returns its path."""
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / "config.toml"
    if not path.exists():
        path.write_text(_get_default_config_toml())
    return path


_PATH_ATTRS = {"library_root", "processed_dir", "state_dir", "deferred_dir", "log_dir"}


def apply_config_to_args(file_config: dict, cfg: Config) -> None:
    """
    Apply file config values to a Config instance.

    Values already changed from their defaults (set on the command line) are
    left alone, so CLI arguments keep priority over the config file.
    """
    default_cfg = Config()

    mappings = {
        ("encoding", "codec"): "codec",
        ("encoding", "backend"): "backend",
        ("encoding", "quality"): "quality",
        ("encoding", "preset"): "preset",
        ("encoding", "container"): "container",
        ("hwaccel", "mode"): "hwaccel",
        ("hwaccel", "device"): "hwaccel_device",
        ("hwaccel", "output_format"): "hwaccel_output_format",
        ("resize", "resolution"): "resolution",
        ("resize", "scale_up"): "scale_up",
        ("resize", "scale_down"): "scale_down",
        ("resize", "keep_aspect"): "keep_aspect",
        ("languages", "audio"): "audio_lang",
        ("languages", "subtitle"): "subtitle_lang",
        ("languages", "default"): "default_lang",
        ("files", "library_root"): "library_root",
        ("files", "processed_dir"): "processed_dir",
        ("files", "move_on_completion"): "move_on_completion",
        ("files", "skip_marker"): "skip_marker",
        ("files", "extensions"): "extensions",
        ("files", "stable_wait"): "stable_wait",
        ("scan", "recursive"): "recursive",
        ("scan", "ignore_patterns"): "ignore_patterns",
        ("library", "kind"): "library_kind",
        ("library", "url"): "library_url",
        ("library", "api_key"): "library_api_key",
        ("behaviour", "halt_on_error"): "halt_on_error",
        ("behaviour", "movie_mode"): "movie_mode",
        ("behaviour", "verbose"): "verbose",
    }

    for (section, key), attr_name in mappings.items():
        if section not in file_config or key not in file_config[section]:
            continue
        if getattr(cfg, attr_name) != getattr(default_cfg, attr_name):
            continue
        value = file_config[section][key]
        if attr_name in _PATH_ATTRS and value:
            value = Path(value).expanduser()
        setattr(cfg, attr_name, value)
