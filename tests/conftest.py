"""
Pytest configuration and shared fixtures for mediashrink tests.
"""

import io
import sys
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional

import pytest

# Add src to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config_dir(temp_dir: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = temp_dir / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def temp_state_dir(temp_dir: Path) -> Path:
    """Create a temporary state directory."""
    state_dir = temp_dir / "state"
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


@pytest.fixture
def mock_xdg_dirs(temp_dir: Path, monkeypatch):
    """Mock XDG directories to use temporary paths."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_dir / "config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(temp_dir / "state"))


@pytest.fixture
def default_config():
    """Return a default Config instance for testing."""
    from mediashrink.config import Config

    return Config()


@pytest.fixture
def fast_config(temp_dir: Path):
    """Config with state under temp_dir and no retry pauses."""
    from mediashrink.config import Config

    return Config.for_library(
        state_dir=temp_dir / "state",
        deferred_dir=temp_dir / "deferred",
        log_dir=temp_dir / "logs",
        validation_backoff_sec=0.0,
        rename_delay_sec=0.0,
        move_delay_sec=0.0,
        delete_delay_sec=0.0,
    )


@pytest.fixture
def console_buffer() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def reporter(temp_dir: Path, console_buffer: io.StringIO):
    """Reporter writing to a log file in temp_dir and a captured console."""
    from rich.console import Console

    from mediashrink.logs import Reporter

    console = Console(file=console_buffer, no_color=True, width=200)
    return Reporter(temp_dir / "logs" / "run.log", console)


def stream_block(fields: Dict[str, object], disposition: Optional[Dict[str, int]] = None) -> str:
    """Render one ffprobe [STREAM] block."""
    lines = ["[STREAM]"]
    lines += [f"{k}={v}" for k, v in fields.items()]
    lines += [f"DISPOSITION:{k}={v}" for k, v in (disposition or {}).items()]
    lines.append("[/STREAM]")
    return "\n".join(lines) + "\n"


@pytest.fixture
def make_probe():
    """
    Build a ProbeResult from plain dicts.

    Video defaults to a 1920x1080 h264 stream; audio and subtitle streams are
    given as (language, is_default) pairs.
    """
    from mediashrink.probe import ProbeResult, parse_streams

    def _make(
        video: Optional[Dict[str, object]] = None,
        audio: Optional[List[tuple]] = None,
        subtitle: Optional[List[tuple]] = None,
        format_duration: Optional[float] = None,
    ):
        v = {"index": 0, "codec_name": "h264", "codec_type": "video", "width": 1920, "height": 1080}
        if video is not None:
            v.update(video)
        index = 1
        audio_text = ""
        for lang, default in audio or []:
            audio_text += stream_block(
                {"index": index, "codec_name": "aac", "codec_type": "audio", "TAG:language": lang},
                {"default": int(default)},
            )
            index += 1
        sub_text = ""
        for lang, default in subtitle or []:
            sub_text += stream_block(
                {"index": index, "codec_name": "subrip", "codec_type": "subtitle", "TAG:language": lang},
                {"default": int(default)},
            )
            index += 1
        fmt = {"duration": str(format_duration)} if format_duration is not None else {}
        return ProbeResult(
            video=tuple(parse_streams(stream_block(v), "video")),
            audio=tuple(parse_streams(audio_text, "audio")),
            subtitle=tuple(parse_streams(sub_text, "subtitle")),
            format=fmt,
        )

    return _make
