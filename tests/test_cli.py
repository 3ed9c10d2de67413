"""
Tests for CLI argument parsing and utility commands.
"""

from pathlib import Path

import pytest


class TestArgumentParsing:
    """Tests for argument parsing."""

    def test_defaults(self):
        """Test default values."""
        from mediashrink.cli import parse_args

        cfg, ns = parse_args([])
        assert cfg.codec == "hevc"
        assert cfg.backend == "cpu"
        assert cfg.move_on_completion is True
        assert cfg.recursive is True
        assert ns.paths == []

    def test_encoding_options(self):
        """Test encoding arguments."""
        from mediashrink.cli import parse_args

        cfg, _ = parse_args(["--codec", "av1", "--backend", "nvenc", "--quality", "30", "--container", "mp4"])
        assert cfg.codec == "av1"
        assert cfg.backend == "nvenc"
        assert cfg.quality == 30
        assert cfg.container == "mp4"

    def test_negated_flags(self):
        """Test store_false flags."""
        from mediashrink.cli import parse_args

        cfg, _ = parse_args(["--keep-in-place", "--no-recursive", "--no-scale-down", "--no-progress"])
        assert cfg.move_on_completion is False
        assert cfg.recursive is False
        assert cfg.scale_down is False
        assert cfg.progress is False

    def test_run_flags_and_paths(self):
        """Test run flags and positional paths."""
        from mediashrink.cli import parse_args

        cfg, ns = parse_args(["-v", "-n", "--halt-on-error", "-I", "sample", "-I", "trailer", "/a", "b.mkv"])
        assert cfg.verbose and cfg.dryrun and cfg.halt_on_error
        assert cfg.ignore_patterns == ["sample", "trailer"]
        assert ns.paths == [Path("/a"), Path("b.mkv")]

    def test_library_options(self):
        """Test library refresh arguments."""
        from mediashrink.cli import parse_args

        cfg, _ = parse_args(["--library-kind", "sonarr", "--library-url", "http://s:8989", "--library-api-key", "k"])
        assert cfg.library_kind == "sonarr"
        assert cfg.library_url == "http://s:8989"
        assert cfg.library_api_key == "k"

    def test_invalid_codec(self):
        """Test that unknown codecs are rejected."""
        from mediashrink.cli import parse_args

        with pytest.raises(SystemExit):
            parse_args(["--codec", "vp9"])

    def test_version(self, capsys):
        """Test --version."""
        from mediashrink import __version__
        from mediashrink.cli import parse_args

        with pytest.raises(SystemExit) as exc:
            parse_args(["--version"])
        assert exc.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_history_default_count(self):
        """Test --history without a count."""
        from mediashrink.cli import parse_args

        _, ns = parse_args(["--history"])
        assert ns.history == 20


class TestMain:
    """Tests for main() utility paths."""

    def test_show_dirs(self, mock_xdg_dirs, temp_dir):
        """Test --show-dirs writes the default config and exits cleanly."""
        from mediashrink.cli import main

        assert main(["--show-dirs"]) == 0
        assert (temp_dir / "config" / "mediashrink" / "config.toml").exists()

    def test_history_empty(self, mock_xdg_dirs):
        """Test --history-stats with no history."""
        from mediashrink.cli import main

        assert main(["--history-stats"]) == 0

    def test_missing_path(self, mock_xdg_dirs, temp_dir):
        """Test that a missing input path is exit code 1."""
        from mediashrink.cli import main

        assert main(["--no-progress", str(temp_dir / "nowhere")]) == 1

    def test_empty_directory(self, mock_xdg_dirs, temp_dir):
        """Test a run with nothing to do."""
        from mediashrink.cli import main

        (temp_dir / "empty").mkdir()
        assert main(["--no-progress", str(temp_dir / "empty")]) == 0
        logs = list((temp_dir / "state" / "mediashrink" / "logs").glob("*.log"))
        assert len(logs) == 1
        assert "Run finished" in logs[0].read_text()

    def test_unresolved_state_dirs(self, mock_xdg_dirs, temp_dir, monkeypatch):
        """Test that a run without state directories exits with code 1."""
        from mediashrink.cli import main
        from mediashrink.config import Config

        monkeypatch.setattr(Config, "resolve_dirs", lambda self, app_dirs: None)
        (temp_dir / "empty").mkdir()
        assert main(["--no-progress", str(temp_dir / "empty")]) == 1
        assert not (temp_dir / "state" / "mediashrink" / "history.db").exists()

    def test_history_falls_back_to_app_state_dir(self, mock_xdg_dirs, temp_dir):
        """Test that --history works on a config whose state dir is unset."""
        from mediashrink.cli import handle_utility_commands, parse_args
        from mediashrink.config import get_app_dirs

        cfg, ns = parse_args(["--history"])
        assert cfg.state_dir is None
        assert handle_utility_commands(cfg, ns, get_app_dirs()) == 0
        assert (temp_dir / "state" / "mediashrink" / "history.db").exists()
