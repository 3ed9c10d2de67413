"""
Tests for encoder supervision.
"""

import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

ACCEL = ["-hwaccel", "cuda", "-hwaccel_device", "0", "-hwaccel_output_format", "cuda"]
BASE = ["-hide_banner", "-y", *ACCEL, "-i", "in.mkv", "-c:v", "libx265"]


class FakeRunner:
    """Validation runner returning scripted exit codes."""

    def __init__(self, codes):
        self.codes = list(codes)
        self.commands = []

    def __call__(self, cmd):
        self.commands.append(cmd)
        return self.codes.pop(0) if self.codes else 1


def child(script: str):
    return [sys.executable, "-c", script]


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_supervisor(fast_config, reporter, sleeps):
    from mediashrink.retry import RetryPolicy, exponential
    from mediashrink.supervisor import EncodeSupervisor

    def _make(runner=None, **kwargs):
        policy = RetryPolicy(max_attempts=4, backoff=exponential(2.0), sleep=sleeps.append)
        return EncodeSupervisor(
            fast_config, reporter, runner=runner or FakeRunner([0]), validation_policy=policy, **kwargs
        )

    return _make


class TestStripFlags:
    """Tests for strip_flags."""

    def test_removes_flag_and_value(self):
        """Test that a flag and its value are removed."""
        from mediashrink.supervisor import strip_flags

        assert strip_flags(BASE, ["-hwaccel_device"]) == [
            "-hide_banner", "-y", "-hwaccel", "cuda", "-hwaccel_output_format", "cuda",
            "-i", "in.mkv", "-c:v", "libx265",
        ]

    def test_keeps_order_of_remainder(self):
        """Test that removing every acceleration flag keeps the rest in order."""
        from mediashrink.supervisor import strip_flags

        stripped = strip_flags(BASE, ["-hwaccel", "-hwaccel_device", "-hwaccel_output_format"])
        assert stripped == ["-hide_banner", "-y", "-i", "in.mkv", "-c:v", "libx265"]

    def test_missing_flag_is_noop(self):
        """Test stripping a flag that is not present."""
        from mediashrink.supervisor import strip_flags

        assert strip_flags(["-i", "a"], ["-hwaccel"]) == ["-i", "a"]


class TestValidationLadder:
    """Tests for the acceleration fallback ladder."""

    def test_first_try_passes(self, make_supervisor, sleeps):
        """Test that a passing validation keeps all flags."""
        runner = FakeRunner([0])
        args, level = make_supervisor(runner).validate(BASE)
        assert args == BASE
        assert level == 0
        assert sleeps == []
        cmd = runner.commands[0]
        assert cmd[-5:] == ["-t", "10", "-f", "null", "-"]

    def test_drops_device_first(self, make_supervisor, sleeps):
        """Test that the decoder device is dropped at level 1."""
        args, level = make_supervisor(FakeRunner([1, 0])).validate(BASE)
        assert level == 1
        assert "-hwaccel_device" not in args
        assert "-hwaccel_output_format" in args
        assert sleeps == [2.0]

    def test_drops_everything_last(self, make_supervisor, sleeps):
        """Test that all acceleration flags go at level 3, with exponential backoff."""
        runner = FakeRunner([1, 1, 1, 0])
        args, level = make_supervisor(runner).validate(BASE)
        assert level == 3
        assert not any(a.startswith("-hwaccel") for a in args)
        assert sleeps == [2.0, 4.0, 8.0]
        assert len(runner.commands) == 4

    def test_exhausted(self, make_supervisor):
        """Test that failing every level gives no arguments."""
        runner = FakeRunner([1, 1, 1, 1])
        args, _level = make_supervisor(runner).validate(BASE)
        assert args is None
        assert len(runner.commands) == 4

    def test_noop_levels_skipped(self, make_supervisor, sleeps):
        """Test that levels removing nothing are not run."""
        runner = FakeRunner([1, 0])
        args, level = make_supervisor(runner).validate(["-hwaccel", "vaapi", "-i", "in.mkv"])
        assert level == 3
        assert args == ["-i", "in.mkv"]
        assert len(runner.commands) == 2
        assert sleeps == [2.0]

    def test_no_acceleration_to_strip(self, make_supervisor):
        """Test a failing validation with nothing to strip."""
        runner = FakeRunner([1])
        args, _level = make_supervisor(runner).validate(["-i", "in.mkv"])
        assert args is None
        assert len(runner.commands) == 1


class TestProgressTracker:
    """Tests for ProgressTracker."""

    def test_strictly_increasing_events(self):
        """Test that repeated and backwards timestamps produce no events."""
        from mediashrink.supervisor import ProgressTracker

        tracker = ProgressTracker(100.0)
        stamps = ["00:00:10.00", "00:00:10.00", "00:00:25.00", "00:00:20.00", "00:00:25.00", "00:01:40.00"]
        events = [tracker.feed(f"frame=1 time={s} bitrate=N/A speed=2.0x") for s in stamps]
        percents = [e.percent for e in events if e is not None]
        assert percents == [10.0, 25.0, 100.0]

    def test_capped_at_hundred(self):
        """Test that progress never exceeds 100%."""
        from mediashrink.supervisor import ProgressTracker

        tracker = ProgressTracker(10.0)
        assert tracker.feed("time=00:00:30.00").percent == 100.0
        assert tracker.feed("time=00:00:40.00") is None

    def test_speed_indicator(self):
        """Test that speed= updates the speed string."""
        from mediashrink.supervisor import ProgressTracker

        tracker = ProgressTracker(60.0)
        event = tracker.feed("frame=  240 fps=48 time=00:00:06.00 bitrate=1000kbits/s speed=1.25x")
        assert event.speed == "1.25x"
        assert event.elapsed == 6.0
        assert event.total == 60.0

    def test_unknown_duration(self):
        """Test that a zero duration produces no events."""
        from mediashrink.supervisor import ProgressTracker

        assert ProgressTracker(0).feed("time=00:00:06.00") is None

    def test_parse_timestamp(self):
        """Test time= parsing."""
        from mediashrink.supervisor import parse_timestamp

        assert parse_timestamp("time=01:02:03.50") == pytest.approx(3723.5)
        assert parse_timestamp("time=00:00:01,25") == pytest.approx(1.25)
        assert parse_timestamp("time=N/A") is None


class TestLineClassification:
    """Tests for is_fatal."""

    @pytest.mark.parametrize(
        "line",
        [
            "Error while decoding stream #0:0: Operation not permitted",
            "Conversion failed! error initializing output stream",
        ],
    )
    def test_fatal(self, line):
        """Test generic error lines."""
        from mediashrink.supervisor import is_fatal

        assert is_fatal(line)

    @pytest.mark.parametrize(
        "line",
        [
            "Error while decoding audio stream #0:1",
            "Error while decoding stream #0:1: Invalid data found when processing input",
            "frame=  120 fps=30 time=00:00:05.00 speed=1x",
            "    title           : The Terror",
            "    comment         : no errors found",
            "  Stream #0:0: Video: hevc (Main 10), yuv420p10le(tv, bt2020nc), 3840x2160",
        ],
    )
    def test_tolerated(self, line):
        """Test tolerated and unrelated lines."""
        from mediashrink.supervisor import is_fatal

        assert not is_fatal(line)


class TestEncode:
    """Tests for the live encode loop with a real child process."""

    def test_progress_and_completion(self, make_supervisor):
        """Test progress callbacks from a carriage-return separated stream."""
        script = (
            "import sys\n"
            "for t in ['00:00:01.00', '00:00:02.50', '00:00:02.50', '00:00:05.00', '00:00:04.00', '00:00:10.00']:\n"
            "    sys.stderr.write('frame=  10 fps=0.0 q=28.0 size=256kB time=%s bitrate=N/A speed=1.5x\\r' % t)\n"
            "    sys.stderr.flush()\n"
        )
        events = []
        result = make_supervisor().encode(child(script), 10.0, events.append)
        from mediashrink.supervisor import EncodeState

        assert result.state is EncodeState.COMPLETED
        assert result.returncode == 0
        assert [e.percent for e in events] == [10.0, 25.0, 50.0, 100.0]
        assert events[-1].speed == "1.50x"

    def test_nonzero_exit_fails(self, make_supervisor):
        """Test that a non-zero exit code is a failure."""
        from mediashrink.supervisor import EncodeState

        result = make_supervisor().encode(child("import sys; sys.exit(3)"), 10.0)
        assert result.state is EncodeState.FAILED
        assert result.returncode == 3

    def test_fatal_line_kills_process(self, fast_config, reporter, sleeps):
        """Test that a fatal error line kills a still-running encoder."""
        from mediashrink.supervisor import EncodeState, EncodeSupervisor

        started = []

        def popen(cmd, **kwargs):
            p = subprocess.Popen(cmd, **kwargs)
            started.append(p)
            return p

        supervisor = EncodeSupervisor(fast_config, reporter, popen=popen)
        script = (
            "import sys, time\n"
            "sys.stderr.write('Error while decoding stream #0:0: corrupt frame\\n')\n"
            "sys.stderr.flush()\n"
            "time.sleep(30)\n"
        )
        t0 = time.monotonic()
        result = supervisor.encode(child(script), 10.0)
        assert time.monotonic() - t0 < 15
        assert result.state is EncodeState.FAILED
        assert "corrupt frame" in result.fatal_line
        assert started[0].poll() is not None
        assert result.returncode is not None
        assert result.returncode != 0

    def test_metadata_mentioning_error_completes(self, make_supervisor):
        """Test that echoed stream metadata containing "error" does not abort the encode."""
        from mediashrink.supervisor import EncodeState

        script = (
            "import sys\n"
            "sys.stderr.write('  Metadata:\\n')\n"
            "sys.stderr.write('    title           : The Terror\\n')\n"
            "sys.stderr.write('frame=  10 fps=0.0 size=256kB time=00:00:10.00 bitrate=N/A speed=2x\\n')\n"
        )
        events = []
        result = make_supervisor().encode(child(script), 10.0, events.append)
        assert result.state is EncodeState.COMPLETED
        assert result.fatal_line is None
        assert events[-1].percent == 100.0

    def test_component_errors_accumulate(self, make_supervisor, reporter):
        """Test that component errors are collected and logged, not fatal."""
        from mediashrink.supervisor import EncodeState

        script = (
            "import sys\n"
            "sys.stderr.write('[hevc @ 0x55d4c8a0] Could not find ref with POC 12\\n')\n"
            "sys.stderr.write('[h264 @ 0x7f00ab] error while decoding MB 4 5\\n')\n"
            "sys.stderr.write('Stream mapping:\\n')\n"
            "sys.stderr.write('frame=  100 fps=25\\n')\n"
        )
        result = make_supervisor().encode(child(script), 10.0)
        assert result.state is EncodeState.COMPLETED
        assert result.errors == ["hevc: Could not find ref with POC 12", "h264: error while decoding MB 4 5"]
        log = reporter.log_path.read_text()
        assert "Could not find ref" in log
        assert "Stream mapping:" in log
        assert "frame=  100" not in log

    def test_cancel_kills_process(self, make_supervisor):
        """Test that a set cancel event ends the encode."""
        from mediashrink.supervisor import EncodeState

        cancel = threading.Event()
        threading.Timer(0.3, cancel.set).start()
        t0 = time.monotonic()
        result = make_supervisor().encode(child("import time; time.sleep(30)"), 10.0, cancel=cancel)
        assert time.monotonic() - t0 < 15
        assert result.state is EncodeState.FAILED
        assert result.message == "cancelled"
        assert result.returncode is not None


class TestRun:
    """Tests for validate-then-encode."""

    def _plan(self, fast_config):
        from mediashrink.decision import EncodePlan
        from mediashrink.resolution import ResolutionTier

        return EncodePlan(
            source=Path("/lib/in.mkv"),
            destination=Path("/lib/in.encoding.mkv"),
            duration=10.0,
            source_tier=ResolutionTier.FHD,
            accel_args=("-hwaccel", "cuda", "-hwaccel_device", "0"),
            codec_args=("-c:v", "libx265"),
        )

    def test_encodes_with_validated_arguments(self, make_supervisor, fast_config):
        """Test that the encode uses the arguments that passed validation."""
        from mediashrink.supervisor import EncodeState

        launched = []

        def popen(cmd, **kwargs):
            launched.append(cmd)
            return subprocess.Popen(child("pass"), **kwargs)

        result = make_supervisor(FakeRunner([1, 0]), popen=popen).run(self._plan(fast_config))
        assert result.state is EncodeState.COMPLETED
        assert result.fallback_level == 1
        cmd = launched[0]
        assert cmd[0] == fast_config.ffmpeg
        assert cmd[-1] == "/lib/in.encoding.mkv"
        assert "-hwaccel_device" not in cmd
        assert "-hwaccel" in cmd

    def test_validation_failure_skips_encode(self, make_supervisor, fast_config):
        """Test that no encode runs when validation is exhausted."""
        from mediashrink.supervisor import EncodeState

        launched = []
        supervisor = make_supervisor(FakeRunner([]), popen=lambda cmd, **kw: launched.append(cmd))
        result = supervisor.run(self._plan(fast_config))
        assert result.state is EncodeState.FAILED
        assert launched == []
