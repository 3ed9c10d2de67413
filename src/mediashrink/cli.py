"""
Command-line interface for mediashrink.
"""

import argparse
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional, Tuple

from mediashrink import __version__
from mediashrink.config import (
    Config,
    apply_config_to_args,
    get_app_dirs,
    load_config_file,
    save_default_config,
)
from mediashrink.errors import MediaShrinkError
from mediashrink.history import HistoryDB
from mediashrink.library import LibraryClient
from mediashrink.logs import Reporter, Sink, make_console, run_log_path
from mediashrink.pipeline import Pipeline
from mediashrink.ui import ProgressDisplay


def parse_args(args: Optional[List[str]] = None) -> Tuple[Config, argparse.Namespace]:
    """Parse command-line arguments and return config + the raw namespace."""
    parser = argparse.ArgumentParser(
        prog="mediashrink",
        description="Batch re-encode a media library to HEVC or AV1 when it is worth it.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s /media/movies                      # Process a library
  %(prog)s --codec av1 --backend nvenc movie.mkv
  %(prog)s --resolution 1080p --movie-mode /media/movies
  %(prog)s --audio-lang eng --default-lang eng /media/tv
  %(prog)s --dryrun -v /media/movies          # Show commands without running
  %(prog)s --history                          # Show recent transitions
        """,
    )

    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("paths", nargs="*", type=Path, help="Files or directories to process (default: .)")

    enc_group = parser.add_argument_group("Encoding")
    enc_group.add_argument("--codec", choices=["hevc", "av1"], default="hevc")
    enc_group.add_argument("--backend", choices=["cpu", "qsv", "nvenc", "vaapi", "amf"], default="cpu")
    enc_group.add_argument("--quality", type=int, default=23, help="CRF / CQ / QP value (default: 23)")
    enc_group.add_argument("--preset", default="medium")
    enc_group.add_argument("--container", choices=["mkv", "mp4"], default="mkv")

    hw_group = parser.add_argument_group("Decoder acceleration")
    hw_group.add_argument("--hwaccel", default="", help="ffmpeg -hwaccel value (e.g. cuda, qsv, vaapi)")
    hw_group.add_argument("--hwaccel-device", default="")
    hw_group.add_argument("--hwaccel-output-format", default="")

    res_group = parser.add_argument_group("Resizing")
    res_group.add_argument("--resolution", default=None, help="Target resolution: sd, dvd, hd, fhd, qhd, 4k, 8k or WxH")
    res_group.add_argument("--scale-up", action="store_true", default=False)
    res_group.add_argument("--no-scale-down", action="store_false", dest="scale_down", default=True)
    res_group.add_argument("--no-keep-aspect", action="store_false", dest="keep_aspect", default=True)

    dec_group = parser.add_argument_group("Decisions")
    dec_group.add_argument("--force-convert", action="store_true", help="Ignore size and codec skip rules")
    dec_group.add_argument("--force-resize", action="store_true", help="Resize even across tiers/orientation")
    dec_group.add_argument("--movie-mode", action="store_true", help="Apply absolute size floors for movies")

    lang_group = parser.add_argument_group("Languages")
    lang_group.add_argument("--audio-lang", default="all", help="all, none, or a language code")
    lang_group.add_argument("--subtitle-lang", default="all", help="all, none, or a language code")
    lang_group.add_argument("--default-lang", default=None, help="Language marked as the default stream")

    file_group = parser.add_argument_group("Files")
    file_group.add_argument("--library-root", type=Path, default=None)
    file_group.add_argument("--processed-dir", type=Path, default=None)
    file_group.add_argument("--keep-in-place", action="store_false", dest="move_on_completion", default=True)
    file_group.add_argument("--stable-wait", type=int, default=0, help="Seconds to wait for a stable file size")
    file_group.add_argument("--no-recursive", action="store_false", dest="recursive", default=True)
    file_group.add_argument("--ignore-pattern", "-I", action="append", default=[], dest="ignore_patterns")

    lib_group = parser.add_argument_group("Library refresh")
    lib_group.add_argument("--library-kind", choices=["radarr", "sonarr"], default="radarr")
    lib_group.add_argument("--library-url", default=None)
    lib_group.add_argument("--library-api-key", default=None)

    run_group = parser.add_argument_group("Run")
    run_group.add_argument("-v", "--verbose", action="store_true")
    run_group.add_argument("-n", "--dryrun", action="store_true", help="Dry run")
    run_group.add_argument("--halt-on-error", action="store_true")
    run_group.add_argument("--no-progress", action="store_false", dest="progress", default=True)

    util_group = parser.add_argument_group("Utilities")
    util_group.add_argument("--show-dirs", action="store_true")
    util_group.add_argument("--history", nargs="?", const=20, type=int, default=None, metavar="N")
    util_group.add_argument("--history-stats", action="store_true")

    ns = parser.parse_args(args)

    cfg = Config(
        codec=ns.codec,
        backend=ns.backend,
        quality=ns.quality,
        preset=ns.preset,
        container=ns.container,
        hwaccel=ns.hwaccel,
        hwaccel_device=ns.hwaccel_device,
        hwaccel_output_format=ns.hwaccel_output_format,
        resolution=ns.resolution,
        scale_up=ns.scale_up,
        scale_down=ns.scale_down,
        keep_aspect=ns.keep_aspect,
        force_convert=ns.force_convert,
        force_resize=ns.force_resize,
        movie_mode=ns.movie_mode,
        audio_lang=ns.audio_lang,
        subtitle_lang=ns.subtitle_lang,
        default_lang=ns.default_lang,
        library_root=ns.library_root,
        processed_dir=ns.processed_dir,
        move_on_completion=ns.move_on_completion,
        stable_wait=ns.stable_wait,
        recursive=ns.recursive,
        ignore_patterns=ns.ignore_patterns,
        library_kind=ns.library_kind,
        library_url=ns.library_url,
        library_api_key=ns.library_api_key,
        verbose=ns.verbose,
        dryrun=ns.dryrun,
        halt_on_error=ns.halt_on_error,
        progress=ns.progress,
    )
    return cfg, ns


def handle_utility_commands(cfg: Config, ns: argparse.Namespace, app_dirs: dict) -> Optional[int]:
    """Run a utility command if one was requested. Returns its exit code."""
    console = make_console()
    if ns.show_dirs:
        for name, path in app_dirs.items():
            console.print(f"{name:10} {path}", highlight=False)
        return 0

    if ns.history is not None or ns.history_stats:
        db = HistoryDB(cfg.state_dir or app_dirs["state"])
        if ns.history_stats:
            for key, value in db.get_stats().items():
                console.print(f"{key:12} {value}", highlight=False)
        else:
            for row in db.get_recent(ns.history):
                console.print(
                    f"{row['recorded_at'][:19]}  {row['outcome']:10} {row['source_path']}", highlight=False
                )
        return 0
    return None


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    cfg, ns = parse_args(argv)

    app_dirs = get_app_dirs()
    save_default_config(app_dirs["config"])
    file_config = load_config_file(app_dirs["config"])
    if file_config:
        apply_config_to_args(file_config, cfg)
    cfg.resolve_dirs(app_dirs)

    result = handle_utility_commands(cfg, ns, app_dirs)
    if result is not None:
        return result

    console = make_console()
    if cfg.log_dir is None or cfg.state_dir is None or cfg.deferred_dir is None:
        console.print("[red]Error: state directories are not set[/red]")
        return 1
    reporter = Reporter(run_log_path(cfg.log_dir), console, cfg.verbose)
    display = ProgressDisplay(console, cfg.progress)
    cancel = threading.Event()
    library = LibraryClient.from_config(cfg)

    pipeline = Pipeline(
        cfg,
        reporter,
        display=display,
        history=HistoryDB(cfg.state_dir),
        library=library,
        cancel=cancel,
    )

    start_time = time.time()
    try:
        report = pipeline.run(ns.paths or [Path(".")])
    except KeyboardInterrupt:
        cancel.set()
        reporter.warning("Interrupted")
        return 130
    except (MediaShrinkError, OSError) as e:
        reporter.error(str(e))
        return 1
    finally:
        if library is not None:
            library.close()

    display.print_summary(time.time() - start_time, report.deferred_replayed)
    reporter.info(
        f"Run finished: {display.ok} converted, {display.skipped} skipped, {display.failed} failed",
        sinks=Sink.FILE,
    )
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
