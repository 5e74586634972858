from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from .concurrency import DEFAULT_JOBS
from .core import MusicSyncError, SyncConfig, sync

DEFAULT_LOG_LEVEL = logging.INFO
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer value: {raw!r}") from None
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return value


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="music-sync",
        description="Mirror a music folder as MP3 files, converting only what is missing.",
    )
    parser.add_argument("--src", type=Path, required=True, help="Source directory.")
    parser.add_argument(
        "--dst",
        type=Path,
        default=Path("."),
        help="Destination directory (default: current directory).",
    )
    parser.add_argument(
        "--dry-run",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Only report the files that would be created (default: on).",
    )
    parser.add_argument(
        "--temp-file",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Encode into a temp file and move it into place. Disable for MTP "
        "mounted devices, which don't support move (default: on).",
    )
    parser.add_argument(
        "--jobs",
        type=_positive_int,
        default=DEFAULT_JOBS,
        help=f"Number of concurrent encodes (default: {DEFAULT_JOBS}).",
    )
    parser.add_argument(
        "--ffmpeg",
        default="ffmpeg",
        help="ffmpeg executable to run (default: ffmpeg from PATH).",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error", "critical"],
        help="Logging verbosity (default: info).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), DEFAULT_LOG_LEVEL)
    logging.basicConfig(format=LOG_FORMAT, level=log_level)

    config = SyncConfig(
        source_root=args.src.expanduser(),
        destination_root=args.dst.expanduser(),
        dry_run=args.dry_run,
        use_temp_file=args.temp_file,
        jobs=args.jobs,
        ffmpeg=args.ffmpeg,
    )

    try:
        report = sync(config)
    except MusicSyncError as exc:
        logging.error("%s", exc)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logging.error("Interrupted.")
        return EXIT_INTERRUPTED

    if config.dry_run:
        logging.info("Dry run: %d file(s) would be created.", report.planned)
    else:
        logging.info(
            "Converted %d file(s); %d already present, %d ignored.",
            report.converted,
            report.skipped_existing,
            report.ignored,
        )
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
