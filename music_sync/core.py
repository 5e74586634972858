from __future__ import annotations

import logging
import os
import shutil
import stat
import subprocess
import tempfile
import threading
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Set

from .concurrency import DEFAULT_JOBS, POLL_INTERVAL, CancelScope, Limiter, TaskGroup

CONVERTIBLE_EXTENSIONS = {
    ".mp3",
    ".mp4",
    ".flac",
    ".wma",
    ".ogg",
    ".opus",
    ".m4b",
    ".webm",
    ".wav",
    ".mkv",
}
KNOWN_IGNORED_EXTENSIONS = {
    ".jpg",
    ".jpeg",
    ".png",
    ".cue",
    ".nfo",
    ".pdf",
    ".db",
    ".bmp",
    ".m3u",
    ".md5",
    ".lnk",
    ".gif",
    ".htm",
    ".url",
    ".log",
    ".ini",
    ".txt",
    ".sfv",
}
VIDEO_CONTAINER_EXTENSIONS = {".mp4", ".mkv", ".webm"}
TARGET_EXTENSION = ".mp3"
TARGET_FORMAT = "mp3"
AUDIO_CODEC = "libmp3lame"
AUDIO_QUALITY = "0"
TEMP_FILE_PREFIX = "converting"
DIR_MODE = 0o775
# FAT32 rejects these; each maps to a placeholder that is legal everywhere.
UNSAFE_CHARACTERS = {"?": "_ques_"}
TERMINATE_GRACE_SECONDS = 5.0


class MusicSyncError(Exception):
    """Base class for every error a sync run reports."""


class NotADirectory(MusicSyncError):
    def __init__(self, role: str, path: Path, reason: str = "is not a directory") -> None:
        super().__init__(f"{role} {path} {reason}")
        self.role = role
        self.path = path


class TraversalError(MusicSyncError):
    pass


class ConversionError(MusicSyncError):
    def __init__(
        self,
        message: str,
        source: Optional[Path] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.source = source
        self.returncode = returncode
        self.stderr = stderr


class CommitError(MusicSyncError):
    pass


class TranscodeCancelled(MusicSyncError):
    """Raised by a runner whose process was stopped because the run was cancelled."""


class FileKind(Enum):
    CONVERTIBLE = "convertible"
    IGNORABLE_KNOWN = "ignorable-known"
    IGNORABLE_UNKNOWN = "ignorable-unknown"


@dataclass(frozen=True, slots=True)
class SyncConfig:
    source_root: Path
    destination_root: Path = Path(".")
    dry_run: bool = True
    use_temp_file: bool = True
    jobs: int = DEFAULT_JOBS
    ffmpeg: str = "ffmpeg"


@dataclass(frozen=True, slots=True)
class SourceEntry:
    path: Path
    relative: Path
    is_regular: bool


@dataclass(frozen=True, slots=True)
class ConversionTask:
    source: Path
    destination: Path
    destination_root: Path


@dataclass(slots=True)
class SyncReport:
    planned: int = 0
    converted: int = 0
    skipped_existing: int = 0
    ignored: int = 0
    ignored_unknown: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_converted(self) -> None:
        with self._lock:
            self.converted += 1


TranscodeRunner = Callable[[List[str], CancelScope], None]


def classify_extension(extension: str) -> FileKind:
    normalized = extension.lower()
    if normalized and not normalized.startswith("."):
        normalized = "." + normalized
    if normalized in CONVERTIBLE_EXTENSIONS:
        return FileKind.CONVERTIBLE
    if normalized in KNOWN_IGNORED_EXTENSIONS:
        return FileKind.IGNORABLE_KNOWN
    return FileKind.IGNORABLE_UNKNOWN


def sanitize_destination(path: str) -> str:
    for char, placeholder in UNSAFE_CHARACTERS.items():
        path = path.replace(char, placeholder)
    return path


def destination_path(destination_root: Path, relative: Path) -> Path:
    """Mirror ``relative`` under ``destination_root`` with the target extension.

    Only the part below the destination root is sanitized; the root itself is
    whatever the caller passed in.
    """
    target = relative.with_suffix(TARGET_EXTENSION)
    return destination_root / sanitize_destination(str(target))


def ensure_ffmpeg_available(binary: str = "ffmpeg") -> None:
    if shutil.which(binary) is None:
        raise ConversionError(f"{binary} not found in PATH. Please install it before running this command.")


def build_ffmpeg_cmd(src: Path, dst: Path, ffmpeg: str = "ffmpeg") -> List[str]:
    cmd: List[str] = [
        ffmpeg,
        "-hide_banner",
        "-nostdin",
        "-i",
        str(src),
    ]
    if src.suffix.lower() in VIDEO_CONTAINER_EXTENSIONS:
        cmd.append("-vn")
    cmd.extend([
        "-codec:a",
        AUDIO_CODEC,
        "-q:a",
        AUDIO_QUALITY,
        "-f",
        TARGET_FORMAT,
        "-y",
        str(dst),
    ])
    return cmd


def _stop_process(process: subprocess.Popen) -> None:
    process.terminate()
    try:
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_transcoder(cmd: List[str], scope: CancelScope) -> None:
    """Run ``cmd`` to completion, or stop it as soon as ``scope`` is cancelled.

    stderr is collected in a temporary file rather than a pipe so a chatty
    encoder can never block on a full buffer. It is attached to the raised
    :class:`ConversionError` when the process exits non-zero.
    """
    with tempfile.TemporaryFile() as stderr_file:
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=stderr_file,
            )
        except OSError as exc:
            raise ConversionError(f"Unable to start {cmd[0]}: {exc}") from exc

        try:
            while process.poll() is None:
                if scope.wait(POLL_INTERVAL):
                    _stop_process(process)
                    raise TranscodeCancelled(f"{cmd[0]} stopped: run cancelled")
        finally:
            if process.poll() is None:
                _stop_process(process)

        if process.returncode != 0:
            stderr_file.seek(0)
            stderr_output = stderr_file.read().decode("utf-8", errors="replace")
            raise ConversionError(
                f"{cmd[0]} exited with status {process.returncode}",
                returncode=process.returncode,
                stderr=stderr_output,
            )


def _stage_temp_file(destination_root: Path) -> Path:
    fd, name = tempfile.mkstemp(prefix=TEMP_FILE_PREFIX, dir=destination_root)
    os.close(fd)
    return Path(name)


def convert(
    task: ConversionTask,
    config: SyncConfig,
    limiter: Limiter,
    scope: CancelScope,
    runner: Optional[TranscodeRunner] = None,
    report: Optional[SyncReport] = None,
) -> None:
    runner = runner or run_transcoder
    try:
        with limiter.admit(scope) as admitted:
            if not admitted:
                logging.debug("Run cancelled before %s was admitted.", task.destination)
                return
            _convert_admitted(task, config, scope, runner)
    except TranscodeCancelled:
        logging.debug("Conversion of %s cancelled.", task.source)
        return
    except MusicSyncError as exc:
        scope.fail(exc)
        return
    except OSError as exc:
        scope.fail(ConversionError(f"I/O error converting {task.source}: {exc}", source=task.source))
        return

    if report is not None:
        report.record_converted()


def _convert_admitted(task: ConversionTask, config: SyncConfig, scope: CancelScope, runner: TranscodeRunner) -> None:
    task.destination.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)

    staged: Optional[Path] = None
    try:
        if config.use_temp_file:
            staged = _stage_temp_file(task.destination_root)
            output = staged
        else:
            output = task.destination

        cmd = build_ffmpeg_cmd(task.source, output, config.ffmpeg)
        try:
            runner(cmd, scope)
        except ConversionError as exc:
            logging.error("Failure converting %s\n%s\n%s", task.source, exc, exc.stderr)
            if exc.source is None:
                exc.source = task.source
            raise

        if staged is not None:
            try:
                staged.replace(task.destination)
            except OSError as exc:
                raise CommitError(f"Unable to move {staged} to {task.destination}: {exc}") from exc
    finally:
        if staged is not None:
            with suppress(FileNotFoundError):
                staged.unlink()

    try:
        task.destination.stat()
    except FileNotFoundError:
        raise CommitError(f"Expected output file missing for {task.source}: {task.destination}") from None
    logging.info("Finished %s", task.destination.name)


def _check_directory(role: str, path: Path) -> Path:
    try:
        info = path.stat()
    except FileNotFoundError:
        raise NotADirectory(role, path, "does not exist") from None
    except OSError as exc:
        raise NotADirectory(role, path, f"cannot be read: {exc}") from exc
    if not stat.S_ISDIR(info.st_mode):
        raise NotADirectory(role, path)
    return path


def _destination_exists(dst: Path) -> bool:
    try:
        dst.stat()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise TraversalError(f"Unable to check {dst}: {exc}") from exc
    return True


def _raise_walk_error(exc: OSError) -> None:
    raise TraversalError(f"Unable to read {exc.filename or 'source tree'}: {exc}") from exc


def iter_source_entries(source_root: Path) -> Iterator[SourceEntry]:
    """Yield a :class:`SourceEntry` for every entry below ``source_root``.

    Directories are visited in sorted order. Any error reading the tree
    raises :class:`TraversalError` immediately.
    """
    for root, dirs, files in os.walk(source_root, onerror=_raise_walk_error):
        dirs.sort()
        current = Path(root)
        for name in sorted(files):
            path = current / name
            try:
                mode = path.lstat().st_mode
            except OSError as exc:
                raise TraversalError(f"Unable to read {path}: {exc}") from exc
            yield SourceEntry(
                path=path,
                relative=path.relative_to(source_root),
                is_regular=stat.S_ISREG(mode),
            )


def sync(config: SyncConfig, runner: Optional[TranscodeRunner] = None) -> SyncReport:
    """Convert every new media file under the source root into the destination tree.

    Returns a :class:`SyncReport` on success. On failure raises the first
    worker error, or the traversal error when no worker failed, and only
    after every dispatched worker has finished.
    """
    source_root = _check_directory("Src", config.source_root)
    destination_root = _check_directory("Dst", config.destination_root)
    if not config.dry_run and runner is None:
        ensure_ffmpeg_available(config.ffmpeg)

    report = SyncReport()
    scope = CancelScope()
    limiter = Limiter(config.jobs)
    claimed: Set[Path] = set()
    traversal_error: Optional[TraversalError] = None

    logging.debug("Scanning %s into %s.", source_root, destination_root)
    with TaskGroup(scope, config.jobs) as group:
        try:
            for entry in iter_source_entries(source_root):
                if scope.cancelled:
                    logging.debug("Run cancelled; no further conversions will be started.")
                    break
                if not entry.is_regular:
                    continue

                kind = classify_extension(entry.path.suffix)
                if kind is not FileKind.CONVERTIBLE:
                    report.ignored += 1
                    if kind is FileKind.IGNORABLE_UNKNOWN:
                        report.ignored_unknown += 1
                        logging.info("Ignoring %s", entry.relative)
                    continue

                dst = destination_path(destination_root, entry.relative)
                if _destination_exists(dst):
                    report.skipped_existing += 1
                    continue
                if dst in claimed:
                    logging.warning("Skipping %s: %s is already produced by another source.", entry.relative, dst)
                    continue
                claimed.add(dst)

                report.planned += 1
                if config.dry_run:
                    logging.info("Would create %s", dst)
                    continue

                logging.info("Starting %s", dst)
                task = ConversionTask(source=entry.path, destination=dst, destination_root=destination_root)
                group.spawn(convert, task, config, limiter, scope, runner, report)
        except TraversalError as exc:
            traversal_error = exc

    if scope.error is not None:
        raise scope.error
    if traversal_error is not None:
        raise traversal_error
    return report
