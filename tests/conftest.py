import os
import stat
import sys
import threading
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from music_sync.core import SyncConfig, TranscodeCancelled

FAKE_FFMPEG = """\
#!{python}
import sys
import time

args = sys.argv[1:]
src = args[args.index("-i") + 1]
dst = args[-1]
with open(src, "rb") as handle:
    payload = handle.read()
words = payload.decode("utf-8", "replace").split()

if payload.startswith(b"fail"):
    time.sleep(float(words[1]) if len(words) > 1 else 0)
    sys.stderr.write("boom: cannot decode " + src + "\\n")
    sys.exit(1)
if payload.startswith(b"partial"):
    with open(dst, "wb") as out:
        out.write(b"MP3:half")
        out.flush()
        time.sleep(60)
    sys.exit(0)
if payload.startswith(b"sleep"):
    time.sleep(float(words[1]))

with open(dst, "wb") as out:
    out.write(b"MP3:" + payload)
"""


@pytest.fixture(autouse=True)
def restore_std_streams() -> Generator[None, None, None]:
    original_stdout = sys.stdout
    original_stderr = sys.stderr
    try:
        yield
    finally:
        sys.stdout = original_stdout
        sys.stderr = original_stderr


@pytest.fixture
def temp_cwd(tmp_path: Path) -> Generator[Path, None, None]:
    previous = Path.cwd()
    os.chdir(tmp_path)
    try:
        yield tmp_path
    finally:
        os.chdir(previous)


@pytest.fixture
def src_dir(tmp_path: Path) -> Path:
    path = tmp_path / "src"
    path.mkdir()
    return path


@pytest.fixture
def dst_dir(tmp_path: Path) -> Path:
    path = tmp_path / "dst"
    path.mkdir()
    return path


@pytest.fixture
def fake_ffmpeg(tmp_path: Path) -> Path:
    """Executable stand-in for ffmpeg whose behaviour depends on the input bytes.

    ``fail [delay]`` exits 1 with a diagnostic, ``partial`` writes half an
    output and hangs, ``sleep N`` waits before writing, anything else is
    copied to the output behind an ``MP3:`` prefix.
    """
    script = tmp_path / "bin" / "ffmpeg"
    script.parent.mkdir()
    script.write_text(FAKE_FFMPEG.format(python=sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def make_config(src_dir: Path, dst_dir: Path) -> Callable[..., SyncConfig]:
    def factory(**overrides) -> SyncConfig:
        values = {"source_root": src_dir, "destination_root": dst_dir, "dry_run": False}
        values.update(overrides)
        return SyncConfig(**values)

    return factory


def write_files(root: Path, *names: str, content: bytes = b"audio") -> None:
    for name in names:
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)


class RecordingRunner:
    """In-process transcoder that records calls and the peak concurrency."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[list[str]] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def __call__(self, cmd: list[str], scope) -> None:
        with self._lock:
            self.calls.append(cmd)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay and scope.wait(self.delay):
                raise TranscodeCancelled("cancelled")
            Path(cmd[-1]).write_bytes(b"MP3")
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()
