"""
File system utilities for job folders and per-worker copies.
"""
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Callable, List, Optional

from .config import (
    SYSTEM_FILE_PREFIXES, DATA_FILE_EXTENSIONS, safe_worker_id,
)

logger = logging.getLogger(__name__)

# Suffixes that look like a worker ID but are really file type words
_NON_WORKER_SUFFIXES = frozenset({
    "csv", "xls", "xlsx", "pdf", "doc", "docx", "txt", "json", "xml", "html",
    "converted",
})
_WORKER_SUFFIX_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{1,49}$")


def atomic_write_text(path: Path, text: str, encoding: str = 'utf-8'):
    """
    Write text to a file atomically.

    The content goes to a temporary file in the destination directory which
    then replaces the target, so readers never see a partially written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, 'w', encoding=encoding, newline='') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def is_system_generated(path: Path) -> bool:
    """Check whether a file was produced by a merge or backup."""
    return Path(path).name.startswith(SYSTEM_FILE_PREFIXES)


def worker_copy_path(original: Path, worker_id: str) -> Path:
    """Path of the per-worker copy of an original roster file."""
    original = Path(original)
    return original.with_name(f"{original.stem}_{safe_worker_id(worker_id)}.csv")


def _worker_suffix(path: Path) -> Optional[str]:
    stem = Path(path).stem
    if "_" not in stem:
        return None
    return stem.rsplit("_", 1)[1]


def is_worker_copy(path: Path) -> bool:
    """
    Check whether a file name carries a worker ID suffix.

    The suffix after the last underscore must be 2-50 characters, start with
    a letter, and contain only letters, digits, '_' or '-'.
    """
    path = Path(path)
    if is_system_generated(path):
        return False
    suffix = _worker_suffix(path)
    if not suffix:
        return False
    if suffix.lower() in _NON_WORKER_SUFFIXES:
        return False
    return bool(_WORKER_SUFFIX_RE.match(suffix))


def original_for_copy(path: Path) -> Path:
    """Return the original roster path for a worker copy (or the path itself)."""
    path = Path(path)
    if not is_worker_copy(path):
        return path
    # Worker IDs may contain underscores; prefer the longest existing base
    parts = path.stem.split("_")
    for i in range(len(parts) - 1, 0, -1):
        base = "_".join(parts[:i])
        for ext in (".csv", ".xlsx", ".xls"):
            candidate = path.with_name(f"{base}{ext}")
            if candidate.exists():
                return candidate
    return path.with_name(f"{path.stem.rsplit('_', 1)[0]}.csv")


def is_copy_of(path: Path, original: Path) -> bool:
    """Check whether `path` is a worker copy belonging to `original`."""
    path, original = Path(path), Path(original)
    if path == original or not is_worker_copy(path):
        return False
    return path.stem.startswith(f"{original.stem}_")


def find_worker_copies(original: Path) -> List[Path]:
    """List the worker copies of an original file, sorted by name."""
    original = Path(original)
    if not original.parent.exists():
        return []
    return sorted(
        p for p in original.parent.glob(f"{original.stem}_*.csv")
        if is_copy_of(p, original)
    )


def scan_job_folder(folder: Path,
                    validator: Optional[Callable[[Path], bool]] = None) -> List[Path]:
    """
    List the original data files in a job folder.

    Hidden files, system-generated files and worker copies are excluded. If
    a validator is given, files it rejects are excluded too.
    """
    folder = Path(folder)
    results = []
    for path in sorted(folder.iterdir()):
        if not path.is_file() or path.name.startswith("."):
            continue
        if path.suffix.lower() not in DATA_FILE_EXTENSIONS:
            continue
        if is_system_generated(path) or is_worker_copy(path):
            continue
        if validator is not None and not validator(path):
            logger.info(f"Skipping unrecognized file: {path.name}")
            continue
        results.append(path)
    return results


class DebouncedWriter:
    """
    Coalesces rapid successive saves into one write after a quiet period.

    Each call to schedule() restarts the timer; only the latest scheduled
    save is written. The write runs on a timer thread, off the caller's path.
    """

    def __init__(self, delay: float = 0.5):
        self.delay = delay
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[Callable[[], None]] = None
        self.writes = 0

    def schedule(self, store, path: Path):
        """Schedule `store` to be saved to `path` after the quiet period."""
        path = Path(path)
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._pending = lambda: store.save(path)
            self._timer = threading.Timer(self.delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self):
        with self._lock:
            action, self._pending, self._timer = self._pending, None, None
        if action is not None:
            try:
                action()
                self.writes += 1
            except OSError as e:
                logger.error(f"Debounced save failed: {e}")

    def flush(self):
        """Write any pending save immediately."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            action, self._pending, self._timer = self._pending, None, None
        if action is not None:
            action()
            self.writes += 1

    def cancel(self):
        """Drop any pending save without writing it."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._pending, self._timer = None, None

    @property
    def pending(self) -> bool:
        return self._pending is not None
