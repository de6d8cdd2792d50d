"""Shared JSON file I/O and paths for persistent data files."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from voice_remind.config import DATA_DIR as DATA_DIR
from voice_remind.config import TZ as TZ

STATE_DIR = DATA_DIR / "state"

log = logging.getLogger(__name__)


def read_json(filepath: Path, default: Any = None) -> Any:
    """Missing file returns default. Decode errors propagate to the caller."""
    if not filepath.exists():
        return default
    return json.loads(filepath.read_text())


def write_json(filepath: Path, data: Any) -> None:
    """Atomic write (temp file + rename) so readers never see a half-written file."""
    filepath.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=filepath.parent, suffix=".tmp")
    try:
        os.write(fd, json.dumps(data, indent=2, sort_keys=True).encode())
    finally:
        os.close(fd)
    os.replace(tmp, filepath)


def file_revision(filepath: Path) -> tuple[int, int] | None:
    """(mtime_ns, size) of a file, or None when missing. Cheap change detection."""
    try:
        st = filepath.stat()
    except FileNotFoundError:
        return None
    return (st.st_mtime_ns, st.st_size)


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def acquire_pid_file(filepath: Path) -> bool:
    """Create filepath exclusively with our pid. A file left by a dead process is reclaimed."""
    filepath.parent.mkdir(parents=True, exist_ok=True)
    for _ in range(2):
        try:
            fd = os.open(filepath, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            try:
                pid = int(filepath.read_text().strip() or 0)
            except (OSError, ValueError):
                pid = 0
            if pid and pid_alive(pid):
                return False
            log.warning("Reclaiming stale lock %s (pid %s)", filepath, pid)
            filepath.unlink(missing_ok=True)
            continue
        try:
            os.write(fd, str(os.getpid()).encode())
        finally:
            os.close(fd)
        return True
    return False


def release_pid_file(filepath: Path) -> None:
    filepath.unlink(missing_ok=True)
