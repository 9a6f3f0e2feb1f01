from __future__ import annotations

import fcntl
import json
import os
import shutil
import stat
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

_LOCK_SUFFIX = ".lock"
_WRITE_BITS = stat.S_IWUSR


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to `path` through a fsynced temporary file and `os.replace`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(json.dumps(data, indent=2, sort_keys=True) + "\n")
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_json(path: Path) -> Any | None:
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


@contextmanager
def exclusive_lock(directory: Path) -> Iterator[None]:
    """Hold an exclusive lock scoped to `directory` through a sidecar lock file next to it."""
    lock_path = directory.parent / f".{directory.name}{_LOCK_SUFFIX}"
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _chmod_files(path: Path, *, writable: bool) -> None:
    if not path.exists() or path.is_symlink():
        return
    targets = [path] if path.is_file() else [p for p in path.rglob("*") if p.is_file() and not p.is_symlink()]
    for target in targets:
        mode = target.stat().st_mode
        new_mode = mode | _WRITE_BITS if writable else mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH)
        if new_mode != mode:
            target.chmod(new_mode)


def make_writable(path: Path) -> None:
    _chmod_files(path, writable=True)


def make_read_only(path: Path) -> None:
    _chmod_files(path, writable=False)


def remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
        return
    if not path.exists():
        return
    make_writable(path)
    shutil.rmtree(path)


def is_empty_directory(path: Path) -> bool:
    if not path.is_dir():
        return False
    try:
        next(path.iterdir())
    except StopIteration:
        return True
    return False


def prune_empty_directories(root: Path) -> None:
    """Remove every empty directory under `root` (the root itself is kept)."""
    if not root.is_dir():
        return
    for current, dirnames, _ in os.walk(root, topdown=False):
        for name in dirnames:
            candidate = Path(current) / name
            if not candidate.is_symlink() and is_empty_directory(candidate):
                candidate.rmdir()

