from __future__ import annotations

import hashlib
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from .errors import GitError
from .fsutil import remove_tree
from .models import identity_from_location

log = structlog.get_logger("wharf.source_control")


class Repository(Protocol):
    def tags(self) -> list[str]:
        ...

    def resolve_revision(self, identifier: str) -> str:
        ...

    def exists(self, revision: str) -> bool:
        ...

    def read_file(self, revision: str, relative_path: str) -> bytes:
        ...


class WorkingCopy(Protocol):
    path: Path

    def checkout(self, revision: str) -> None:
        ...

    def checkout_new_branch(self, branch: str) -> None:
        ...

    def fetch(self) -> None:
        ...

    def current_revision(self) -> str:
        ...

    def exists(self, revision: str) -> bool:
        ...

    def has_uncommitted_changes(self) -> bool:
        ...

    def has_unpushed_commits(self) -> bool:
        ...

    def is_alternate_object_store_valid(self) -> bool:
        ...


class RepositoryProvider(Protocol):
    def fetch(self, location: str, path: Path) -> None:
        ...

    def update(self, path: Path) -> None:
        ...

    def open(self, location: str, path: Path) -> Repository:
        ...

    def create_working_copy(self, location: str, source_path: Path, destination: Path, *, editable: bool) -> WorkingCopy:
        ...

    def open_working_copy(self, path: Path) -> WorkingCopy:
        ...


def repository_basename(location: str) -> str:
    """Directory name used for a checkout of `location`."""
    name = location.rstrip("/").rsplit("/", 1)[-1]
    return name[: -len(".git")] if name.endswith(".git") else name


def _storage_name(location: str) -> str:
    digest = hashlib.sha256(location.encode("utf-8")).hexdigest()[:12]
    return f"{identity_from_location(location)}-{digest}"


# git


def _git(*args: str, cwd: Path | None = None) -> str:
    cmd = ["git", *args]
    try:
        proc = subprocess.run(cmd, cwd=str(cwd) if cwd else None, capture_output=True, text=True, check=False)
    except OSError as e:
        raise GitError(f"could not run git: {e}") from e
    if proc.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed: {proc.stderr.strip()[:500]}")
    return proc.stdout


class GitRepository:
    def __init__(self, path: Path) -> None:
        self.path = path

    def tags(self) -> list[str]:
        return [t for t in _git("-C", str(self.path), "tag", "-l").splitlines() if t.strip()]

    def resolve_revision(self, identifier: str) -> str:
        return _git("-C", str(self.path), "rev-parse", "--verify", f"{identifier}^{{commit}}").strip()

    def exists(self, revision: str) -> bool:
        try:
            self.resolve_revision(revision)
        except GitError:
            return False
        return True

    def read_file(self, revision: str, relative_path: str) -> bytes:
        proc = subprocess.run(
            ["git", "-C", str(self.path), "show", f"{revision}:{relative_path}"],
            capture_output=True,
            check=False,
        )
        if proc.returncode != 0:
            raise FileNotFoundError(f"{relative_path} not found at revision {revision}")
        return proc.stdout


class GitWorkingCopy:
    def __init__(self, path: Path) -> None:
        self.path = path

    def checkout(self, revision: str) -> None:
        _git("-C", str(self.path), "checkout", "-f", "--detach", revision)

    def checkout_new_branch(self, branch: str) -> None:
        _git("-C", str(self.path), "checkout", "-b", branch)

    def fetch(self) -> None:
        _git("-C", str(self.path), "fetch", "--tags", "--prune", "origin")

    def current_revision(self) -> str:
        return _git("-C", str(self.path), "rev-parse", "HEAD").strip()

    def exists(self, revision: str) -> bool:
        try:
            _git("-C", str(self.path), "rev-parse", "--verify", f"{revision}^{{commit}}")
        except GitError:
            return False
        return True

    def has_uncommitted_changes(self) -> bool:
        return bool(_git("-C", str(self.path), "status", "--porcelain").strip())

    def has_unpushed_commits(self) -> bool:
        return bool(_git("-C", str(self.path), "log", "--branches", "--not", "--remotes", "--oneline").strip())

    def is_alternate_object_store_valid(self) -> bool:
        alternates = self.path / ".git" / "objects" / "info" / "alternates"
        if not alternates.exists():
            return True
        lines = [line.strip() for line in alternates.read_text(encoding="utf-8").splitlines() if line.strip()]
        return all(Path(line).is_dir() for line in lines)


class GitRepositoryProvider:
    def fetch(self, location: str, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        _git("clone", "--mirror", location, str(path))

    def update(self, path: Path) -> None:
        _git("-C", str(path), "remote", "update", "--prune")

    def open(self, location: str, path: Path) -> GitRepository:
        return GitRepository(path)

    def create_working_copy(self, location: str, source_path: Path, destination: Path, *, editable: bool) -> GitWorkingCopy:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if editable:
            _git("clone", "--no-checkout", str(source_path), str(destination))
        else:
            # Shares objects with the canonical clone through alternates.
            _git("clone", "--shared", "--no-checkout", str(source_path), str(destination))
        _git("-C", str(destination), "remote", "set-url", "origin", location)
        return GitWorkingCopy(destination)

    def open_working_copy(self, path: Path) -> GitWorkingCopy:
        if not path.is_dir():
            raise GitError(f"no working copy at {path}")
        return GitWorkingCopy(path)


@dataclass(frozen=True)
class RepositoryHandle:
    location: str
    path: Path
    provider: RepositoryProvider

    def open(self) -> Repository:
        return self.provider.open(self.location, self.path)

    def create_working_copy(self, destination: Path, *, editable: bool) -> WorkingCopy:
        return self.provider.create_working_copy(self.location, self.path, destination, editable=editable)


class RepositoryManager:
    """Canonical clones of every repository, stored once under `path`."""

    def __init__(self, path: Path, provider: RepositoryProvider) -> None:
        self.path = path
        self.provider = provider
        self._lock = threading.Lock()
        self._location_locks: dict[str, threading.Lock] = {}

    def _lock_for(self, location: str) -> threading.Lock:
        with self._lock:
            return self._location_locks.setdefault(location, threading.Lock())

    def repository_path(self, location: str) -> Path:
        return self.path / _storage_name(location)

    def lookup(self, location: str, *, skip_update: bool = False) -> RepositoryHandle:
        repo_path = self.repository_path(location)
        with self._lock_for(location):
            if repo_path.exists():
                if not skip_update:
                    log.debug("repository_update", location=location)
                    self.provider.update(repo_path)
            else:
                log.info("repository_fetch", location=location, path=str(repo_path))
                try:
                    self.provider.fetch(location, repo_path)
                except BaseException:
                    shutil.rmtree(repo_path, ignore_errors=True)
                    raise
        return RepositoryHandle(location=location, path=repo_path, provider=self.provider)

    def open_working_copy(self, path: Path) -> WorkingCopy:
        return self.provider.open_working_copy(path)

    def remove(self, location: str) -> None:
        repo_path = self.repository_path(location)
        with self._lock_for(location):
            remove_tree(repo_path)

    def reset(self) -> None:
        remove_tree(self.path)
