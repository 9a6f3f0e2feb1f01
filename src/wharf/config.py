from __future__ import annotations

import json
import os
import platform
import stat
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from platformdirs import user_cache_path, user_config_path

from .client import DEFAULT_TIMEOUT_S
from .concurrency import DEFAULT_MAX_WORKERS
from .fsutil import write_json_atomic
from .models import Edited, FileSystem, ManagedDependency, RegistryDownload, SourceControlCheckout

WORK_DIRECTORY_NAME = ".wharf"
EDITS_DIRECTORY_NAME = "Packages"
RESOLVED_FILE_NAME = "wharf.resolved"
STATE_FILE_NAME = "workspace-state.json"


@dataclass(frozen=True)
class Config:
    registry_url: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_workers: int = DEFAULT_MAX_WORKERS
    mirrors: dict[str, str] = field(default_factory=dict)  # original URL -> mirror URL
    tokens: dict[str, str] = field(default_factory=dict)  # host -> bearer token
    host_triple: str | None = None
    shared_cache_dir: str | None = None
    log_level: str | None = None
    log_format: str | None = None


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("WHARF_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("wharf") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    write_json_atomic(path, asdict(cfg))
    # Tokens live in this file.
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass
    return path


def shared_cache_directory(cfg: Config) -> Path:
    if cfg.shared_cache_dir:
        return Path(cfg.shared_cache_dir).expanduser()
    return user_cache_path("wharf")


def host_triple(cfg: Config | None = None) -> str:
    if cfg is not None and cfg.host_triple:
        return cfg.host_triple
    machine = platform.machine().lower() or "unknown"
    machine = {"amd64": "x86_64", "arm64": "aarch64"}.get(machine, machine)
    system = platform.system().lower()
    if system == "darwin":
        return f"{'arm64' if machine == 'aarch64' else machine}-apple-macosx"
    if system == "windows":
        return f"{machine}-unknown-windows-msvc"
    return f"{machine}-unknown-{system or 'unknown'}-gnu"


class DependencyMirrors:
    def __init__(self, mirrors: dict[str, str] | None = None) -> None:
        self._mirrors = {k.rstrip("/"): v for k, v in (mirrors or {}).items()}

    def __bool__(self) -> bool:
        return bool(self._mirrors)

    def effective_url(self, url: str) -> str:
        return self._mirrors.get(url.rstrip("/"), url)

    def original_url(self, mirror_url: str) -> str | None:
        for original, mirror in self._mirrors.items():
            if mirror == mirror_url:
                return original
        return None


@dataclass(frozen=True)
class WorkspaceLocation:
    root: Path
    working_directory: Path
    edits_directory: Path
    resolved_file: Path
    shared_cache_directory: Path | None = None

    @classmethod
    def for_root(cls, root: Path, *, shared_cache_directory: Path | None = None) -> "WorkspaceLocation":
        root = root.expanduser().resolve()
        return cls(
            root=root,
            working_directory=root / WORK_DIRECTORY_NAME,
            edits_directory=root / EDITS_DIRECTORY_NAME,
            resolved_file=root / RESOLVED_FILE_NAME,
            shared_cache_directory=shared_cache_directory,
        )

    @property
    def repositories_directory(self) -> Path:
        return self.working_directory / "repositories"

    @property
    def checkouts_directory(self) -> Path:
        return self.working_directory / "checkouts"

    @property
    def registry_downloads_directory(self) -> Path:
        return self.working_directory / "registry" / "downloads"

    @property
    def artifacts_directory(self) -> Path:
        return self.working_directory / "artifacts"

    @property
    def state_file(self) -> Path:
        return self.working_directory / STATE_FILE_NAME

    def path_to(self, dependency: ManagedDependency) -> Path:
        state = dependency.state
        if isinstance(state, SourceControlCheckout):
            return self.checkouts_directory / dependency.subpath
        if isinstance(state, RegistryDownload):
            return self.registry_downloads_directory / dependency.subpath
        if isinstance(state, Edited):
            return state.unmanaged_path or self.edits_directory / dependency.subpath
        if isinstance(state, FileSystem):
            return state.path
        raise TypeError(f"unknown dependency state: {state!r}")
