from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog

from .config import WorkspaceLocation
from .errors import InternalError
from .fsutil import read_json, write_json_atomic
from .models import (
    ArtifactSource,
    CheckoutBranch,
    CheckoutRevision,
    CheckoutState,
    CheckoutVersion,
    Edited,
    FileSystem,
    LocalSource,
    ManagedArtifact,
    ManagedArtifacts,
    ManagedDependencies,
    ManagedDependency,
    PackageReference,
    RegistryDownload,
    RemoteSource,
    SourceControlCheckout,
)
from .versions import Version

STATE_SCHEMA_VERSION = 1

log = structlog.get_logger("wharf.state")


def _checkout_to_json(state: CheckoutState) -> dict[str, Any]:
    if isinstance(state, CheckoutVersion):
        return {"version": str(state.version), "revision": state.revision, "branch": None}
    if isinstance(state, CheckoutBranch):
        return {"version": None, "revision": state.revision, "branch": state.name}
    return {"version": None, "revision": state.revision, "branch": None}


def _checkout_from_json(raw: dict[str, Any]) -> CheckoutState:
    revision = str(raw["revision"])
    if raw.get("version"):
        return CheckoutVersion(Version.parse(str(raw["version"])), revision)
    if raw.get("branch"):
        return CheckoutBranch(str(raw["branch"]), revision)
    return CheckoutRevision(revision)


def dependency_to_json(dep: ManagedDependency) -> dict[str, Any]:
    state = dep.state
    if isinstance(state, SourceControlCheckout):
        state_obj: dict[str, Any] = {"name": "source_control_checkout", "checkout_state": _checkout_to_json(state.checkout_state)}
    elif isinstance(state, RegistryDownload):
        state_obj = {"name": "registry_download", "version": str(state.version)}
    elif isinstance(state, Edited):
        state_obj = {
            "name": "edited",
            "based_on": dependency_to_json(state.based_on) if state.based_on is not None else None,
            "path": str(state.unmanaged_path) if state.unmanaged_path is not None else None,
        }
    elif isinstance(state, FileSystem):
        state_obj = {"name": "file_system", "path": str(state.path)}
    else:
        raise InternalError(f"unknown dependency state {state!r}")
    return {"package_ref": dep.package_ref.to_json(), "subpath": str(dep.subpath), "state": state_obj}


def dependency_from_json(raw: dict[str, Any]) -> ManagedDependency:
    ref = PackageReference.from_json(raw["package_ref"])
    subpath = Path(raw["subpath"])
    state_raw = raw["state"]
    name = state_raw.get("name")
    if name == "source_control_checkout":
        return ManagedDependency(ref, subpath, SourceControlCheckout(_checkout_from_json(state_raw["checkout_state"])))
    if name == "registry_download":
        return ManagedDependency(ref, subpath, RegistryDownload(Version.parse(str(state_raw["version"]))))
    if name == "edited":
        based_on = dependency_from_json(state_raw["based_on"]) if state_raw.get("based_on") else None
        unmanaged = Path(state_raw["path"]) if state_raw.get("path") else None
        return ManagedDependency(ref, subpath, Edited(based_on, unmanaged))
    if name == "file_system":
        return ManagedDependency(ref, subpath, FileSystem(Path(state_raw["path"])))
    raise InternalError(f"unknown dependency state {name!r} in workspace state")


def _source_to_json(source: ArtifactSource) -> dict[str, Any]:
    if isinstance(source, RemoteSource):
        return {"type": "remote", "url": source.url, "checksum": source.checksum}
    return {"type": "local", "checksum": source.checksum}


def _source_from_json(raw: dict[str, Any]) -> ArtifactSource:
    if raw.get("type") == "remote":
        return RemoteSource(url=str(raw["url"]), checksum=str(raw["checksum"]))
    return LocalSource(checksum=raw.get("checksum"))


def artifact_to_json(artifact: ManagedArtifact) -> dict[str, Any]:
    return {
        "package_ref": artifact.package_ref.to_json(),
        "target_name": artifact.target_name,
        "path": str(artifact.path),
        "source": _source_to_json(artifact.source),
    }


def artifact_from_json(raw: dict[str, Any]) -> ManagedArtifact:
    return ManagedArtifact(
        package_ref=PackageReference.from_json(raw["package_ref"]),
        target_name=str(raw["target_name"]),
        path=Path(raw["path"]),
        source=_source_from_json(raw["source"]),
    )


class WorkspaceState:
    """Persisted record of materialized dependencies and artifacts (`workspace-state.json`)."""

    def __init__(self, location: WorkspaceLocation) -> None:
        self.location = location
        self.path = location.state_file
        self.dependencies = ManagedDependencies()
        self.artifacts = ManagedArtifacts()
        self.load()

    def state_file_exists(self) -> bool:
        return self.path.exists()

    def load(self) -> None:
        raw = read_json(self.path)
        self.dependencies = ManagedDependencies()
        self.artifacts = ManagedArtifacts()
        if raw is None:
            return
        if not isinstance(raw, dict) or raw.get("version") != STATE_SCHEMA_VERSION:
            raise InternalError(f"unsupported workspace state format at {self.path}")
        obj = raw.get("object") or {}
        for item in obj.get("dependencies") or []:
            self.dependencies.add(dependency_from_json(item))
        for item in obj.get("artifacts") or []:
            self.artifacts.add(artifact_from_json(item))

    def save(self) -> None:
        payload = {
            "version": STATE_SCHEMA_VERSION,
            "object": {
                "dependencies": [dependency_to_json(d) for d in self.dependencies],
                "artifacts": [artifact_to_json(a) for a in self.artifacts],
            },
        }
        write_json_atomic(self.path, payload)

    def reset(self) -> None:
        self.dependencies.clear()
        self.artifacts.clear()
        self.path.unlink(missing_ok=True)
        log.info("workspace_state_reset", path=str(self.path))
