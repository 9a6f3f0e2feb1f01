from __future__ import annotations

import json
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterable
from urllib.parse import urljoin, urlsplit

import structlog

from .archiver import Archiver, ZipArchiver, compute_checksum, is_archive
from .client import HTTPClient, WharfError
from .concurrency import DEFAULT_MAX_WORKERS, fan_out
from .diagnostics import Diagnostics
from .errors import ChecksumMismatchError, InternalError
from .fsutil import exclusive_lock, is_empty_directory, prune_empty_directories, remove_tree
from .manifest import Manifest
from .models import LocalSource, ManagedArtifact, ManagedArtifacts, PackageReference, RemoteSource
from .state import WorkspaceState

ARTIFACT_BUNDLE_INDEX_EXTENSION = ".artifactbundleindex"
SUPPORTED_INDEX_SCHEMA_VERSIONS = ("1.0",)

log = structlog.get_logger("wharf.artifacts")


@dataclass(frozen=True)
class LocalArtifact:
    package_ref: PackageReference
    target_name: str
    path: Path


@dataclass(frozen=True)
class RemoteArtifact:
    package_ref: PackageReference
    target_name: str
    url: str
    checksum: str


@dataclass(frozen=True)
class ArtifactPlan:
    remove: tuple[ManagedArtifact, ...] = ()
    extract: tuple[LocalArtifact, ...] = ()
    register: tuple[LocalArtifact, ...] = ()
    download: tuple[RemoteArtifact, ...] = ()
    tampered: tuple[RemoteArtifact, ...] = ()


@dataclass
class ArtifactUpdateResult:
    removed: list[ManagedArtifact] = field(default_factory=list)
    extracted: list[ManagedArtifact] = field(default_factory=list)
    downloaded: list[ManagedArtifact] = field(default_factory=list)
    registered: list[ManagedArtifact] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.extracted or self.downloaded)


def parse_binary_artifacts(manifests: Iterable[Manifest]) -> tuple[list[LocalArtifact], list[RemoteArtifact]]:
    local: list[LocalArtifact] = []
    remote: list[RemoteArtifact] = []
    for manifest in manifests:
        for target in manifest.binary_targets():
            if target.path:
                path = (manifest.directory / target.path).resolve()
                local.append(LocalArtifact(manifest.package_ref, target.name, path))
            elif target.url and target.checksum:
                remote.append(RemoteArtifact(manifest.package_ref, target.name, target.url, target.checksum))
            else:
                raise InternalError(
                    f"binary target '{target.name}' of '{manifest.identity}' should have either a path or a URL and a checksum"
                )
    return local, remote


def _is_under(path: Path, directory: Path) -> bool:
    try:
        path.resolve().relative_to(directory.resolve())
    except ValueError:
        return False
    return True


def plan_artifact_updates(
    *,
    local: Iterable[LocalArtifact],
    remote: Iterable[RemoteArtifact],
    existing: ManagedArtifacts,
    added_or_updated: set[str],
    artifacts_directory: Path,
    local_checksum: Callable[[Path], str] = compute_checksum,
) -> ArtifactPlan:
    """Three-way diff of declared binary targets against the recorded artifacts."""
    local = list(local)
    remote = list(remote)
    declared = {(a.package_ref.identity, a.target_name) for a in local} | {
        (a.package_ref.identity, a.target_name) for a in remote
    }

    remove = [a for a in existing if a.key not in declared]

    extract: list[LocalArtifact] = []
    register: list[LocalArtifact] = []
    for artifact in local:
        if is_archive(artifact.path):
            current = existing.get(artifact.package_ref.identity, artifact.target_name)
            if (
                current is not None
                and isinstance(current.source, LocalSource)
                and current.source.checksum is not None
                and artifact.path.is_file()
                and current.source.checksum == local_checksum(artifact.path)
            ):
                continue
            extract.append(artifact)
        else:
            register.append(artifact)

    download: list[RemoteArtifact] = []
    tampered: list[RemoteArtifact] = []
    for artifact in remote:
        current = existing.get(artifact.package_ref.identity, artifact.target_name)
        if current is not None and isinstance(current.source, RemoteSource) and _is_under(current.path, artifacts_directory):
            if current.source.checksum == artifact.checksum:
                continue
            if artifact.package_ref.identity not in added_or_updated:
                tampered.append(artifact)
                continue
        download.append(artifact)

    return ArtifactPlan(
        remove=tuple(remove),
        extract=tuple(extract),
        register=tuple(register),
        download=tuple(download),
        tampered=tuple(tampered),
    )


def _find_artifact(directory: Path, target_name: str) -> Path | None:
    for entry in sorted(directory.iterdir()):
        if entry.name.startswith("."):
            continue
        if entry.stem == target_name or entry.name == target_name:
            return entry
    return None


def _url_basename(url: str) -> str:
    name = PurePosixPath(urlsplit(url).path).name
    if not name:
        raise WharfError(f"invalid artifact URL {url!r}")
    return name


class BinaryArtifactsManager:
    """Keeps the artifacts directory equal to what the binary targets of the loaded manifests declare."""

    def __init__(
        self,
        *,
        state: WorkspaceState,
        artifacts_directory: Path,
        diagnostics: Diagnostics,
        host_triple: str,
        http: HTTPClient | None = None,
        archiver: Archiver | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.state = state
        self.artifacts_directory = artifacts_directory
        self.diagnostics = diagnostics
        self.host_triple = host_triple
        self.http = http
        self.archiver = archiver or ZipArchiver()
        self.max_workers = max_workers

    def _require_http(self) -> HTTPClient:
        if self.http is None:
            raise WharfError("downloading binary artifacts requires an HTTP client")
        return self.http

    @property
    def _extract_root(self) -> Path:
        return self.artifacts_directory / "extract"

    def _destination(self, package_ref: PackageReference, target_name: str) -> Path:
        return self.artifacts_directory / package_ref.identity / target_name

    def _download_directory(self, package_ref: PackageReference, target_name: str) -> Path:
        directory = self._extract_root / package_ref.identity / target_name / f"{uuid.uuid4().hex}.download"
        directory.mkdir(parents=True)
        return directory

    def _install(self, archive: Path, package_ref: PackageReference, target_name: str) -> Path:
        """Extract into a private directory, then move entries into place under the destination lock."""
        destination = self._destination(package_ref, target_name)
        destination.mkdir(parents=True, exist_ok=True)
        scratch = self._extract_root / package_ref.identity / target_name / uuid.uuid4().hex
        try:
            remove_tree(scratch)
            scratch.mkdir(parents=True)
            self.archiver.extract(archive, scratch)
            for entry in sorted(scratch.iterdir()):
                with exclusive_lock(destination):
                    remove_tree(destination / entry.name)
                    shutil.move(str(entry), str(destination / entry.name))
        finally:
            remove_tree(scratch)

        found = _find_artifact(destination, target_name)
        if found is None:
            raise WharfError(f"archive of binary target '{target_name}' does not contain a binary artifact")
        return found

    def _remove(self, artifact: ManagedArtifact) -> None:
        if not _is_under(artifact.path, self.artifacts_directory):
            return
        remove_tree(artifact.path)
        lock_file = artifact.path.parent.parent / f".{artifact.path.parent.name}.lock"
        lock_file.unlink(missing_ok=True)

    def _replace_previous(self, artifact: ManagedArtifact) -> None:
        previous = self.state.artifacts.get(*artifact.key)
        if previous is not None and previous.path != artifact.path and _is_under(previous.path, self.artifacts_directory):
            remove_tree(previous.path)

    def _extract_local(self, artifact: LocalArtifact) -> ManagedArtifact | None:
        with self.diagnostics.trap(package=artifact.package_ref.identity):
            checksum = compute_checksum(artifact.path)
            path = self._install(artifact.path, artifact.package_ref, artifact.target_name)
            log.info("artifact_extracted", package=artifact.package_ref.identity, target=artifact.target_name)
            return ManagedArtifact(artifact.package_ref, artifact.target_name, path, LocalSource(checksum))
        return None

    def _resolve_index(self, artifact: RemoteArtifact) -> RemoteArtifact:
        """Turn an archive index into the archive that supports the host triple."""
        http = self._require_http()
        data = http.fetch(artifact.url)
        directory = self._download_directory(artifact.package_ref, artifact.target_name)
        try:
            index_path = directory / _url_basename(artifact.url)
            index_path.write_bytes(data)
            actual = compute_checksum(index_path)
        finally:
            remove_tree(directory)
        if actual != artifact.checksum:
            raise ChecksumMismatchError(
                f"checksum of downloaded artifact of binary target '{artifact.target_name}' ({actual}) "
                f"does not match checksum specified by the manifest ({artifact.checksum})"
            )

        try:
            index: Any = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise WharfError(f"failed parsing '{artifact.url}': {e}") from e
        if not isinstance(index, dict) or str(index.get("schema_version")) not in SUPPORTED_INDEX_SCHEMA_VERSIONS:
            raise WharfError(f"failed parsing '{artifact.url}': unsupported schema version")
        for entry in index.get("archives") or []:
            if not isinstance(entry, dict):
                continue
            if self.host_triple in (entry.get("supported_triples") or []):
                return RemoteArtifact(
                    artifact.package_ref,
                    artifact.target_name,
                    urljoin(artifact.url, str(entry["file_name"])),
                    str(entry["checksum"]),
                )
        raise WharfError(f"failed retrieving '{artifact.url}': no supported archive was found for '{self.host_triple}'")

    def _download_remote(self, artifact: RemoteArtifact) -> ManagedArtifact | None:
        with self.diagnostics.trap(package=artifact.package_ref.identity):
            declared = artifact
            if _url_basename(artifact.url).endswith(ARTIFACT_BUNDLE_INDEX_EXTENSION):
                artifact = self._resolve_index(artifact)

            http = self._require_http()
            directory = self._download_directory(artifact.package_ref, artifact.target_name)
            archive = directory / _url_basename(artifact.url)
            try:
                http.download(artifact.url, archive)
                actual = compute_checksum(archive)
                if actual != artifact.checksum:
                    raise ChecksumMismatchError(
                        f"checksum of downloaded artifact of binary target '{artifact.target_name}' ({actual}) "
                        f"does not match checksum specified by the manifest ({artifact.checksum})"
                    )
                path = self._install(archive, artifact.package_ref, artifact.target_name)
            finally:
                remove_tree(directory)
            log.info("artifact_downloaded", package=artifact.package_ref.identity, target=artifact.target_name, url=artifact.url)
            return ManagedArtifact(declared.package_ref, declared.target_name, path, RemoteSource(declared.url, declared.checksum))
        return None

    def update(self, manifests: Iterable[Manifest], added_or_updated: Iterable[str] = ()) -> ArtifactUpdateResult:
        local, remote = parse_binary_artifacts(manifests)
        plan = plan_artifact_updates(
            local=local,
            remote=remote,
            existing=self.state.artifacts,
            added_or_updated=set(added_or_updated),
            artifacts_directory=self.artifacts_directory,
        )
        result = ArtifactUpdateResult()

        for artifact in plan.tampered:
            self.diagnostics.warning(
                f"artifact of binary target '{artifact.target_name}' has changed checksum; "
                "this is a potential security risk so the new artifact won't be downloaded",
                package=artifact.package_ref.identity,
            )

        for artifact in plan.remove:
            with self.diagnostics.trap(package=artifact.package_ref.identity):
                self._remove(artifact)
                self.state.artifacts.remove(*artifact.key)
                result.removed.append(artifact)
        if plan.remove:
            prune_empty_directories(self.artifacts_directory)

        for artifact in plan.register:
            if not artifact.path.exists():
                self.diagnostics.error(
                    f"local binary target '{artifact.target_name}' does not contain a binary artifact at {artifact.path}",
                    package=artifact.package_ref.identity,
                )
                continue
            managed = ManagedArtifact(artifact.package_ref, artifact.target_name, artifact.path, LocalSource())
            self.state.artifacts.add(managed)
            result.registered.append(managed)

        downloaded = fan_out(self._download_remote, plan.download, max_workers=self.max_workers)
        extracted = fan_out(self._extract_local, plan.extract, max_workers=self.max_workers)
        prune_empty_directories(self._extract_root)
        if is_empty_directory(self._extract_root):
            self._extract_root.rmdir()
        for managed in downloaded:
            if managed is not None:
                self._replace_previous(managed)
                self.state.artifacts.add(managed)
                result.downloaded.append(managed)
        for managed in extracted:
            if managed is not None:
                self._replace_previous(managed)
                self.state.artifacts.add(managed)
                result.extracted.append(managed)

        self.state.save()
        log.debug(
            "artifacts_updated",
            removed=len(result.removed),
            extracted=len(result.extracted),
            downloaded=len(result.downloaded),
        )
        return result
