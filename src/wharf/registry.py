from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import Any
from urllib.parse import quote

import structlog

from .archiver import Archiver, ZipArchiver, compute_checksum
from .client import HTTPClient, WharfError, WharfHTTPError
from .errors import ChecksumMismatchError
from .fsutil import exclusive_lock, read_json, remove_tree, write_json_atomic
from .versions import Version

SOURCE_ARCHIVE_RESOURCE = "source-archive"

log = structlog.get_logger("wharf.registry")


def split_registry_identity(identity: str) -> tuple[str, str]:
    scope, sep, name = identity.partition(".")
    if not sep or not scope or not name:
        raise WharfError(f"invalid registry identity {identity!r}; expected scope.name")
    return scope, name


class FileChecksumStorage:
    """Trust-on-first-use record of registry source archive checksums."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _path(self, identity: str) -> Path:
        return self.directory / f"{identity}.json"

    def get(self, identity: str, version: Version) -> str | None:
        raw = read_json(self._path(identity))
        if not isinstance(raw, dict):
            return None
        value = raw.get(str(version))
        return value if isinstance(value, str) else None

    def put(self, identity: str, version: Version, checksum: str) -> None:
        path = self._path(identity)
        with exclusive_lock(path):
            raw = read_json(path)
            data: dict[str, Any] = raw if isinstance(raw, dict) else {}
            existing = data.get(str(version))
            if existing is not None and existing != checksum:
                raise ChecksumMismatchError(
                    f"checksum for {identity} {version} changed: recorded {existing}, registry reports {checksum}"
                )
            data[str(version)] = checksum
            write_json_atomic(path, data)


class RegistryClient:
    def __init__(
        self,
        *,
        base_url: str,
        http: HTTPClient,
        checksums: FileChecksumStorage | None = None,
        archiver: Archiver | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http
        self.checksums = checksums
        self.archiver = archiver or ZipArchiver()

    def _package_url(self, identity: str, *suffix: str) -> str:
        scope, name = split_registry_identity(identity)
        parts = [quote(scope, safe=""), quote(name, safe=""), *(quote(s, safe="") for s in suffix)]
        return f"{self.base_url}/" + "/".join(parts)

    def list_versions(self, identity: str) -> list[Version]:
        try:
            data = self.http.get_json(self._package_url(identity))
        except WharfHTTPError as e:
            if e.status_code != 404:
                raise
            raise WharfError(f"package '{identity}' not found in registry {self.base_url}") from e
        releases = data.get("releases") if isinstance(data, dict) else None
        versions: list[Version] = []
        for raw, info in (releases or {}).items():
            if isinstance(info, dict) and info.get("problem"):
                continue
            version = Version.from_tag(str(raw))
            if version is not None:
                versions.append(version)
        return sorted(set(versions), reverse=True)

    def get_manifest(self, identity: str, version: Version, filename: str) -> bytes:
        return self.http.fetch(self._package_url(identity, str(version), filename))

    def fetch_checksum(self, identity: str, version: Version) -> str:
        data = self.http.get_json(self._package_url(identity, str(version)))
        for resource in (data.get("resources") if isinstance(data, dict) else None) or []:
            if isinstance(resource, dict) and resource.get("name") == SOURCE_ARCHIVE_RESOURCE:
                checksum = resource.get("checksum")
                if isinstance(checksum, str) and checksum:
                    return checksum
        raise WharfError(f"registry has no source archive checksum for {identity} {version}")

    def _expected_checksum(self, identity: str, version: Version) -> str:
        if self.checksums is not None:
            stored = self.checksums.get(identity, version)
            if stored is not None:
                return stored
        checksum = self.fetch_checksum(identity, version)
        if self.checksums is not None:
            self.checksums.put(identity, version, checksum)
        return checksum

    def download_source_archive(self, identity: str, version: Version, destination: Path) -> None:
        """Download, verify and extract a release into `destination` (stripping one top-level directory)."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        archive_path = destination.parent / f"{destination.name}.zip"
        url = self._package_url(identity, f"{version}.zip")
        try:
            self.http.download(url, archive_path, headers={"Accept": "application/zip"})
            actual = compute_checksum(archive_path)
            expected = self._expected_checksum(identity, version)
            if actual != expected:
                raise ChecksumMismatchError(
                    f"invalid checksum for {identity} {version} source archive: expected {expected}, got {actual}"
                )
            with tempfile.TemporaryDirectory(prefix=".extract-", dir=destination.parent) as td:
                unpacked = Path(td) / "unpacked"
                self.archiver.extract(archive_path, unpacked)
                children = list(unpacked.iterdir())
                source = children[0] if len(children) == 1 and children[0].is_dir() else unpacked
                remove_tree(destination)
                shutil.move(str(source), str(destination))
        except BaseException:
            remove_tree(destination)
            raise
        finally:
            archive_path.unlink(missing_ok=True)
        log.info("registry_archive_downloaded", identity=identity, version=str(version), path=str(destination))
