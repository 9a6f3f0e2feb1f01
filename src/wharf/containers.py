from __future__ import annotations

import threading
from pathlib import Path
from typing import Protocol

from .client import WharfError
from .errors import InternalError, ManifestLoadError, ResolutionError
from .manifest import MANIFEST_FILENAME, Manifest, ManifestLoader
from .models import (
    FILE_SYSTEM,
    REGISTRY,
    ROOT,
    SOURCE_CONTROL_KINDS,
    Constraint,
    PackageReference,
    ProductFilter,
)
from .registry import RegistryClient
from .source_control import Repository, RepositoryManager
from .versions import Version


class PackageContainer(Protocol):
    package: PackageReference

    def versions_descending(self) -> list[Version]:
        ...

    def dependencies_at_version(self, version: Version, products: ProductFilter) -> list[Constraint]:
        ...

    def dependencies_at_revision(self, identifier: str, products: ProductFilter) -> list[Constraint]:
        ...

    def dependencies_unversioned(self, products: ProductFilter) -> list[Constraint]:
        ...


class ContainerProvider(Protocol):
    def get_container(self, package: PackageReference) -> PackageContainer:
        ...


class FileSystemPackageContainer:
    """Root and local packages: only ever used unversioned."""

    def __init__(self, package: PackageReference, *, manifest_loader: ManifestLoader, manifest: Manifest | None = None) -> None:
        self.package = package
        self._loader = manifest_loader
        self._manifest = manifest

    @property
    def manifest(self) -> Manifest:
        if self._manifest is None:
            self._manifest = self._loader.load(Path(self.package.location), package_ref=self.package)
        return self._manifest

    def versions_descending(self) -> list[Version]:
        return []

    def dependencies_at_version(self, version: Version, products: ProductFilter) -> list[Constraint]:
        raise ResolutionError(f"local package '{self.package}' can't be required by version")

    def dependencies_at_revision(self, identifier: str, products: ProductFilter) -> list[Constraint]:
        raise ResolutionError(f"local package '{self.package}' can't be required by revision")

    def dependencies_unversioned(self, products: ProductFilter) -> list[Constraint]:
        return self.manifest.dependency_constraints(products)


class SourceControlPackageContainer:
    def __init__(self, package: PackageReference, *, repository: Repository, manifest_loader: ManifestLoader) -> None:
        self.package = package
        self._repository = repository
        self._loader = manifest_loader
        self._tags: dict[Version, str] | None = None
        self._manifests: dict[str, Manifest] = {}
        self._lock = threading.Lock()

    def _tag_map(self) -> dict[Version, str]:
        if self._tags is None:
            tags: dict[Version, str] = {}
            for tag in self._repository.tags():
                version = Version.from_tag(tag)
                # Prefer the plain "1.2.3" spelling over "v1.2.3" when both exist.
                if version is not None and (version not in tags or not tag.startswith("v")):
                    tags[version] = tag
            self._tags = tags
        return self._tags

    def versions_descending(self) -> list[Version]:
        return sorted(self._tag_map(), reverse=True)

    def get_tag(self, version: Version) -> str | None:
        return self._tag_map().get(version)

    def get_revision(self, identifier: str) -> str:
        try:
            return self._repository.resolve_revision(identifier)
        except WharfError as e:
            raise ResolutionError(f"could not find revision '{identifier}' of '{self.package}': {e}") from e

    def manifest_at(self, revision: str, *, version: Version | None = None) -> Manifest:
        with self._lock:
            cached = self._manifests.get(revision)
        if cached is not None:
            return cached
        try:
            data = self._repository.read_file(revision, MANIFEST_FILENAME)
        except FileNotFoundError as e:
            raise ManifestLoadError(f"'{self.package}' has no {MANIFEST_FILENAME} at revision {revision}") from e
        manifest = self._loader.parse(
            data,
            path=Path(self.package.location) / MANIFEST_FILENAME,
            package_ref=self.package,
            version=version,
        )
        with self._lock:
            self._manifests[revision] = manifest
        return manifest

    def dependencies_at_version(self, version: Version, products: ProductFilter) -> list[Constraint]:
        tag = self.get_tag(version)
        if tag is None:
            raise ResolutionError(f"'{self.package}' has no tag for version {version}")
        manifest = self.manifest_at(self.get_revision(tag), version=version)
        return manifest.dependency_constraints(products)

    def dependencies_at_revision(self, identifier: str, products: ProductFilter) -> list[Constraint]:
        return self.manifest_at(self.get_revision(identifier)).dependency_constraints(products)

    def dependencies_unversioned(self, products: ProductFilter) -> list[Constraint]:
        raise ResolutionError(f"source control package '{self.package}' can't be used unversioned")


class RegistryPackageContainer:
    def __init__(self, package: PackageReference, *, registry: RegistryClient, manifest_loader: ManifestLoader) -> None:
        self.package = package
        self._registry = registry
        self._loader = manifest_loader
        self._versions: list[Version] | None = None

    def versions_descending(self) -> list[Version]:
        if self._versions is None:
            self._versions = self._registry.list_versions(self.package.identity)
        return list(self._versions)

    def dependencies_at_version(self, version: Version, products: ProductFilter) -> list[Constraint]:
        data = self._registry.get_manifest(self.package.identity, version, MANIFEST_FILENAME)
        manifest = self._loader.parse(
            data,
            path=Path(self.package.identity) / str(version) / MANIFEST_FILENAME,
            package_ref=self.package,
            version=version,
        )
        return manifest.dependency_constraints(products)

    def dependencies_at_revision(self, identifier: str, products: ProductFilter) -> list[Constraint]:
        raise ResolutionError(f"registry package '{self.package}' can't be required by revision")

    def dependencies_unversioned(self, products: ProductFilter) -> list[Constraint]:
        raise ResolutionError(f"registry package '{self.package}' can't be used unversioned")


class WorkspaceContainerProvider:
    """Containers backed by the repository manager, the registry and local manifests."""

    def __init__(
        self,
        *,
        repository_manager: RepositoryManager,
        manifest_loader: ManifestLoader,
        registry: RegistryClient | None = None,
        root_manifests: dict[str, Manifest] | None = None,
        skip_update: bool = False,
    ) -> None:
        self._repositories = repository_manager
        self._loader = manifest_loader
        self._registry = registry
        self._root_manifests = dict(root_manifests or {})
        self._skip_update = skip_update
        self._containers: dict[tuple[str, str], PackageContainer] = {}
        self._lock = threading.Lock()

    def get_container(self, package: PackageReference) -> PackageContainer:
        key = (package.identity, package.location)
        with self._lock:
            cached = self._containers.get(key)
        if cached is not None:
            return cached

        container: PackageContainer
        if package.kind in (ROOT, FILE_SYSTEM):
            root_manifest = self._root_manifests.get(package.identity)
            if root_manifest is not None and root_manifest.package_ref.location != package.location:
                root_manifest = None
            container = FileSystemPackageContainer(package, manifest_loader=self._loader, manifest=root_manifest)
        elif package.kind in SOURCE_CONTROL_KINDS:
            handle = self._repositories.lookup(package.location, skip_update=self._skip_update)
            container = SourceControlPackageContainer(package, repository=handle.open(), manifest_loader=self._loader)
        elif package.kind == REGISTRY:
            if self._registry is None:
                raise WharfError(f"no registry is configured to resolve '{package}'")
            container = RegistryPackageContainer(package, registry=self._registry, manifest_loader=self._loader)
        else:
            raise InternalError(f"unknown package kind {package.kind!r}")

        with self._lock:
            self._containers.setdefault(key, container)
            return self._containers[key]
