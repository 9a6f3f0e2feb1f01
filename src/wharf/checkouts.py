from __future__ import annotations

import threading
from pathlib import Path
from typing import Sequence

import structlog

from .client import WharfError
from .concurrency import DEFAULT_MAX_WORKERS, fan_out
from .config import WorkspaceLocation
from .containers import ContainerProvider, RegistryPackageContainer, SourceControlPackageContainer
from .diagnostics import Diagnostics
from .errors import InternalError, UncommittedChangesError
from .fsutil import make_read_only, make_writable, remove_tree
from .models import (
    FILE_SYSTEM,
    REGISTRY,
    ROOT,
    SOURCE_CONTROL_KINDS,
    Added,
    CheckoutBranch,
    CheckoutRevision,
    CheckoutState,
    CheckoutVersion,
    Edited,
    FileSystem,
    ManagedDependency,
    PackageReference,
    PackageStateChange,
    Pin,
    PinBranch,
    PinVersion,
    RegistryDownload,
    Removed,
    RequiredRevision,
    RequiredUnversioned,
    RequiredVersion,
    SourceControlCheckout,
    StateRequirement,
    Updated,
)
from .registry import RegistryClient
from .source_control import RepositoryHandle, RepositoryManager, repository_basename
from .state import WorkspaceState
from .versions import Version

log = structlog.get_logger("wharf.checkouts")


class DependencyCheckouts:
    """Materializes dependencies on disk and records each one in the workspace state."""

    def __init__(
        self,
        *,
        location: WorkspaceLocation,
        state: WorkspaceState,
        repository_manager: RepositoryManager,
        diagnostics: Diagnostics,
        registry: RegistryClient | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.location = location
        self.state = state
        self.repositories = repository_manager
        self.diagnostics = diagnostics
        self.registry = registry
        self.max_workers = max_workers
        self._state_lock = threading.Lock()

    def _record(self, dependency: ManagedDependency) -> None:
        with self._state_lock:
            self.state.dependencies.add(dependency)
            self.state.save()

    def fetch_repository(self, package: PackageReference, revision: str | None = None) -> RepositoryHandle:
        """Canonical clone of `package`, updated from its remote unless it already has `revision`."""
        if revision is not None and self.repositories.repository_path(package.location).exists():
            handle = self.repositories.lookup(package.location, skip_update=True)
            if handle.open().exists(revision):
                return handle
        return self.repositories.lookup(package.location)

    def checkout_repository(self, package: PackageReference, checkout_state: CheckoutState) -> Path:
        current = self.state.dependencies.get(package.identity)
        relocated = current is not None and not current.package_ref.equals_including_location(package)
        if current is not None and not relocated and current.state == SourceControlCheckout(checkout_state):
            path = self.location.path_to(current)
            if path.is_dir():
                return path

        handle = self.fetch_repository(package, checkout_state.revision)
        subpath = Path(repository_basename(package.location))
        checkout_path = self.location.checkouts_directory / subpath

        if current is not None and relocated and isinstance(current.state, SourceControlCheckout):
            # The old working copy still tracks the previous location.
            remove_tree(self.location.path_to(current))

        working_copy = None
        if checkout_path.exists():
            make_writable(checkout_path)
            try:
                working_copy = self.repositories.open_working_copy(checkout_path)
            except WharfError as e:
                log.debug("working_copy_unusable", path=str(checkout_path), error=str(e))
            if working_copy is not None and not working_copy.is_alternate_object_store_valid():
                working_copy = None
            if working_copy is None:
                remove_tree(checkout_path)
            else:
                working_copy.fetch()
        if working_copy is None:
            working_copy = handle.create_working_copy(checkout_path, editable=False)

        working_copy.checkout(checkout_state.revision)
        make_read_only(checkout_path)

        self._record(ManagedDependency.source_control_checkout(package, checkout_state, subpath))
        log.info("dependency_checked_out", package=package.identity, state=str(checkout_state), path=str(checkout_path))
        return checkout_path

    def checkout_pin(self, pin: Pin) -> Path:
        package = pin.package_ref
        state = pin.state
        if package.kind == REGISTRY:
            if not isinstance(state, PinVersion):
                raise InternalError(f"invalid pin state for registry package '{package.identity}'")
            return self.download_registry_archive(package, state.version)
        if package.kind not in SOURCE_CONTROL_KINDS:
            raise InternalError(f"invalid pin type {package.kind}")

        checkout_state: CheckoutState
        if isinstance(state, PinVersion):
            revision = state.revision or self._tag_revision(package, state.version)
            checkout_state = CheckoutVersion(state.version, revision)
        elif isinstance(state, PinBranch):
            checkout_state = CheckoutBranch(state.name, state.revision)
        else:
            checkout_state = CheckoutRevision(state.revision)
        return self.checkout_repository(package, checkout_state)

    def _tag_revision(self, package: PackageReference, version: Version) -> str:
        repository = self.fetch_repository(package).open()
        for tag in repository.tags():
            if Version.from_tag(tag) == version:
                return repository.resolve_revision(tag)
        raise WharfError(f"'{package.identity}' has no tag for version {version}")

    def download_registry_archive(self, package: PackageReference, version: Version) -> Path:
        subpath = Path(package.identity) / str(version)
        destination = self.location.registry_downloads_directory / subpath
        current = self.state.dependencies.get(package.identity)

        if destination.is_dir():
            log.debug("registry_download_present", package=package.identity, version=str(version))
        else:
            if self.registry is None:
                raise WharfError(f"no registry is configured to download '{package.identity}'")
            self.registry.download_source_archive(package.identity, version, destination)
            make_read_only(destination)

        if current is not None and isinstance(current.state, RegistryDownload) and current.subpath != subpath:
            remove_tree(self.location.path_to(current))
        self._record(ManagedDependency.registry_download(package, version, subpath))
        return destination

    def remove(self, package: PackageReference) -> None:
        dependency = self.state.dependencies.get(package.identity)
        if dependency is None:
            raise InternalError(f"trying to remove '{package.identity}' which isn't in the workspace")

        # Local packages are never removed from disk.
        if isinstance(dependency.state, FileSystem):
            with self._state_lock:
                self.state.dependencies.remove(package.identity)
                self.state.save()
            return

        target = dependency
        keep: ManagedDependency | None = None
        if isinstance(dependency.state, Edited):
            if dependency.state.based_on is None:
                with self._state_lock:
                    self.state.dependencies.remove(package.identity)
                    self.state.save()
                return
            # The edit stays; only what it was based on goes away.
            target = dependency.state.based_on
            keep = ManagedDependency(dependency.package_ref, dependency.subpath, Edited(None, dependency.state.unmanaged_path))

        path = self.location.path_to(target)
        if isinstance(target.state, SourceControlCheckout):
            if path.exists():
                working_copy = self.repositories.open_working_copy(path)
                if working_copy.has_uncommitted_changes():
                    raise UncommittedChangesError(path)
            remove_tree(path)
            self.repositories.remove(target.package_ref.location)
        elif isinstance(target.state, RegistryDownload):
            remove_tree(path)
        else:
            raise InternalError(f"cannot remove '{package.identity}' in state {target.state!r}")

        with self._state_lock:
            if keep is not None:
                self.state.dependencies.add(keep)
            else:
                self.state.dependencies.remove(package.identity)
            self.state.save()
        log.info("dependency_removed", package=package.identity, path=str(path))

    def update_dependency(
        self,
        package: PackageReference,
        requirement: StateRequirement,
        containers: ContainerProvider,
    ) -> Path:
        if isinstance(requirement, RequiredVersion):
            container = containers.get_container(package)
            if isinstance(container, SourceControlPackageContainer):
                tag = container.get_tag(requirement.version)
                if tag is None:
                    raise WharfError(f"'{package.identity}' has no tag for version {requirement.version}")
                revision = container.get_revision(tag)
                return self.checkout_repository(package, CheckoutVersion(requirement.version, revision))
            if isinstance(container, RegistryPackageContainer):
                return self.download_registry_archive(package, requirement.version)
            raise InternalError(f"invalid container for '{package.identity}' at version {requirement.version}")

        if isinstance(requirement, RequiredRevision):
            checkout_state: CheckoutState
            if requirement.branch is not None:
                checkout_state = CheckoutBranch(requirement.branch, requirement.revision)
            else:
                checkout_state = CheckoutRevision(requirement.revision)
            return self.checkout_repository(package, checkout_state)

        if isinstance(requirement, RequiredUnversioned):
            if package.kind not in (ROOT, FILE_SYSTEM):
                raise InternalError(f"unversioned requirement for '{package.identity}' of kind {package.kind}")
            dependency = ManagedDependency.file_system(package)
            self._record(dependency)
            return self.location.path_to(dependency)

        raise InternalError(f"unknown requirement {requirement!r}")

    def apply(
        self,
        changes: Sequence[tuple[PackageReference, PackageStateChange]],
        containers: ContainerProvider,
    ) -> set[str]:
        """
        Remove first, then add and update in parallel.

        Failures are recorded as error diagnostics. Returns the identities that were added or
        updated successfully.
        """
        for package, change in changes:
            if isinstance(change, Removed):
                with self.diagnostics.trap(package=package.identity):
                    self.remove(package)

        pending = [(p, c) for p, c in changes if isinstance(c, (Added, Updated))]

        def _update(item: tuple[PackageReference, PackageStateChange]) -> str | None:
            package, change = item
            if not isinstance(change, (Added, Updated)):
                raise InternalError(f"unexpected change {change!r} for '{package.identity}'")
            log.debug("dependency_update", package=package.identity, requirement=str(change.requirement))
            with self.diagnostics.trap(package=package.identity):
                self.update_dependency(package, change.requirement, containers)
                return package.identity
            return None

        done = fan_out(_update, pending, max_workers=self.max_workers)
        return {identity for identity in done if identity is not None}
