from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

import structlog

from .archiver import Archiver
from .artifacts import ArtifactUpdateResult, BinaryArtifactsManager
from .checkouts import DependencyCheckouts
from .client import HTTPClient, WharfError
from .concurrency import DEFAULT_MAX_WORKERS, fan_out
from .config import (
    Config,
    DependencyMirrors,
    WorkspaceLocation,
    host_triple,
    load_config,
    shared_cache_directory,
)
from .containers import SourceControlPackageContainer, WorkspaceContainerProvider
from .diagnostics import Diagnostics
from .diff import compute_package_state_changes
from .errors import (
    AlreadyEditedError,
    AlreadyResolvingError,
    BranchAlreadyExistsError,
    CannotEditError,
    DependencyNotFoundError,
    EditDestinationMismatchError,
    InternalError,
    NotInEditModeError,
    ResolutionExhaustedError,
    RevisionDoesNotExistError,
    UncommittedChangesError,
    UnpushedChangesError,
)
from .fsutil import is_empty_directory, make_writable, remove_tree
from .graph import (
    REPAIR_CHECKOUT,
    REPAIR_DOWNLOAD,
    REPAIR_DROP,
    REPAIR_UNEDIT,
    DependencyManifests,
    GraphRoot,
    LoadedDependency,
    merge_by_identity,
    plan_repairs,
    traverse_manifests,
)
from .manifest import CURRENT_TOOLS_VERSION, JSONManifestLoader, Manifest, ManifestLoader, PackageDependency
from .models import (
    FILE_SYSTEM,
    REGISTRY,
    REMOTE_SOURCE_CONTROL,
    Binding,
    CheckoutBranch,
    CheckoutVersion,
    Constraint,
    Edited,
    FileSystem,
    ManagedDependency,
    PackageReference,
    PackageStateChange,
    Pin,
    ProductFilter,
    RegistryDownload,
    Requirement,
    RevisionRequirement,
    SourceControlCheckout,
    VersionSetRequirement,
    pin_state_for,
    plain_identity,
)
from .pins import PinsStore
from .registry import FileChecksumStorage, RegistryClient
from .resolution import (
    ForcedReason,
    NewPackagesReason,
    NotRequired,
    ResolutionPrecomputationResult,
    ResolveReason,
    format_resolve_reason,
    precompute_resolution,
)
from .solver import BacktrackingSolver, SolverFactory
from .source_control import GitRepositoryProvider, RepositoryManager
from .state import WorkspaceState
from .versions import Version

log = structlog.get_logger("wharf.workspace")

PackageChanges = list[tuple[PackageReference, PackageStateChange]]


@dataclass(frozen=True)
class RootInput:
    """Root package directories plus extra dependencies declared by the caller."""

    packages: tuple[Path, ...]
    dependencies: tuple[PackageDependency, ...] = ()

    @classmethod
    def of(cls, root: "RootInput | Path | Sequence[Path]") -> "RootInput":
        if isinstance(root, RootInput):
            return root
        if isinstance(root, Path):
            return cls((root,))
        return cls(tuple(root))


@dataclass(frozen=True)
class ResolveResult:
    manifests: DependencyManifests
    changes: tuple[tuple[PackageReference, PackageStateChange], ...]
    reason: ResolveReason | None
    warnings: tuple[str, ...] = ()

    @property
    def resolved(self) -> bool:
        return self.reason is not None


def _checkout_requirement(state: SourceControlCheckout) -> Requirement:
    checkout = state.checkout_state
    if isinstance(checkout, CheckoutVersion):
        return VersionSetRequirement.exact(checkout.version)
    if isinstance(checkout, CheckoutBranch):
        return RevisionRequirement(checkout.name)
    return RevisionRequirement(checkout.revision)


class Workspace:
    """
    Reconciles the dependencies materialized under a root package with its manifests.

    Public operations are single-writer: one process, one call at a time. Per-package work
    inside a phase fans out to a bounded thread pool that always joins before the next phase.
    """

    def __init__(
        self,
        *,
        location: WorkspaceLocation,
        manifest_loader: ManifestLoader | None = None,
        repository_manager: RepositoryManager | None = None,
        registry: RegistryClient | None = None,
        http: HTTPClient | None = None,
        archiver: Archiver | None = None,
        solver_factory: SolverFactory = BacktrackingSolver,
        mirrors: DependencyMirrors | None = None,
        host_triple: str | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        diagnostics: Diagnostics | None = None,
    ) -> None:
        self.location = location
        self.mirrors = mirrors or DependencyMirrors()
        self.manifest_loader = manifest_loader or JSONManifestLoader(mirrors=self.mirrors)
        self.repository_manager = repository_manager or RepositoryManager(
            location.repositories_directory, GitRepositoryProvider()
        )
        self.registry = registry
        self.solver_factory = solver_factory
        self.max_workers = max_workers
        self.diagnostics = diagnostics or Diagnostics()
        self.state = WorkspaceState(location)
        self.pins = PinsStore(location.resolved_file, mirrors=self.mirrors)
        self.checkouts = DependencyCheckouts(
            location=location,
            state=self.state,
            repository_manager=self.repository_manager,
            diagnostics=self.diagnostics,
            registry=registry,
            max_workers=max_workers,
        )
        self.artifacts = BinaryArtifactsManager(
            state=self.state,
            artifacts_directory=location.artifacts_directory,
            diagnostics=self.diagnostics,
            host_triple=host_triple or _default_host_triple(),
            http=http,
            archiver=archiver,
            max_workers=max_workers,
        )
        self._resolving = threading.Lock()

    @classmethod
    def create(cls, root: Path, *, config: Config | None = None) -> "Workspace":
        cfg = config or load_config()
        cache = shared_cache_directory(cfg)
        location = WorkspaceLocation.for_root(root, shared_cache_directory=cache)
        mirrors = DependencyMirrors(cfg.mirrors)
        http = HTTPClient(timeout_s=cfg.timeout_s, tokens=cfg.tokens)
        registry = None
        if cfg.registry_url:
            registry = RegistryClient(
                base_url=cfg.registry_url,
                http=http,
                checksums=FileChecksumStorage(cache / "registry" / "checksums"),
            )
        return cls(
            location=location,
            manifest_loader=JSONManifestLoader(mirrors=mirrors),
            registry=registry,
            http=http,
            mirrors=mirrors,
            host_triple=host_triple(cfg),
            max_workers=cfg.max_workers,
        )

    # Manifests

    def load_root_manifests(self, packages: Sequence[Path]) -> dict[str, Manifest]:
        manifests: dict[str, Manifest] = {}
        for path in packages:
            path = path.expanduser().resolve()
            manifest = self.manifest_loader.load(path, package_ref=PackageReference.root(path))
            manifests[manifest.identity] = manifest
        return manifests

    def _graph_root(self, root: RootInput) -> GraphRoot:
        return GraphRoot(self.load_root_manifests(root.packages).values(), root.dependencies)

    @staticmethod
    def _tools_version(graph_root: GraphRoot) -> Version:
        versions = [m.tools_version for m in graph_root.manifests.values()]
        return min(versions) if versions else CURRENT_TOOLS_VERSION

    def load_managed_manifest(self, package: PackageReference) -> Manifest | None:
        """Manifest of the managed dependency for `package`, only if it was materialized from the same location."""
        dependency = self.state.dependencies.get_comparing_location(package)
        if dependency is None:
            return None
        path = self.location.path_to(dependency)
        state = dependency.state

        version: Version | None = None
        manifest_ref = dependency.package_ref
        if isinstance(state, SourceControlCheckout) and isinstance(state.checkout_state, CheckoutVersion):
            version = state.checkout_state.version
        elif isinstance(state, RegistryDownload):
            version = state.version
        elif isinstance(state, (Edited, FileSystem)):
            manifest_ref = PackageReference.file_system(path, identity=dependency.identity)

        location = dependency.package_ref.location
        if dependency.package_ref.kind == REMOTE_SOURCE_CONTROL:
            location = self.mirrors.original_url(location) or location

        with self.diagnostics.trap(package=dependency.identity):
            return self.manifest_loader.load(path, package_ref=manifest_ref, package_location=location, version=version)
        return None

    def _is_present(self, dependency: ManagedDependency) -> bool:
        return self.location.path_to(dependency).exists()

    def _repair(self) -> None:
        if len(self.state.dependencies) and not self.state.state_file_exists():
            self.state.reset()

        for action in plan_repairs(list(self.state.dependencies), self._is_present):
            dependency = action.dependency
            name = dependency.identity
            if action.action == REPAIR_CHECKOUT:
                self.diagnostics.warning(f"dependency '{name}' is missing; cloning again", package=name)
                if not isinstance(dependency.state, SourceControlCheckout):
                    raise InternalError(f"cannot clone '{name}' again: it is not a source control checkout")
                with self.diagnostics.trap(package=name):
                    self.checkouts.checkout_repository(dependency.package_ref, dependency.state.checkout_state)
            elif action.action == REPAIR_DOWNLOAD:
                self.diagnostics.warning(f"dependency '{name}' is missing; downloading again", package=name)
                if not isinstance(dependency.state, RegistryDownload):
                    raise InternalError(f"cannot download '{name}' again: it is not a registry download")
                with self.diagnostics.trap(package=name):
                    self.checkouts.download_registry_archive(dependency.package_ref, dependency.state.version)
            elif action.action == REPAIR_UNEDIT:
                self.diagnostics.warning(
                    f"dependency '{name}' was being edited but is missing; falling back to original checkout",
                    package=name,
                )
                with self.diagnostics.trap(package=name):
                    self._unedit(dependency, force_remove=True)
            elif action.action == REPAIR_DROP:
                self.state.dependencies.remove(name)
                self.state.save()

    def load_dependency_manifests(self, graph_root: GraphRoot) -> DependencyManifests:
        for dependency in list(self.state.dependencies):
            if dependency.identity in graph_root.identities:
                with self.diagnostics.trap(package=dependency.identity):
                    self.checkouts.remove(dependency.package_ref)
        self._repair()

        cache: dict[tuple[str, str], Manifest | None] = {}
        cache_lock = threading.Lock()

        def _load(package: PackageReference) -> Manifest | None:
            key = (package.identity, package.location)
            with cache_lock:
                if key in cache:
                    return cache[key]
            manifest = self.load_managed_manifest(package)
            with cache_lock:
                cache[key] = manifest
            return manifest

        first_level: list[PackageDependency] = list(graph_root.dependencies)
        for manifest in graph_root.manifests.values():
            first_level.extend(manifest.dependencies_required(ProductFilter.everything()))
        loaded_first = fan_out(_load, [d.package_ref for d in first_level], max_workers=self.max_workers)
        second_level = [
            dep.package_ref
            for manifest, parent in zip(loaded_first, first_level)
            if manifest is not None
            for dep in manifest.dependencies_required(parent.products)
        ]
        fan_out(_load, second_level, max_workers=self.max_workers)

        def _successors(manifest: Manifest, products: ProductFilter) -> list[tuple[Manifest, ProductFilter]]:
            result = []
            for dep in manifest.dependencies_required(products):
                loaded = _load(dep.package_ref)
                if loaded is not None:
                    result.append((loaded, dep.products))
            return result

        starts: list[tuple[Manifest, ProductFilter]] = [
            (m, ProductFilter.everything()) for _, m in sorted(graph_root.manifests.items())
        ]
        for dep in graph_root.dependencies:
            loaded = _load(dep.package_ref)
            if loaded is not None:
                starts.append((loaded, dep.products))

        merged = merge_by_identity(traverse_manifests(starts, _successors))
        roots_by_name = {m.display_name: m for m in graph_root.manifests.values()}

        dependencies: list[LoadedDependency] = []
        for identity, (manifest, products) in sorted(merged.items()):
            if identity in graph_root.identities:
                continue
            override = roots_by_name.get(manifest.display_name)
            if override is not None:
                self.diagnostics.error(
                    f"unable to override package '{manifest.display_name}' because its identity '{identity}' "
                    f"doesn't match override's identity (directory name) '{override.identity}'"
                )
            managed = self.state.dependencies.get(identity)
            if managed is None:
                raise InternalError(f"loaded manifest for '{identity}' has no managed dependency")
            dependencies.append(LoadedDependency(manifest=manifest, dependency=managed, products=products))

        return DependencyManifests(graph_root, dependencies, path_to=self.location.path_to, mirrors=self.mirrors)

    # Pins

    def _pin_all(self, manifests: DependencyManifests, tools_version: Version) -> None:
        required = manifests.required_packages
        self.pins.unpin_all()
        for dependency in self.state.dependencies:
            ref = required.get(dependency.identity)
            if ref is not None and ref.equals_including_location(dependency.package_ref):
                self.pins.pin(dependency)
        with self.diagnostics.trap():
            self.pins.save(tools_version)

    def _validate_pins(self, manifests: DependencyManifests, tools_version: Version) -> None:
        """Re-pin everything when a required dependency lacks a matching pin or a stale one is still pinned."""
        required = manifests.required_packages
        for dependency in self.state.dependencies:
            if pin_state_for(dependency) is None:
                continue
            ref = required.get(dependency.identity)
            pin = self.pins.get(dependency.identity)
            if ref is not None and ref.equals_including_location(dependency.package_ref):
                if pin is not None and pin.package_ref.equals_including_location(dependency.package_ref):
                    continue
            elif pin is None:
                continue
            log.info("pins_out_of_sync", package=dependency.identity)
            self._pin_all(manifests, tools_version)
            return

    # Resolution

    def _container_provider(self, graph_root: GraphRoot) -> WorkspaceContainerProvider:
        return WorkspaceContainerProvider(
            repository_manager=self.repository_manager,
            manifest_loader=self.manifest_loader,
            registry=self.registry,
            root_manifests=graph_root.manifests,
        )

    @contextmanager
    def _exclusive_resolution(self) -> Iterator[None]:
        if not self._resolving.acquire(blocking=False):
            raise AlreadyResolvingError()
        try:
            yield
        finally:
            self._resolving.release()

    def _solve(self, provider: WorkspaceContainerProvider, constraints: list[Constraint], pins: dict[str, Pin]) -> list[Binding]:
        with self._exclusive_resolution():
            return self.solver_factory(provider, pins).solve(constraints)

    def _precompute(self, graph_root: GraphRoot, manifests: DependencyManifests) -> ResolutionPrecomputationResult:
        with self._exclusive_resolution():
            return precompute_resolution(
                root=graph_root,
                manifests=manifests,
                pins=self.pins.pins,
                solver_factory=self.solver_factory,
            )

    @staticmethod
    def _revision_resolver(provider: WorkspaceContainerProvider):
        def _resolve_revision(package: PackageReference, identifier: str) -> str:
            container = provider.get_container(package)
            if not isinstance(container, SourceControlPackageContainer):
                raise InternalError(f"invalid container for '{package.identity}': expected source control")
            return container.get_revision(identifier)

        return _resolve_revision

    def _update_artifacts(self, manifests: DependencyManifests, added_or_updated: set[str]) -> ArtifactUpdateResult:
        all_manifests = list(manifests.root.manifests.values()) + [d.manifest for d in manifests.dependencies]
        return self.artifacts.update(all_manifests, added_or_updated)

    def _warnings(self, mark: int) -> tuple[str, ...]:
        return tuple(str(d) for d in self.diagnostics.since(mark) if d.severity == "warning")

    def resolve(
        self,
        root: RootInput | Path | Sequence[Path],
        *,
        forced: bool = False,
        constraints: Sequence[Constraint] = (),
    ) -> ResolveResult:
        """Bring the materialized dependencies in line with the root manifests, resolving only when needed."""
        return self._resolve(
            RootInput.of(root),
            forced=forced,
            constraints=tuple(constraints),
            retry_on_path_mismatch=True,
            reset_pins_on_failure=True,
        )

    def _resolve(
        self,
        root: RootInput,
        *,
        forced: bool,
        constraints: tuple[Constraint, ...],
        retry_on_path_mismatch: bool,
        reset_pins_on_failure: bool,
    ) -> ResolveResult:
        mark = self.diagnostics.mark()
        graph_root = self._graph_root(root)
        tools_version = self._tools_version(graph_root)
        result, missing = self._resolve_once(graph_root, forced=forced, constraints=constraints, mark=mark)
        if not missing:
            return result

        if retry_on_path_mismatch:
            log.info("resolve_retry", reason="location_mismatch", missing=sorted(missing))
            return self._resolve(
                root,
                forced=forced,
                constraints=constraints,
                retry_on_path_mismatch=False,
                reset_pins_on_failure=reset_pins_on_failure,
            )
        if reset_pins_on_failure and len(self.pins):
            log.info("resolve_retry", reason="reset_pins", missing=sorted(missing))
            self.pins.unpin_all()
            self.pins.save(tools_version)
            return self._resolve(
                root,
                forced=forced,
                constraints=constraints,
                retry_on_path_mismatch=False,
                reset_pins_on_failure=False,
            )
        raise ResolutionExhaustedError(missing)

    def _resolve_once(
        self,
        graph_root: GraphRoot,
        *,
        forced: bool,
        constraints: tuple[Constraint, ...],
        mark: int,
    ) -> tuple[ResolveResult, set[str]]:
        tools_version = self._tools_version(graph_root)
        current = self.load_dependency_manifests(graph_root)
        self.diagnostics.raise_if_errors(since=mark)

        self._validate_pins(current, tools_version)
        self.diagnostics.raise_if_errors(since=mark)
        missing = current.missing_packages

        reason: ResolveReason
        if missing:
            reason = NewPackagesReason(tuple(missing[k] for k in sorted(missing)))
        elif constraints or forced:
            reason = ForcedReason()
        else:
            precomputed = self._precompute(graph_root, current)
            if isinstance(precomputed, NotRequired):
                self._update_artifacts(current, set())
                self.diagnostics.raise_if_errors(since=mark)
                return ResolveResult(current, (), None, self._warnings(mark)), set()
            reason = precomputed.reason

        log.info("resolve", reason=format_resolve_reason(reason))
        all_constraints = current.edited_packages_constraints() + graph_root.constraints() + list(constraints)
        provider = self._container_provider(graph_root)
        bindings = self._solve(provider, all_constraints, self.pins.pins)
        changes = compute_package_state_changes(
            root_identities=graph_root.identities,
            bindings=bindings,
            dependencies=self.state.dependencies,
            pins=self.pins.pins,
            resolve_revision=self._revision_resolver(provider),
        )
        updated = self.checkouts.apply(changes, provider)
        self.diagnostics.raise_if_errors(since=mark)

        manifests = self.load_dependency_manifests(graph_root)
        self.diagnostics.raise_if_errors(since=mark)
        still_missing = set(manifests.missing_packages)
        result = ResolveResult(manifests, tuple(changes), reason, self._warnings(mark))
        if still_missing:
            return result, still_missing

        self._pin_all(manifests, tools_version)
        self._update_artifacts(manifests, updated)
        self.diagnostics.raise_if_errors(since=mark)
        return ResolveResult(manifests, tuple(changes), reason, self._warnings(mark)), set()

    def update_dependencies(
        self,
        root: RootInput | Path | Sequence[Path],
        *,
        packages: Sequence[str] = (),
        dry_run: bool = False,
    ) -> PackageChanges:
        """Resolve ignoring pins (all of them, or only those of `packages`) and move branches forward."""
        mark = self.diagnostics.mark()
        graph_root = self._graph_root(RootInput.of(root))
        current = self.load_dependency_manifests(graph_root)
        self.diagnostics.raise_if_errors(since=mark)

        constraints = current.edited_packages_constraints() + graph_root.constraints()
        if packages:
            names = {plain_identity(p) for p in packages}
            pins = {identity: pin for identity, pin in self.pins.pins.items() if identity not in names}
        else:
            pins = {}

        provider = self._container_provider(graph_root)
        bindings = self._solve(provider, constraints, pins)
        changes = compute_package_state_changes(
            root_identities=graph_root.identities,
            bindings=bindings,
            dependencies=self.state.dependencies,
            pins=self.pins.pins,
            resolve_revision=self._revision_resolver(provider),
            update_branches=True,
        )
        if dry_run:
            return changes

        updated = self.checkouts.apply(changes, provider)
        self.diagnostics.raise_if_errors(since=mark)

        manifests = self.load_dependency_manifests(graph_root)
        missing = manifests.missing_packages
        if missing:
            raise ResolutionExhaustedError(missing)

        self._pin_all(manifests, self._tools_version(graph_root))
        self._update_artifacts(manifests, updated)
        self.diagnostics.raise_if_errors(since=mark)
        return changes

    def resolve_package(
        self,
        package_name: str,
        root: RootInput | Path | Sequence[Path],
        *,
        version: Version | None = None,
        branch: str | None = None,
        revision: str | None = None,
    ) -> ResolveResult:
        """Resolve with one dependency constrained to a version, branch or revision (default: its current state)."""
        dependency = self.state.dependencies.get(plain_identity(package_name))
        if dependency is None:
            raise DependencyNotFoundError(package_name)

        state = dependency.state
        default: Requirement
        if isinstance(state, SourceControlCheckout):
            default = _checkout_requirement(state)
        elif isinstance(state, RegistryDownload):
            default = VersionSetRequirement.exact(state.version)
        elif isinstance(state, FileSystem):
            raise WharfError(f"local dependency '{dependency.identity}' can't be resolved")
        else:
            raise WharfError(f"edited dependency '{dependency.identity}' can't be resolved")

        requirement: Requirement
        if version is not None:
            requirement = VersionSetRequirement.exact(version)
        elif branch is not None:
            requirement = RevisionRequirement(branch)
        elif revision is not None:
            requirement = RevisionRequirement(revision)
        else:
            requirement = default

        constraint = Constraint(dependency.package_ref, requirement, ProductFilter.everything())
        return self.resolve(root, constraints=[constraint])

    def resolve_based_on_resolved_file(self, root: RootInput | Path | Sequence[Path]) -> DependencyManifests:
        """Materialize exactly what `wharf.resolved` records; fail if that no longer satisfies the manifests."""
        mark = self.diagnostics.mark()
        graph_root = self._graph_root(RootInput.of(root))

        def _needs_checkout(pin: Pin) -> bool:
            dependency = self.state.dependencies.get_comparing_location(pin.package_ref)
            if dependency is None:
                return True
            if isinstance(dependency.state, Edited):
                return False
            return pin_state_for(dependency) != pin.state

        for pin in [p for p in self.pins.pins.values() if _needs_checkout(p)]:
            with self.diagnostics.trap(package=pin.package_ref.identity):
                self.checkouts.checkout_pin(pin)

        manifests = self.load_dependency_manifests(graph_root)
        self._update_artifacts(manifests, set())
        self.diagnostics.raise_if_errors(since=mark)

        if manifests.missing_packages:
            precomputed = NewPackagesReason(tuple(manifests.missing_packages.values()))
            reason_text = format_resolve_reason(precomputed)
        else:
            result = self._precompute(graph_root, manifests)
            if isinstance(result, NotRequired):
                return manifests
            reason_text = format_resolve_reason(result.reason)

        resolved_file = self.location.resolved_file
        if not resolved_file.exists():
            self.diagnostics.error(
                "a resolved file is required when automatic dependency resolution is disabled and should be "
                f"placed at {resolved_file}. {reason_text}"
            )
        else:
            self.diagnostics.error(
                f"an out-of-date resolved file was detected at {resolved_file}, which is not allowed when automatic "
                "dependency resolution is disabled; please make sure to update the file to reflect the changes in "
                f"dependencies. {reason_text}"
            )
        self.diagnostics.raise_if_errors(since=mark)
        return manifests

    # Edit mode

    def edit(
        self,
        package_name: str,
        *,
        path: Path | None = None,
        revision: str | None = None,
        checkout_branch: str | None = None,
    ) -> Path:
        """Put a checked out dependency in edit mode; returns the editable directory."""
        dependency = self.state.dependencies.get(plain_identity(package_name))
        if dependency is None:
            raise DependencyNotFoundError(package_name)
        state = dependency.state
        if isinstance(state, Edited):
            raise AlreadyEditedError(dependency.identity)
        if isinstance(state, FileSystem):
            raise CannotEditError(dependency.identity, FILE_SYSTEM)
        if isinstance(state, RegistryDownload):
            raise CannotEditError(dependency.identity, REGISTRY)
        checkout_state = state.checkout_state

        destination = path.expanduser().resolve() if path is not None else self.location.edits_directory / package_name
        if destination.exists():
            manifest = self.manifest_loader.load(
                destination,
                package_ref=PackageReference.file_system(destination, identity=dependency.identity),
                package_location=dependency.package_ref.location,
            )
            if manifest.display_name != package_name:
                raise EditDestinationMismatchError(package_name, str(destination), manifest.display_name)
            if checkout_branch is not None:
                self.diagnostics.warning(
                    f"dependency '{package_name}' already exists at the edit destination; not checking out branch '{checkout_branch}'",
                    package=dependency.identity,
                )
            if revision is not None:
                self.diagnostics.warning(
                    f"dependency '{package_name}' already exists at the edit destination; not using revision '{revision}'",
                    package=dependency.identity,
                )
        else:
            handle = self.repository_manager.lookup(dependency.package_ref.location, skip_update=True)
            repository = handle.open()
            if checkout_branch is not None and repository.exists(checkout_branch):
                raise BranchAlreadyExistsError(checkout_branch)
            if revision is not None and not repository.exists(revision):
                raise RevisionDoesNotExistError(revision)
            working_copy = handle.create_working_copy(destination, editable=True)
            working_copy.checkout(revision or checkout_state.revision)
            if checkout_branch is not None:
                working_copy.checkout_new_branch(checkout_branch)

        if path is not None:
            self.location.edits_directory.mkdir(parents=True, exist_ok=True)
            link = self.location.edits_directory / package_name
            if link.is_symlink():
                link.unlink()
            link.symlink_to(destination)

        old_checkout = self.location.path_to(dependency)
        if old_checkout.exists():
            make_writable(old_checkout)
            remove_tree(old_checkout)

        self.state.dependencies.add(dependency.edited(Path(package_name), destination if path is not None else None))
        self.state.save()
        log.info("dependency_edited", package=dependency.identity, path=str(destination))
        return destination

    def unedit(
        self,
        package_name: str,
        *,
        force_remove: bool = False,
        root: RootInput | Path | Sequence[Path] | None = None,
    ) -> None:
        dependency = self.state.dependencies.get(plain_identity(package_name))
        if dependency is None:
            raise DependencyNotFoundError(package_name)
        self._unedit(dependency, force_remove=force_remove)
        if root is not None:
            self.resolve(root)

    def _unedit(self, dependency: ManagedDependency, *, force_remove: bool) -> None:
        state = dependency.state
        if not isinstance(state, Edited):
            raise NotInEditModeError(dependency.identity)

        # Only the link under the edits directory goes away for external paths.
        if state.unmanaged_path is not None:
            force_remove = True

        path = self.location.edits_directory / dependency.subpath
        if not force_remove:
            working_copy = self.repository_manager.open_working_copy(path)
            if working_copy.has_uncommitted_changes():
                raise UncommittedChangesError(path)
            if working_copy.has_unpushed_commits():
                raise UnpushedChangesError(path)

        if path.exists() or path.is_symlink():
            remove_tree(path)
        if is_empty_directory(self.location.edits_directory):
            self.location.edits_directory.rmdir()

        based_on = state.based_on
        if based_on is not None and isinstance(based_on.state, SourceControlCheckout):
            self.checkouts.checkout_repository(dependency.package_ref, based_on.state.checkout_state)
        else:
            self.state.dependencies.remove(dependency.identity)
            self.state.save()
        log.info("dependency_unedited", package=dependency.identity)

    # Housekeeping

    def clean(self) -> None:
        """Remove everything in the work directory except materialized dependencies, clones, artifacts and state."""
        protected = {
            self.location.repositories_directory.name,
            self.location.checkouts_directory.name,
            self.location.registry_downloads_directory.parent.name,
            self.location.artifacts_directory.name,
            self.location.state_file.name,
        }
        work = self.location.working_directory
        if not work.is_dir():
            return
        for entry in work.iterdir():
            if entry.name in protected:
                continue
            with self.diagnostics.trap():
                remove_tree(entry)

    def reset_state(self) -> None:
        self.state.reset()

    def reset(self) -> None:
        make_writable(self.location.checkouts_directory)
        self.reset_state()
        self.repository_manager.reset()
        remove_tree(self.location.working_directory)

    def purge_cache(self) -> None:
        purge = getattr(self.manifest_loader, "purge_cache", None)
        if purge is not None:
            purge()


def _default_host_triple() -> str:
    return host_triple(None)
