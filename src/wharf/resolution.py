from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Union

import structlog

from .errors import DifferentRequirementError, MissingPackageError, ResolutionError
from .graph import DependencyManifests, GraphRoot
from .manifest import Manifest
from .models import (
    CheckoutBranch,
    CheckoutRevision,
    CheckoutVersion,
    Constraint,
    DependencyState,
    Edited,
    FileSystem,
    ManagedDependency,
    PackageReference,
    Pin,
    ProductFilter,
    RegistryDownload,
    Requirement,
    RevisionRequirement,
    SourceControlCheckout,
    UnversionedRequirement,
    VersionSetRequirement,
    describe_state,
)
from .solver import SolverFactory
from .versions import Version

log = structlog.get_logger("wharf.resolution")


@dataclass(frozen=True)
class ForcedReason:
    pass


@dataclass(frozen=True)
class NewPackagesReason:
    packages: tuple[PackageReference, ...]


@dataclass(frozen=True)
class RequirementChangeReason:
    package: PackageReference
    state: DependencyState | None
    requirement: Requirement


@dataclass(frozen=True)
class OtherReason:
    message: str = ""


ResolveReason = Union[ForcedReason, NewPackagesReason, RequirementChangeReason, OtherReason]


@dataclass(frozen=True)
class NotRequired:
    pass


@dataclass(frozen=True)
class Required:
    reason: ResolveReason


ResolutionPrecomputationResult = Union[NotRequired, Required]


class LocalPackageContainer:
    """Offers exactly the already-materialized state of one package and nothing else."""

    def __init__(self, package: PackageReference, manifest: Manifest, dependency: ManagedDependency | None) -> None:
        self.package = package
        self.manifest = manifest
        self.dependency = dependency

    @property
    def _state(self) -> DependencyState | None:
        return self.dependency.state if self.dependency is not None else None

    def _current_version(self) -> Version | None:
        state = self._state
        if isinstance(state, SourceControlCheckout) and isinstance(state.checkout_state, CheckoutVersion):
            return state.checkout_state.version
        if isinstance(state, RegistryDownload):
            return state.version
        return None

    def versions_descending(self) -> list[Version]:
        version = self._current_version()
        return [version] if version is not None else []

    def dependencies_at_version(self, version: Version, products: ProductFilter) -> list[Constraint]:
        if self._current_version() != version:
            raise DifferentRequirementError(self.package, self._state, VersionSetRequirement.exact(version))
        return self.manifest.dependency_constraints(products)

    def dependencies_at_revision(self, identifier: str, products: ProductFilter) -> list[Constraint]:
        state = self._state
        if isinstance(state, SourceControlCheckout):
            checkout = state.checkout_state
            if isinstance(checkout, CheckoutBranch) and identifier in (checkout.name, checkout.revision):
                return self.manifest.dependency_constraints(products)
            if isinstance(checkout, CheckoutRevision) and identifier == checkout.revision:
                return self.manifest.dependency_constraints(products)
        raise DifferentRequirementError(self.package, state, RevisionRequirement(identifier))

    def dependencies_unversioned(self, products: ProductFilter) -> list[Constraint]:
        state = self._state
        if state is not None and not isinstance(state, (Edited, FileSystem)):
            raise DifferentRequirementError(self.package, state, UnversionedRequirement())
        return self.manifest.dependency_constraints(products)


class PrecomputationProvider:
    def __init__(self, root: GraphRoot, manifests: DependencyManifests) -> None:
        self._root = root
        self._dependencies = {d.dependency.identity: d for d in manifests.dependencies}

    def get_container(self, package: PackageReference) -> LocalPackageContainer:
        root = self._root.packages.get(package.identity)
        if root is not None:
            return LocalPackageContainer(package, root.manifest, None)
        loaded = self._dependencies.get(package.identity)
        if loaded is None:
            raise MissingPackageError(package)
        return LocalPackageContainer(package, loaded.manifest, loaded.dependency)


def precompute_resolution(
    *,
    root: GraphRoot,
    manifests: DependencyManifests,
    pins: dict[str, Pin],
    constraints: Sequence[Constraint] = (),
    solver_factory: SolverFactory,
) -> ResolutionPrecomputationResult:
    """Decide whether the materialized state already satisfies every constraint."""
    all_constraints = list(root.constraints())
    for manifest in root.manifests.values():
        all_constraints.extend(manifest.dependency_constraints(ProductFilter.everything()))
    all_constraints.extend(manifests.dependency_constraints())
    all_constraints.extend(constraints)

    solver = solver_factory(PrecomputationProvider(root, manifests), pins)
    try:
        solver.solve(all_constraints)
    except MissingPackageError as e:
        return Required(NewPackagesReason((e.package,)))  # type: ignore[arg-type]
    except DifferentRequirementError as e:
        return Required(RequirementChangeReason(e.package, e.state, e.requirement))  # type: ignore[arg-type]
    except ResolutionError as e:
        log.debug("precomputation_failed", error=str(e))
        return Required(OtherReason(str(e)))
    return NotRequired()


def _describe_requirement(requirement: Requirement) -> str:
    if isinstance(requirement, VersionSetRequirement):
        return f"version {requirement.specifier}"
    if isinstance(requirement, RevisionRequirement):
        return f"revision {requirement.identifier}"
    return "unversioned"


def format_resolve_reason(reason: ResolveReason) -> str:
    result = "Running resolver because "
    if isinstance(reason, ForcedReason):
        result += "it was forced"
    elif isinstance(reason, NewPackagesReason):
        names = ", ".join(sorted(p.identity for p in reason.packages))
        result += f"the following dependencies were added: {names}"
    elif isinstance(reason, RequirementChangeReason):
        if reason.state is None:
            result += f"'{reason.package.identity}' was not materialized and is now required"
        else:
            result += (
                f"dependency '{reason.package.identity}' was resolved to "
                f"'{describe_state(reason.state)}' but now has a "
                f"different requirement: {_describe_requirement(reason.requirement)}"
            )
    else:
        result += "requirements have changed"
        if isinstance(reason, OtherReason) and reason.message:
            result += f": {reason.message}"
    result += "."
    return result
