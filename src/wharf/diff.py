from __future__ import annotations

from typing import Callable, Iterable

from .errors import InternalError
from .models import (
    Added,
    Binding,
    CheckoutBranch,
    CheckoutRevision,
    CheckoutVersion,
    Edited,
    ExcludedBinding,
    FileSystem,
    ManagedDependencies,
    ManagedDependency,
    PackageReference,
    PackageStateChange,
    Pin,
    PinBranch,
    RegistryDownload,
    Removed,
    RequiredRevision,
    RequiredUnversioned,
    RequiredVersion,
    RevisionBinding,
    SourceControlCheckout,
    Unchanged,
    UnversionedBinding,
    Updated,
    VersionBinding,
)

ResolveRevision = Callable[[PackageReference, str], str]


def _current(package: PackageReference, dependencies: ManagedDependencies) -> ManagedDependency | None:
    # Edits are matched by identity alone; everything else must also be at the same location.
    current = dependencies.get(package.identity)
    if current is not None and isinstance(current.state, Edited):
        return current
    return dependencies.get_comparing_location(package)


def _revision_change(
    binding: Binding,
    bound: RevisionBinding,
    *,
    dependencies: ManagedDependencies,
    pins: dict[str, Pin],
    resolve_revision: ResolveRevision,
    update_branches: bool,
) -> PackageStateChange:
    package = binding.package
    revision = resolve_revision(package, bound.identifier)
    branch = bound.branch or (None if bound.identifier == revision else bound.identifier)

    # Branches only move forward on an explicit update.
    if branch is not None and not update_branches:
        pin = pins.get(package.identity)
        if pin is not None and isinstance(pin.state, PinBranch) and pin.state.name == branch:
            revision = pin.state.revision

    requirement = RequiredRevision(revision, branch)
    current = _current(package, dependencies)
    if current is None:
        return Added(requirement, binding.products)
    if isinstance(current.state, Edited):
        return Unchanged()
    checkout = current.checkout_state
    if checkout is None:
        return Updated(requirement, binding.products)
    if branch is not None:
        same = isinstance(checkout, CheckoutBranch) and checkout.name == branch and checkout.revision == revision
    else:
        same = isinstance(checkout, CheckoutRevision) and checkout.revision == revision
    return Unchanged() if same else Updated(requirement, binding.products)


def _version_change(binding: Binding, bound: VersionBinding, *, dependencies: ManagedDependencies) -> PackageStateChange:
    current = _current(binding.package, dependencies)
    requirement = RequiredVersion(bound.version)
    if current is None:
        return Added(requirement, binding.products)
    state = current.state
    if isinstance(state, Edited):
        return Unchanged()
    if isinstance(state, SourceControlCheckout) and isinstance(state.checkout_state, CheckoutVersion):
        if state.checkout_state.version == bound.version:
            return Unchanged()
    if isinstance(state, RegistryDownload) and state.version == bound.version:
        return Unchanged()
    return Updated(requirement, binding.products)


def _unversioned_change(binding: Binding, *, dependencies: ManagedDependencies) -> PackageStateChange:
    current = _current(binding.package, dependencies)
    requirement = RequiredUnversioned()
    if current is None:
        return Added(requirement, binding.products)
    state = current.state
    if isinstance(state, (FileSystem, Edited)):
        return Unchanged()
    if isinstance(state, SourceControlCheckout):
        return Updated(requirement, binding.products)
    raise InternalError(
        f"unversioned binding for '{binding.package.identity}' which is a registry download"
    )


def compute_package_state_changes(
    *,
    root_identities: Iterable[str],
    bindings: Iterable[Binding],
    dependencies: ManagedDependencies,
    pins: dict[str, Pin],
    resolve_revision: ResolveRevision,
    update_branches: bool = False,
) -> list[tuple[PackageReference, PackageStateChange]]:
    """
    Classify every solver binding against the managed dependencies.

    Inputs are never mutated. Managed dependencies that no binding mentions are reported as
    removed. The result is sorted by identity.
    """
    roots = set(root_identities)
    changes: dict[str, tuple[PackageReference, PackageStateChange]] = {}

    for binding in bindings:
        bound = binding.bound
        package = binding.package
        if isinstance(bound, ExcludedBinding):
            raise InternalError(f"unexpected excluded binding for '{package.identity}'")
        if isinstance(bound, UnversionedBinding):
            if package.identity in roots:
                continue
            change = _unversioned_change(binding, dependencies=dependencies)
        elif isinstance(bound, RevisionBinding):
            change = _revision_change(
                binding,
                bound,
                dependencies=dependencies,
                pins=pins,
                resolve_revision=resolve_revision,
                update_branches=update_branches,
            )
        elif isinstance(bound, VersionBinding):
            change = _version_change(binding, bound, dependencies=dependencies)
        else:
            raise InternalError(f"unknown binding {bound!r}")
        changes[package.identity] = (package, change)

    for dependency in dependencies:
        if dependency.identity not in changes:
            changes[dependency.identity] = (dependency.package_ref, Removed())

    return [changes[identity] for identity in sorted(changes)]
