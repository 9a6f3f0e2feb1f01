from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Sequence

from .config import DependencyMirrors
from .errors import InternalError
from .manifest import Manifest, PackageDependency
from .models import (
    REMOTE_SOURCE_CONTROL,
    Constraint,
    Edited,
    FileSystem,
    ManagedDependency,
    PackageReference,
    ProductFilter,
    RegistryDownload,
    SourceControlCheckout,
    UnversionedRequirement,
)

REPAIR_CHECKOUT = "checkout"
REPAIR_DOWNLOAD = "download"
REPAIR_UNEDIT = "unedit"
REPAIR_DROP = "drop"


@dataclass(frozen=True)
class RootPackage:
    reference: PackageReference
    manifest: Manifest


class GraphRoot:
    """Root packages plus dependencies declared by the caller outside of any manifest."""

    def __init__(self, manifests: Iterable[Manifest], dependencies: Sequence[PackageDependency] = ()) -> None:
        self.packages: dict[str, RootPackage] = {
            m.identity: RootPackage(reference=m.package_ref, manifest=m) for m in manifests
        }
        self.dependencies = tuple(dependencies)

    @property
    def manifests(self) -> dict[str, Manifest]:
        return {identity: p.manifest for identity, p in self.packages.items()}

    @property
    def identities(self) -> set[str]:
        return set(self.packages)

    def constraints(self) -> list[Constraint]:
        constraints = [
            Constraint(package=p.reference, requirement=UnversionedRequirement(), products=ProductFilter.everything())
            for _, p in sorted(self.packages.items())
        ]
        return constraints + [dep.constraint() for dep in self.dependencies]


@dataclass(frozen=True)
class LoadedDependency:
    manifest: Manifest
    dependency: ManagedDependency
    products: ProductFilter


class DependencyManifests:
    def __init__(
        self,
        root: GraphRoot,
        dependencies: Sequence[LoadedDependency],
        *,
        path_to: Callable[[ManagedDependency], Path],
        mirrors: DependencyMirrors | None = None,
    ) -> None:
        self.root = root
        self.dependencies = tuple(dependencies)
        self._path_to = path_to
        self._mirrors = mirrors or DependencyMirrors()

    def _manifests_by_identity(self) -> dict[str, Manifest]:
        manifests = dict(self.root.manifests)
        for loaded in self.dependencies:
            manifests[loaded.manifest.identity] = loaded.manifest
        return manifests

    def compute_packages(self) -> tuple[dict[str, PackageReference], dict[str, PackageReference]]:
        """Return `(required, missing)`, both keyed by identity."""
        manifests = self._manifests_by_identity()

        required: dict[str, PackageReference] = {}
        stack: list[tuple[PackageReference, ProductFilter]] = []
        for identity, package in sorted(self.root.packages.items()):
            required[identity] = package.reference
            stack.append((package.reference, ProductFilter.everything()))
        for dep in self.root.dependencies:
            required.setdefault(dep.identity, dep.package_ref)
            stack.append((dep.package_ref, dep.products))

        seen: set[tuple[str, ProductFilter]] = set()
        while stack:
            ref, products = stack.pop()
            if (ref.identity, products) in seen:
                continue
            seen.add((ref.identity, products))
            manifest = manifests.get(ref.identity)
            if manifest is None:
                continue
            for dep in manifest.dependencies_required(products):
                required.setdefault(dep.identity, dep.package_ref)
                stack.append((dep.package_ref, dep.products))

        available: set[str] = set()
        for identity, manifest in manifests.items():
            ref = manifest.package_ref
            if ref.kind == REMOTE_SOURCE_CONTROL:
                effective = self._mirrors.effective_url(manifest.package_location)
                if effective != ref.location:
                    raise InternalError(
                        f"manifest of '{identity}' was loaded from {ref.location} but its location resolves to {effective}"
                    )
            available.add(identity)

        missing = {identity: ref for identity, ref in required.items() if identity not in available}
        return required, missing

    @property
    def required_packages(self) -> dict[str, PackageReference]:
        return self.compute_packages()[0]

    @property
    def missing_packages(self) -> dict[str, PackageReference]:
        return self.compute_packages()[1]

    def _edited_reference(self, dependency: ManagedDependency) -> PackageReference:
        return PackageReference.file_system(self._path_to(dependency), identity=dependency.identity)

    def dependency_constraints(self) -> list[Constraint]:
        constraints: list[Constraint] = []
        for loaded in self.dependencies:
            if isinstance(loaded.dependency.state, Edited):
                constraints.append(
                    Constraint(
                        package=self._edited_reference(loaded.dependency),
                        requirement=UnversionedRequirement(),
                        products=loaded.products,
                    )
                )
            constraints.extend(loaded.manifest.dependency_constraints(loaded.products))
        return constraints

    def edited_packages_constraints(self) -> list[Constraint]:
        return [
            Constraint(
                package=self._edited_reference(loaded.dependency),
                requirement=UnversionedRequirement(),
                products=loaded.products,
            )
            for loaded in self.dependencies
            if isinstance(loaded.dependency.state, Edited)
        ]


@dataclass(frozen=True)
class RepairAction:
    action: str
    dependency: ManagedDependency


def plan_repairs(
    dependencies: Iterable[ManagedDependency],
    is_present: Callable[[ManagedDependency], bool],
) -> list[RepairAction]:
    """Repairs needed for dependencies whose directory vanished; applying them is up to the caller."""
    actions: list[RepairAction] = []
    for dep in dependencies:
        if is_present(dep):
            continue
        state = dep.state
        if isinstance(state, SourceControlCheckout):
            actions.append(RepairAction(REPAIR_CHECKOUT, dep))
        elif isinstance(state, RegistryDownload):
            actions.append(RepairAction(REPAIR_DOWNLOAD, dep))
        elif isinstance(state, Edited):
            actions.append(RepairAction(REPAIR_UNEDIT, dep))
        elif isinstance(state, FileSystem):
            actions.append(RepairAction(REPAIR_DROP, dep))
    return actions


def traverse_manifests(
    roots: Sequence[tuple[Manifest, ProductFilter]],
    successors: Callable[[Manifest, ProductFilter], list[tuple[Manifest, ProductFilter]]],
) -> list[tuple[Manifest, ProductFilter]]:
    """Visit every reachable `(manifest, product filter)` node once, in depth-first preorder."""
    order: list[tuple[Manifest, ProductFilter]] = []
    seen: set[tuple[str, ProductFilter]] = set()
    stack = list(reversed(roots))
    while stack:
        manifest, products = stack.pop()
        key = (manifest.identity, products)
        if key in seen:
            continue
        seen.add(key)
        order.append((manifest, products))
        stack.extend(reversed(successors(manifest, products)))
    return order


def merge_by_identity(nodes: Iterable[tuple[Manifest, ProductFilter]]) -> dict[str, tuple[Manifest, ProductFilter]]:
    merged: dict[str, tuple[Manifest, ProductFilter]] = {}
    for manifest, products in nodes:
        existing = merged.get(manifest.identity)
        if existing is None:
            merged[manifest.identity] = (manifest, products)
        else:
            merged[manifest.identity] = (manifest, existing[1].merge(products))
    return merged
