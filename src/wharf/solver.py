from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, Protocol

import structlog

from .containers import ContainerProvider
from .errors import DifferentRequirementError, ManifestLoadError, MissingPackageError, ResolutionError
from .models import (
    Binding,
    BoundVersion,
    Constraint,
    PackageReference,
    Pin,
    PinVersion,
    ProductFilter,
    Requirement,
    RevisionBinding,
    RevisionRequirement,
    UnversionedBinding,
    UnversionedRequirement,
    VersionBinding,
    VersionSetRequirement,
)
from .versions import version_satisfies

log = structlog.get_logger("wharf.solver")


class Solver(Protocol):
    def solve(self, constraints: list[Constraint]) -> list[Binding]:
        ...


SolverFactory = Callable[[ContainerProvider, dict[str, Pin]], Solver]


@dataclass(frozen=True)
class _SourcedRequirement:
    requirement: Requirement
    source: str


@dataclass(frozen=True)
class _Selection:
    bound: BoundVersion
    products: ProductFilter
    dependencies: tuple[Constraint, ...]


def _describe_bound(bound: BoundVersion) -> str:
    if isinstance(bound, VersionBinding):
        return str(bound.version)
    if isinstance(bound, RevisionBinding):
        return bound.identifier
    return "unversioned"


def _format_requirements(requirements: tuple[_SourcedRequirement, ...]) -> str:
    parts = [f"{r.requirement} (from {r.source})" for r in requirements]
    return ", ".join(parts) if parts else "<none>"


def _unversioned(requirements: tuple[_SourcedRequirement, ...]) -> bool:
    return any(isinstance(r.requirement, UnversionedRequirement) for r in requirements)


def _revision_identifiers(requirements: tuple[_SourcedRequirement, ...]) -> set[str]:
    return {r.requirement.identifier for r in requirements if isinstance(r.requirement, RevisionRequirement)}


def _specifiers(requirements: tuple[_SourcedRequirement, ...]) -> list[str]:
    return [r.requirement.specifier for r in requirements if isinstance(r.requirement, VersionSetRequirement)]


def _satisfies(selection: _Selection, requirements: tuple[_SourcedRequirement, ...], products: ProductFilter) -> bool:
    if selection.products != products:
        return False
    bound = selection.bound
    if _unversioned(requirements):
        return isinstance(bound, UnversionedBinding)
    identifiers = _revision_identifiers(requirements)
    if identifiers:
        return isinstance(bound, RevisionBinding) and identifiers == {bound.identifier}
    if not isinstance(bound, VersionBinding):
        return False
    return all(version_satisfies(bound.version, s) for s in _specifiers(requirements))


class BacktrackingSolver:
    """
    Depth-first search over version candidates, newest first, with pinned versions tried before the rest.

    An unversioned requirement wins over every other requirement on the same package; revision
    requirements win over version ranges and must all name the same revision.
    """

    def __init__(self, provider: ContainerProvider, pins: dict[str, Pin] | None = None) -> None:
        self.provider = provider
        self.pins = dict(pins or {})

    def _candidates(
        self,
        package: PackageReference,
        requirements: tuple[_SourcedRequirement, ...],
        products: ProductFilter,
    ) -> Iterator[_Selection]:
        container = self.provider.get_container(package)

        if _unversioned(requirements):
            deps = container.dependencies_unversioned(products)
            yield _Selection(UnversionedBinding(), products, tuple(deps))
            return

        identifiers = _revision_identifiers(requirements)
        if len(identifiers) > 1:
            raise ResolutionError(
                f"Dependency conflict for {package}: multiple revisions requested. "
                f"Constraints: {_format_requirements(requirements)}"
            )
        if identifiers:
            identifier = next(iter(identifiers))
            deps = container.dependencies_at_revision(identifier, products)
            yield _Selection(RevisionBinding(identifier), products, tuple(deps))
            return

        specifiers = _specifiers(requirements)
        versions = [v for v in container.versions_descending() if all(version_satisfies(v, s) for s in specifiers)]
        if not versions:
            raise ResolutionError(
                f"No version of {package} satisfies constraints: {_format_requirements(requirements)}"
            )
        pin = self.pins.get(package.identity)
        if pin is not None and isinstance(pin.state, PinVersion) and pin.state.version in versions:
            versions.remove(pin.state.version)
            versions.insert(0, pin.state.version)

        for version in versions:
            try:
                deps = container.dependencies_at_version(version, products)
            except ManifestLoadError as e:
                log.debug("candidate_skipped", package=package.identity, version=str(version), error=str(e))
                self._last_error = e
                continue
            yield _Selection(VersionBinding(version), products, tuple(deps))

    def solve(self, constraints: list[Constraint]) -> list[Binding]:
        self._last_error: Exception | None = None
        requirements: dict[str, tuple[_SourcedRequirement, ...]] = {}
        refs: dict[str, PackageReference] = {}
        filters: dict[str, ProductFilter] = {}
        pending: list[str] = []

        def _register(
            constraint: Constraint,
            source: str,
            reqs: dict[str, tuple[_SourcedRequirement, ...]],
            refs_map: dict[str, PackageReference],
            filters_map: dict[str, ProductFilter],
        ) -> str:
            key = constraint.package.identity
            reqs[key] = reqs.get(key, ()) + (_SourcedRequirement(constraint.requirement, source),)
            if key not in refs_map or isinstance(constraint.requirement, UnversionedRequirement):
                refs_map[key] = constraint.package
            current = filters_map.get(key)
            filters_map[key] = constraint.products if current is None else current.merge(constraint.products)
            return key

        for constraint in constraints:
            key = _register(constraint, "root", requirements, refs, filters)
            if key not in pending:
                pending.append(key)

        def _search(
            *,
            selected: dict[str, _Selection],
            reqs: dict[str, tuple[_SourcedRequirement, ...]],
            refs_map: dict[str, PackageReference],
            filters_map: dict[str, ProductFilter],
            pending_keys: list[str],
        ) -> tuple[dict[str, _Selection], dict[str, PackageReference]] | None:
            selected_mut = dict(selected)
            pending_mut = list(dict.fromkeys(pending_keys))

            # Revisit selections whose requirements changed since they were made.
            for key in list(selected_mut.keys()):
                if _satisfies(selected_mut[key], reqs[key], filters_map[key]):
                    continue
                selected_mut.pop(key)
                if key not in pending_mut:
                    pending_mut.insert(0, key)

            if not pending_mut:
                return selected_mut, refs_map

            key = pending_mut[0]
            rest = pending_mut[1:]
            try:
                for candidate in self._candidates(refs_map[key], reqs[key], filters_map[key]):
                    selected_next = dict(selected_mut)
                    selected_next[key] = candidate
                    reqs_next = dict(reqs)
                    refs_next = dict(refs_map)
                    filters_next = dict(filters_map)
                    pending_next = list(rest)

                    source = f"{key}@{_describe_bound(candidate.bound)}"
                    for dep in candidate.dependencies:
                        dep_key = _register(dep, source, reqs_next, refs_next, filters_next)
                        if dep_key in selected_next and not _satisfies(
                            selected_next[dep_key], reqs_next[dep_key], filters_next[dep_key]
                        ):
                            selected_next.pop(dep_key)
                        if dep_key not in selected_next and dep_key not in pending_next:
                            pending_next.append(dep_key)

                    solved = _search(
                        selected=selected_next,
                        reqs=reqs_next,
                        refs_map=refs_next,
                        filters_map=filters_next,
                        pending_keys=pending_next,
                    )
                    if solved is not None:
                        return solved
            except (MissingPackageError, DifferentRequirementError):
                raise
            except ResolutionError as e:
                self._last_error = e
            return None

        solved = _search(selected={}, reqs=requirements, refs_map=refs, filters_map=filters, pending_keys=pending)
        if solved is None:
            last_error = self._last_error
            if last_error:
                raise ResolutionError(f"Could not resolve dependency graph. Last error: {last_error}") from last_error
            raise ResolutionError("Could not resolve dependency graph.")

        selection, final_refs = solved
        bindings = [
            Binding(package=final_refs[key], bound=selection[key].bound, products=selection[key].products)
            for key in sorted(selection)
        ]
        log.debug("solved", bindings=len(bindings))
        return bindings
