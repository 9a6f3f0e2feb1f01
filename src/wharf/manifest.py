from __future__ import annotations

import hashlib
import json
import os
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol

from ._version import __version__
from .client import WharfError
from .config import DependencyMirrors
from .errors import ManifestLoadError
from .models import (
    Constraint,
    PackageReference,
    ProductFilter,
    Requirement,
    RevisionRequirement,
    UnversionedRequirement,
    VersionSetRequirement,
    plain_identity,
)
from .versions import Version, split_specifier

MANIFEST_FILENAME = "wharf.json"
CURRENT_TOOLS_VERSION = Version(1, 4, 0)
MINIMUM_TOOLS_VERSION = Version(1, 0, 0)
BINARY_TARGET = "binary"
REGULAR_TARGET = "regular"


@dataclass(frozen=True)
class TargetDependency:
    name: str
    package: str | None = None  # set for product dependencies


@dataclass(frozen=True)
class Target:
    name: str
    type: str = REGULAR_TARGET
    dependencies: tuple[TargetDependency, ...] = ()
    path: str | None = None
    url: str | None = None
    checksum: str | None = None


@dataclass(frozen=True)
class Product:
    name: str
    targets: tuple[str, ...] = ()


@dataclass(frozen=True)
class PackageDependency:
    package_ref: PackageReference
    requirement: Requirement
    products: ProductFilter = field(default_factory=ProductFilter.everything)
    name: str | None = None

    @property
    def identity(self) -> str:
        return self.package_ref.identity

    def filtered(self, products: ProductFilter) -> "PackageDependency":
        return replace(self, products=products)

    def constraint(self) -> Constraint:
        return Constraint(package=self.package_ref, requirement=self.requirement, products=self.products)


@dataclass(frozen=True)
class Manifest:
    display_name: str
    path: Path
    package_ref: PackageReference
    package_location: str
    tools_version: Version
    version: Version | None = None
    dependencies: tuple[PackageDependency, ...] = ()
    products: tuple[Product, ...] = ()
    targets: tuple[Target, ...] = ()

    @property
    def identity(self) -> str:
        return self.package_ref.identity

    @property
    def directory(self) -> Path:
        return self.path.parent

    def _targets_required(self, products: ProductFilter) -> list[Target]:
        if products.is_everything:
            return list(self.targets)
        by_name = {t.name: t for t in self.targets}
        pending = [name for p in self.products if p.name in (products.products or ()) for name in p.targets]
        seen: dict[str, Target] = {}
        while pending:
            name = pending.pop()
            if name in seen or name not in by_name:
                continue
            target = by_name[name]
            seen[name] = target
            pending.extend(d.name for d in target.dependencies if d.package is None)
        return list(seen.values())

    def dependencies_required(self, products: ProductFilter) -> list[PackageDependency]:
        referenced: dict[str, set[str]] = {}
        for target in self._targets_required(products):
            for dep in target.dependencies:
                if dep.package is not None:
                    referenced.setdefault(plain_identity(dep.package), set()).add(dep.name)

        required: list[PackageDependency] = []
        for dep in self.dependencies:
            names = referenced.get(dep.identity)
            if names is None and dep.name:
                names = referenced.get(plain_identity(dep.name))
            if names:
                required.append(dep.filtered(ProductFilter.specific(names)))
            elif products.is_everything:
                required.append(dep.filtered(ProductFilter.everything()))
        return required

    def dependency_constraints(self, products: ProductFilter) -> list[Constraint]:
        return [dep.constraint() for dep in self.dependencies_required(products)]

    def binary_targets(self) -> list[Target]:
        return [t for t in self.targets if t.type == BINARY_TARGET]


class ManifestLoader(Protocol):
    def load(
        self,
        package_path: Path,
        *,
        package_ref: PackageReference,
        package_location: str | None = None,
        version: Version | None = None,
    ) -> Manifest:
        ...

    def parse(
        self,
        data: bytes,
        *,
        path: Path,
        package_ref: PackageReference,
        package_location: str | None = None,
        version: Version | None = None,
    ) -> Manifest:
        ...


def _string(raw: dict[str, Any], key: str, *, where: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ManifestLoadError(f"{where}: {key!r} must be a non-empty string")
    return value.strip()


def _parse_requirement(raw: Any, *, where: str) -> Requirement:
    if not isinstance(raw, dict) or len(raw) != 1:
        raise ManifestLoadError(f"{where}: requirement must be an object with exactly one key")
    (kind, value), = raw.items()
    if not isinstance(value, str) or not value.strip():
        raise ManifestLoadError(f"{where}: requirement {kind!r} must be a non-empty string")
    value = value.strip()
    try:
        if kind == "exact":
            return VersionSetRequirement.exact(Version.parse(value))
        if kind == "from":
            lower = Version.parse(value)
            return VersionSetRequirement(f">={lower} <{lower.major + 1}.0.0")
        if kind == "range":
            split_specifier(value)
            return VersionSetRequirement(value)
    except (ValueError, WharfError) as e:
        raise ManifestLoadError(f"{where}: invalid version {value!r}") from e
    if kind in ("branch", "revision"):
        return RevisionRequirement(value)
    raise ManifestLoadError(f"{where}: unknown requirement kind {kind!r}")


def _is_local_url(url: str) -> bool:
    return url.startswith(("/", "file://", "./", "../"))


def _parse_dependency(raw: Any, *, manifest_dir: Path, mirrors: DependencyMirrors, where: str) -> PackageDependency:
    if not isinstance(raw, dict):
        raise ManifestLoadError(f"{where}: dependency entries must be objects")
    name = _string(raw, "name", where=where)
    if (path := _string(raw, "path", where=where)) is not None:
        location = (manifest_dir / path).resolve()
        return PackageDependency(
            package_ref=PackageReference.file_system(location),
            requirement=UnversionedRequirement(),
            name=name,
        )
    requirement = _parse_requirement(raw.get("requirement"), where=where)
    if (url := _string(raw, "url", where=where)) is not None:
        url = mirrors.effective_url(url)
        if _is_local_url(url):
            local = url[len("file://") :] if url.startswith("file://") else url
            ref = PackageReference.local_source_control(str((manifest_dir / local).resolve()))
        else:
            ref = PackageReference.remote(url)
        return PackageDependency(package_ref=ref, requirement=requirement, name=name)
    if (registry_id := _string(raw, "id", where=where)) is not None:
        if "." not in registry_id:
            raise ManifestLoadError(f"{where}: registry identity {registry_id!r} must be in form scope.name")
        return PackageDependency(package_ref=PackageReference.registry(registry_id), requirement=requirement, name=name)
    raise ManifestLoadError(f"{where}: dependency needs one of 'path', 'url' or 'id'")


def _parse_target(raw: Any, *, where: str) -> Target:
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
        raise ManifestLoadError(f"{where}: targets need a name")
    deps: list[TargetDependency] = []
    for dep in raw.get("dependencies") or []:
        if isinstance(dep, str):
            deps.append(TargetDependency(name=dep))
        elif isinstance(dep, dict) and isinstance(dep.get("product"), str):
            deps.append(TargetDependency(name=dep["product"], package=str(dep.get("package") or dep["product"])))
        elif isinstance(dep, dict) and isinstance(dep.get("target"), str):
            deps.append(TargetDependency(name=dep["target"]))
        else:
            raise ManifestLoadError(f"{where}: invalid dependency of target {raw['name']!r}")
    target_type = str(raw.get("type") or REGULAR_TARGET)
    if target_type not in (REGULAR_TARGET, BINARY_TARGET):
        raise ManifestLoadError(f"{where}: unknown target type {target_type!r}")
    return Target(
        name=raw["name"],
        type=target_type,
        dependencies=tuple(deps),
        path=_string(raw, "path", where=where),
        url=_string(raw, "url", where=where),
        checksum=_string(raw, "checksum", where=where),
    )


def _cache_key(
    data: bytes, *, path: Path, package_ref: PackageReference, package_location: str, version: Version | None
) -> str:
    digest = hashlib.sha256()
    parts = (str(path), package_ref.identity, package_ref.kind, package_ref.location, package_location, str(version or ""))
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\0")
    digest.update(data)
    for key in sorted(k for k in os.environ if k.startswith("WHARF_")):
        digest.update(f"{key}={os.environ[key]}".encode("utf-8"))
    digest.update(__version__.encode("utf-8"))
    return digest.hexdigest()


class JSONManifestLoader:
    """Loads `wharf.json` manifests; parsed manifests are cached by content hash."""

    def __init__(
        self,
        *,
        mirrors: DependencyMirrors | None = None,
        current_tools_version: Version = CURRENT_TOOLS_VERSION,
    ) -> None:
        self.mirrors = mirrors or DependencyMirrors()
        self.current_tools_version = current_tools_version
        self._cache: dict[str, Manifest] = {}
        self._lock = threading.Lock()

    def purge_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def load(
        self,
        package_path: Path,
        *,
        package_ref: PackageReference,
        package_location: str | None = None,
        version: Version | None = None,
    ) -> Manifest:
        path = package_path / MANIFEST_FILENAME
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise ManifestLoadError(f"manifest not found at {path}") from e
        except OSError as e:
            raise ManifestLoadError(f"could not read manifest at {path}: {e}") from e
        return self.parse(data, path=path, package_ref=package_ref, package_location=package_location, version=version)

    def parse(
        self,
        data: bytes,
        *,
        path: Path,
        package_ref: PackageReference,
        package_location: str | None = None,
        version: Version | None = None,
    ) -> Manifest:
        location = package_location or package_ref.location
        key = _cache_key(data, path=path, package_ref=package_ref, package_location=location, version=version)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        manifest = self._parse(data, path=path, package_ref=package_ref, package_location=location, version=version)
        with self._lock:
            self._cache[key] = manifest
        return manifest

    def _parse(
        self,
        data: bytes,
        *,
        path: Path,
        package_ref: PackageReference,
        package_location: str,
        version: Version | None,
    ) -> Manifest:
        where = str(path)
        try:
            raw = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestLoadError(f"{where}: invalid manifest: {e}") from e
        if not isinstance(raw, dict):
            raise ManifestLoadError(f"{where}: manifest must be a JSON object")

        name = _string(raw, "name", where=where)
        if name is None:
            raise ManifestLoadError(f"{where}: manifest needs a 'name'")

        try:
            tools_version = Version.parse(str(raw.get("tools_version") or MINIMUM_TOOLS_VERSION))
        except ValueError as e:
            raise ManifestLoadError(f"{where}: invalid tools version: {e}") from e
        if tools_version < MINIMUM_TOOLS_VERSION:
            raise ManifestLoadError(
                f"package '{package_ref.identity}' is using tools version {tools_version} "
                f"which is no longer supported; the minimum is {MINIMUM_TOOLS_VERSION}"
            )
        if tools_version > self.current_tools_version:
            raise ManifestLoadError(
                f"package '{package_ref.identity}' is using tools version {tools_version} "
                f"but the installed version is {self.current_tools_version}"
            )

        manifest_dir = path.parent
        dependencies = tuple(
            _parse_dependency(d, manifest_dir=manifest_dir, mirrors=self.mirrors, where=where)
            for d in raw.get("dependencies") or []
        )
        seen: set[str] = set()
        for dep in dependencies:
            if dep.identity in seen:
                raise ManifestLoadError(f"{where}: duplicate dependency '{dep.identity}'")
            seen.add(dep.identity)

        targets = tuple(_parse_target(t, where=where) for t in raw.get("targets") or [])
        products: list[Product] = []
        for p in raw.get("products") or []:
            if not isinstance(p, dict) or not isinstance(p.get("name"), str):
                raise ManifestLoadError(f"{where}: products need a name")
            products.append(Product(name=p["name"], targets=tuple(str(t) for t in p.get("targets") or [])))

        return Manifest(
            display_name=name,
            path=path,
            package_ref=package_ref,
            package_location=package_location,
            tools_version=tools_version,
            version=version,
            dependencies=dependencies,
            products=tuple(products),
            targets=targets,
        )
