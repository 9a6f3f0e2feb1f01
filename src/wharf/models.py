from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Union

from .errors import InternalError
from .versions import Version

ROOT = "root"
LOCAL_SOURCE_CONTROL = "local_source_control"
REMOTE_SOURCE_CONTROL = "remote_source_control"
REGISTRY = "registry"
FILE_SYSTEM = "file_system"

PACKAGE_KINDS = (ROOT, LOCAL_SOURCE_CONTROL, REMOTE_SOURCE_CONTROL, REGISTRY, FILE_SYSTEM)
SOURCE_CONTROL_KINDS = (LOCAL_SOURCE_CONTROL, REMOTE_SOURCE_CONTROL)


def identity_from_location(location: str) -> str:
    raw = location.strip().rstrip("/")
    if raw.startswith("file://"):
        raw = raw[len("file://") :]
    last = raw.rsplit("/", 1)[-1]
    if ":" in last and "/" not in raw:
        # scp-like "git@host:owner/repo" without a slash after the colon
        last = last.rsplit(":", 1)[-1]
    if last.endswith(".git"):
        last = last[: -len(".git")]
    if not last:
        raise InternalError(f"cannot derive a package identity from {location!r}")
    return last.lower()


def plain_identity(name: str) -> str:
    return name.strip().lower()


@dataclass(frozen=True, eq=False)
class PackageReference:
    identity: str
    kind: str
    location: str

    def __post_init__(self) -> None:
        if self.kind not in PACKAGE_KINDS:
            raise InternalError(f"unknown package kind {self.kind!r}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageReference):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)

    def __str__(self) -> str:
        return self.identity

    def equals_including_location(self, other: "PackageReference") -> bool:
        return self.identity == other.identity and self.location == other.location

    @classmethod
    def root(cls, path: Path) -> "PackageReference":
        return cls(identity=plain_identity(path.name), kind=ROOT, location=str(path))

    @classmethod
    def file_system(cls, path: Path, identity: str | None = None) -> "PackageReference":
        return cls(identity=identity or plain_identity(path.name), kind=FILE_SYSTEM, location=str(path))

    @classmethod
    def remote(cls, url: str) -> "PackageReference":
        return cls(identity=identity_from_location(url), kind=REMOTE_SOURCE_CONTROL, location=url)

    @classmethod
    def local_source_control(cls, path: str) -> "PackageReference":
        return cls(identity=identity_from_location(path), kind=LOCAL_SOURCE_CONTROL, location=path)

    @classmethod
    def registry(cls, identity: str) -> "PackageReference":
        return cls(identity=plain_identity(identity), kind=REGISTRY, location=plain_identity(identity))

    def to_json(self) -> dict[str, str]:
        return {"identity": self.identity, "kind": self.kind, "location": self.location}

    @classmethod
    def from_json(cls, raw: dict) -> "PackageReference":
        return cls(identity=str(raw["identity"]), kind=str(raw["kind"]), location=str(raw["location"]))


@dataclass(frozen=True)
class ProductFilter:
    products: frozenset[str] | None = None

    @classmethod
    def everything(cls) -> "ProductFilter":
        return cls(None)

    @classmethod
    def specific(cls, names: Iterable[str]) -> "ProductFilter":
        return cls(frozenset(names))

    @property
    def is_everything(self) -> bool:
        return self.products is None

    def merge(self, other: "ProductFilter") -> "ProductFilter":
        if self.products is None or other.products is None:
            return ProductFilter.everything()
        return ProductFilter(self.products | other.products)

    def __str__(self) -> str:
        if self.products is None:
            return "everything"
        return "[" + ", ".join(sorted(self.products)) + "]"


# Checkout states


@dataclass(frozen=True)
class CheckoutVersion:
    version: Version
    revision: str

    def __str__(self) -> str:
        return str(self.version)


@dataclass(frozen=True)
class CheckoutBranch:
    name: str
    revision: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class CheckoutRevision:
    revision: str

    def __str__(self) -> str:
        return self.revision


CheckoutState = Union[CheckoutVersion, CheckoutBranch, CheckoutRevision]


# Managed dependency states


@dataclass(frozen=True)
class SourceControlCheckout:
    checkout_state: CheckoutState


@dataclass(frozen=True)
class RegistryDownload:
    version: Version


@dataclass(frozen=True)
class Edited:
    based_on: "ManagedDependency | None"
    unmanaged_path: Path | None = None


@dataclass(frozen=True)
class FileSystem:
    path: Path


DependencyState = Union[SourceControlCheckout, RegistryDownload, Edited, FileSystem]


def describe_state(state: DependencyState | None) -> str:
    if isinstance(state, SourceControlCheckout):
        return f"checkout {state.checkout_state}"
    if isinstance(state, RegistryDownload):
        return f"registry download {state.version}"
    if isinstance(state, Edited):
        return "edited"
    if isinstance(state, FileSystem):
        return f"local {state.path}"
    return "unknown"


@dataclass(frozen=True)
class ManagedDependency:
    package_ref: PackageReference
    subpath: Path
    state: DependencyState

    @property
    def identity(self) -> str:
        return self.package_ref.identity

    @property
    def checkout_state(self) -> CheckoutState | None:
        if isinstance(self.state, SourceControlCheckout):
            return self.state.checkout_state
        return None

    @classmethod
    def source_control_checkout(
        cls, package_ref: PackageReference, checkout_state: CheckoutState, subpath: Path
    ) -> "ManagedDependency":
        return cls(package_ref, subpath, SourceControlCheckout(checkout_state))

    @classmethod
    def registry_download(cls, package_ref: PackageReference, version: Version, subpath: Path) -> "ManagedDependency":
        return cls(package_ref, subpath, RegistryDownload(version))

    @classmethod
    def file_system(cls, package_ref: PackageReference) -> "ManagedDependency":
        if package_ref.kind not in (ROOT, FILE_SYSTEM):
            raise InternalError(f"invalid package kind {package_ref.kind} for a local dependency")
        path = Path(package_ref.location)
        return cls(package_ref, Path(path.name), FileSystem(path))

    def edited(self, subpath: Path, unmanaged_path: Path | None) -> "ManagedDependency":
        if not isinstance(self.state, SourceControlCheckout):
            raise InternalError(f"invalid dependency state for edit: {describe_state(self.state)}")
        return ManagedDependency(self.package_ref, subpath, Edited(self, unmanaged_path))


class ManagedDependencies:
    """Managed dependencies keyed by identity; `add` replaces by identity."""

    def __init__(self, dependencies: Iterable[ManagedDependency] = ()) -> None:
        self._by_identity: dict[str, ManagedDependency] = {}
        for dep in dependencies:
            self.add(dep)

    def __iter__(self) -> Iterator[ManagedDependency]:
        return iter([self._by_identity[k] for k in sorted(self._by_identity)])

    def __len__(self) -> int:
        return len(self._by_identity)

    def __contains__(self, identity: object) -> bool:
        return identity in self._by_identity

    def get(self, identity: str) -> ManagedDependency | None:
        return self._by_identity.get(identity)

    def get_comparing_location(self, package: PackageReference) -> ManagedDependency | None:
        dep = self._by_identity.get(package.identity)
        if dep is None or dep.package_ref.location != package.location:
            return None
        return dep

    def add(self, dependency: ManagedDependency) -> None:
        self._by_identity[dependency.identity] = dependency

    def remove(self, identity: str) -> None:
        self._by_identity.pop(identity, None)

    def clear(self) -> None:
        self._by_identity.clear()


# Binary artifacts


@dataclass(frozen=True)
class LocalSource:
    checksum: str | None = None


@dataclass(frozen=True)
class RemoteSource:
    url: str
    checksum: str


ArtifactSource = Union[LocalSource, RemoteSource]


@dataclass(frozen=True)
class ManagedArtifact:
    package_ref: PackageReference
    target_name: str
    path: Path
    source: ArtifactSource

    @property
    def key(self) -> tuple[str, str]:
        return (self.package_ref.identity, self.target_name)


class ManagedArtifacts:
    def __init__(self, artifacts: Iterable[ManagedArtifact] = ()) -> None:
        self._by_key: dict[tuple[str, str], ManagedArtifact] = {}
        for artifact in artifacts:
            self.add(artifact)

    def __iter__(self) -> Iterator[ManagedArtifact]:
        return iter([self._by_key[k] for k in sorted(self._by_key)])

    def __len__(self) -> int:
        return len(self._by_key)

    def get(self, identity: str, target_name: str) -> ManagedArtifact | None:
        return self._by_key.get((identity, target_name))

    def add(self, artifact: ManagedArtifact) -> None:
        self._by_key[artifact.key] = artifact

    def remove(self, identity: str, target_name: str) -> None:
        self._by_key.pop((identity, target_name), None)

    def clear(self) -> None:
        self._by_key.clear()


# Pins


@dataclass(frozen=True)
class PinVersion:
    version: Version
    revision: str | None = None


@dataclass(frozen=True)
class PinBranch:
    name: str
    revision: str


@dataclass(frozen=True)
class PinRevision:
    revision: str


PinState = Union[PinVersion, PinBranch, PinRevision]


@dataclass(frozen=True)
class Pin:
    package_ref: PackageReference
    state: PinState


def pin_state_for(dependency: ManagedDependency) -> PinState | None:
    """Pin state recorded for a dependency; edited and local dependencies are never pinned."""
    state = dependency.state
    if isinstance(state, SourceControlCheckout):
        checkout = state.checkout_state
        if isinstance(checkout, CheckoutVersion):
            return PinVersion(checkout.version, checkout.revision)
        if isinstance(checkout, CheckoutBranch):
            return PinBranch(checkout.name, checkout.revision)
        return PinRevision(checkout.revision)
    if isinstance(state, RegistryDownload):
        return PinVersion(state.version, None)
    return None


# Solver contract


@dataclass(frozen=True)
class VersionSetRequirement:
    specifier: str

    @classmethod
    def exact(cls, version: Version) -> "VersionSetRequirement":
        return cls(f"={version}")

    def __str__(self) -> str:
        return self.specifier


@dataclass(frozen=True)
class RevisionRequirement:
    identifier: str

    def __str__(self) -> str:
        return f"revision {self.identifier}"


@dataclass(frozen=True)
class UnversionedRequirement:
    def __str__(self) -> str:
        return "unversioned"


Requirement = Union[VersionSetRequirement, RevisionRequirement, UnversionedRequirement]


@dataclass(frozen=True)
class Constraint:
    package: PackageReference
    requirement: Requirement
    products: ProductFilter = field(default_factory=ProductFilter.everything)


@dataclass(frozen=True)
class ExcludedBinding:
    pass


@dataclass(frozen=True)
class UnversionedBinding:
    pass


@dataclass(frozen=True)
class RevisionBinding:
    identifier: str
    branch: str | None = None


@dataclass(frozen=True)
class VersionBinding:
    version: Version


BoundVersion = Union[ExcludedBinding, UnversionedBinding, RevisionBinding, VersionBinding]


@dataclass(frozen=True)
class Binding:
    package: PackageReference
    bound: BoundVersion
    products: ProductFilter = field(default_factory=ProductFilter.everything)


# State changes


@dataclass(frozen=True)
class RequiredVersion:
    version: Version

    def __str__(self) -> str:
        return str(self.version)


@dataclass(frozen=True)
class RequiredRevision:
    revision: str
    branch: str | None = None

    def __str__(self) -> str:
        return self.branch or self.revision


@dataclass(frozen=True)
class RequiredUnversioned:
    def __str__(self) -> str:
        return "unversioned"


StateRequirement = Union[RequiredVersion, RequiredRevision, RequiredUnversioned]


@dataclass(frozen=True)
class Added:
    requirement: StateRequirement
    products: ProductFilter = field(default_factory=ProductFilter.everything)


@dataclass(frozen=True)
class Updated:
    requirement: StateRequirement
    products: ProductFilter = field(default_factory=ProductFilter.everything)


@dataclass(frozen=True)
class Removed:
    pass


@dataclass(frozen=True)
class Unchanged:
    pass


PackageStateChange = Union[Added, Updated, Removed, Unchanged]
