from __future__ import annotations

from typing import Iterable

from .client import WharfError


class InternalError(WharfError):
    """An invariant of the engine was violated; never retried or downgraded to a diagnostic."""


class ManifestLoadError(WharfError):
    pass


class GitError(WharfError):
    pass


class ChecksumMismatchError(WharfError):
    pass


class DependencyNotFoundError(WharfError):
    def __init__(self, package_name: str) -> None:
        super().__init__(f"could not find dependency '{package_name}'")
        self.package_name = package_name


class AlreadyEditedError(WharfError):
    def __init__(self, package_name: str) -> None:
        super().__init__(f"dependency '{package_name}' already in edit mode")
        self.package_name = package_name


class CannotEditError(WharfError):
    def __init__(self, package_name: str, kind: str) -> None:
        label = "local" if kind == "file_system" else kind.replace("_", " ")
        super().__init__(f"{label} dependency '{package_name}' can't be edited")
        self.package_name = package_name
        self.kind = kind


class EditDestinationMismatchError(WharfError):
    def __init__(self, package_name: str, destination: str, found_name: str) -> None:
        super().__init__(
            f"package at '{destination}' is '{found_name}' but was expecting '{package_name}'"
        )


class BranchAlreadyExistsError(WharfError):
    def __init__(self, branch: str) -> None:
        super().__init__(f"branch '{branch}' already exists")
        self.branch = branch


class RevisionDoesNotExistError(WharfError):
    def __init__(self, revision: str) -> None:
        super().__init__(f"revision '{revision}' does not exist")
        self.revision = revision


class NotInEditModeError(WharfError):
    def __init__(self, package_name: str) -> None:
        super().__init__(f"dependency '{package_name}' not in edit mode")
        self.package_name = package_name


class UncommittedChangesError(WharfError):
    def __init__(self, path: object) -> None:
        super().__init__(f"repository at '{path}' has uncommitted changes")
        self.path = path


class UnpushedChangesError(WharfError):
    def __init__(self, path: object) -> None:
        super().__init__(f"repository at '{path}' has unpushed changes")
        self.path = path


class ResolutionError(WharfError):
    pass


class MissingPackageError(ResolutionError):
    def __init__(self, package: object) -> None:
        super().__init__(f"package '{package}' is not available")
        self.package = package


class DifferentRequirementError(ResolutionError):
    def __init__(self, package: object, state: object, requirement: object) -> None:
        super().__init__(f"package '{package}' is required using a different requirement: {requirement}")
        self.package = package
        self.state = state
        self.requirement = requirement


class ResolutionExhaustedError(ResolutionError):
    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = tuple(sorted(missing))
        super().__init__(
            "exhausted attempts to resolve the dependencies graph, with "
            f"'{', '.join(self.missing)}' unresolved."
        )


class AlreadyResolvingError(WharfError):
    def __init__(self) -> None:
        super().__init__("a dependency resolution is already running on this workspace")


class DiagnosedError(WharfError):
    def __init__(self, messages: Iterable[str]) -> None:
        self.messages = tuple(messages)
        super().__init__("; ".join(self.messages) if self.messages else "operation failed")
