import unittest
from pathlib import Path

from wharf.errors import ResolutionError
from wharf.models import (
    Constraint,
    PackageReference,
    Pin,
    PinVersion,
    ProductFilter,
    RevisionBinding,
    RevisionRequirement,
    UnversionedBinding,
    UnversionedRequirement,
    VersionBinding,
    VersionSetRequirement,
)
from wharf.solver import BacktrackingSolver
from wharf.versions import Version


def _ref(name: str) -> PackageReference:
    return PackageReference.remote(f"https://example.com/{name}.git")


def _req(name: str, specifier: str) -> Constraint:
    return Constraint(_ref(name), VersionSetRequirement(specifier))


class FakeContainer:
    def __init__(self, package: PackageReference, releases: dict[str, list[Constraint]], revisions=None) -> None:
        self.package = package
        self._releases = {Version.parse(v): deps for v, deps in releases.items()}
        self._revisions = revisions or {}

    def versions_descending(self) -> list[Version]:
        return sorted(self._releases, reverse=True)

    def dependencies_at_version(self, version: Version, products: ProductFilter) -> list[Constraint]:
        return list(self._releases[version])

    def dependencies_at_revision(self, identifier: str, products: ProductFilter) -> list[Constraint]:
        if identifier not in self._revisions:
            raise ResolutionError(f"unknown revision {identifier}")
        return list(self._revisions[identifier])

    def dependencies_unversioned(self, products: ProductFilter) -> list[Constraint]:
        return []


class FakeProvider:
    def __init__(self, containers: dict[str, FakeContainer]) -> None:
        self.containers = containers
        self.requested: list[str] = []

    def get_container(self, package: PackageReference) -> FakeContainer:
        self.requested.append(package.identity)
        return self.containers[package.identity]


def _provider(graph: dict[str, dict[str, list[Constraint]]], revisions=None) -> FakeProvider:
    revisions = revisions or {}
    return FakeProvider(
        {name: FakeContainer(_ref(name), releases, revisions.get(name)) for name, releases in graph.items()}
    )


class TestBacktrackingSolver(unittest.TestCase):
    def test_backtracks_for_compatible_graph(self) -> None:
        provider = _provider(
            {
                "app": {
                    "2.0.0": [_req("runtime", "^2.0.0")],
                    "1.0.0": [_req("runtime", "^1.0.0")],
                },
                "helper": {"1.0.0": [_req("runtime", "^1.0.0")]},
                "runtime": {"2.0.0": [], "1.5.0": []},
            }
        )

        bindings = BacktrackingSolver(provider).solve([_req("app", "*"), _req("helper", "*")])

        bound = {b.package.identity: b.bound for b in bindings}
        self.assertEqual(bound["app"], VersionBinding(Version(1, 0, 0)))
        self.assertEqual(bound["runtime"], VersionBinding(Version(1, 5, 0)))
        self.assertEqual([b.package.identity for b in bindings], ["app", "helper", "runtime"])

    def test_raises_on_conflict(self) -> None:
        provider = _provider(
            {
                "app": {"2.0.0": [_req("runtime", "^2.0.0")]},
                "helper": {"1.0.0": [_req("runtime", "^1.0.0")]},
                "runtime": {"2.0.0": []},
            }
        )

        with self.assertRaises(ResolutionError):
            BacktrackingSolver(provider).solve([_req("app", "*"), _req("helper", "*")])

    def test_pinned_version_is_preferred(self) -> None:
        provider = _provider({"runtime": {"1.2.0": [], "1.1.0": [], "1.0.0": []}})
        pins = {"runtime": Pin(_ref("runtime"), PinVersion(Version(1, 1, 0), "abc"))}

        bindings = BacktrackingSolver(provider, pins).solve([_req("runtime", "^1.0.0")])

        self.assertEqual(bindings[0].bound, VersionBinding(Version(1, 1, 0)))

    def test_revision_wins_over_version_range(self) -> None:
        provider = _provider(
            {
                "app": {"1.0.0": [Constraint(_ref("runtime"), RevisionRequirement("main"))]},
                "runtime": {"1.0.0": []},
            },
            revisions={"runtime": {"main": []}},
        )

        bindings = BacktrackingSolver(provider).solve([_req("app", "*"), _req("runtime", "^1.0.0")])

        bound = {b.package.identity: b.bound for b in bindings}
        self.assertEqual(bound["runtime"], RevisionBinding("main"))

    def test_unversioned_override_replaces_reference(self) -> None:
        local = PackageReference.file_system(Path("/work/runtime"))
        provider = _provider({"app": {"1.0.0": [_req("runtime", "^1.0.0")]}, "runtime": {"1.0.0": []}})

        bindings = BacktrackingSolver(provider).solve(
            [_req("app", "*"), Constraint(local, UnversionedRequirement())]
        )

        runtime = [b for b in bindings if b.package.identity == "runtime"][0]
        self.assertEqual(runtime.bound, UnversionedBinding())
        self.assertEqual(runtime.package.location, "/work/runtime")

    def test_multiple_revisions_conflict(self) -> None:
        provider = _provider({"runtime": {}}, revisions={"runtime": {"a": [], "b": []}})

        with self.assertRaises(ResolutionError):
            BacktrackingSolver(provider).solve(
                [
                    Constraint(_ref("runtime"), RevisionRequirement("a")),
                    Constraint(_ref("runtime"), RevisionRequirement("b")),
                ]
            )


if __name__ == "__main__":
    unittest.main()
