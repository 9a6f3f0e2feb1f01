import json
import unittest
from pathlib import Path

from wharf.config import DependencyMirrors
from wharf.errors import ManifestLoadError
from wharf.manifest import JSONManifestLoader, MINIMUM_TOOLS_VERSION
from wharf.models import (
    FILE_SYSTEM,
    LOCAL_SOURCE_CONTROL,
    REGISTRY,
    PackageReference,
    ProductFilter,
    RevisionRequirement,
    UnversionedRequirement,
    VersionSetRequirement,
)
from wharf.versions import Version

ROOT = Path("/work/app")


def _parse(raw: dict, *, loader: JSONManifestLoader | None = None):
    loader = loader or JSONManifestLoader()
    return loader.parse(
        json.dumps(raw).encode("utf-8"),
        path=ROOT / "wharf.json",
        package_ref=PackageReference.root(ROOT),
    )


class TestManifestParsing(unittest.TestCase):
    def test_requirement_kinds(self) -> None:
        manifest = _parse(
            {
                "name": "App",
                "dependencies": [
                    {"url": "https://github.com/a/exact.git", "requirement": {"exact": "1.2.3"}},
                    {"url": "https://github.com/a/from.git", "requirement": {"from": "2.1.0"}},
                    {"url": "https://github.com/a/range.git", "requirement": {"range": ">=1.0.0 <1.5.0"}},
                    {"url": "https://github.com/a/branch.git", "requirement": {"branch": "main"}},
                    {"id": "acme.tool", "requirement": {"exact": "0.1.0"}},
                    {"path": "../local"},
                ],
            }
        )

        reqs = {d.identity: d.requirement for d in manifest.dependencies}
        self.assertEqual(reqs["exact"], VersionSetRequirement("=1.2.3"))
        self.assertEqual(reqs["from"], VersionSetRequirement(">=2.1.0 <3.0.0"))
        self.assertEqual(reqs["range"], VersionSetRequirement(">=1.0.0 <1.5.0"))
        self.assertEqual(reqs["branch"], RevisionRequirement("main"))
        self.assertEqual(reqs["local"], UnversionedRequirement())
        kinds = {d.identity: d.package_ref.kind for d in manifest.dependencies}
        self.assertEqual(kinds["acme.tool"], REGISTRY)
        self.assertEqual(kinds["local"], FILE_SYSTEM)
        self.assertEqual(manifest.tools_version, MINIMUM_TOOLS_VERSION)

    def test_absolute_url_is_local_source_control(self) -> None:
        manifest = _parse({"name": "App", "dependencies": [{"url": "/repos/lib.git", "requirement": {"revision": "abc"}}]})

        ref = manifest.dependencies[0].package_ref
        self.assertEqual(ref.kind, LOCAL_SOURCE_CONTROL)
        self.assertEqual(ref.identity, "lib")

    def test_mirrors_rewrite_urls(self) -> None:
        loader = JSONManifestLoader(mirrors=DependencyMirrors({"https://github.com/a/lib.git": "https://mirror.example.com/lib.git"}))
        manifest = _parse(
            {"name": "App", "dependencies": [{"url": "https://github.com/a/lib.git", "requirement": {"from": "1.0.0"}}]},
            loader=loader,
        )

        self.assertEqual(manifest.dependencies[0].package_ref.location, "https://mirror.example.com/lib.git")

    def test_duplicate_dependency_is_rejected(self) -> None:
        with self.assertRaisesRegex(ManifestLoadError, "duplicate dependency 'lib'"):
            _parse(
                {
                    "name": "App",
                    "dependencies": [
                        {"url": "https://github.com/a/lib.git", "requirement": {"from": "1.0.0"}},
                        {"url": "https://github.com/b/lib.git", "requirement": {"from": "1.0.0"}},
                    ],
                }
            )

    def test_tools_version_bounds(self) -> None:
        with self.assertRaisesRegex(ManifestLoadError, "no longer supported"):
            _parse({"name": "App", "tools_version": "0.9.0"})
        with self.assertRaisesRegex(ManifestLoadError, "installed version"):
            _parse({"name": "App", "tools_version": "9.0.0"})
        self.assertEqual(_parse({"name": "App", "tools_version": "1.2.0"}).tools_version, Version(1, 2, 0))

    def test_invalid_entries(self) -> None:
        for raw in (
            {"dependencies": []},
            {"name": "App", "dependencies": [{"url": "https://x/y.git"}]},
            {"name": "App", "dependencies": [{"url": "https://x/y.git", "requirement": {"exact": "one"}}]},
            {"name": "App", "dependencies": [{"id": "noscope", "requirement": {"exact": "1.0.0"}}]},
            {"name": "App", "dependencies": [{"requirement": {"exact": "1.0.0"}}]},
        ):
            with self.subTest(raw=raw):
                with self.assertRaises(ManifestLoadError):
                    _parse(raw)

    def test_load_reports_missing_manifest(self) -> None:
        with self.assertRaisesRegex(ManifestLoadError, "manifest not found"):
            JSONManifestLoader().load(Path("/nonexistent/pkg"), package_ref=PackageReference.root(Path("/nonexistent/pkg")))


class TestDependenciesRequired(unittest.TestCase):
    def setUp(self) -> None:
        self.manifest = _parse(
            {
                "name": "Lib",
                "dependencies": [
                    {"url": "https://github.com/a/core.git", "requirement": {"from": "1.0.0"}},
                    {"url": "https://github.com/a/extras.git", "requirement": {"from": "1.0.0"}},
                ],
                "products": [{"name": "Lib", "targets": ["Lib"]}, {"name": "LibExtras", "targets": ["Extras"]}],
                "targets": [
                    {"name": "Lib", "dependencies": [{"product": "Core", "package": "core"}]},
                    {"name": "Extras", "dependencies": ["Lib", {"product": "Fancy", "package": "extras"}]},
                ],
            }
        )

    def test_everything_requires_all_dependencies(self) -> None:
        required = self.manifest.dependencies_required(ProductFilter.everything())

        self.assertEqual([d.identity for d in required], ["core", "extras"])
        self.assertEqual(required[0].products, ProductFilter.specific(["Core"]))

    def test_specific_products_follow_target_graph(self) -> None:
        only_lib = self.manifest.dependencies_required(ProductFilter.specific(["Lib"]))
        extras = self.manifest.dependencies_required(ProductFilter.specific(["LibExtras"]))

        self.assertEqual([d.identity for d in only_lib], ["core"])
        self.assertEqual([d.identity for d in extras], ["core", "extras"])
        self.assertEqual(extras[1].products, ProductFilter.specific(["Fancy"]))


if __name__ == "__main__":
    unittest.main()
