import json
import tempfile
import unittest
from pathlib import Path

from wharf.config import WorkspaceLocation
from wharf.errors import InternalError
from wharf.models import (
    CheckoutRevision,
    Edited,
    LocalSource,
    ManagedArtifact,
    ManagedDependency,
    PackageReference,
    RemoteSource,
)
from wharf.state import WorkspaceState
from wharf.versions import Version


class TestWorkspaceState(unittest.TestCase):
    def test_save_and_reload_edited_dependency_with_artifact(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            location = WorkspaceLocation.for_root(Path(tmp))
            ref = PackageReference.remote("https://github.com/a/foo.git")
            checkout = ManagedDependency.source_control_checkout(ref, CheckoutRevision("abc"), Path("foo"))
            edited = checkout.edited(Path("foo"), Path("/elsewhere/foo"))

            state = WorkspaceState(location)
            state.dependencies.add(edited)
            state.artifacts.add(ManagedArtifact(ref, "FooKit", Path(tmp) / "FooKit.xcframework", RemoteSource("https://x/y.zip", "c0ffee")))
            state.artifacts.add(ManagedArtifact(ref, "Bar", Path(tmp) / "Bar.a", LocalSource()))
            state.save()

            reloaded = WorkspaceState(location)
            dep = reloaded.dependencies.get("foo")
            self.assertIsInstance(dep.state, Edited)
            self.assertEqual(dep.state.based_on.checkout_state, CheckoutRevision("abc"))
            self.assertEqual(dep.state.unmanaged_path, Path("/elsewhere/foo"))
            self.assertEqual(reloaded.artifacts.get("foo", "FooKit").source, RemoteSource("https://x/y.zip", "c0ffee"))
            self.assertEqual(reloaded.artifacts.get("foo", "Bar").source, LocalSource())

    def test_unknown_schema_version_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            location = WorkspaceLocation.for_root(Path(tmp))
            location.working_directory.mkdir()
            location.state_file.write_text(json.dumps({"version": 99, "object": {}}), encoding="utf-8")

            with self.assertRaises(InternalError):
                WorkspaceState(location)

    def test_reset_removes_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            location = WorkspaceLocation.for_root(Path(tmp))
            state = WorkspaceState(location)
            state.save()
            self.assertTrue(state.state_file_exists())

            state.reset()

            self.assertFalse(state.state_file_exists())
            self.assertEqual(len(state.dependencies), 0)


class TestWorkspaceLocation(unittest.TestCase):
    def test_path_to_depends_only_on_state(self) -> None:
        location = WorkspaceLocation.for_root(Path("/work/app"))
        ref = PackageReference.remote("https://github.com/a/foo.git")
        checkout = ManagedDependency.source_control_checkout(ref, CheckoutRevision("abc"), Path("foo"))
        download = ManagedDependency.registry_download(PackageReference.registry("acme.foo"), Version(1, 0, 0), Path("acme.foo/1.0.0"))
        local = ManagedDependency.file_system(PackageReference.file_system(Path("/src/local")))

        self.assertEqual(location.path_to(checkout), Path("/work/app/.wharf/checkouts/foo"))
        self.assertEqual(location.path_to(download), Path("/work/app/.wharf/registry/downloads/acme.foo/1.0.0"))
        self.assertEqual(location.path_to(checkout.edited(Path("foo"), None)), Path("/work/app/Packages/foo"))
        self.assertEqual(location.path_to(checkout.edited(Path("foo"), Path("/elsewhere"))), Path("/elsewhere"))
        self.assertEqual(location.path_to(local), Path("/src/local"))
        self.assertEqual(location.path_to(checkout), location.path_to(checkout))


if __name__ == "__main__":
    unittest.main()
