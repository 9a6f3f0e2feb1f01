import json
import tempfile
import unittest
from pathlib import Path

from wharf.config import DependencyMirrors
from wharf.models import (
    CheckoutVersion,
    ManagedDependency,
    PackageReference,
    PinRevision,
    PinVersion,
)
from wharf.pins import PinsStore
from wharf.versions import Version


class TestPinsStore(unittest.TestCase):
    def test_legacy_layout_for_old_tools_versions_with_remote_pins(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "wharf.resolved"
            ref = PackageReference.remote("https://github.com/a/foo.git")
            store = PinsStore(path)
            store.pin(ManagedDependency.source_control_checkout(ref, CheckoutVersion(Version(1, 2, 0), "abc"), Path("foo")))
            store.save(Version(1, 0, 0))

            raw = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(raw["version"], 1)
            self.assertEqual(raw["object"]["pins"][0]["repositoryURL"], "https://github.com/a/foo.git")
            self.assertEqual(PinsStore(path).get("foo").state, PinVersion(Version(1, 2, 0), "abc"))

    def test_identity_keyed_layout_when_registry_pins_present(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "wharf.resolved"
            store = PinsStore(path)
            store.pin_reference(PackageReference.registry("acme.foo"), PinVersion(Version(2, 0, 0)))
            store.pin_reference(PackageReference.remote("https://github.com/a/bar.git"), PinRevision("def"))
            store.save(Version(1, 0, 0))

            raw = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(raw["version"], 2)
            self.assertEqual([p["identity"] for p in raw["pins"]], ["acme.foo", "bar"])
            reloaded = PinsStore(path)
            self.assertEqual(reloaded.get("acme.foo").state, PinVersion(Version(2, 0, 0)))
            self.assertEqual(reloaded.get("bar").state, PinRevision("def"))

    def test_empty_pins_remove_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "wharf.resolved"
            store = PinsStore(path)
            store.pin_reference(PackageReference.registry("acme.foo"), PinVersion(Version(2, 0, 0)))
            store.save(Version(1, 4, 0))
            self.assertTrue(path.exists())

            store.unpin_all()
            store.save(Version(1, 4, 0))

            self.assertFalse(path.exists())

    def test_mirrors_are_applied_on_load_and_undone_on_save(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "wharf.resolved"
            original = "https://github.com/a/foo.git"
            mirror = "https://mirror.example.com/foo.git"
            mirrors = DependencyMirrors({original: mirror})

            store = PinsStore(path, mirrors=mirrors)
            store.pin_reference(PackageReference.remote(mirror), PinRevision("abc"))
            store.save(Version(1, 4, 0))

            raw = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(raw["pins"][0]["location"], original)
            self.assertEqual(PinsStore(path, mirrors=mirrors).get("foo").package_ref.location, mirror)


if __name__ == "__main__":
    unittest.main()
