import hashlib
import io
import json
import tempfile
import unittest
import zipfile
from pathlib import Path

import httpx

from wharf.artifacts import BinaryArtifactsManager
from wharf.client import HTTPClient
from wharf.config import WorkspaceLocation
from wharf.diagnostics import Diagnostics
from wharf.manifest import JSONManifestLoader
from wharf.models import LocalSource, PackageReference, RemoteSource
from wharf.state import WorkspaceState


def _zip_bytes(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


ARCHIVE = _zip_bytes({"Lib.xcframework/Info.plist": b"<plist/>"})
ARCHIVE_SHA = hashlib.sha256(ARCHIVE).hexdigest()


class ArtifactsTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name).resolve()
        self.location = WorkspaceLocation.for_root(self.base / "app")
        self.pkg = self.base / "pkg"
        self.pkg.mkdir()
        self.requests: list[str] = []
        self.diagnostics = Diagnostics()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def manifest(self, targets: list[dict]):
        return JSONManifestLoader().parse(
            json.dumps({"name": "Pkg", "targets": targets}).encode("utf-8"),
            path=self.pkg / "wharf.json",
            package_ref=PackageReference.file_system(self.pkg),
        )

    def manager(self, body: bytes = ARCHIVE, *, routes: dict[str, bytes] | None = None, max_workers: int = 1) -> BinaryArtifactsManager:
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(str(request.url))
            return httpx.Response(200, content=(routes or {}).get(str(request.url), body))

        http = HTTPClient()
        http._http = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)  # type: ignore[attr-defined]
        self.addCleanup(http.close)
        return BinaryArtifactsManager(
            state=WorkspaceState(self.location),
            artifacts_directory=self.location.artifacts_directory,
            diagnostics=self.diagnostics,
            host_triple="x86_64-unknown-linux-gnu",
            http=http,
            max_workers=max_workers,
        )


class TestLocalArtifacts(ArtifactsTestCase):
    def test_local_archive_is_extracted_once(self) -> None:
        (self.pkg / "Lib.zip").write_bytes(ARCHIVE)
        manifest = self.manifest([{"name": "Lib", "type": "binary", "path": "Lib.zip"}])

        first = self.manager().update([manifest])
        second = self.manager().update([manifest])

        self.assertEqual(len(first.extracted), 1)
        artifact = first.extracted[0]
        self.assertEqual(artifact.path, self.location.artifacts_directory / "pkg" / "Lib" / "Lib.xcframework")
        self.assertTrue((artifact.path / "Info.plist").is_file())
        self.assertEqual(artifact.source, LocalSource(ARCHIVE_SHA))
        self.assertEqual(second.extracted, [])
        self.assertFalse((self.location.artifacts_directory / "extract").exists())

    def test_local_directory_is_registered_in_place(self) -> None:
        (self.pkg / "Lib.xcframework").mkdir()
        manifest = self.manifest([{"name": "Lib", "type": "binary", "path": "Lib.xcframework"}])

        result = self.manager().update([manifest])

        self.assertEqual([a.path for a in result.registered], [self.pkg / "Lib.xcframework"])
        self.assertEqual(result.extracted, [])

    def test_missing_local_artifact_is_an_error(self) -> None:
        manifest = self.manifest([{"name": "Lib", "type": "binary", "path": "Missing.xcframework"}])

        self.manager().update([manifest])

        self.assertTrue(self.diagnostics.has_errors)
        self.assertIn("does not contain a binary artifact", str(self.diagnostics.errors[0]))


class TestRemoteArtifacts(ArtifactsTestCase):
    URL = "https://cdn.example.com/Lib.zip"

    def test_download_verify_and_remove(self) -> None:
        manifest = self.manifest([{"name": "Lib", "type": "binary", "url": self.URL, "checksum": ARCHIVE_SHA}])

        result = self.manager().update([manifest])

        self.assertEqual(self.requests, [self.URL])
        self.assertEqual(result.downloaded[0].source, RemoteSource(self.URL, ARCHIVE_SHA))
        path = result.downloaded[0].path
        self.assertTrue(path.is_dir())

        removed = self.manager().update([self.manifest([])])

        self.assertEqual([a.target_name for a in removed.removed], ["Lib"])
        self.assertFalse(path.exists())
        self.assertEqual(len(WorkspaceState(self.location).artifacts), 0)

    def test_checksum_mismatch_is_reported(self) -> None:
        manifest = self.manifest([{"name": "Lib", "type": "binary", "url": self.URL, "checksum": "0" * 64}])

        result = self.manager().update([manifest])

        self.assertEqual(result.downloaded, [])
        self.assertIn("does not match checksum", str(self.diagnostics.errors[0]))
        self.assertEqual(len(WorkspaceState(self.location).artifacts), 0)

    def test_changed_checksum_at_same_url_keeps_existing_artifact(self) -> None:
        self.manager().update([self.manifest([{"name": "Lib", "type": "binary", "url": self.URL, "checksum": ARCHIVE_SHA}])])
        tampered = self.manifest([{"name": "Lib", "type": "binary", "url": self.URL, "checksum": "f" * 64}])

        result = self.manager().update([tampered])

        self.assertEqual(result.downloaded, [])
        self.assertEqual(len(self.requests), 1)
        self.assertIn("potential security risk", str(self.diagnostics.warnings[0]))
        kept = WorkspaceState(self.location).artifacts.get("pkg", "Lib")
        self.assertEqual(kept.source.checksum, ARCHIVE_SHA)

    def test_changed_checksum_is_accepted_after_package_update(self) -> None:
        self.manager().update([self.manifest([{"name": "Lib", "type": "binary", "url": self.URL, "checksum": ARCHIVE_SHA}])])
        other = _zip_bytes({"Lib.xcframework/Info.plist": b"<plist version='2'/>"})
        other_sha = hashlib.sha256(other).hexdigest()

        result = self.manager(other).update(
            [self.manifest([{"name": "Lib", "type": "binary", "url": self.URL, "checksum": other_sha}])],
            added_or_updated={"pkg"},
        )

        self.assertEqual(result.downloaded[0].source, RemoteSource(self.URL, other_sha))
        self.assertEqual(self.diagnostics.warnings, ())


    def test_changed_checksum_at_new_url_keeps_existing_artifact(self) -> None:
        self.manager().update([self.manifest([{"name": "Lib", "type": "binary", "url": self.URL, "checksum": ARCHIVE_SHA}])])
        moved = "https://cdn.example.com/v2/Lib.zip"
        tampered = self.manifest([{"name": "Lib", "type": "binary", "url": moved, "checksum": "e" * 64}])

        result = self.manager().update([tampered], added_or_updated=set())

        self.assertEqual(result.downloaded, [])
        self.assertEqual(self.requests, [self.URL])
        self.assertEqual(len(self.diagnostics.warnings), 1)
        self.assertIn("potential security risk", str(self.diagnostics.warnings[0]))
        kept = WorkspaceState(self.location).artifacts.get("pkg", "Lib")
        self.assertEqual(kept.source, RemoteSource(self.URL, ARCHIVE_SHA))

    def test_unchanged_manifest_makes_no_request(self) -> None:
        manifest = self.manifest([{"name": "Lib", "type": "binary", "url": self.URL, "checksum": ARCHIVE_SHA}])
        self.manager().update([manifest])

        again = self.manager().update([manifest])

        self.assertEqual(self.requests, [self.URL])
        self.assertEqual(again.downloaded, [])
        self.assertEqual(again.removed, [])
        self.assertEqual(self.diagnostics.warnings, ())

    def test_targets_sharing_an_archive_name_download_separately(self) -> None:
        first = _zip_bytes({"A.xcframework/Info.plist": b"<plist a/>"})
        second = _zip_bytes({"B.xcframework/Info.plist": b"<plist b/>"})
        urls = {"A": "https://cdn.example.com/a/Lib.zip", "B": "https://cdn.example.com/b/Lib.zip"}
        manifest = self.manifest(
            [
                {"name": "A", "type": "binary", "url": urls["A"], "checksum": hashlib.sha256(first).hexdigest()},
                {"name": "B", "type": "binary", "url": urls["B"], "checksum": hashlib.sha256(second).hexdigest()},
            ]
        )

        result = self.manager(routes={urls["A"]: first, urls["B"]: second}, max_workers=2).update([manifest])

        self.assertEqual(self.diagnostics.errors, ())
        paths = {a.target_name: a.path for a in result.downloaded}
        self.assertEqual((paths["A"] / "Info.plist").read_bytes(), b"<plist a/>")
        self.assertEqual((paths["B"] / "Info.plist").read_bytes(), b"<plist b/>")
        self.assertFalse((self.location.artifacts_directory / "extract").exists())


if __name__ == "__main__":
    unittest.main()
