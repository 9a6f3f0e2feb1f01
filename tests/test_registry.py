import hashlib
import io
import tempfile
import unittest
import zipfile
from pathlib import Path

import httpx

from wharf.client import HTTPClient, WharfError
from wharf.errors import ChecksumMismatchError
from wharf.registry import FileChecksumStorage, RegistryClient, split_registry_identity
from wharf.versions import Version


def _archive() -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("tool-1.0.0/wharf.json", b'{"name": "Tool"}')
        zf.writestr("tool-1.0.0/src/main.txt", b"hello")
    return buf.getvalue()


ARCHIVE = _archive()


class RegistryTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        self.checksum = hashlib.sha256(ARCHIVE).hexdigest()
        self.seen: list[str] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.seen.append(request.url.path)
        path = request.url.path
        if path == "/acme/tool":
            return httpx.Response(
                200,
                json={"releases": {"1.0.0": {}, "1.1.0": {}, "0.9.0": {"problem": {"status": 410}}, "latest": {}}},
            )
        if path == "/acme/tool/1.0.0":
            return httpx.Response(200, json={"resources": [{"name": "source-archive", "checksum": self.checksum}]})
        if path == "/acme/tool/1.0.0.zip":
            return httpx.Response(200, content=ARCHIVE)
        if path == "/acme/tool/1.0.0/wharf.json":
            return httpx.Response(200, content=b'{"name": "Tool"}')
        return httpx.Response(404, json={"detail": "not found"})

    def client(self, *, checksums: FileChecksumStorage | None = None) -> RegistryClient:
        http = HTTPClient()
        http._http = httpx.Client(transport=httpx.MockTransport(self.handler), follow_redirects=True)  # type: ignore[attr-defined]
        self.addCleanup(http.close)
        return RegistryClient(base_url="https://registry.example.com/", http=http, checksums=checksums)


class TestRegistryClient(RegistryTestCase):
    def test_list_versions_skips_problem_releases(self) -> None:
        versions = self.client().list_versions("acme.tool")

        self.assertEqual(versions, [Version(1, 1, 0), Version(1, 0, 0)])

    def test_unknown_package_is_reported(self) -> None:
        with self.assertRaisesRegex(WharfError, "not found in registry"):
            self.client().list_versions("acme.missing")

    def test_get_manifest(self) -> None:
        data = self.client().get_manifest("acme.tool", Version(1, 0, 0), "wharf.json")

        self.assertEqual(data, b'{"name": "Tool"}')

    def test_download_strips_top_level_directory_and_records_checksum(self) -> None:
        checksums = FileChecksumStorage(self.base / "checksums")
        destination = self.base / "downloads" / "acme.tool" / "1.0.0"

        self.client(checksums=checksums).download_source_archive("acme.tool", Version(1, 0, 0), destination)

        self.assertEqual((destination / "src" / "main.txt").read_bytes(), b"hello")
        self.assertTrue((destination / "wharf.json").is_file())
        self.assertFalse((destination.parent / "1.0.0.zip").exists())
        self.assertEqual(checksums.get("acme.tool", Version(1, 0, 0)), self.checksum)

    def test_download_rejects_archive_not_matching_recorded_checksum(self) -> None:
        checksums = FileChecksumStorage(self.base / "checksums")
        checksums.put("acme.tool", Version(1, 0, 0), "0" * 64)
        destination = self.base / "downloads" / "acme.tool" / "1.0.0"

        with self.assertRaises(ChecksumMismatchError):
            self.client(checksums=checksums).download_source_archive("acme.tool", Version(1, 0, 0), destination)

        self.assertFalse(destination.exists())
        self.assertNotIn("/acme/tool/1.0.0", self.seen)


class TestChecksumStorage(unittest.TestCase):
    def test_changed_checksum_is_refused(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            storage = FileChecksumStorage(Path(tmp))
            storage.put("acme.tool", Version(1, 0, 0), "abc")
            storage.put("acme.tool", Version(1, 0, 0), "abc")

            with self.assertRaises(ChecksumMismatchError):
                storage.put("acme.tool", Version(1, 0, 0), "def")
            self.assertEqual(storage.get("acme.tool", Version(1, 0, 0)), "abc")
            self.assertIsNone(storage.get("acme.tool", Version(2, 0, 0)))


class TestIdentity(unittest.TestCase):
    def test_split(self) -> None:
        self.assertEqual(split_registry_identity("acme.tool"), ("acme", "tool"))
        with self.assertRaises(WharfError):
            split_registry_identity("tool")


if __name__ == "__main__":
    unittest.main()
