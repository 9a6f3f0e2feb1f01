import hashlib
import io
import json
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import patch

from _support import write_manifest

from wharf.cli import _merge_cfg, build_parser, main
from wharf.config import Config


class CLITestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name).resolve()
        self.root = self.base / "app"
        self.config = self.base / "config.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with patch("sys.stdout", new=out), patch("sys.stderr", new=err):
            rc = main(["--root", str(self.root), "--config", str(self.config), *argv])
        return rc, out.getvalue(), err.getvalue()


class TestResolveCommand(CLITestCase):
    def test_resolve_local_dependency_then_show(self) -> None:
        write_manifest(self.base / "local", "Local")
        write_manifest(self.root, "App", dependencies=[{"path": "../local"}])

        rc, out, _ = self.run_cli("resolve", "--json")

        self.assertEqual(rc, 0)
        rows = json.loads(out)
        self.assertEqual([(r["package"], r["change"]) for r in rows], [("local", "added")])
        self.assertFalse((self.root / "wharf.resolved").exists())

        rc, out, _ = self.run_cli("show-dependencies", "--json")
        self.assertEqual(rc, 0)
        deps = json.loads(out)
        self.assertEqual(deps[0]["package"], "local")
        self.assertEqual(deps[0]["path"], str(self.base / "local"))

    def test_second_resolve_reports_up_to_date(self) -> None:
        write_manifest(self.base / "local", "Local")
        write_manifest(self.root, "App", dependencies=[{"path": "../local"}])
        self.run_cli("resolve")

        rc, out, _ = self.run_cli("resolve")

        self.assertEqual(rc, 0)
        self.assertIn("Everything is already up-to-date.", out)

    def test_edit_unknown_dependency_is_an_error(self) -> None:
        write_manifest(self.root, "App")

        rc, _, err = self.run_cli("edit", "nope")

        self.assertEqual(rc, 1)
        self.assertIn("error:", err)
        self.assertIn("nope", err)

    def test_missing_root_manifest_is_an_error(self) -> None:
        self.root.mkdir()

        rc, _, err = self.run_cli("resolve")

        self.assertEqual(rc, 1)
        self.assertIn("manifest not found", err)


class TestComputeChecksum(CLITestCase):
    def test_prints_sha256_of_archive(self) -> None:
        archive = self.base / "Lib.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("Lib/lib.a", b"binary")

        rc, out, _ = self.run_cli("compute-checksum", str(archive))

        self.assertEqual(rc, 0)
        self.assertEqual(out.strip(), hashlib.sha256(archive.read_bytes()).hexdigest())

    def test_rejects_non_archive(self) -> None:
        path = self.base / "notes.txt"
        path.write_text("x", encoding="utf-8")

        rc, _, err = self.run_cli("compute-checksum", str(path))

        self.assertEqual(rc, 1)
        self.assertIn("unexpected file type", err)


class TestConfig(CLITestCase):
    def test_set_and_show_redacts_tokens(self) -> None:
        rc, _, _ = self.run_cli(
            "config",
            "set",
            "--registry-url",
            "https://registry.example.com",
            "--token",
            "registry.example.com=tok_1234567890",
            "--mirror",
            "https://github.com/a/b.git=https://mirror.example.com/b.git",
        )
        self.assertEqual(rc, 0)

        rc, out, _ = self.run_cli("config", "show")

        self.assertEqual(rc, 0)
        shown = json.loads(out)
        self.assertEqual(shown["registry_url"], "https://registry.example.com")
        self.assertEqual(shown["tokens"]["registry.example.com"], "tok_...7890")
        self.assertEqual(shown["mirrors"], {"https://github.com/a/b.git": "https://mirror.example.com/b.git"})

    def test_cli_flags_override_environment_and_config(self) -> None:
        args = build_parser().parse_args(["--registry-url", "https://cli.example.com", "resolve"])
        base = Config(registry_url="https://file.example.com", timeout_s=10.0)

        with patch.dict("os.environ", {"WHARF_REGISTRY_URL": "https://env.example.com"}):
            merged = _merge_cfg(base, args)
            from_env = _merge_cfg(base, build_parser().parse_args(["resolve"]))

        self.assertEqual(merged.registry_url, "https://cli.example.com")
        self.assertEqual(from_env.registry_url, "https://env.example.com")
        self.assertEqual(from_env.timeout_s, 10.0)


if __name__ == "__main__":
    unittest.main()
