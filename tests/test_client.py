import tempfile
import unittest
from pathlib import Path

import httpx

from wharf.client import HTTPClient, WharfError, WharfHTTPError


def _client(handler, **kwargs) -> HTTPClient:
    client = HTTPClient(tokens={"registry.example.com": "tok_123"}, **kwargs)
    client._http = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)  # type: ignore[attr-defined]
    return client


class TestRedirectAuth(unittest.TestCase):
    def test_authorization_is_kept_on_same_origin_redirect(self) -> None:
        seen: list[tuple[str, str | None]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((str(request.url), request.headers.get("authorization")))
            if request.url.path == "/acme/tool/1.0.0.zip":
                return httpx.Response(302, headers={"location": "/files/tool-1.0.0.zip"})
            return httpx.Response(200, content=b"ok")

        client = _client(handler)
        try:
            response = client.request(method="GET", url="https://registry.example.com/acme/tool/1.0.0.zip")
        finally:
            client.close()

        self.assertEqual(response.content, b"ok")
        self.assertEqual(seen[0][1], "Bearer tok_123")
        self.assertEqual(seen[1][1], "Bearer tok_123")

    def test_authorization_is_not_forwarded_cross_origin(self) -> None:
        seen: list[tuple[str, str | None]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((str(request.url), request.headers.get("authorization")))
            if request.url.host == "registry.example.com":
                return httpx.Response(302, headers={"location": "https://cdn.example.com/tool.zip"})
            return httpx.Response(200, content=b"ok")

        client = _client(handler)
        try:
            response = client.request(method="GET", url="https://registry.example.com/acme/tool/1.0.0.zip")
        finally:
            client.close()

        self.assertEqual(response.content, b"ok")
        self.assertEqual(seen[0][1], "Bearer tok_123")
        self.assertIsNone(seen[1][1])

    def test_tokens_are_scoped_to_their_host(self) -> None:
        seen_auth: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_auth.append(request.headers.get("authorization"))
            return httpx.Response(200, json={"ok": True})

        client = _client(handler)
        try:
            body = client.get_json("https://other.example.com/index.json")
        finally:
            client.close()

        self.assertEqual(body, {"ok": True})
        self.assertEqual(seen_auth, [None])


class TestErrors(unittest.TestCase):
    def test_http_error_carries_status_and_body(self) -> None:
        client = _client(lambda request: httpx.Response(404, text="no such release"))
        try:
            with self.assertRaises(WharfHTTPError) as ctx:
                client.fetch("https://registry.example.com/acme/tool/9.9.9.zip")
        finally:
            client.close()

        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.body, "no such release")

    def test_invalid_json_is_reported(self) -> None:
        client = _client(lambda request: httpx.Response(200, text="not json"))
        try:
            with self.assertRaisesRegex(WharfError, "Invalid JSON"):
                client.get_json("https://registry.example.com/acme/tool")
        finally:
            client.close()


class TestDownload(unittest.TestCase):
    def test_download_writes_destination(self) -> None:
        client = _client(lambda request: httpx.Response(200, content=b"PK\x03\x04data"))
        with tempfile.TemporaryDirectory() as tmp:
            dest = Path(tmp) / "nested" / "tool.zip"
            try:
                client.download("https://registry.example.com/acme/tool/1.0.0.zip", dest)
            finally:
                client.close()

            self.assertEqual(dest.read_bytes(), b"PK\x03\x04data")
            self.assertFalse(dest.with_name("tool.zip.part").exists())

    def test_failed_download_leaves_nothing_behind(self) -> None:
        client = _client(lambda request: httpx.Response(500, text="boom"))
        with tempfile.TemporaryDirectory() as tmp:
            dest = Path(tmp) / "tool.zip"
            try:
                with self.assertRaises(WharfHTTPError):
                    client.download("https://registry.example.com/acme/tool/1.0.0.zip", dest)
            finally:
                client.close()

            self.assertEqual(list(Path(tmp).iterdir()), [])


if __name__ == "__main__":
    unittest.main()
