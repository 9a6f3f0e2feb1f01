from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import httpx

from ._version import __version__

DEFAULT_TIMEOUT_S = 30.0


class WharfError(RuntimeError):
    pass


@dataclass(frozen=True)
class WharfHTTPError(WharfError):
    status_code: int
    body: str
    url: str = ""

    def __str__(self) -> str:  # pragma: no cover
        if self.url:
            return f"HTTP {self.status_code} for {self.url}: {self.body}"
        return f"HTTP {self.status_code}: {self.body}"


def _host(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    return parts.hostname.lower() if parts.hostname else None


class HTTPClient:
    """
    Thin httpx wrapper shared by the registry client and the binary artifact downloader.

    Bearer tokens are configured per host and only attached to requests for that host;
    httpx drops the Authorization header itself when a redirect leaves the origin.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        tokens: dict[str, str] | None = None,
        default_headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self._tokens = {k.lower(): v for k, v in (tokens or {}).items() if v}
        self._default_headers = {"User-Agent": f"wharf/{__version__}"}
        self._default_headers.update(default_headers or {})
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "HTTPClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _headers_for(self, url: str, headers: dict[str, str] | None) -> dict[str, str]:
        req_headers = dict(self._default_headers)
        if headers:
            req_headers.update(headers)
        host = _host(url)
        token = self._tokens.get(host) if host else None
        if token:
            req_headers["Authorization"] = f"Bearer {token}"
        return req_headers

    def request(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            resp = self._http.request(
                method.upper(),
                url,
                params=params,
                headers=self._headers_for(url, headers),
            )
        except httpx.HTTPError as e:
            raise WharfError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise WharfHTTPError(resp.status_code, resp.text, url)
        return resp

    def get_json(self, url: str, *, headers: dict[str, str] | None = None) -> Any:
        resp = self.request(method="GET", url=url, headers={"Accept": "application/json", **(headers or {})})
        try:
            return resp.json()
        except ValueError as e:
            raise WharfError(f"Invalid JSON response from {url}: {e}") from e

    def fetch(self, url: str, *, headers: dict[str, str] | None = None) -> bytes:
        return self.request(method="GET", url=url, headers=headers).content

    def download(self, url: str, destination: Path, *, headers: dict[str, str] | None = None) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp = destination.with_name(destination.name + ".part")
        try:
            with self._http.stream("GET", url, headers=self._headers_for(url, headers)) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    raise WharfHTTPError(resp.status_code, resp.text, url)
                with tmp.open("wb") as out:
                    for chunk in resp.iter_bytes():
                        out.write(chunk)
        except httpx.HTTPError as e:
            tmp.unlink(missing_ok=True)
            raise WharfError(f"Download of {url} failed: {e}") from e
        except WharfError:
            tmp.unlink(missing_ok=True)
            raise
        tmp.replace(destination)
