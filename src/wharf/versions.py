from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import total_ordering

from .client import WharfError

_VERSION_RE = re.compile(
    r"^v?(?P<main>[0-9]+(?:\.[0-9]+){0,2})(?:-(?P<pre>[0-9A-Za-z.\-]+))?(?:\+(?P<build>[0-9A-Za-z.\-]+))?$"
)
_COMPARATOR_RE = re.compile(r"^(>=|<=|>|<|==|=)?\s*(v?[0-9A-Za-z][0-9A-Za-z.\-+]*)$")


def _compare_prerelease(pa: tuple[str, ...], pb: tuple[str, ...]) -> int:
    if not pa and not pb:
        return 0
    # A release sorts after any of its pre-releases.
    if not pa:
        return 1
    if not pb:
        return -1
    for i in range(max(len(pa), len(pb))):
        if i >= len(pa):
            return -1
        if i >= len(pb):
            return 1
        x = pa[i]
        y = pb[i]
        x_num = x.isdigit()
        y_num = y.isdigit()
        if x_num and y_num:
            if int(x) != int(y):
                return -1 if int(x) < int(y) else 1
            continue
        if x_num != y_num:
            return -1 if x_num else 1
        if x != y:
            return -1 if x < y else 1
    return 0


@total_ordering
@dataclass(frozen=True)
class Version:
    major: int
    minor: int = 0
    patch: int = 0
    prerelease: tuple[str, ...] = ()
    build: tuple[str, ...] = field(default=(), compare=False)

    @classmethod
    def parse(cls, value: str) -> "Version":
        if not isinstance(value, str):
            raise ValueError("version must be str")
        m = _VERSION_RE.match(value.strip())
        if not m:
            raise ValueError(f"Unsupported version format: {value!r}")
        nums = [int(p) for p in m.group("main").split(".")]
        while len(nums) < 3:
            nums.append(0)
        pre = tuple(p for p in (m.group("pre") or "").split(".") if p)
        build = tuple(p for p in (m.group("build") or "").split(".") if p)
        return cls(nums[0], nums[1], nums[2], pre, build)

    @classmethod
    def from_tag(cls, tag: str) -> "Version | None":
        try:
            return cls.parse(tag)
        except ValueError:
            return None

    def __str__(self) -> str:
        out = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            out += "-" + ".".join(self.prerelease)
        if self.build:
            out += "+" + ".".join(self.build)
        return out

    def _compare(self, other: "Version") -> int:
        a = (self.major, self.minor, self.patch)
        b = (other.major, other.minor, other.patch)
        if a != b:
            return -1 if a < b else 1
        return _compare_prerelease(self.prerelease, other.prerelease)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._compare(other) < 0


def compare_versions(a: str | Version, b: str | Version) -> int:
    va = a if isinstance(a, Version) else Version.parse(a)
    vb = b if isinstance(b, Version) else Version.parse(b)
    return va._compare(vb)


def _expand_caret(token: str) -> list[str]:
    base = Version.parse(token[1:].strip())
    lower = f">={base}"
    if base.major > 0:
        upper = f"<{base.major + 1}.0.0"
    elif base.minor > 0:
        upper = f"<0.{base.minor + 1}.0"
    else:
        upper = f"<0.0.{base.patch + 1}"
    return [lower, upper]


def _expand_tilde(token: str) -> list[str]:
    base = Version.parse(token[1:].strip())
    return [f">={base}", f"<{base.major}.{base.minor + 1}.0"]


def split_specifier(specifier: str) -> list[str]:
    s = specifier.strip().replace(",", " ")
    tokens = [t for t in s.split() if t]
    if not tokens:
        return ["*"]
    out: list[str] = []
    for token in tokens:
        if token.startswith(("^", "~")):
            try:
                out.extend(_expand_caret(token) if token[0] == "^" else _expand_tilde(token))
            except ValueError as e:
                raise WharfError(f"Invalid version requirement: {token!r}") from e
            continue
        out.append(token)
    return out


def version_satisfies(version: str | Version, specifier: str) -> bool:
    v = version if isinstance(version, Version) else Version.parse(version)
    for token in split_specifier(specifier):
        if token.lower() in ("latest", "*"):
            continue

        m = _COMPARATOR_RE.match(token)
        if not m:
            raise WharfError(f"Invalid version requirement: {token!r}")

        op = m.group(1) or "="
        try:
            cmp = compare_versions(v, m.group(2))
        except ValueError as e:
            raise WharfError(f"Invalid version requirement: {token!r}") from e

        if op in ("=", "==") and cmp != 0:
            return False
        if op == ">" and cmp <= 0:
            return False
        if op == ">=" and cmp < 0:
            return False
        if op == "<" and cmp >= 0:
            return False
        if op == "<=" and cmp > 0:
            return False
    return True


def exact_version(specifier: str) -> Version | None:
    tokens = split_specifier(specifier)
    if len(tokens) != 1:
        return None
    m = _COMPARATOR_RE.match(tokens[0])
    if not m or (m.group(1) or "=") not in ("=", "=="):
        return None
    return Version.from_tag(m.group(2))
