from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog

from .config import DependencyMirrors
from .errors import InternalError
from .fsutil import read_json, write_json_atomic
from .models import (
    REMOTE_SOURCE_CONTROL,
    ManagedDependency,
    PackageReference,
    Pin,
    PinBranch,
    PinRevision,
    PinState,
    PinVersion,
    identity_from_location,
    pin_state_for,
)
from .versions import Version

# Root manifests at or above this tools version get the identity-keyed layout.
PINS_V2_TOOLS_VERSION = Version(1, 2, 0)

log = structlog.get_logger("wharf.pins")


def _state_to_json(state: PinState) -> dict[str, Any]:
    if isinstance(state, PinVersion):
        out: dict[str, Any] = {"version": str(state.version)}
        if state.revision is not None:
            out["revision"] = state.revision
        return out
    if isinstance(state, PinBranch):
        return {"branch": state.name, "revision": state.revision}
    return {"revision": state.revision}


def _state_from_json(raw: dict[str, Any]) -> PinState:
    if raw.get("version"):
        return PinVersion(Version.parse(str(raw["version"])), raw.get("revision"))
    if raw.get("branch"):
        return PinBranch(str(raw["branch"]), str(raw["revision"]))
    if raw.get("revision"):
        return PinRevision(str(raw["revision"]))
    raise InternalError(f"invalid pin state {raw!r}")


class PinsStore:
    """The `wharf.resolved` file: one pin per identity, saved atomically."""

    def __init__(self, path: Path, *, mirrors: DependencyMirrors | None = None) -> None:
        self.path = path
        self.mirrors = mirrors or DependencyMirrors()
        self._pins: dict[str, Pin] = {}
        self.load()

    @property
    def pins(self) -> dict[str, Pin]:
        return dict(self._pins)

    def __len__(self) -> int:
        return len(self._pins)

    def __contains__(self, identity: object) -> bool:
        return identity in self._pins

    def get(self, identity: str) -> Pin | None:
        return self._pins.get(identity)

    def load(self) -> dict[str, Pin]:
        raw = read_json(self.path)
        self._pins = {}
        if raw is None:
            return self.pins
        if not isinstance(raw, dict):
            raise InternalError(f"invalid pins file at {self.path}")
        version = raw.get("version")
        if version == 1:
            for item in (raw.get("object") or {}).get("pins") or []:
                url = self.mirrors.effective_url(str(item["repositoryURL"]))
                ref = PackageReference(identity_from_location(url), REMOTE_SOURCE_CONTROL, url)
                self._pins[ref.identity] = Pin(ref, _state_from_json(item["state"]))
        elif version == 2:
            for item in raw.get("pins") or []:
                ref = PackageReference.from_json(item)
                if ref.kind == REMOTE_SOURCE_CONTROL:
                    ref = PackageReference(ref.identity, ref.kind, self.mirrors.effective_url(ref.location))
                self._pins[ref.identity] = Pin(ref, _state_from_json(item["state"]))
        else:
            raise InternalError(f"unsupported pins file version {version!r} at {self.path}")
        return self.pins

    def pin(self, dependency: ManagedDependency) -> None:
        state = pin_state_for(dependency)
        if state is None:
            return
        self.pin_reference(dependency.package_ref, state)

    def pin_reference(self, package_ref: PackageReference, state: PinState) -> None:
        self._pins[package_ref.identity] = Pin(package_ref, state)

    def unpin_all(self) -> None:
        self._pins.clear()

    def _original_location(self, ref: PackageReference) -> str:
        if ref.kind == REMOTE_SOURCE_CONTROL:
            return self.mirrors.original_url(ref.location) or ref.location
        return ref.location

    def save(self, tools_version: Version) -> None:
        if not self._pins:
            if self.path.exists():
                self.path.unlink()
                log.info("pins_file_removed", path=str(self.path))
            return

        pins = [self._pins[k] for k in sorted(self._pins)]
        # The v1 layout only knows remote repositories.
        legacy = all(p.package_ref.kind == REMOTE_SOURCE_CONTROL for p in pins)
        if tools_version < PINS_V2_TOOLS_VERSION and legacy:
            payload: dict[str, Any] = {
                "version": 1,
                "object": {
                    "pins": [
                        {
                            "package": p.package_ref.identity,
                            "repositoryURL": self._original_location(p.package_ref),
                            "state": _state_to_json(p.state),
                        }
                        for p in pins
                    ]
                },
            }
        else:
            payload = {
                "version": 2,
                "pins": [
                    {
                        "identity": p.package_ref.identity,
                        "kind": p.package_ref.kind,
                        "location": self._original_location(p.package_ref),
                        "state": _state_to_json(p.state),
                    }
                    for p in pins
                ],
            }
        write_json_atomic(self.path, payload)
        log.info("pins_saved", path=str(self.path), count=len(pins), format=payload["version"])
