from __future__ import annotations

import hashlib
import os
import shutil
import zipfile
from pathlib import Path
from typing import Protocol

from .client import WharfError

ARCHIVE_EXTENSIONS = (".zip",)
_CHUNK = 1024 * 1024


class Archiver(Protocol):
    supported_extensions: tuple[str, ...]

    def extract(self, archive: Path, destination: Path) -> None:
        ...


def is_archive(path: Path, extensions: tuple[str, ...] = ARCHIVE_EXTENSIONS) -> bool:
    return path.suffix.lower() in extensions


def compute_checksum(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def binary_artifact_checksum(path: Path) -> str:
    if not path.is_file():
        raise WharfError(f"file not found at path: {path}")
    if not is_archive(path):
        raise WharfError(
            f"unexpected file type; supported extensions are: {', '.join(ARCHIVE_EXTENSIONS)}"
        )
    return compute_checksum(path)


class ZipArchiver:
    supported_extensions = ARCHIVE_EXTENSIONS

    def extract(self, archive: Path, destination: Path) -> None:
        destination.mkdir(parents=True, exist_ok=True)
        base = destination.resolve()
        try:
            zf = zipfile.ZipFile(archive, "r")
        except (OSError, zipfile.BadZipFile) as e:
            raise WharfError(f"Could not open archive {archive}: {e}") from e
        with zf:
            for info in zf.infolist():
                name = info.filename
                if not name:
                    continue
                if name.startswith("/"):
                    raise WharfError(f"Archive contains an absolute path entry: {name!r}")
                target = (destination / name).resolve()
                if not str(target).startswith(str(base) + os.sep) and target != base:
                    raise WharfError(f"Archive contains an invalid path entry: {name!r}")

                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info, "r") as src, target.open("wb") as out:
                    shutil.copyfileobj(src, out)
