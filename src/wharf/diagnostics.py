from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

import structlog

from .client import WharfError
from .errors import DiagnosedError, InternalError

ERROR = "error"
WARNING = "warning"
INFO = "info"

log = structlog.get_logger("wharf.diagnostics")


@dataclass(frozen=True)
class Diagnostic:
    severity: str
    message: str
    package: str | None = None

    def __str__(self) -> str:
        if self.package:
            return f"{self.package}: {self.message}"
        return self.message


class Diagnostics:
    """Thread-safe collector of user-facing errors and warnings, mirrored to the log."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[Diagnostic] = []

    def emit(self, severity: str, message: str, *, package: str | None = None, **context: Any) -> None:
        record = Diagnostic(severity=severity, message=message, package=package)
        with self._lock:
            self._records.append(record)
        log_method = {ERROR: log.error, WARNING: log.warning}.get(severity, log.info)
        log_method(message, package=package, **context)

    def error(self, message: str, *, package: str | None = None, **context: Any) -> None:
        self.emit(ERROR, message, package=package, **context)

    def warning(self, message: str, *, package: str | None = None, **context: Any) -> None:
        self.emit(WARNING, message, package=package, **context)

    def info(self, message: str, *, package: str | None = None, **context: Any) -> None:
        self.emit(INFO, message, package=package, **context)

    @property
    def records(self) -> tuple[Diagnostic, ...]:
        with self._lock:
            return tuple(self._records)

    def mark(self) -> int:
        """Position to pass to `since` so an operation only looks at its own records."""
        with self._lock:
            return len(self._records)

    def since(self, mark: int) -> tuple[Diagnostic, ...]:
        with self._lock:
            return tuple(self._records[mark:])

    @property
    def errors(self) -> tuple[Diagnostic, ...]:
        return tuple(r for r in self.records if r.severity == ERROR)

    @property
    def warnings(self) -> tuple[Diagnostic, ...]:
        return tuple(r for r in self.records if r.severity == WARNING)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @contextmanager
    def trap(self, *, package: str | None = None) -> Iterator[None]:
        """Record a recoverable failure as an error diagnostic instead of propagating it."""
        try:
            yield
        except InternalError:
            raise
        except (WharfError, OSError) as e:
            self.error(str(e), package=package)

    def raise_if_errors(self, since: int = 0) -> None:
        errors = [r for r in self.since(since) if r.severity == ERROR]
        if errors:
            raise DiagnosedError(str(e) for e in errors)
