from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .archiver import binary_artifact_checksum
from .client import WharfError, WharfHTTPError
from .config import Config, config_path, load_config, save_config
from .logs import setup_logging
from .models import (
    Added,
    PackageReference,
    PackageStateChange,
    Removed,
    Updated,
    describe_state,
)
from .versions import Version
from .workspace import Workspace


def _redact(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


def _parse_kv(s: str) -> tuple[str, str]:
    if "=" not in s:
        raise ValueError("Expected key=value")
    k, v = s.split("=", 1)
    return k.strip(), v.strip()


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    registry_url = getattr(args, "registry_url", None) or os.getenv("WHARF_REGISTRY_URL") or base.registry_url
    timeout_s = getattr(args, "timeout_s", None)
    if timeout_s is None:
        timeout_s = float(os.getenv("WHARF_TIMEOUT_S", base.timeout_s))
    max_workers = getattr(args, "jobs", None) or base.max_workers
    return replace(base, registry_url=registry_url, timeout_s=timeout_s, max_workers=max_workers)


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _change_kind(change: PackageStateChange) -> str:
    if isinstance(change, Added):
        return "added"
    if isinstance(change, Updated):
        return "updated"
    if isinstance(change, Removed):
        return "removed"
    return "unchanged"


def _change_rows(changes: list[tuple[PackageReference, PackageStateChange]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for package, change in changes:
        requirement = getattr(change, "requirement", None)
        out.append(
            {
                "package": package.identity,
                "location": package.location,
                "change": _change_kind(change),
                "requirement": str(requirement) if requirement is not None else None,
            }
        )
    return out


def _print_changes(changes: list[tuple[PackageReference, PackageStateChange]], *, as_json: bool) -> None:
    rows = _change_rows(changes)
    if as_json:
        print(json.dumps(rows, indent=2, sort_keys=True))
        return
    visible = [r for r in rows if r["change"] != "unchanged"]
    if not visible:
        print("Everything is already up-to-date.")
        return
    table = [["PACKAGE", "CHANGE", "REQUIREMENT"]]
    for r in visible:
        table.append([r["package"], r["change"], r["requirement"] or ""])
    _print_table(table)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="wharf",
        description="Resolve, materialize and pin the dependencies of a package workspace.",
    )
    p.add_argument("--version", action="version", version=f"wharf {__version__}")
    p.add_argument("--root", default=".", help="Root package directory (default: current directory)")
    p.add_argument("--config", dest="config_path", help="Config file path (overrides WHARF_CONFIG_PATH)")
    p.add_argument("--registry-url", help="Package registry base URL")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    p.add_argument("-j", "--jobs", type=int, help="Maximum parallel fetches")
    p.add_argument("--log-level", help="Log level (default: WARNING)")

    sub = p.add_subparsers(dest="cmd", required=True)

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (tokens redacted)")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--registry-url", dest="set_registry_url")
    cfg_set.add_argument("--timeout-s", dest="set_timeout_s", type=float)
    cfg_set.add_argument("--shared-cache-dir")
    cfg_set.add_argument("--host-triple")
    cfg_set.add_argument("--mirror", action="append", default=[], help="Mirror ORIGINAL=MIRROR (repeatable)")
    cfg_set.add_argument("--token", action="append", default=[], help="Bearer token HOST=TOKEN (repeatable)")

    res = sub.add_parser("resolve", help="Bring dependencies in line with the manifests")
    res.add_argument("--force", action="store_true", help="Run the resolver even if nothing changed")
    res.add_argument(
        "--resolved-file-only",
        action="store_true",
        help="Only materialize what wharf.resolved records; fail if it is out of date",
    )
    res.add_argument("--json", action="store_true", help="Output JSON")

    upd = sub.add_parser("update", help="Update dependencies, ignoring their pins")
    upd.add_argument("packages", nargs="*", help="Only update these packages")
    upd.add_argument("--dry-run", action="store_true", help="Show what would change")
    upd.add_argument("--json", action="store_true", help="Output JSON")

    pin = sub.add_parser("pin", help="Resolve with one dependency held at a version, branch or revision")
    pin.add_argument("package")
    g = pin.add_mutually_exclusive_group()
    g.add_argument("--version", dest="pin_version")
    g.add_argument("--branch")
    g.add_argument("--revision")
    pin.add_argument("--json", action="store_true", help="Output JSON")

    edit = sub.add_parser("edit", help="Put a dependency in edit mode")
    edit.add_argument("package")
    edit.add_argument("--path", help="Use an existing directory instead of Packages/<name>")
    edit.add_argument("--revision", help="Revision to check out")
    edit.add_argument("--branch", help="New branch to create")

    unedit = sub.add_parser("unedit", help="Take a dependency out of edit mode")
    unedit.add_argument("package")
    unedit.add_argument("--force", action="store_true", help="Discard uncommitted or unpushed changes")

    show = sub.add_parser("show-dependencies", help="List materialized dependencies")
    show.add_argument("--json", action="store_true", help="Output JSON")

    chk = sub.add_parser("compute-checksum", help="Checksum of a binary artifact archive")
    chk.add_argument("path")

    sub.add_parser("clean", help="Remove caches kept in the work directory")
    sub.add_parser("reset", help="Remove the work directory and all materialized dependencies")
    sub.add_parser("purge-cache", help="Forget parsed manifests")

    return p


def _workspace(args: argparse.Namespace) -> Workspace:
    cfg = _merge_cfg(load_config(args.config_path), args)
    return Workspace.create(Path(args.root), config=cfg)


def _root(args: argparse.Namespace) -> Path:
    return Path(args.root).expanduser().resolve()


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path(args.config_path)))
        return 0

    cfg = load_config(args.config_path)
    if args.subcmd == "show":
        d = dict(cfg.__dict__)
        d["tokens"] = {host: _redact(t) for host, t in cfg.tokens.items()}
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        mirrors = dict(cfg.mirrors)
        mirrors.update(_parse_kv(x) for x in args.mirror)
        tokens = dict(cfg.tokens)
        tokens.update(_parse_kv(x) for x in args.token)
        new_cfg = replace(
            cfg,
            registry_url=args.set_registry_url if args.set_registry_url is not None else cfg.registry_url,
            timeout_s=args.set_timeout_s if args.set_timeout_s is not None else cfg.timeout_s,
            shared_cache_dir=args.shared_cache_dir if args.shared_cache_dir is not None else cfg.shared_cache_dir,
            host_triple=args.host_triple if args.host_triple is not None else cfg.host_triple,
            mirrors=mirrors,
            tokens=tokens,
        )
        path = save_config(new_cfg, args.config_path)
        print(f"Saved config to {path}")
        return 0

    raise AssertionError("unreachable")


def _print_warnings(ws: Workspace, mark: int) -> None:
    for d in ws.diagnostics.since(mark):
        if d.severity == "warning":
            print(f"warning: {d}", file=sys.stderr)


def cmd_resolve(args: argparse.Namespace) -> int:
    ws = _workspace(args)
    mark = ws.diagnostics.mark()
    if args.resolved_file_only:
        manifests = ws.resolve_based_on_resolved_file(_root(args))
        _print_warnings(ws, mark)
        if args.json:
            print(json.dumps(sorted(manifests.required_packages), indent=2))
        else:
            print(f"Resolved {len(manifests.dependencies)} dependencies from {ws.location.resolved_file.name}.")
        return 0

    result = ws.resolve(_root(args), forced=args.force)
    _print_warnings(ws, mark)
    _print_changes(list(result.changes), as_json=args.json)
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    ws = _workspace(args)
    mark = ws.diagnostics.mark()
    changes = ws.update_dependencies(_root(args), packages=args.packages, dry_run=args.dry_run)
    _print_warnings(ws, mark)
    _print_changes(changes, as_json=args.json)
    return 0


def cmd_pin(args: argparse.Namespace) -> int:
    ws = _workspace(args)
    mark = ws.diagnostics.mark()
    version = Version.parse(args.pin_version) if args.pin_version else None
    result = ws.resolve_package(
        args.package,
        _root(args),
        version=version,
        branch=args.branch,
        revision=args.revision,
    )
    _print_warnings(ws, mark)
    _print_changes(list(result.changes), as_json=args.json)
    return 0


def cmd_edit(args: argparse.Namespace) -> int:
    ws = _workspace(args)
    mark = ws.diagnostics.mark()
    path = ws.edit(
        args.package,
        path=Path(args.path) if args.path else None,
        revision=args.revision,
        checkout_branch=args.branch,
    )
    _print_warnings(ws, mark)
    print(f"Editing {args.package} at {path}")
    return 0


def cmd_unedit(args: argparse.Namespace) -> int:
    ws = _workspace(args)
    ws.unedit(args.package, force_remove=args.force, root=_root(args))
    print(f"Stopped editing {args.package}")
    return 0


def cmd_show_dependencies(args: argparse.Namespace) -> int:
    ws = _workspace(args)
    deps = sorted(ws.state.dependencies, key=lambda d: d.identity)
    if args.json:
        out = [
            {
                "package": d.identity,
                "location": d.package_ref.location,
                "state": describe_state(d.state),
                "path": str(ws.location.path_to(d)),
            }
            for d in deps
        ]
        print(json.dumps(out, indent=2, sort_keys=True))
        return 0

    rows = [["NAME", "STATE", "PATH"]]
    for d in deps:
        rows.append([d.identity, describe_state(d.state), str(ws.location.path_to(d))])
    _print_table(rows)
    return 0


def cmd_compute_checksum(args: argparse.Namespace) -> int:
    print(binary_artifact_checksum(Path(args.path).expanduser()))
    return 0


def cmd_housekeeping(args: argparse.Namespace) -> int:
    ws = _workspace(args)
    if args.cmd == "clean":
        ws.clean()
    elif args.cmd == "reset":
        ws.reset()
    else:
        ws.purge_cache()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config_path)
        setup_logging(args.log_level or cfg.log_level, cfg.log_format)
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "resolve":
            return cmd_resolve(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd == "pin":
            return cmd_pin(args)
        if args.cmd == "edit":
            return cmd_edit(args)
        if args.cmd == "unedit":
            return cmd_unedit(args)
        if args.cmd == "show-dependencies":
            return cmd_show_dependencies(args)
        if args.cmd == "compute-checksum":
            return cmd_compute_checksum(args)
        if args.cmd in ("clean", "reset", "purge-cache"):
            return cmd_housekeeping(args)
        raise AssertionError("unreachable")
    except WharfHTTPError as e:
        print(f"error: HTTP {e.status_code} for {e.url}", file=sys.stderr)
        return 1
    except (WharfError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
