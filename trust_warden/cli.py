from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .audit import AuditLogger
from .config import WardenConfig, load_config
from .diagnose import Issue, exit_code_for, issue_from_dict
from .dispatch import (
    ApplyRequest,
    Dispatcher,
    ListRequest,
    ProposeRequest,
    ReadRequest,
    RestoreRequest,
    VerifyRequest,
)
from .errors import RestoreError, WardenError
from .guard import PathGuard
from .integrity import IntegrityDiagnostic, repair_targets
from .logging_utils import configure_logging, level_from_name
from .manifest import build_reference_bundle
from .proposals import ProposalStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Context:
    cfg: WardenConfig
    guard: PathGuard
    store: ProposalStore
    integrity: IntegrityDiagnostic
    dispatcher: Dispatcher


def _context_from_args(args: argparse.Namespace) -> Context:
    root = PathGuard.from_path(args.root).root
    cfg = load_config(root, args.config)
    protected = [cfg.state_dir, cfg.proposals_dir, cfg.manifest_path, cfg.tarball_path]
    if args.config:
        protected.append(args.config)
    guard = PathGuard.from_path(root, protected=protected)
    level = logging.DEBUG if args.verbose else level_from_name(cfg.log_level)
    configure_logging(str(cfg.log_path), level=level, also_console=bool(args.verbose))

    store = ProposalStore(cfg.proposals_dir)
    integrity = IntegrityDiagnostic(cfg.manifest_path, guard.root)
    audit = AuditLogger(path=cfg.audit_log, enabled=cfg.audit_enabled)
    dispatcher = Dispatcher(guard, store, integrity, audit=audit, prefer_git=cfg.prefer_git_apply)
    return Context(cfg=cfg, guard=guard, store=store, integrity=integrity, dispatcher=dispatcher)


def _print_issues(issues: List[Issue]) -> None:
    marks = {"ok": "✔", "warn": "!", "error": "✖", "fatal": "✖"}
    for issue in issues:
        print(f"{marks.get(issue.severity.value, '-')} [{issue.code}] {issue.message}")
        if issue.strategy:
            print(f"    → {issue.strategy}")


def _emit(data: Dict[str, Any], fmt: str) -> None:
    if fmt == "json":
        print(json.dumps(data, indent=2, sort_keys=True))
    else:
        import yaml

        sys.stdout.write(yaml.safe_dump(data, sort_keys=False))


def cmd_read(args: argparse.Namespace) -> int:
    ctx = _context_from_args(args)
    out = ctx.dispatcher.dispatch(ReadRequest(path=args.path))
    txt = out["content"]
    sys.stdout.write(txt)
    if txt and not txt.endswith("\n"):
        sys.stdout.write("\n")
    return 0


def cmd_ls(args: argparse.Namespace) -> int:
    ctx = _context_from_args(args)
    out = ctx.dispatcher.dispatch(ListRequest(path=args.path))
    for e in out["entries"]:
        if not args.all and e["name"].startswith("."):
            continue
        print(e["name"] + ("/" if e["is_dir"] else ""))
    return 0


def cmd_propose(args: argparse.Namespace) -> int:
    ctx = _context_from_args(args)
    if args.file:
        with open(args.file, "r", encoding="utf-8") as f:
            content = f.read()
    else:
        content = sys.stdin.read()
    out = ctx.dispatcher.dispatch(ProposeRequest(path=args.path, content=content))
    sys.stdout.write(out["diff"])
    print(f"proposal: {out['id']}")
    return 0


def cmd_proposals(args: argparse.Namespace) -> int:
    ctx = _context_from_args(args)
    for p in ctx.store.list():
        kind = "new" if p.is_new_file else "update"
        print(f"{p.id[:16]}  {p.generated_at}  {kind:6}  {p.rel_path}")
    return 0


def cmd_apply(args: argparse.Namespace) -> int:
    ctx = _context_from_args(args)
    out = ctx.dispatcher.dispatch(ApplyRequest(id=args.id, dry_run=bool(args.dry_run)))
    if out["method"] == "dry-run":
        print("dry-run enabled; no changes applied")
        sys.stdout.write(out["diff"])
    elif out["method"] == "noop":
        print("already applied")
    else:
        print(f"applied successfully ({out['method']})")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    ctx = _context_from_args(args)
    out = ctx.dispatcher.dispatch(VerifyRequest())
    issues = [issue_from_dict(i) for i in out["issues"]]
    if args.format == "human":
        _print_issues(issues)
    else:
        _emit(out, args.format)
    return exit_code_for(issues)


def _confirm() -> bool:
    try:
        answer = input("Proceed with execution? Type 'yes' to continue: ")
    except EOFError:
        return False
    return answer.strip() == "yes"


def cmd_heal(args: argparse.Namespace) -> int:
    ctx = _context_from_args(args)
    dry_run = ctx.cfg.dry_run and not args.execute
    print(f"Heal mode: {'DRY-RUN' if dry_run else 'EXECUTE'}")

    try:
        _, result = ctx.integrity.plan_repair()
    except WardenError as e:
        print(f"Integrity repair unavailable: {e}")
        return 2

    targets = repair_targets(result)
    if not targets:
        print("✔ nothing to repair")
        return 0

    print("Integrity restore plan (dry-run):" if dry_run else "Integrity restore plan:")
    for path in targets:
        print(f" - restore {path}")
    if dry_run:
        return 0

    if not args.yes and not _confirm():
        print("Aborted.")
        return 0

    try:
        out = ctx.dispatcher.dispatch(RestoreRequest(paths=tuple(targets)))
    except RestoreError as e:
        print(f"✖ integrity restore failed: {e}")
        if e.restored:
            print(f"  restored before failure: {', '.join(e.restored)}")
        return 3
    print(f"✔ restored {out['count']} source files from tarball")

    report = ctx.integrity.run()
    _print_issues(report.issues)
    return exit_code_for(report.issues)


def cmd_manifest(args: argparse.Namespace) -> int:
    ctx = _context_from_args(args)
    manifest = build_reference_bundle(
        ctx.guard.root,
        manifest_path=ctx.cfg.manifest_path,
        tarball_path=ctx.cfg.tarball_path,
        include=args.include or ctx.cfg.manifest_include,
        skip_dirs=ctx.cfg.manifest_skip_dirs,
    )
    print(f"Generated source tarball: {ctx.cfg.tarball_path}")
    print(f"Generated manifest: {ctx.cfg.manifest_path} ({len(manifest.files)} files)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="trust-warden")
    p.add_argument("--root", default=".", help="Sandbox root (default: current directory)")
    p.add_argument("--config", default=None, help="YAML config (defaults to <root>/.warden/config.yaml)")
    p.add_argument("-v", "--verbose", action="store_true", help="Log to the console at DEBUG level")

    sub = p.add_subparsers(dest="subcmd", required=True)

    sp = sub.add_parser("read", help="Print a file inside the root")
    sp.add_argument("path")
    sp.set_defaults(func=cmd_read)

    sp = sub.add_parser("ls", help="List a directory inside the root")
    sp.add_argument("path", nargs="?", default=".")
    sp.add_argument("-a", "--all", action="store_true", help="Include dotfiles")
    sp.set_defaults(func=cmd_ls)

    sp = sub.add_parser("propose", help="Stage a write proposal (content from stdin)")
    sp.add_argument("path")
    sp.add_argument("--file", default=None, help="Read proposed content from this file instead of stdin")
    sp.set_defaults(func=cmd_propose)

    sp = sub.add_parser("proposals", help="List staged proposals")
    sp.set_defaults(func=cmd_proposals)

    sp = sub.add_parser("apply", help="Apply a staged proposal by id")
    sp.add_argument("id")
    sp.add_argument("--dry-run", action="store_true", help="Run all checks and print the diff only")
    sp.set_defaults(func=cmd_apply)

    sp = sub.add_parser("verify", help="Verify tracked files against the integrity manifest")
    sp.add_argument("--format", choices=["human", "json", "yaml"], default="human")
    sp.set_defaults(func=cmd_verify)

    sp = sub.add_parser("heal", help="Restore missing or modified tracked files (dry-run by default)")
    sp.add_argument("--execute", action="store_true", help="Actually restore files")
    sp.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    sp.set_defaults(func=cmd_heal)

    sp = sub.add_parser("manifest", help="Generate the reference tarball and integrity manifest")
    sp.add_argument("--include", action="append", default=None, help="Glob of files to track (repeatable)")
    sp.set_defaults(func=cmd_manifest)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    try:
        return int(args.func(args))
    except KeyboardInterrupt:
        return 130
    except (WardenError, OSError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
