from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .command import run_cmd
from .errors import DriftDetected, NotRegularFile, OutsideRoot, ProposalCorrupted
from .guard import PathGuard
from .hashing import sha256_file, sha256_text
from .proposals import Proposal, ProposalStore, proposal_id as compute_proposal_id
from .storage import atomic_write_bytes

logger = logging.getLogger(__name__)

NEW_FILE_MODE = 0o644


@dataclass(frozen=True)
class ApplyResult:
    id: str
    path: str
    method: str  # "git" | "atomic" | "noop" | "dry-run"
    diff: str = ""


def git_toplevel(directory: str | Path) -> Optional[Path]:
    """Top of the git working tree containing ``directory``, or None."""
    res = run_cmd(["git", "-C", str(directory), "rev-parse", "--is-inside-work-tree"])
    if not res.ok or res.stdout.strip() != "true":
        return None
    top = run_cmd(["git", "-C", str(directory), "rev-parse", "--show-toplevel"])
    if not top.ok or not top.stdout.strip():
        return None
    return Path(top.stdout.strip())


def _git_patch_text(proposal: Proposal, name: str) -> str:
    # Re-head the stored diff with paths relative to the git toplevel.
    body = proposal.diff.split("\n", 2)[2] if proposal.diff.count("\n") >= 2 else ""
    old_name = "/dev/null" if proposal.is_new_file else name
    return f"--- {old_name}\n+++ {name}\n{body}"


def _try_git_apply(guard: PathGuard, proposal: Proposal, target: Path) -> bool:
    top = git_toplevel(guard.root)
    if top is None:
        return False
    try:
        name = target.relative_to(top.resolve()).as_posix()
    except ValueError:
        return False

    res = run_cmd(
        ["git", "-C", str(top), "apply", "-p0", "--unidiff-zero", "--whitespace=nowarn", "-"],
        input_text=_git_patch_text(proposal, name),
    )
    if not res.ok:
        logger.debug("git apply failed for %s, falling back: %s", name, res.stderr.strip())
        return False

    # A partially applied or fuzzed patch counts as a failure.
    if not target.is_file() or sha256_file(target) != proposal.content_hash:
        logger.debug("git apply produced unexpected content for %s, falling back", name)
        return False
    return True


def _current_hash(target: Path, rel: str) -> str:
    if not target.exists():
        return ""
    if not target.is_file():
        raise NotRegularFile(f"not a regular file: {rel}", path=rel)
    return sha256_file(target)


def _check_record(proposal: Proposal) -> None:
    if sha256_text(proposal.content) != proposal.content_hash:
        raise ProposalCorrupted(f"proposal content does not match its hash: {proposal.id}", path=proposal.rel_path)
    expected = compute_proposal_id(proposal.path, proposal.is_new_file, proposal.base_hash, proposal.content_hash)
    if expected != proposal.id:
        raise ProposalCorrupted(f"proposal id does not match its fields: {proposal.id}", path=proposal.rel_path)


def apply_proposal(
    guard: PathGuard,
    store: ProposalStore,
    proposal_id: str,
    *,
    prefer_git: bool = True,
    dry_run: bool = False,
) -> ApplyResult:
    """Commit a staged proposal to disk.

    Refuses with DriftDetected when the target no longer matches the state the
    proposal was staged against. This function MUTATES the filesystem unless
    ``dry_run`` is set.
    """

    with store.lock_for(proposal_id):
        proposal = store.load(proposal_id)
        _check_record(proposal)

        target = guard.resolve(proposal.rel_path)
        guard.check_writable(target, proposal.rel_path)
        if str(target) != proposal.path:
            raise OutsideRoot(
                f"proposal target no longer resolves to the staged path: {proposal.rel_path}",
                path=proposal.rel_path,
            )

        current = _current_hash(target, proposal.rel_path)
        if current and current == proposal.content_hash:
            logger.info("Proposal %s already applied to %s", proposal.id[:12], proposal.rel_path)
            return ApplyResult(id=proposal.id, path=str(target), method="noop")

        if current != proposal.base_hash:
            logger.warning(
                "Drift on %s: expected %s, found %s",
                proposal.rel_path,
                proposal.base_hash[:16] or "<absent>",
                current[:16] or "<absent>",
            )
            raise DriftDetected(proposal.rel_path, expected_hash=proposal.base_hash, actual_hash=current)

        if dry_run:
            return ApplyResult(id=proposal.id, path=str(target), method="dry-run", diff=proposal.diff)

        if prefer_git and _try_git_apply(guard, proposal, target):
            logger.info("Applied proposal %s to %s via git apply", proposal.id[:12], proposal.rel_path)
            return ApplyResult(id=proposal.id, path=str(target), method="git")

        mode = NEW_FILE_MODE
        if target.exists():
            mode = stat.S_IMODE(os.stat(target).st_mode)
        target.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_bytes(target, proposal.content.encode("utf-8"), mode=mode)

        logger.info("Applied proposal %s to %s", proposal.id[:12], proposal.rel_path)
        return ApplyResult(id=proposal.id, path=str(target), method="atomic")
