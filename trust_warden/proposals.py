from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import NoChangeProposed, NotRegularFile, ProposalCorrupted, ProposalNotFound
from .guard import PathGuard
from .hashing import sha256_bytes, sha256_text
from .storage import load_record, save_record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Proposal:
    """A staged, content-addressed write intent. Creating one never touches the target."""

    id: str
    path: str  # absolute, resolved through the guard
    rel_path: str  # root-relative, used for display and re-resolution
    is_new_file: bool
    base_hash: str
    content_hash: str
    content: str
    diff: str
    generated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Proposal":
        try:
            return cls(
                id=str(raw["id"]),
                path=str(raw["path"]),
                rel_path=str(raw.get("rel_path") or raw["path"]),
                is_new_file=bool(raw.get("is_new_file", False)),
                base_hash=str(raw.get("base_hash") or ""),
                content_hash=str(raw["content_hash"]),
                content=str(raw.get("content") or ""),
                diff=str(raw.get("diff") or ""),
                generated_at=str(raw.get("generated_at") or ""),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ProposalCorrupted(f"malformed proposal record: missing or invalid {e}") from e

    def summary(self) -> Dict[str, Any]:
        """Result map handed back to the tool dispatcher (content omitted)."""
        d = self.to_dict()
        d.pop("content")
        return d


def proposal_id(path: str, is_new_file: bool, base_hash: str, content_hash: str) -> str:
    raw = "|".join([path, "1" if is_new_file else "0", base_hash, content_hash])
    return sha256_text(raw)


def _split_lines(text: str) -> List[str]:
    if not text:
        return []
    lines = text.split("\n")
    if text.endswith("\n"):
        lines = lines[:-1]
    return lines


def unified_diff(old_text: str, new_text: str, old_name: str, new_name: str) -> str:
    """Full-replacement diff: every old line removed, every new line added.

    Reviewers always see the whole before and after, never a minimal edit
    script.
    """
    old_lines = _split_lines(old_text)
    new_lines = _split_lines(new_text)

    out = [f"--- {old_name}", f"+++ {new_name}"]
    old_start = 1 if old_lines else 0
    new_start = 1 if new_lines else 0
    out.append(f"@@ -{old_start},{len(old_lines)} +{new_start},{len(new_lines)} @@")
    for ln in old_lines:
        out.append("-" + ln)
    if old_lines and not old_text.endswith("\n"):
        out.append("\\ No newline at end of file")
    for ln in new_lines:
        out.append("+" + ln)
    if new_lines and not new_text.endswith("\n"):
        out.append("\\ No newline at end of file")
    return "\n".join(out) + "\n"


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_ts(ts: str) -> Optional[datetime]:
    for fmt in ("%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(ts, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


class ProposalStore:
    """Directory of ``<id>.json`` proposal records."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        # Entries vanish once no caller holds the lock object.
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def lock_for(self, proposal_id: str) -> threading.Lock:
        """Per-id lock for embedders that read-then-write records concurrently."""
        with self._locks_guard:
            lock = self._locks.get(proposal_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[proposal_id] = lock
            return lock

    def record_path(self, proposal_id: str) -> Path:
        # Ids are hex digests; anything else could name a file outside the store.
        if not proposal_id or not all(c in "0123456789abcdef" for c in proposal_id):
            raise ProposalNotFound(proposal_id)
        return self.directory / f"{proposal_id}.json"

    def save(self, proposal: Proposal) -> Path:
        p = self.record_path(proposal.id)
        save_record(p, proposal.to_dict())
        return p

    def load(self, proposal_id: str) -> Proposal:
        p = self.record_path(proposal_id)
        if not p.exists():
            raise ProposalNotFound(proposal_id)
        return self._read(p)

    @staticmethod
    def _read(p: Path) -> Proposal:
        try:
            raw = load_record(p)
        except ValueError as e:
            raise ProposalCorrupted(f"unreadable proposal record {p.name}: {e}", path=str(p)) from e
        return Proposal.from_dict(raw)

    def exists(self, proposal_id: str) -> bool:
        try:
            return self.record_path(proposal_id).exists()
        except ProposalNotFound:
            return False

    def remove(self, proposal_id: str) -> None:
        p = self.record_path(proposal_id)
        if not p.exists():
            raise ProposalNotFound(proposal_id)
        p.unlink()

    def list(self) -> List[Proposal]:
        if not self.directory.is_dir():
            return []
        out: List[Proposal] = []
        for p in sorted(self.directory.glob("*.json")):
            try:
                out.append(self._read(p))
            except ProposalCorrupted as e:
                logger.warning("Skipping corrupt proposal record %s: %s", p.name, e)
        out.sort(key=lambda pr: pr.generated_at, reverse=True)
        return out

    def prune(self, older_than: timedelta) -> List[str]:
        """Delete proposals generated more than ``older_than`` ago. Returns removed ids."""
        cutoff = datetime.now(timezone.utc) - older_than
        removed: List[str] = []
        for pr in self.list():
            ts = _parse_ts(pr.generated_at)
            if ts is not None and ts < cutoff:
                self.remove(pr.id)
                removed.append(pr.id)
        if removed:
            logger.info("Pruned %d abandoned proposals", len(removed))
        return removed


def propose(guard: PathGuard, store: ProposalStore, path: str, content: str) -> Proposal:
    """Stage a write of ``content`` to ``path``. The target file is never modified."""

    resolved = guard.resolve(path)
    guard.check_writable(resolved, path)

    base = b""
    is_new = True
    if resolved.exists():
        if not resolved.is_file():
            raise NotRegularFile(f"not a regular file: {path}", path=path)
        base = resolved.read_bytes()
        is_new = False
    elif resolved.is_symlink():
        # Dangling link inside the root: writing through it would create its target.
        raise NotRegularFile(f"not a regular file: {path}", path=path)

    new_bytes = content.encode("utf-8")
    if not is_new and new_bytes == base:
        raise NoChangeProposed(f"proposed content is identical to existing content: {path}", path=path)

    base_hash = "" if is_new else sha256_bytes(base)
    content_hash = sha256_bytes(new_bytes)
    pid = proposal_id(str(resolved), is_new, base_hash, content_hash)

    rel = guard.relative(resolved)
    diff = unified_diff(base.decode("utf-8", errors="replace"), content, rel, rel)

    proposal = Proposal(
        id=pid,
        path=str(resolved),
        rel_path=rel,
        is_new_file=is_new,
        base_hash=base_hash,
        content_hash=content_hash,
        content=content,
        diff=diff,
        generated_at=_utc_now(),
    )
    with store.lock_for(pid):
        store.save(proposal)
    logger.info("Staged proposal %s for %s (new=%s)", pid[:12], rel, is_new)
    return proposal
