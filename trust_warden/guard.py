from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Tuple

from .errors import NotADirectory, NotRegularFile, OutsideRoot, ProtectedPath, SymlinkEscape

logger = logging.getLogger(__name__)


def is_within_root(root: str | Path, candidate: str | Path) -> bool:
    """True if ``candidate`` equals ``root`` or sits below it (lexically)."""
    try:
        rel = os.path.relpath(str(candidate), str(root))
    except ValueError:
        # Different drives on Windows.
        return False
    if rel == ".":
        return True
    first = rel.split(os.sep, 1)[0]
    return first != ".." and not os.path.isabs(rel)


@dataclass(frozen=True)
class ReadResult:
    path: str
    content: str
    size: int


@dataclass(frozen=True)
class ListEntry:
    name: str
    path: str
    is_dir: bool
    size: int


@dataclass(frozen=True)
class ListResult:
    path: str
    entries: List[ListEntry] = field(default_factory=list)


@dataclass(frozen=True)
class PathGuard:
    """Sandbox root plus the only sanctioned way to turn user paths into disk paths."""

    root: Path
    # Directories inside the root that may be read but never written, such as
    # the state directory holding proposals and the integrity manifest.
    protected: Tuple[Path, ...] = ()

    @classmethod
    def from_path(cls, root: str | Path, *, protected: Iterable[str | Path] = ()) -> "PathGuard":
        # The root must exist: symlinks in it are resolved once, here.
        p = Path(root).expanduser().absolute()
        real = p.resolve(strict=True)
        if not real.is_dir():
            raise NotADirectory(f"sandbox root is not a directory: {root}", path=str(root))
        # Relative entries are taken against the root.
        locked = tuple(Path(os.path.realpath(os.path.join(str(real), str(d)))) for d in protected)
        return cls(root=real, protected=locked)

    def resolve(self, untrusted: str | Path) -> Path:
        """Validate a caller-supplied relative path and return its absolute target.

        The target does not have to exist yet. Resolution only inspects the
        filesystem; it never creates anything.
        """
        raw = str(untrusted)
        if not raw:
            raise OutsideRoot("empty path", path=raw)

        clean = os.path.normpath(raw)
        if clean.startswith(".."):
            raise OutsideRoot(f"path resolves outside allowed root: {raw}", path=raw)

        # An absolute input is re-rooted under the sandbox, never trusted as-is.
        target = Path(os.path.normpath(os.path.join(str(self.root), clean.lstrip(os.sep))))

        self._check_existing_ancestor(target, raw)

        if not is_within_root(self.root, target):
            raise OutsideRoot(f"path resolves outside allowed root: {raw}", path=raw)
        return target

    def _check_existing_ancestor(self, target: Path, raw: str) -> None:
        # Walk upward to the nearest existing segment and validate it if it is a symlink.
        current = target
        while True:
            try:
                current.lstat()
            except FileNotFoundError:
                parent = current.parent
                if parent == current:
                    return
                current = parent
                continue
            except NotADirectoryError:
                # A regular file sits where a directory was expected; keep climbing.
                current = current.parent
                continue

            if os.path.islink(current):
                real = current.resolve()
                if not is_within_root(self.root, real):
                    logger.warning("Symlink escape rejected: %s -> %s", raw, real)
                    raise SymlinkEscape(f"path contains symlink that escapes root: {raw}", path=raw)
            break

        # Intermediate directories of an existing ancestor may themselves be links.
        real = current.resolve()
        if not is_within_root(self.root, real):
            logger.warning("Symlink escape rejected: %s -> %s", raw, real)
            raise SymlinkEscape(f"path contains symlink that escapes root: {raw}", path=raw)

    def check_writable(self, target: Path, raw: str | Path) -> None:
        """Reject a resolved write target that lands in a protected directory."""
        real = os.path.realpath(str(target))
        for locked in self.protected:
            if is_within_root(locked, target) or is_within_root(locked, real):
                logger.warning("Write to protected path rejected: %s", raw)
                raise ProtectedPath(f"path is inside a protected directory: {raw}", path=str(raw))

    def relative(self, resolved: str | Path) -> str:
        """Root-relative POSIX form of an already resolved path."""
        rel = os.path.relpath(str(resolved), str(self.root))
        return Path(rel).as_posix()

    def read(self, rel: str | Path, *, max_bytes: int = 2_000_000) -> ReadResult:
        p = self.resolve(rel)
        if not p.exists():
            raise FileNotFoundError(str(rel))
        if not p.is_file():
            raise NotRegularFile(f"not a regular file: {rel}", path=str(rel))
        data = p.read_bytes()
        if len(data) > max_bytes:
            raise ValueError(f"Refusing to read >{max_bytes} bytes from {rel}")
        return ReadResult(path=str(p), content=data.decode("utf-8", errors="replace"), size=len(data))

    def list_dir(self, rel: str | Path = ".", *, include_hidden: bool = True) -> ListResult:
        p = self.resolve(rel)
        if not p.exists():
            raise FileNotFoundError(str(rel))
        if not p.is_dir():
            raise NotADirectory(f"not a directory: {rel}", path=str(rel))
        out: List[ListEntry] = []
        for child in sorted(p.iterdir(), key=lambda c: c.name):
            if not include_hidden and child.name.startswith("."):
                continue
            try:
                st = child.stat()
            except OSError:
                logger.debug("Skipping unreadable entry %s", child)
                continue
            is_dir = child.is_dir()
            out.append(
                ListEntry(
                    name=child.name,
                    path=str(child),
                    is_dir=is_dir,
                    size=0 if is_dir else st.st_size,
                )
            )
        return ListResult(path=str(p), entries=out)
