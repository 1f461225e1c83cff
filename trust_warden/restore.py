from __future__ import annotations

import logging
import posixpath
import stat
import tarfile
import zlib
from typing import Iterable, List, Optional

from .errors import PathTraversal, RestoreError, UnsafeTarEntry, WorkspaceViolation
from .guard import PathGuard, is_within_root
from .integrity import IntegrityDiagnostic
from .manifest import Manifest, load_manifest
from .storage import atomic_write_bytes

logger = logging.getLogger(__name__)


def _clean_entry_name(name: str) -> str:
    return posixpath.normpath(name.replace("\\", "/"))


def restore_from_tarball(
    diagnostic: IntegrityDiagnostic,
    manifest: Manifest,
    targets: Iterable[str],
) -> List[str]:
    """Extract only ``targets`` from the manifest's reference tarball into the repo.

    The tarball hash is re-checked first. On any failure a RestoreError (or one
    of its containment subclasses) is raised with ``restored`` set to the
    paths written before the failure.
    """

    target_set = {_clean_entry_name(t) for t in targets}
    if not target_set:
        return []

    repo_root = diagnostic.repo_root
    guard = PathGuard(root=repo_root)
    tarball = diagnostic.verify_tarball(manifest)

    restored: List[str] = []
    try:
        tf = tarfile.open(tarball, mode="r:gz")
    except (OSError, EOFError, zlib.error, tarfile.TarError) as e:
        raise RestoreError(f"open tarball: {e}", path=str(tarball)) from e

    with tf:
        while True:
            try:
                member: Optional[tarfile.TarInfo] = tf.next()
            except (OSError, EOFError, zlib.error, tarfile.TarError) as e:
                raise RestoreError(f"read tar: {e}", restored=restored) from e
            if member is None:
                break

            if member.isdir():
                continue

            name = _clean_entry_name(member.name)
            if posixpath.isabs(name) or name.startswith(".."):
                logger.warning("Rejected unsafe tar entry %r", member.name)
                raise UnsafeTarEntry(f"unsafe tar entry: {member.name}", restored=restored, path=member.name)

            if name not in target_set:
                continue

            if not member.isfile():
                # Links and devices are never restored, even when requested.
                logger.warning("Skipping non-regular tar entry %s", name)
                continue

            dest = repo_root / name
            if not is_within_root(repo_root, dest):
                raise PathTraversal(f"path traversal detected: {name}", restored=restored, path=name)
            try:
                # Catches symlinked parent directories planted inside the repo.
                dest = guard.resolve(name)
            except WorkspaceViolation as e:
                raise PathTraversal(f"path traversal detected: {name}", restored=restored, path=name) from e

            try:
                src = tf.extractfile(member)
                if src is None:
                    raise RestoreError(f"unreadable tar entry: {name}", restored=restored, path=name)
                with src:
                    data = src.read()
                dest.parent.mkdir(parents=True, exist_ok=True)
                atomic_write_bytes(dest, data, mode=stat.S_IMODE(member.mode))
            except RestoreError:
                raise
            except (OSError, EOFError, zlib.error, tarfile.TarError) as e:
                raise RestoreError(f"write file {name}: {e}", restored=restored, path=name) from e

            restored.append(name)
            logger.info("Restored %s from reference tarball", name)

    return restored


def restore_paths(diagnostic: IntegrityDiagnostic, targets: Iterable[str]) -> List[str]:
    """Load and trust-check the manifest, then restore ``targets``."""
    manifest = load_manifest(diagnostic.manifest_path)
    return restore_from_tarball(diagnostic, manifest, targets)

