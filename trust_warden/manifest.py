"""Integrity manifest: model, line-oriented parser and writer, bundle generator.

File format (one directive per line, ``#`` starts a comment)::

    VERSION 1
    SCHEMA_VERSION 1
    ROOT_ID <id>
    TARBALL <sha256> <size> <path>
    FILE <sha256> <size> <mode> <mtime> <path>

Paths are the trailing fields joined by single spaces, so they may contain
spaces. Unknown directives are ignored so newer generators stay readable.
"""

from __future__ import annotations

import datetime
import fnmatch
import gzip
import logging
import os
import posixpath
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .errors import ManifestError
from .hashing import sha256_file, sha256_text

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1"
SCHEMA_VERSION = "1"

DEFAULT_INCLUDE = ("*.py",)
DEFAULT_SKIP_DIRS = (".git", ".warden", "__pycache__", ".venv", "venv")


@dataclass(frozen=True)
class ManifestEntry:
    hash: str
    size: int
    mode: str
    mod_time: str
    file_path: str


@dataclass(frozen=True)
class TarballRef:
    hash: str
    size: int
    path: str


@dataclass
class Manifest:
    version: str = ""
    schema_version: str = ""
    format_version: str = ""
    root_id: str = ""
    tarball: Optional[TarballRef] = None
    files: List[ManifestEntry] = field(default_factory=list)


def _check_rel_path(path: str, lineno: int) -> str:
    if posixpath.isabs(path) or os.path.isabs(path):
        raise ManifestError(f"line {lineno}: absolute path not allowed: {path}")
    if posixpath.normpath(path).startswith(".."):
        raise ManifestError(f"line {lineno}: path escapes repository root: {path}")
    return path


def _check_representable(path: str) -> str:
    # Fields are whitespace-separated and the path is re-joined with single spaces.
    if " ".join(path.split()) != path:
        raise ManifestError(f"path cannot be stored in a manifest line: {path!r}", path=path)
    return path


def _parse_size(raw: str, lineno: int) -> int:
    try:
        size = int(raw, 10)
    except ValueError:
        raise ManifestError(f"line {lineno}: invalid size: {raw}") from None
    if size < 0:
        raise ManifestError(f"line {lineno}: invalid size: {raw}")
    return size


def parse_manifest_text(text: str) -> Manifest:
    manifest = Manifest()

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        fields = line.split()
        directive = fields[0]

        if directive in {"VERSION", "SCHEMA_VERSION", "FORMAT_VERSION", "ROOT_ID"}:
            if len(fields) < 2:
                raise ManifestError(f"line {lineno}: {directive} requires a value")
            value = fields[1]
            if directive == "VERSION":
                manifest.version = value
            elif directive == "SCHEMA_VERSION":
                manifest.schema_version = value
            elif directive == "FORMAT_VERSION":
                manifest.format_version = value
            else:
                manifest.root_id = value
        elif directive == "TARBALL":
            if len(fields) < 4:
                raise ManifestError(f"line {lineno}: TARBALL requires <sha256> <size> <path>")
            manifest.tarball = TarballRef(
                hash=fields[1],
                size=_parse_size(fields[2], lineno),
                path=_check_rel_path(" ".join(fields[3:]), lineno),
            )
        elif directive == "FILE":
            if len(fields) < 6:
                raise ManifestError(f"line {lineno}: FILE requires <sha256> <size> <mode> <mtime> <path>")
            manifest.files.append(
                ManifestEntry(
                    hash=fields[1],
                    size=_parse_size(fields[2], lineno),
                    mode=fields[3],
                    mod_time=fields[4],
                    file_path=_check_rel_path(" ".join(fields[5:]), lineno),
                )
            )
        else:
            logger.debug("Ignoring unknown manifest directive on line %d: %s", lineno, directive)

    return manifest


def load_manifest(path: str | Path) -> Manifest:
    p = Path(path)
    if not p.exists():
        raise ManifestError(f"No integrity manifest found at {p}", path=str(p))
    try:
        text = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestError(f"failed to read manifest: {e}", path=str(p)) from e
    return parse_manifest_text(text)


def format_manifest(manifest: Manifest, *, comments: Sequence[str] = ()) -> str:
    lines: List[str] = [f"# {c}" if c else "#" for c in comments]
    if manifest.version:
        lines.append(f"VERSION {manifest.version}")
    if manifest.schema_version:
        lines.append(f"SCHEMA_VERSION {manifest.schema_version}")
    if manifest.format_version:
        lines.append(f"FORMAT_VERSION {manifest.format_version}")
    if manifest.root_id:
        lines.append(f"ROOT_ID {manifest.root_id}")
    if manifest.tarball is not None:
        t = manifest.tarball
        _check_representable(t.path)
        lines.append(f"TARBALL {t.hash} {t.size} {t.path}")
    for e in manifest.files:
        _check_representable(e.file_path)
        lines.append(f"FILE {e.hash} {e.size} {e.mode} {e.mod_time} {e.file_path}")
    return "\n".join(lines) + "\n"


def write_manifest(path: str | Path, manifest: Manifest, *, comments: Sequence[str] = ()) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(format_manifest(manifest, comments=comments), encoding="utf-8")


def _matches(rel_path: str, include: Sequence[str]) -> bool:
    name = posixpath.basename(rel_path)
    return any(fnmatch.fnmatch(name, pat) or fnmatch.fnmatch(rel_path, pat) for pat in include)


def collect_tracked_files(
    repo_root: str | Path,
    *,
    include: Sequence[str] = DEFAULT_INCLUDE,
    skip_dirs: Iterable[str] = DEFAULT_SKIP_DIRS,
) -> List[str]:
    """Sorted, repo-relative POSIX paths of the files a bundle should track."""
    root = Path(repo_root)
    skip = set(skip_dirs)
    out: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in skip)
        for name in filenames:
            full = Path(dirpath) / name
            if full.is_symlink() or not full.is_file():
                continue
            rel = full.relative_to(root).as_posix()
            if _matches(rel, include):
                out.append(rel)
    out.sort()
    return out


def _utc_stamp(ts: float) -> str:
    dt = datetime.datetime.fromtimestamp(ts, tz=datetime.timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def build_reference_bundle(
    repo_root: str | Path,
    *,
    manifest_path: str | Path,
    tarball_path: str | Path,
    include: Sequence[str] = DEFAULT_INCLUDE,
    skip_dirs: Iterable[str] = DEFAULT_SKIP_DIRS,
) -> Manifest:
    """Snapshot the tracked files into a reference tarball and write the manifest.

    The tarball is byte-for-byte reproducible for identical inputs: entries are
    sorted, gzip and tar mtimes are zero, ownership is blanked.
    """

    root = Path(repo_root).resolve()
    tar_p = Path(tarball_path)
    if not tar_p.is_absolute():
        tar_p = root / tar_p
    man_p = Path(manifest_path)
    if not man_p.is_absolute():
        man_p = root / man_p

    try:
        tar_rel = tar_p.resolve().relative_to(root).as_posix()
    except ValueError:
        raise ManifestError(f"tarball must live inside the repository root: {tar_p}") from None

    rel_paths = collect_tracked_files(root, include=include, skip_dirs=skip_dirs)
    _check_representable(tar_rel)
    for rel in rel_paths:
        _check_representable(rel)

    entries: List[ManifestEntry] = []
    for rel in rel_paths:
        st = (root / rel).stat()
        entries.append(
            ManifestEntry(
                hash=sha256_file(root / rel),
                size=st.st_size,
                mode=f"{st.st_mode & 0o777:04o}",
                mod_time=_utc_stamp(st.st_mtime),
                file_path=rel,
            )
        )

    tar_p.parent.mkdir(parents=True, exist_ok=True)
    with open(tar_p, "wb") as raw:
        with gzip.GzipFile(fileobj=raw, mode="wb", mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for entry in entries:
                    info = tarfile.TarInfo(name=entry.file_path)
                    info.size = entry.size
                    info.mode = int(entry.mode, 8)
                    info.mtime = 0
                    info.uid = 0
                    info.gid = 0
                    info.uname = ""
                    info.gname = ""
                    with open(root / entry.file_path, "rb") as f:
                        tar.addfile(info, f)

    manifest = Manifest(
        version=MANIFEST_VERSION,
        schema_version=SCHEMA_VERSION,
        root_id=sha256_text("\n".join(f"{e.hash} {e.file_path}" for e in entries))[:16],
        tarball=TarballRef(hash=sha256_file(tar_p), size=tar_p.stat().st_size, path=tar_rel),
        files=entries,
    )

    generated = _utc_stamp(datetime.datetime.now(datetime.timezone.utc).timestamp())
    write_manifest(
        man_p,
        manifest,
        comments=[
            "warden.manifest - Source Integrity Manifest",
            f"Generated: {generated}",
            f"Source Tarball: {tar_rel}",
            "",
            "Format:",
            "  TARBALL <sha256> <size> <path>",
            "  FILE <sha256> <size> <mode> <mtime> <path>",
            "",
        ],
    )
    logger.info("Wrote reference bundle: %d files, tarball %s", len(entries), tar_rel)
    return manifest
