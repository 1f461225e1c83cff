"""Shared fixtures: a sandbox root, a proposal store and reference bundles."""

import io
import tarfile
from pathlib import Path

import pytest

from trust_warden.guard import PathGuard
from trust_warden.hashing import sha256_file
from trust_warden.integrity import IntegrityDiagnostic
from trust_warden.manifest import Manifest, TarballRef, build_reference_bundle, write_manifest
from trust_warden.proposals import ProposalStore

MANIFEST_REL = ".warden/warden.manifest"
TARBALL_REL = ".warden/warden.source.tar.gz"


@pytest.fixture
def root(tmp_path):
    r = tmp_path / "root"
    r.mkdir()
    return r.resolve()


@pytest.fixture
def outside(tmp_path):
    o = tmp_path / "outside"
    o.mkdir()
    return o.resolve()


@pytest.fixture
def guard(root):
    return PathGuard.from_path(root)


@pytest.fixture
def store(root):
    return ProposalStore(root / ".warden" / "proposals")


@pytest.fixture
def repo(root):
    """A small source tree with a reference bundle already generated."""
    (root / "a.py").write_text("print('a')\n", encoding="utf-8")
    (root / "b.py").write_text("print('b')\n", encoding="utf-8")
    (root / "pkg").mkdir()
    (root / "pkg" / "c.py").write_text("VALUE = 3\n", encoding="utf-8")
    (root / "notes.txt").write_text("not tracked\n", encoding="utf-8")
    build_reference_bundle(root, manifest_path=MANIFEST_REL, tarball_path=TARBALL_REL)
    return root


@pytest.fixture
def diagnostic(repo):
    return IntegrityDiagnostic(MANIFEST_REL, repo)


def write_tarball(path: Path, members):
    """Write a gzip tarball from (name, data, mode) tuples, names taken verbatim."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, mode="w:gz") as tf:
        for name, data, mode in members:
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            info.mode = mode
            tf.addfile(info, io.BytesIO(data))


def pin_tarball(root: Path, members) -> Manifest:
    """Write a hand-made tarball plus a manifest that trusts it."""
    tar_path = root / TARBALL_REL
    write_tarball(tar_path, members)
    manifest = Manifest(
        version="1",
        schema_version="1",
        tarball=TarballRef(hash=sha256_file(tar_path), size=tar_path.stat().st_size, path=TARBALL_REL),
    )
    write_manifest(root / MANIFEST_REL, manifest)
    return manifest
