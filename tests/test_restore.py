"""Tests for selective restore from the reference tarball."""

import os
import stat

import pytest

from tests.conftest import MANIFEST_REL, TARBALL_REL, pin_tarball
from trust_warden.errors import PathTraversal, RestoreError, TarballHashMismatch, UnsafeTarEntry, WorkspaceViolation
from trust_warden.hashing import sha256_file
from trust_warden.integrity import IntegrityDiagnostic
from trust_warden.manifest import Manifest, TarballRef, load_manifest
from trust_warden.restore import restore_from_tarball, restore_paths


@pytest.fixture
def pinned(root):
    return IntegrityDiagnostic(MANIFEST_REL, root)


class TestSelectiveRestore:
    """Only the requested paths come back."""

    def test_restores_only_targets(self, diagnostic, repo):
        (repo / "a.py").write_text("tampered\n", encoding="utf-8")
        (repo / "b.py").unlink()
        manifest = load_manifest(repo / MANIFEST_REL)

        restored = restore_from_tarball(diagnostic, manifest, ["b.py"])
        assert restored == ["b.py"]
        assert (repo / "b.py").read_text(encoding="utf-8") == "print('b')\n"
        assert (repo / "a.py").read_text(encoding="utf-8") == "tampered\n"

    def test_heals_tree(self, diagnostic, repo):
        (repo / "a.py").write_text("tampered\n", encoding="utf-8")
        (repo / "pkg" / "c.py").unlink()
        (repo / "pkg").rmdir()
        restored = restore_paths(diagnostic, ["a.py", "pkg/c.py"])
        assert sorted(restored) == ["a.py", "pkg/c.py"]
        assert [i.code for i in diagnostic.run().issues] == ["INTEGRITY_OK"]

    def test_restores_archived_mode(self, root, pinned):
        manifest = pin_tarball(root, [("tool.py", b"#!/bin/sh\n", 0o755)])
        restore_from_tarball(pinned, manifest, ["tool.py"])
        assert stat.S_IMODE(os.stat(root / "tool.py").st_mode) == 0o755

    def test_empty_targets_touch_nothing(self, root, pinned):
        manifest = pin_tarball(root, [("a.py", b"x", 0o644)])
        (root / TARBALL_REL).unlink()
        assert restore_from_tarball(pinned, manifest, []) == []
        assert not (root / "a.py").exists()

    def test_tampered_tarball_rejected(self, root, pinned):
        manifest = pin_tarball(root, [("a.py", b"x", 0o644)])
        with open(root / TARBALL_REL, "ab") as f:
            f.write(b"junk")
        with pytest.raises(TarballHashMismatch):
            restore_from_tarball(pinned, manifest, ["a.py"])
        assert not (root / "a.py").exists()


class TestHostileArchives:
    """Entries that would land outside the root abort the restore."""

    def test_parent_traversal(self, root, pinned, tmp_path):
        manifest = pin_tarball(root, [("good.py", b"ok\n", 0o644), ("../outside.txt", b"evil\n", 0o644)])
        with pytest.raises(UnsafeTarEntry) as ei:
            restore_from_tarball(pinned, manifest, ["good.py", "../outside.txt"])
        assert ei.value.restored == ["good.py"]
        assert isinstance(ei.value, WorkspaceViolation)
        assert not (tmp_path / "outside.txt").exists()

    def test_unsafe_entry_rejected_even_when_not_requested(self, root, pinned, tmp_path):
        manifest = pin_tarball(root, [("../outside.txt", b"evil\n", 0o644), ("good.py", b"ok\n", 0o644)])
        with pytest.raises(UnsafeTarEntry) as ei:
            restore_from_tarball(pinned, manifest, ["good.py"])
        assert ei.value.restored == []
        assert not (root / "good.py").exists()
        assert not (tmp_path / "outside.txt").exists()

    def test_absolute_entry(self, root, pinned):
        manifest = pin_tarball(root, [("/abs.txt", b"evil\n", 0o644)])
        with pytest.raises(UnsafeTarEntry):
            restore_from_tarball(pinned, manifest, ["abs.txt"])

    def test_symlinked_parent(self, root, pinned, outside):
        manifest = pin_tarball(root, [("pkg/x.py", b"evil\n", 0o644)])
        (root / "pkg").symlink_to(outside)
        with pytest.raises(PathTraversal) as ei:
            restore_from_tarball(pinned, manifest, ["pkg/x.py"])
        assert isinstance(ei.value, RestoreError)
        assert not (outside / "x.py").exists()

    def test_corrupt_archive(self, root, pinned):
        tar_path = root / TARBALL_REL
        tar_path.parent.mkdir(parents=True, exist_ok=True)
        tar_path.write_bytes(b"\x1f\x8b\x08\x00" + b"\x00" * 6 + b"not really gzip")
        manifest = Manifest(
            version="1",
            tarball=TarballRef(hash=sha256_file(tar_path), size=tar_path.stat().st_size, path=TARBALL_REL),
        )
        with pytest.raises(RestoreError) as ei:
            restore_from_tarball(pinned, manifest, ["a.py"])
        assert ei.value.restored == []
