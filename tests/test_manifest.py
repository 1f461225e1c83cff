"""Tests for the integrity manifest format and the bundle generator."""

import tarfile

import pytest

from tests.conftest import MANIFEST_REL, TARBALL_REL
from trust_warden.errors import ManifestError
from trust_warden.hashing import sha256_file
from trust_warden.manifest import (
    Manifest,
    ManifestEntry,
    TarballRef,
    build_reference_bundle,
    collect_tracked_files,
    format_manifest,
    load_manifest,
    parse_manifest_text,
)

H = "a" * 64


class TestParse:
    """Line-oriented parsing."""

    def test_all_directives(self):
        m = parse_manifest_text(
            "# header comment\n"
            "\n"
            "VERSION 1\n"
            "SCHEMA_VERSION 2\n"
            "FORMAT_VERSION 3\n"
            "ROOT_ID abc123\n"
            f"TARBALL {H} 100 .warden/src.tar.gz\n"
            f"FILE {H} 12 0644 2024-01-01T00:00:00Z src/main.py\n"
        )
        assert (m.version, m.schema_version, m.format_version, m.root_id) == ("1", "2", "3", "abc123")
        assert m.tarball == TarballRef(hash=H, size=100, path=".warden/src.tar.gz")
        assert m.files == [ManifestEntry(H, 12, "0644", "2024-01-01T00:00:00Z", "src/main.py")]

    def test_path_with_spaces(self):
        m = parse_manifest_text(f"FILE {H} 1 0644 2024-01-01T00:00:00Z docs/my notes.py\n")
        assert m.files[0].file_path == "docs/my notes.py"

    def test_unknown_directive_ignored(self):
        m = parse_manifest_text("VERSION 1\nSIGNATURE deadbeef\n")
        assert m.version == "1"
        assert m.files == []

    @pytest.mark.parametrize(
        "line",
        [
            "VERSION",
            f"TARBALL {H} 10",
            f"FILE {H} 1 0644 path-only-five",
            f"FILE {H} big 0644 2024-01-01T00:00:00Z a.py",
            f"FILE {H} -1 0644 2024-01-01T00:00:00Z a.py",
        ],
    )
    def test_malformed_lines(self, line):
        with pytest.raises(ManifestError):
            parse_manifest_text(line + "\n")

    @pytest.mark.parametrize("path", ["../evil.py", "/etc/passwd", "a/../../evil.py"])
    def test_escaping_paths_rejected(self, path):
        with pytest.raises(ManifestError):
            parse_manifest_text(f"FILE {H} 1 0644 2024-01-01T00:00:00Z {path}\n")

    def test_format_then_parse(self):
        m = Manifest(
            version="1",
            schema_version="1",
            root_id="r",
            tarball=TarballRef(H, 5, "t.tar.gz"),
            files=[ManifestEntry(H, 3, "0755", "2024-01-01T00:00:00Z", "bin/run me.py")],
        )
        text = format_manifest(m, comments=["generated", ""])
        assert text.startswith("# generated\n#\n")
        assert parse_manifest_text(text) == m

    @pytest.mark.parametrize("path", ["a  b.py", "tab\tc.py", " lead.py", "trail.py ", "new\nline.py"])
    def test_unrepresentable_path_not_written(self, path):
        m = Manifest(version="1", files=[ManifestEntry(H, 1, "0644", "2024-01-01T00:00:00Z", path)])
        with pytest.raises(ManifestError):
            format_manifest(m)

    def test_load_missing(self, root):
        with pytest.raises(ManifestError):
            load_manifest(root / "nope.manifest")


class TestBundle:
    """Reference tarball plus manifest generation."""

    def test_tracks_python_sources_only(self, repo):
        m = load_manifest(repo / MANIFEST_REL)
        assert [e.file_path for e in m.files] == ["a.py", "b.py", "pkg/c.py"]
        assert m.tarball.path == TARBALL_REL
        assert m.tarball.hash == sha256_file(repo / TARBALL_REL)
        assert m.files[0].hash == sha256_file(repo / "a.py")
        assert m.root_id

    def test_tarball_contents(self, repo):
        with tarfile.open(repo / TARBALL_REL, "r:gz") as tf:
            names = tf.getnames()
            data = tf.extractfile("pkg/c.py").read()
        assert names == ["a.py", "b.py", "pkg/c.py"]
        assert data == b"VALUE = 3\n"

    def test_deterministic(self, repo):
        first = (repo / TARBALL_REL).read_bytes()
        build_reference_bundle(repo, manifest_path=MANIFEST_REL, tarball_path=TARBALL_REL)
        assert (repo / TARBALL_REL).read_bytes() == first

    def test_skips_state_and_cache_dirs(self, root):
        (root / "keep.py").write_text("x\n", encoding="utf-8")
        for d in (".warden", "__pycache__", ".git"):
            (root / d).mkdir()
            (root / d / "skip.py").write_text("x\n", encoding="utf-8")
        assert collect_tracked_files(root) == ["keep.py"]

    def test_custom_include(self, repo):
        m = build_reference_bundle(
            repo, manifest_path=MANIFEST_REL, tarball_path=TARBALL_REL, include=["*.txt"]
        )
        assert [e.file_path for e in m.files] == ["notes.txt"]

    def test_whitespace_runs_in_names_rejected(self, root):
        (root / "ok.py").write_text("x\n", encoding="utf-8")
        (root / "a  b.py").write_text("y\n", encoding="utf-8")
        with pytest.raises(ManifestError):
            build_reference_bundle(root, manifest_path=MANIFEST_REL, tarball_path=TARBALL_REL)
        assert not (root / TARBALL_REL).exists()
        assert not (root / MANIFEST_REL).exists()

    def test_single_spaces_survive_generation(self, root):
        (root / "my file.py").write_text("x\n", encoding="utf-8")
        build_reference_bundle(root, manifest_path=MANIFEST_REL, tarball_path=TARBALL_REL)
        assert [e.file_path for e in load_manifest(root / MANIFEST_REL).files] == ["my file.py"]

    def test_tarball_outside_root_rejected(self, repo, outside):
        with pytest.raises(ManifestError):
            build_reference_bundle(repo, manifest_path=MANIFEST_REL, tarball_path=outside / "t.tar.gz")
        assert not (outside / "t.tar.gz").exists()
