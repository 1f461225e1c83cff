from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .diagnose import Issue, Severity
from .errors import ManifestError, TarballHashMismatch
from .hashing import sha256_file, short_hash
from .manifest import Manifest, ManifestEntry, TarballRef, load_manifest

logger = logging.getLogger(__name__)

REGENERATE = "Run 'trust-warden manifest' to regenerate the reference bundle"


@dataclass(frozen=True)
class FileModification:
    path: str
    expected_hash: str
    actual_hash: str


@dataclass(frozen=True)
class VerificationResult:
    total_files: int
    verified_files: int
    missing_files: List[str] = field(default_factory=list)
    modified_files: List[FileModification] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_files and not self.modified_files

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_files": self.total_files,
            "verified_files": self.verified_files,
            "missing_files": list(self.missing_files),
            "modified_files": [
                {"path": m.path, "expected_hash": m.expected_hash, "actual_hash": m.actual_hash}
                for m in self.modified_files
            ],
        }


@dataclass(frozen=True)
class IntegrityReport:
    issues: List[Issue]
    result: Optional[VerificationResult] = None


def repair_targets(result: VerificationResult) -> List[str]:
    """Sorted, de-duplicated paths a restore should bring back."""
    seen = set(result.missing_files)
    seen.update(m.path for m in result.modified_files)
    return sorted(seen)


class IntegrityDiagnostic:
    """Checks tracked source files against a manifest pinned to a reference tarball."""

    def __init__(self, manifest_path: str | Path, repo_root: str | Path) -> None:
        self.repo_root = Path(repo_root).resolve()
        p = Path(manifest_path)
        self.manifest_path = p if p.is_absolute() else self.repo_root / p

    def _tarball_ref(self, manifest: Manifest) -> TarballRef:
        if manifest.tarball is None:
            raise ManifestError("manifest missing tarball metadata", path=str(self.manifest_path))
        return manifest.tarball

    def tarball_path(self, manifest: Manifest) -> Path:
        return self.repo_root / self._tarball_ref(manifest).path

    def verify_tarball(self, manifest: Manifest) -> Path:
        """Check the reference tarball against the manifest. Returns its path."""
        ref = self._tarball_ref(manifest)
        path = self.repo_root / ref.path
        if not path.is_file():
            raise ManifestError(f"Source tarball missing at {path}", path=str(path))
        actual = sha256_file(path)
        if actual != ref.hash:
            logger.warning("Tarball hash mismatch for %s", path)
            raise TarballHashMismatch(str(path), expected_hash=ref.hash, actual_hash=actual)
        return path

    def verify_files(self, entries: Sequence[ManifestEntry]) -> VerificationResult:
        missing: List[str] = []
        modified: List[FileModification] = []
        verified = 0

        for entry in entries:
            full = self.repo_root / entry.file_path
            if not full.is_file():
                missing.append(entry.file_path)
                continue
            try:
                actual = sha256_file(full)
            except OSError:
                # Unreadable counts as missing.
                missing.append(entry.file_path)
                continue
            if actual != entry.hash:
                modified.append(FileModification(path=entry.file_path, expected_hash=entry.hash, actual_hash=actual))
                continue
            verified += 1

        return VerificationResult(
            total_files=len(entries),
            verified_files=verified,
            missing_files=missing,
            modified_files=modified,
        )

    def plan_repair(self) -> Tuple[Manifest, VerificationResult]:
        """Load the manifest, trust-check the tarball, then verify files.

        Raises ManifestError or TarballHashMismatch when the trust anchor is
        unusable.
        """
        manifest = load_manifest(self.manifest_path)
        self.verify_tarball(manifest)
        return manifest, self.verify_files(manifest.files)

    def run(self) -> IntegrityReport:
        if not self.manifest_path.exists():
            return IntegrityReport(
                issues=[
                    Issue(
                        code="INTEGRITY_NO_MANIFEST",
                        message=f"No integrity manifest found at {self.manifest_path}",
                        strategy=REGENERATE,
                        severity=Severity.WARN,
                    )
                ]
            )

        try:
            manifest = load_manifest(self.manifest_path)
        except ManifestError as e:
            return IntegrityReport(
                issues=[
                    Issue(
                        code="INTEGRITY_PARSE_ERROR",
                        message=f"Failed to parse integrity manifest: {e}",
                        severity=Severity.ERROR,
                    )
                ]
            )

        if manifest.tarball is None or not manifest.tarball.path:
            return IntegrityReport(
                issues=[
                    Issue(
                        code="INTEGRITY_TARBALL_NOT_DECLARED",
                        message="Integrity manifest is missing tarball metadata",
                        strategy=REGENERATE,
                        severity=Severity.ERROR,
                    )
                ]
            )

        tarball = self.tarball_path(manifest)
        if not tarball.is_file():
            return IntegrityReport(
                issues=[
                    Issue(
                        code="INTEGRITY_TARBALL_MISSING",
                        message=f"Source tarball missing at {tarball}",
                        strategy=REGENERATE,
                        severity=Severity.ERROR,
                    )
                ]
            )

        try:
            self.verify_tarball(manifest)
        except TarballHashMismatch:
            return IntegrityReport(
                issues=[
                    Issue(
                        code="INTEGRITY_TARBALL_HASH_MISMATCH",
                        message="Source tarball hash does not match manifest",
                        strategy=REGENERATE,
                        severity=Severity.ERROR,
                    )
                ]
            )
        except OSError as e:
            return IntegrityReport(
                issues=[
                    Issue(
                        code="INTEGRITY_TARBALL_UNREADABLE",
                        message=f"Failed to read tarball: {e}",
                        severity=Severity.ERROR,
                    )
                ]
            )

        result = self.verify_files(manifest.files)
        issues: List[Issue] = []

        if result.missing_files:
            issues.append(
                Issue(
                    code="INTEGRITY_MISSING_FILES",
                    message=f"{len(result.missing_files)} tracked files are missing:\n"
                    + "\n".join(result.missing_files),
                    strategy="Files may have been deleted or moved. Regenerate the reference bundle if this is intentional.",
                    severity=Severity.ERROR,
                )
            )

        if result.modified_files:
            lines = [
                f"  {m.path}\n    Expected: {short_hash(m.expected_hash)}\n    Actual:   {short_hash(m.actual_hash)}"
                for m in result.modified_files
            ]
            issues.append(
                Issue(
                    code="INTEGRITY_HASH_MISMATCH",
                    message=f"{len(result.modified_files)} files have been modified:\n" + "\n".join(lines),
                    strategy="Review changes and regenerate the reference bundle after committing valid changes.",
                    severity=Severity.ERROR,
                )
            )

        if not issues:
            issues.append(
                Issue(
                    code="INTEGRITY_OK",
                    message=f"All {result.verified_files} files verified successfully.",
                    severity=Severity.OK,
                )
            )

        logger.info(
            "Integrity check: %d/%d verified, %d missing, %d modified",
            result.verified_files,
            result.total_files,
            len(result.missing_files),
            len(result.modified_files),
        )
        return IntegrityReport(issues=issues, result=result)


def verify(manifest_path: str | Path, repo_root: str | Path) -> IntegrityReport:
    return IntegrityDiagnostic(manifest_path, repo_root).run()
