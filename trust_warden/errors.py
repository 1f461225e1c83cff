from __future__ import annotations

from typing import List, Optional


class WardenError(Exception):
    """Base class for every error raised by the trust boundary."""

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class WorkspaceViolation(WardenError, ValueError):
    """A path tried to leave the sandbox root. Never retried."""


class OutsideRoot(WorkspaceViolation):
    pass


class SymlinkEscape(WorkspaceViolation):
    pass


class NotRegularFile(WardenError):
    pass


class NotADirectory(WardenError):
    pass


class NoChangeProposed(WardenError):
    pass


class DriftDetected(WardenError):
    """The target changed between proposal and apply."""

    def __init__(self, path: str, *, expected_hash: str, actual_hash: str) -> None:
        super().__init__(f"drift detected: {path} has changed since proposal", path=path)
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class ProposalNotFound(WardenError, FileNotFoundError):
    def __init__(self, proposal_id: str) -> None:
        super().__init__(f"proposal not found: {proposal_id}")
        self.proposal_id = proposal_id


class ManifestError(WardenError):
    pass


class TarballHashMismatch(WardenError):
    def __init__(self, path: str, *, expected_hash: str, actual_hash: str) -> None:
        super().__init__(f"source tarball hash does not match manifest: {path}", path=path)
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class RestoreError(WardenError):
    """Extraction failed part way; ``restored`` lists what was already written."""

    def __init__(self, message: str, *, restored: Optional[List[str]] = None, path: Optional[str] = None) -> None:
        super().__init__(message, path=path)
        self.restored: List[str] = list(restored or [])


class UnsafeTarEntry(RestoreError, WorkspaceViolation):
    pass


class PathTraversal(RestoreError, WorkspaceViolation):
    pass


class InvalidRequest(WardenError, ValueError):
    pass


class ProposalCorrupted(WardenError):
    pass


class ProtectedPath(WorkspaceViolation):
    """The target lies in a directory holding the warden's own state."""
