"""Typed entry point used by the tool layer.

Tool calls arrive as ``(name, payload)`` pairs. ``request_from_action``
validates them once into one of the request types below; ``Dispatcher``
routes a request to the core and returns a plain result mapping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .apply import apply_proposal
from .audit import AuditLogger, audit_event
from .errors import InvalidRequest
from .guard import PathGuard
from .integrity import IntegrityDiagnostic, repair_targets
from .manifest import load_manifest
from .proposals import ProposalStore, propose
from .restore import restore_from_tarball

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadRequest:
    path: str


@dataclass(frozen=True)
class ListRequest:
    path: str = "."


@dataclass(frozen=True)
class ProposeRequest:
    path: str
    content: str


@dataclass(frozen=True)
class ApplyRequest:
    id: str
    dry_run: bool = False


@dataclass(frozen=True)
class VerifyRequest:
    pass


@dataclass(frozen=True)
class RestoreRequest:
    # Repo-relative paths of tracked files; empty with all_flagged restores
    # whatever the last verification flagged.
    paths: Tuple[str, ...] = ()
    all_flagged: bool = False


Request = Union[ReadRequest, ListRequest, ProposeRequest, ApplyRequest, VerifyRequest, RestoreRequest]

ACTION_NAMES = {
    ReadRequest: "fs.read",
    ListRequest: "fs.list",
    ProposeRequest: "fs.write",
    ApplyRequest: "fs.apply",
    VerifyRequest: "integrity.verify",
    RestoreRequest: "integrity.restore",
}


def _require_str(payload: Mapping[str, Any], key: str, action: str) -> str:
    v = payload.get(key)
    if not isinstance(v, str):
        raise InvalidRequest(f"{action}: '{key}' must be a string")
    return v


def request_from_action(action: str, payload: Optional[Mapping[str, Any]] = None) -> Request:
    """Validate a named tool call into a typed request."""
    payload = payload or {}
    if action == "fs.read":
        return ReadRequest(path=_require_str(payload, "path", action))
    if action == "fs.list":
        return ListRequest(path=str(payload.get("path") or "."))
    if action == "fs.write":
        return ProposeRequest(
            path=_require_str(payload, "path", action),
            content=_require_str(payload, "content", action),
        )
    if action == "fs.apply":
        dry_run = payload.get("dry_run", False)
        if not isinstance(dry_run, bool):
            raise InvalidRequest(f"{action}: 'dry_run' must be a boolean")
        return ApplyRequest(id=_require_str(payload, "id", action), dry_run=dry_run)
    if action == "integrity.verify":
        return VerifyRequest()
    if action == "integrity.restore":
        paths = payload.get("paths") or []
        if not isinstance(paths, (list, tuple)) or not all(isinstance(p, str) for p in paths):
            raise InvalidRequest(f"{action}: 'paths' must be a list of strings")
        return RestoreRequest(paths=tuple(paths), all_flagged=bool(payload.get("all_flagged", False)))
    raise InvalidRequest(f"unknown action: {action}")


class Dispatcher:
    """Routes typed requests to the trust boundary. Holds no mutable state of its own."""

    def __init__(
        self,
        guard: PathGuard,
        store: ProposalStore,
        integrity: IntegrityDiagnostic,
        *,
        audit: Optional[AuditLogger] = None,
        prefer_git: bool = True,
    ) -> None:
        self.guard = guard
        self.store = store
        self.integrity = integrity
        self.audit = audit
        self.prefer_git = prefer_git

    def dispatch_action(self, action: str, payload: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        return self.dispatch(request_from_action(action, payload))

    def dispatch(self, request: Request) -> Dict[str, Any]:
        action = ACTION_NAMES.get(type(request))
        if action is None:
            raise InvalidRequest(f"unsupported request type: {type(request).__name__}")
        logger.debug("Dispatch %s", action)
        try:
            out = self._route(request)
        except Exception as e:
            self._log(audit_event(action=action, ok=False, details=self._details(request), error=str(e)))
            raise
        self._log(audit_event(action=action, ok=True, details=self._details(request)))
        return out

    def _route(self, request: Request) -> Dict[str, Any]:
        if isinstance(request, ReadRequest):
            res = self.guard.read(request.path)
            return {"path": res.path, "content": res.content, "size": res.size}

        if isinstance(request, ListRequest):
            res = self.guard.list_dir(request.path)
            return {
                "path": res.path,
                "entries": [
                    {"name": e.name, "path": e.path, "is_dir": e.is_dir, "size": e.size} for e in res.entries
                ],
            }

        if isinstance(request, ProposeRequest):
            return propose(self.guard, self.store, request.path, request.content).summary()

        if isinstance(request, ApplyRequest):
            res = apply_proposal(
                self.guard,
                self.store,
                request.id,
                prefer_git=self.prefer_git,
                dry_run=request.dry_run,
            )
            return {"id": res.id, "path": res.path, "method": res.method, "diff": res.diff}

        if isinstance(request, VerifyRequest):
            report = self.integrity.run()
            return {
                "issues": [i.to_dict() for i in report.issues],
                "result": report.result.to_dict() if report.result is not None else None,
            }

        if isinstance(request, RestoreRequest):
            if request.all_flagged and not request.paths:
                manifest, result = self.integrity.plan_repair()
                targets = repair_targets(result)
            else:
                manifest = load_manifest(self.integrity.manifest_path)
                targets = list(request.paths)
            restored = restore_from_tarball(self.integrity, manifest, targets)
            return {"restored": restored, "count": len(restored)}

        raise InvalidRequest(f"unsupported request type: {type(request).__name__}")

    @staticmethod
    def _details(request: Request) -> Dict[str, Any]:
        if isinstance(request, ProposeRequest):
            return {"path": request.path, "bytes": len(request.content.encode("utf-8"))}
        if isinstance(request, (ReadRequest, ListRequest)):
            return {"path": request.path}
        if isinstance(request, ApplyRequest):
            return {"id": request.id, "dry_run": request.dry_run}
        if isinstance(request, RestoreRequest):
            return {"paths": list(request.paths), "all_flagged": request.all_flagged}
        return {}

    def _log(self, event: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.log(event)
