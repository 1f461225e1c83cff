from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Iterable


class Severity(str, Enum):
    OK = "ok"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


_EXIT_CODES = {
    Severity.OK: 0,
    Severity.WARN: 1,
    Severity.ERROR: 2,
    Severity.FATAL: 3,
}


@dataclass(frozen=True)
class Issue:
    code: str
    message: str
    severity: Severity
    strategy: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["severity"] = self.severity.value
        return d


def worst_severity(issues: Iterable[Issue]) -> Severity:
    worst = Severity.OK
    for issue in issues:
        if _EXIT_CODES[issue.severity] > _EXIT_CODES[worst]:
            worst = issue.severity
    return worst


def exit_code_for(issues: Iterable[Issue]) -> int:
    """Process exit code for a list of issues: 0 ok, 1 warn, 2 error, 3 fatal."""
    return _EXIT_CODES[worst_severity(issues)]


def issue_from_dict(raw: Dict[str, Any]) -> Issue:
    return Issue(
        code=str(raw["code"]),
        message=str(raw.get("message") or ""),
        severity=Severity(raw.get("severity") or Severity.OK.value),
        strategy=str(raw.get("strategy") or ""),
    )
