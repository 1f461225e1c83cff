from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .manifest import DEFAULT_INCLUDE, DEFAULT_SKIP_DIRS

DEFAULT_STATE_DIR = ".warden"
DEFAULT_CONFIG_NAME = "config.yaml"


@dataclass(frozen=True)
class WardenConfig:
    """Settings for one sandbox root. Relative paths are taken against ``root``."""

    root: Path
    raw: Dict[str, Any] = field(default_factory=dict)

    def _section(self, name: str) -> Dict[str, Any]:
        return self.raw.get(name) or {}

    def _under_root(self, value: str) -> Path:
        p = Path(value).expanduser()
        return p if p.is_absolute() else self.root / p

    @property
    def state_dir(self) -> Path:
        return self._under_root(str(self.raw.get("state_dir") or DEFAULT_STATE_DIR))

    @property
    def proposals_dir(self) -> Path:
        v = self._section("proposals").get("dir")
        return self._under_root(str(v)) if v else self.state_dir / "proposals"

    @property
    def prefer_git_apply(self) -> bool:
        return bool(self._section("apply").get("prefer_git", True))

    @property
    def manifest_path(self) -> Path:
        v = self._section("integrity").get("manifest")
        return self._under_root(str(v)) if v else self.state_dir / "warden.manifest"

    @property
    def tarball_path(self) -> Path:
        v = self._section("integrity").get("tarball")
        return self._under_root(str(v)) if v else self.state_dir / "warden.source.tar.gz"

    @property
    def manifest_include(self) -> List[str]:
        return list(self._section("integrity").get("include") or DEFAULT_INCLUDE)

    @property
    def manifest_skip_dirs(self) -> List[str]:
        return list(self._section("integrity").get("skip_dirs") or DEFAULT_SKIP_DIRS)

    @property
    def audit_enabled(self) -> bool:
        return bool(self._section("audit").get("enabled", True))

    @property
    def audit_log(self) -> Path:
        v = self._section("audit").get("path")
        return self._under_root(str(v)) if v else self.state_dir / "audit.jsonl"

    @property
    def log_path(self) -> Path:
        v = self._section("logging").get("path")
        return self._under_root(str(v)) if v else self.state_dir / "warden.log"

    @property
    def log_level(self) -> str:
        return str(self._section("logging").get("level") or "info")

    @property
    def dry_run(self) -> bool:
        return bool(self._section("safety").get("dry_run_by_default", True))


def load_config(root: str | Path, path: Optional[str | Path] = None) -> WardenConfig:
    """Load YAML settings for ``root``.

    Without an explicit ``path`` the optional ``<root>/.warden/config.yaml`` is
    used; a missing default file simply means defaults.
    """

    root_p = Path(root).resolve()
    if path is None:
        p = root_p / DEFAULT_STATE_DIR / DEFAULT_CONFIG_NAME
        if not p.exists():
            return WardenConfig(root=root_p)
    else:
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(str(path))

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("warden config must be YAML")

    import yaml

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{p.name} must contain a mapping/object")

    return WardenConfig(root=root_p, raw=raw)
