from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional


def atomic_write_bytes(path: str | Path, data: bytes, *, mode: Optional[int] = None) -> None:
    """Write ``data`` to ``path`` so readers see either the old file or the new one.

    The temp file lives in the target directory so the final ``os.replace`` is
    a same-filesystem rename. ``mode`` (permission bits) is applied to the temp
    file before the rename.
    """
    p = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=".warden-write-", dir=str(p.parent))
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, p)
    finally:
        if tmp.exists():
            tmp.unlink()


def load_record(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    data: Any = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Record must be an object/dict, got {type(data)}: {p}")
    return data


def save_record(path: str | Path, record: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(record, indent=2, sort_keys=True) + "\n"
    atomic_write_bytes(p, text.encode("utf-8"))
