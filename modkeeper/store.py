from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class JsonFileStore:
    """Durable JSON documents keyed by file path.

    Reads never raise: a missing or malformed document yields ``default``.
    Writes go through a temporary file and ``os.replace`` so a crash never
    leaves a truncated document behind; write errors propagate as ``OSError``
    and callers decide whether persistence is best-effort.
    """

    def read(self, path: Path, default: Any = None) -> Any:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return default
        except OSError as exc:
            logger.warning("Cannot read %s: %s", path, exc)
            return default
        if not raw.strip():
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring malformed JSON in %s: %s", path, exc)
            return default

    def write(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def delete(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
