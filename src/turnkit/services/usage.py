"""JSON file persistence for the daily quota counters."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping

__all__ = ["FileUsageStore"]

LOGGER = logging.getLogger(__name__)
_DEFAULT_USAGE_PATH = Path.home() / ".turnkit" / "usage.json"


class FileUsageStore:
    """Keeps the latest quota snapshot in a single JSON file."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_USAGE_PATH

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Usage file %s could not be read: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Usage file %s does not hold an object; starting fresh", self._path)
            return {}
        return payload

    def save(self, payload: Mapping[str, object]) -> Path:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(".tmp")
        staging.write_text(json.dumps(dict(payload), indent=2, sort_keys=True), encoding="utf-8")
        staging.replace(self._path)
        return self._path
