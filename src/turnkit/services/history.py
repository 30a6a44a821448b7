"""JSON file persistence for conversation history, one file per session."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

__all__ = ["FileHistoryStore"]

LOGGER = logging.getLogger(__name__)
_DEFAULT_HISTORY_DIR = Path.home() / ".turnkit" / "history"
_HISTORY_VERSION = 1
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


class FileHistoryStore:
    """Stores each session's serialized messages under ``directory``."""

    def __init__(self, directory: Path | None = None) -> None:
        self._directory = directory or _DEFAULT_HISTORY_DIR

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, session_id: str) -> Path:
        safe = _UNSAFE_CHARS.sub("_", session_id).strip("._") or "default"
        return self._directory / f"{safe}.json"

    def load(self, session_id: str) -> List[Dict[str, Any]]:
        path = self.path_for(session_id)
        if not path.exists():
            return []
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            LOGGER.warning("History file %s is not valid JSON: %s", path, exc)
            return []
        messages = payload.get("messages") if isinstance(payload, Mapping) else None
        if not isinstance(messages, list):
            return []
        return [dict(item) for item in messages if isinstance(item, Mapping)]

    def save(self, session_id: str, messages: Sequence[Mapping[str, Any]]) -> Path:
        path = self.path_for(session_id)
        body = json.dumps(
            {"version": _HISTORY_VERSION, "session_id": session_id, "messages": [dict(item) for item in messages]},
            indent=2,
            ensure_ascii=False,
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(path)
        LOGGER.debug("Saved %s message(s) for session %s", len(messages), session_id)
        return path
