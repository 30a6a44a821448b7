"""Logging setup for turnkit: rotating log file, turn-scoped context and secret masking."""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

__all__ = [
    "SecretMaskFilter",
    "TurnContextFilter",
    "current_turn",
    "get_log_path",
    "mask_secrets",
    "setup_logging",
    "turn_scope",
]

_DEFAULT_LOG_DIR = Path.home() / ".turnkit" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_NO_TURN = "-"
_TURN_ID: ContextVar[str] = ContextVar("turnkit_turn_id", default=_NO_TURN)
_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=\-]+", re.IGNORECASE),
    re.compile(r"\b(sk-)[A-Za-z0-9_\-]{8,}"),
    re.compile(r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]+", re.IGNORECASE),
)
_CONFIGURED = False
_LOG_PATH: Path | None = None


def mask_secrets(text: str) -> str:
    """Replace bearer tokens and API keys in ``text`` with ``***``."""

    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda match: f"{match.group(1)}***", text)
    return text


class TurnContextFilter(logging.Filter):
    """Stamps every record with the id of the turn that produced it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.turn = _TURN_ID.get()
        return True


class SecretMaskFilter(logging.Filter):
    """Masks credentials that end up in formatted log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


@contextmanager
def turn_scope(turn_id: str) -> Iterator[str]:
    """Tag log records emitted inside the block (and tasks it spawns) with ``turn_id``."""

    token = _TURN_ID.set(turn_id)
    try:
        yield turn_id
    finally:
        _TURN_ID.reset(token)


def current_turn() -> str:
    return _TURN_ID.get()


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file and an optional console handler."""

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "turnkit.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | turn=%(turn)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    filters: tuple[logging.Filter, ...] = (TurnContextFilter(), SecretMaskFilter())

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        for log_filter in filters:
            handler.addFilter(log_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("TURNKIT_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    # httpx logs every request line at INFO; keep it out of turn logs.
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
