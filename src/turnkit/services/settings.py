"""Runtime settings: defaults, JSON persistence, the encrypted API key and ``TURNKIT_*`` overrides.

Precedence, lowest first: dataclass defaults, the settings file, CLI
overrides, environment variables.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "EndpointPaths",
    "Settings",
    "SettingsStore",
    "SecretVault",
    "environment_overrides",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

_SETTINGS_DIR = Path.home() / ".turnkit"
_SETTINGS_VERSION = 1
_CIPHERTEXT_FIELD = "api_key_ciphertext"
_VAULT_KEY_ENV = "TURNKIT_SECRET_KEY"
_PLANS: tuple[str, ...] = ("free", "pro", "max")
_CONTENT_MODES: tuple[str, ...] = ("auto", "text", "image")
_DEFAULT_HUD_INTERVAL = 2.5
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


def _parse_flag(raw: str) -> bool:
    return raw.strip().lower() in _TRUE_VALUES


# variable -> (field, parser); parsers raise ValueError on bad input.
_ENV_FIELDS: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "TURNKIT_API_KEY": ("api_key", str),
    "TURNKIT_BASE_URL": ("base_url", str),
    "TURNKIT_MODEL": ("model", str),
    "TURNKIT_PLAN": ("plan", str),
    "TURNKIT_MODE": ("mode", str),
    "TURNKIT_DISPLAY_NAME": ("display_name", str),
    "TURNKIT_LANGUAGE": ("fallback_language", str),
    "TURNKIT_DEBUG_LOGGING": ("debug_logging", _parse_flag),
    "TURNKIT_REQUEST_TIMEOUT": ("request_timeout", float),
    "TURNKIT_HUD_INTERVAL": ("hud_interval", float),
    "TURNKIT_HISTORY_WINDOW": ("history_window", lambda raw: int(raw, 10)),
}


@dataclass(slots=True)
class EndpointPaths:
    """Relative paths of the backend endpoints, joined onto ``base_url``."""

    completion: str = "/api/ai/stream"
    image: str = "/api/ai/image"
    file_ingest: str = "/api/files/ingest"
    file_analyze: str = "/api/files/analyze"
    web_search: str = "/api/tools/web-search"
    stocks: str = "/api/tools/stocks"
    weather: str = "/api/tools/weather"
    transcribe: str = "/api/stt"
    speech: str = "/api/tts"

    @classmethod
    def from_mapping(cls, raw: Any) -> "EndpointPaths":
        """Build from persisted data, keeping defaults for missing or unknown keys."""

        if not isinstance(raw, Mapping):
            return cls()
        known = {item.name for item in fields(cls)}
        return cls(**{key: str(value) for key, value in raw.items() if key in known and value})


@dataclass(slots=True)
class Settings:
    """Connection, plan and session settings.

    ``plan`` and ``mode`` are normalized on construction: unknown plans fall
    back to ``free`` and unknown content modes to ``auto``.
    """

    base_url: str = "http://localhost:3000"
    api_key: str = ""
    model: str = "free-core"
    plan: str = "free"
    mode: str = "auto"
    display_name: str = "there"
    fallback_language: str = "en"
    request_timeout: float | None = None
    history_window: int = 12
    hud_interval: float = _DEFAULT_HUD_INTERVAL
    max_hints: int = 8
    pre_analysis_delays: dict[str, float] = field(default_factory=lambda: {"pro": 0.9, "max": 0.5})
    profile_refresh_interval: float = 15.0
    default_headers: dict[str, str] = field(default_factory=dict)
    endpoints: EndpointPaths = field(default_factory=EndpointPaths)
    preferences_path: str | None = None
    debug_logging: bool = False

    def __post_init__(self) -> None:
        plan = (self.plan or "").strip().lower()
        if plan not in _PLANS:
            LOGGER.warning("Unknown plan %r in settings; using free", self.plan)
            plan = "free"
        self.plan = plan
        if self.mode not in _CONTENT_MODES:
            LOGGER.warning("Unknown content mode %r in settings; using auto", self.mode)
            self.mode = "auto"
        self.history_window = max(0, self.history_window)
        if self.hud_interval <= 0:
            self.hud_interval = _DEFAULT_HUD_INTERVAL


def redact_secret(value: str | None) -> str:
    """Return a display-safe version of ``value``."""

    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}…{value[-4:]}"


def environment_overrides(environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Settings values supplied through ``TURNKIT_*`` variables.

    Values that fail to parse are logged and skipped.
    """

    source = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    for name, (field_name, parse) in _ENV_FIELDS.items():
        raw = source.get(name)
        if raw is None:
            continue
        try:
            values[field_name] = parse(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s: %r is not a valid %s", name, raw, field_name)
    return values


class SecretVault:
    """Fernet encryption for the stored API key.

    The Fernet key comes from ``TURNKIT_SECRET_KEY`` when that variable is
    set; otherwise it lives in ``key_path``, created on first use and
    readable only by the owner.
    """

    strategy = "fernet"

    def __init__(self, key_path: Path | None = None, *, env_var: str = _VAULT_KEY_ENV) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._env_var = env_var
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        return self._cipher().encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Raise :class:`cryptography.fernet.InvalidToken` when ``token`` was not made with this key."""

        return self._cipher().decrypt(token.encode("ascii")).decode("utf-8")

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._key())
        return self._fernet

    def _key(self) -> bytes:
        supplied = os.environ.get(self._env_var, "").strip()
        if supplied:
            return supplied.encode("ascii")
        try:
            return self._key_path.read_bytes().strip()
        except FileNotFoundError:
            pass
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        descriptor = os.open(self._key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(descriptor, "wb") as handle:
            handle.write(key)
        LOGGER.info("Created settings key at %s", self._key_path)
        return key


class SettingsStore:
    """Reads and writes :class:`Settings` as JSON with the API key encrypted."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or (_SETTINGS_DIR / "settings.json")
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load the settings file, then apply ``overrides`` and the environment on top."""

        settings = self._from_payload(self._read())
        if overrides:
            settings = _with_overrides(settings, overrides, source="CLI")
        environment = environment_overrides()
        if environment:
            settings = _with_overrides(settings, environment, source="environment")
        return settings

    def save(self, settings: Settings) -> Path:
        """Write ``settings`` atomically; the plaintext key never touches disk."""

        payload = asdict(settings)
        api_key = payload.pop("api_key", "")
        if api_key:
            payload[_CIPHERTEXT_FIELD] = self._vault.encrypt(api_key)
        payload["version"] = _SETTINGS_VERSION
        payload["secret_backend"] = self._vault.strategy

        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(".tmp")
        staging.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        staging.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not hold an object; using defaults", self._path)
            return {}
        version = payload.get("version")
        if isinstance(version, int) and version > _SETTINGS_VERSION:
            LOGGER.warning("Settings file %s was written by a newer version (%s)", self._path, version)
        return payload

    def _from_payload(self, payload: Mapping[str, Any]) -> Settings:
        if not payload:
            return Settings()
        known = {item.name for item in fields(Settings)} - {"api_key", "endpoints"}
        data = {key: value for key, value in payload.items() if key in known}
        data["endpoints"] = EndpointPaths.from_mapping(payload.get("endpoints"))
        try:
            settings = Settings(**data)
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Settings file %s contained unexpected data: %s", self._path, exc)
            settings = Settings()
        api_key = self._decrypt_api_key(payload.get(_CIPHERTEXT_FIELD))
        return replace(settings, api_key=api_key) if api_key else settings

    def _decrypt_api_key(self, ciphertext: Any) -> str:
        if not isinstance(ciphertext, str) or not ciphertext:
            return ""
        try:
            return self._vault.decrypt(ciphertext)
        except InvalidToken:
            LOGGER.warning("Stored API key could not be decrypted; ignoring it")
            return ""


def _with_overrides(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    known = {item.name for item in fields(Settings)}
    accepted = {key: value for key, value in overrides.items() if key in known and value is not None}
    skipped = sorted(set(overrides) - set(accepted))
    if skipped:
        LOGGER.debug("Skipping %s overrides: %s", source, skipped)
    if not accepted:
        return settings
    LOGGER.debug("Applying %s overrides: %s", source, sorted(accepted))
    return replace(settings, **accepted)
