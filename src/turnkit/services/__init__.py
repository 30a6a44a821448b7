"""Application services (settings, history and usage persistence)."""

from .history import FileHistoryStore
from .settings import SecretVault, Settings, SettingsStore, redact_secret
from .usage import FileUsageStore

__all__ = ["FileHistoryStore", "FileUsageStore", "Settings", "SettingsStore", "SecretVault", "redact_secret"]
