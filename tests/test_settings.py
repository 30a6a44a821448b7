"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from turnkit.services.settings import (
    EndpointPaths,
    SecretVault,
    Settings,
    SettingsStore,
    environment_overrides,
    redact_secret,
)


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "key"))

    assert store.load() == Settings()


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    original = Settings(
        base_url="https://chat.example.com",
        api_key="super-secret",
        model="pro-core",
        plan="pro",
        display_name="Ada Lovelace",
        history_window=20,
        default_headers={"X-Client": "cli"},
        endpoints=EndpointPaths(completion="/v2/stream"),
    )

    SettingsStore(path).save(original)
    reloaded = SettingsStore(path).load()

    assert reloaded == original


def test_api_key_is_encrypted_on_disk(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path).save(Settings(api_key="super-secret"))

    payload = json.loads(path.read_text(encoding="utf-8"))

    assert "api_key" not in payload
    assert payload["api_key_ciphertext"] != "super-secret"
    assert payload["secret_backend"] == "fernet"
    assert path.with_suffix(".key").exists()


def test_undecryptable_key_is_dropped(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"api_key_ciphertext": "not-a-token", "model": "pro-core"}), encoding="utf-8")

    loaded = SettingsStore(path).load()

    assert loaded.api_key == ""
    assert loaded.model == "pro-core"


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert SettingsStore(path).load() == Settings()


def test_unknown_fields_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"plan": "max", "theme": "dark"}), encoding="utf-8")

    assert SettingsStore(path).load().plan == "max"


def test_env_overrides_take_precedence(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path).save(Settings(base_url="https://local", api_key="abc"))
    monkeypatch.setenv("TURNKIT_BASE_URL", "https://env-base")
    monkeypatch.setenv("TURNKIT_API_KEY", "env-key")
    monkeypatch.setenv("TURNKIT_HISTORY_WINDOW", "4")
    monkeypatch.setenv("TURNKIT_DEBUG_LOGGING", "yes")

    overridden = SettingsStore(path).load()

    assert overridden.base_url == "https://env-base"
    assert overridden.api_key == "env-key"
    assert overridden.history_window == 4
    assert overridden.debug_logging is True


def test_invalid_numeric_env_override_is_ignored(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TURNKIT_REQUEST_TIMEOUT", "soon")

    loaded = SettingsStore(tmp_path / "settings.json").load()

    assert loaded.request_timeout is None


def test_cli_overrides_apply_before_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TURNKIT_PLAN", "max")
    store = SettingsStore(tmp_path / "settings.json")

    loaded = store.load(overrides={"plan": "pro", "model": "pro-reason", "unknown": 1})

    assert loaded.plan == "max"
    assert loaded.model == "pro-reason"


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, ""), ("", ""), ("abc", "***"), ("sk-1234567890", "sk-1…7890")],
)
def test_redact_secret(value: str | None, expected: str) -> None:
    assert redact_secret(value) == expected


def test_unknown_plan_and_mode_are_normalized() -> None:
    settings = Settings(plan=" PRO ", mode="video")

    assert settings.plan == "pro"
    assert settings.mode == "auto"
    assert Settings(plan="enterprise").plan == "free"


def test_nonsense_numbers_are_clamped() -> None:
    settings = Settings(history_window=-3, hud_interval=0)

    assert settings.history_window == 0
    assert settings.hud_interval == 2.5


def test_persisted_endpoints_keep_defaults_for_missing_keys(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"endpoints": {"image": "/v2/image", "legacy": "/x", "stocks": ""}}), encoding="utf-8")

    endpoints = SettingsStore(path).load().endpoints

    assert endpoints.image == "/v2/image"
    assert endpoints.stocks == "/api/tools/stocks"


def test_wrongly_typed_payload_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"history_window": "many"}), encoding="utf-8")

    assert SettingsStore(path).load() == Settings()


def test_non_object_payload_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")

    assert SettingsStore(path).load() == Settings()


def test_environment_overrides_parse_each_type() -> None:
    overrides = environment_overrides(
        {
            "TURNKIT_MODE": "image",
            "TURNKIT_HUD_INTERVAL": "0.5",
            "TURNKIT_HISTORY_WINDOW": "nine",
            "TURNKIT_DEBUG_LOGGING": "off",
            "UNRELATED": "1",
        }
    )

    assert overrides == {"mode": "image", "hud_interval": 0.5, "debug_logging": False}


def test_vault_key_can_come_from_the_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TURNKIT_SECRET_KEY", Fernet.generate_key().decode("ascii"))
    vault = SecretVault(key_path=tmp_path / "settings.key")

    token = vault.encrypt("super-secret")

    assert vault.decrypt(token) == "super-secret"
    assert not vault.key_path.exists()


def test_vault_reuses_its_key_file(tmp_path: Path) -> None:
    token = SecretVault(key_path=tmp_path / "settings.key").encrypt("super-secret")

    assert SecretVault(key_path=tmp_path / "settings.key").decrypt(token) == "super-secret"
