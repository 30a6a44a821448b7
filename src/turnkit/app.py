"""Command line entry point running a single conversational turn."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import mimetypes
import os
import sys
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TextIO

import httpx

from .ai.client import CompletionClient, build_http_client
from .ai.gateway import BackendGateway
from .ai.orchestration.guard import ConcurrencyGuard, QuotaCounters
from .ai.orchestration.orchestrator import OrchestratorConfig, TurnOrchestrator
from .ai.orchestration.preferences import PreferenceStore
from .ai.orchestration.types import TurnEvent, TurnOutcome
from .chat.message_model import Conversation
from .services.history import FileHistoryStore
from .services.usage import FileUsageStore
from .services.settings import EndpointPaths, Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_NULL_VALUES = {"none", "null", ""}


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure logging for the command line tool."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


@dataclass(slots=True)
class Runtime:
    """Objects wired together for one command line session."""

    orchestrator: TurnOrchestrator
    client: CompletionClient
    gateway: BackendGateway
    http_client: httpx.AsyncClient
    printer: "ConsolePrinter"

    async def aclose(self) -> None:
        await self.http_client.aclose()


@dataclass(slots=True)
class ConsolePrinter:
    """Writes streamed assistant text to ``stream`` as it arrives."""

    stream: TextIO = field(default_factory=lambda: sys.stdout)
    conversation: Conversation | None = None
    _printed: Dict[str, str] = field(default_factory=dict)

    def __call__(self, event: TurnEvent) -> None:
        if event.type == "upsell":
            signal = event.payload.get("signal")
            self.stream.write(f"\n[upgrade] {getattr(signal, 'message', '')}\n")
        elif event.type == "notice":
            self.stream.write(f"\n[notice] {event.payload.get('text', '')}\n")
        elif event.type == "hints.updated":
            hints = ", ".join(event.payload.get("hints", ()))
            self.stream.write(f"\n[hints] {hints}\n")
        elif event.type == "message.updated" and event.message_id and self.conversation is not None:
            self._write_message(event.message_id)
        self.stream.flush()

    def _write_message(self, message_id: str) -> None:
        message = self.conversation.get(message_id) if self.conversation is not None else None
        if message is None or message.role != "assistant" or message.internal:
            return
        text = message.content
        printed = self._printed.get(message_id, "")
        if text.startswith(printed):
            self.stream.write(text[len(printed):])
        else:
            self.stream.write("\n" + text)
        self._printed[message_id] = text
        if message.progress is not None:
            self.stream.write(f"\r[{message.progress.label}]")
        if message.url:
            self.stream.write(f"\n{message.url}")


def build_runtime(settings: Settings, *, session_id: str = "default", stream: TextIO | None = None) -> Runtime:
    """Create the completion client, gateway and orchestrator for ``settings``."""

    http_client = build_http_client(settings)
    client = CompletionClient(settings, http_client=http_client)
    gateway = BackendGateway(settings, http_client=http_client)
    printer = ConsolePrinter(stream=stream or sys.stdout)
    preferences_path = Path(settings.preferences_path).expanduser() if settings.preferences_path else (
        Path.home() / ".turnkit" / "preferences.json"
    )
    orchestrator = TurnOrchestrator(
        client,
        gateway,
        config=OrchestratorConfig.from_settings(settings, session_id=session_id),
        guard=ConcurrencyGuard(QuotaCounters(store=FileUsageStore())),
        preference_store=PreferenceStore(preferences_path),
        history_store=FileHistoryStore(),
        on_event=printer,
    )
    printer.conversation = orchestrator.conversation
    return Runtime(orchestrator=orchestrator, client=client, gateway=gateway, http_client=http_client, printer=printer)


async def run_turn(
    settings: Settings,
    prompt: str,
    *,
    session_id: str = "default",
    content_mode: str = "auto",
    attachments: Sequence[Path] = (),
    voice: Path | None = None,
    speak_to: Path | None = None,
    stream: TextIO | None = None,
) -> TurnOutcome:
    """Run one turn against the configured backend and close every client afterwards.

    A ``voice`` note is transcribed and appended to ``prompt``; with
    ``speak_to`` the finished reply is also written there as audio.
    """

    runtime = build_runtime(settings, session_id=session_id, stream=stream)
    orchestrator = runtime.orchestrator
    try:
        orchestrator.restore_history()
        for path in attachments:
            mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            orchestrator.attach(path.name, path.read_bytes(), mime)
        if attachments:
            await orchestrator.upload_attachments()
        if voice is not None:
            mime = mimetypes.guess_type(voice.name)[0] or "audio/webm"
            transcript = await orchestrator.transcribe(voice.read_bytes(), name=voice.name, mime=mime)
            prompt = " ".join(part for part in (prompt, transcript) if part)
        outcome = await orchestrator.submit(prompt, content_mode=content_mode)
        await orchestrator.pipeline.wait_idle()
        if speak_to is not None and outcome.status == "finalized" and outcome.message_id:
            audio = await orchestrator.speak(outcome.message_id)
            if audio:
                speak_to.write_bytes(audio)
                _LOGGER.info("Wrote %s byte(s) of speech to %s", len(audio), speak_to)
    finally:
        await runtime.aclose()
    runtime.printer.stream.write("\n")
    _LOGGER.info("Turn outcome: %s", outcome.status)
    return outcome


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``turnkit`` console script."""

    args = _parse_cli_args(argv)

    debug = args.debug or _env_flag("TURNKIT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("TURNKIT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    prompt = " ".join(args.prompt).strip()
    if not prompt and not args.attach and not args.voice:
        print("Nothing to send: pass a prompt, --attach a file or --voice a recording.", file=sys.stderr)
        return 2

    try:
        outcome = asyncio.run(
            run_turn(
                settings,
                prompt,
                session_id=args.session,
                content_mode=args.content_mode,
                attachments=[Path(item).expanduser() for item in args.attach],
                voice=Path(args.voice).expanduser() if args.voice else None,
                speak_to=Path(args.speak).expanduser() if args.speak else None,
            )
        )
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 130
    return 0 if outcome.status in ("finalized", "stopped") else 1


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="turnkit",
        description="Send one conversational turn to the configured backend and print the reply.",
    )
    parser.add_argument("prompt", nargs="*", help="Message to send.")
    parser.add_argument(
        "--attach",
        metavar="PATH",
        action="append",
        default=[],
        help="Attach a file to the turn (repeatable).",
    )
    parser.add_argument("--voice", metavar="PATH", help="Transcribe a recorded voice note into the prompt.")
    parser.add_argument("--speak", metavar="PATH", help="Write the reply as speech (mp3) to PATH.")
    parser.add_argument(
        "--content-mode",
        choices=("auto", "text", "code", "image"),
        default="auto",
        help="Content hint for the turn.",
    )
    parser.add_argument("--session", default="default", help="History session to continue.")
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level to the console.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.turnkit/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    return parser.parse_args(argv)


def _flag(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"expected on/off, got {raw!r}")


def _integer(raw: str) -> int:
    return int(raw, 10)


def _optional_float(raw: str) -> float | None:
    return None if raw.lower() in _NULL_VALUES else float(raw)


def _optional_text(raw: str) -> str | None:
    return None if raw.lower() in _NULL_VALUES else raw


def _json_object(raw: str) -> Dict[str, Any]:
    try:
        value = json.loads(raw or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"expected a JSON object, got {raw!r}") from exc
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {raw!r}")
    return value


def _endpoint_paths(raw: str) -> EndpointPaths:
    payload = _json_object(raw)
    unknown = sorted(set(payload) - {item.name for item in fields(EndpointPaths)})
    if unknown:
        raise ValueError(f"unknown endpoints {unknown}")
    return EndpointPaths(**{key: str(value) for key, value in payload.items()})


# Settings fields not listed here are plain strings.
_OVERRIDE_PARSERS: Mapping[str, Callable[[str], Any]] = {
    "request_timeout": _optional_float,
    "history_window": _integer,
    "max_hints": _integer,
    "hud_interval": float,
    "profile_refresh_interval": float,
    "debug_logging": _flag,
    "preferences_path": _optional_text,
    "pre_analysis_delays": lambda raw: {str(plan): float(delay) for plan, delay in _json_object(raw).items()},
    "default_headers": lambda raw: {str(name): str(value) for name, value in _json_object(raw).items()},
    "endpoints": _endpoint_paths,
}


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    """Turn repeated ``--set KEY=VALUE`` arguments into typed settings values."""

    known = {item.name for item in fields(Settings)}
    overrides: Dict[str, Any] = {}
    for entry in items:
        key, separator, raw_value = entry.partition("=")
        key = key.strip()
        if not separator or not key:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        if key not in known:
            raise ValueError(f"Unknown setting '{key}'.")
        parse = _OVERRIDE_PARSERS.get(key, str)
        try:
            overrides[key] = parse(raw_value.strip())
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{key}: {exc}") from exc
    return overrides


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(payload.get("api_key"))
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "log_file": str(logging_utils.get_log_path() or ""),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("TURNKIT_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
