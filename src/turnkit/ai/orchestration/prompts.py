"""System prompt assembly, history trimming and reply post-processing."""

from __future__ import annotations

import re
from typing import Iterable, List, Sequence, cast

from openai.types.chat import ChatCompletionMessageParam

from ...chat.message_model import AttachmentRef, Message
from ..plans import Capabilities, normalize_plan
from .language import language_rules
from .preferences import UserPrefs, preference_rules

__all__ = [
    "DEFAULT_HISTORY_WINDOW",
    "build_file_manifest",
    "build_history_window",
    "build_system_prompt",
    "capability_rules",
    "split_suggestions",
    "tool_marker_rules",
]

DEFAULT_HISTORY_WINDOW = 12

_SUGGESTED_RE = re.compile(r"<suggested>[\s\S]*?</suggested>", re.IGNORECASE)
_SUGGESTED_TAG_RE = re.compile(r"</?suggested>", re.IGNORECASE)
_SUGGESTION_PREFIX_RE = re.compile(r"^[-•\d.\s\"]+")


def capability_rules(plan: str) -> str:
    tier = normalize_plan(plan)
    lines = [
        "# Capability rules",
        "Be fast, friendly, realistic, and solution-oriented.",
        "Strictly follow platform safety policies.",
        "Use clear names, accurate math (calculate digit by digit), and realistic examples.",
    ]
    if tier == "free":
        lines += [
            "Keep answers tight; prioritize essential guidance and short examples.",
            "Avoid heavy formatting or large code unless necessary.",
            "If external sources are required and not available, state limits briefly and continue.",
        ]
    elif tier == "pro":
        lines += [
            "Offer fuller solutions with short justifications.",
            "When the task benefits from structure, organize with bullets.",
            "When citing sources or standards, include concise attributions.",
        ]
    else:
        lines += [
            "Deliver comprehensive, production-grade solutions when requested.",
            "Proactively propose better alternatives and edge-case checks.",
            "For complex tasks, produce a crisp summary first, then the full solution.",
        ]
    return "\n".join(lines)


def tool_marker_rules(capabilities: Capabilities) -> str:
    """Explain the marker lines the model may emit for the tools it can use."""

    lines = ["# Live data", "When you need fresh data, emit exactly one line per lookup and stop:"]
    if capabilities.web_search:
        lines.append("##WEB_SEARCH: <query>")
    if capabilities.market_data:
        lines.append("##STOCKS: <comma separated ticker symbols>")
    if capabilities.weather:
        lines.append("##WEATHER: <lat,lon or city name>")
    if len(lines) == 2:
        return ""
    lines.append("Never invent live prices, headlines or forecasts.")
    if capabilities.followup_pills:
        lines.append("You may end with up to three follow-up prompts inside <suggested></suggested>, one per line.")
    return "\n".join(lines)


def build_system_prompt(
    *,
    plan: str,
    capabilities: Capabilities,
    prefs: UserPrefs,
    language: str | None,
    display_name: str | None = None,
    extra: Iterable[str] = (),
) -> str:
    header = [
        "# Assistant rules",
        "Identity: a practical, friendly expert assistant that solves problems quickly and clearly.",
        "When something is ambiguous, make a reasonable assumption and continue.",
    ]
    if display_name:
        header.append(f"The user's display name is {display_name}.")
    sections = [
        "\n".join(header),
        capability_rules(plan),
        preference_rules(prefs, plan),
        language_rules(plan, language),
        tool_marker_rules(capabilities),
        *extra,
    ]
    return "\n\n".join(section for section in sections if section)


def build_file_manifest(attachments: Sequence[AttachmentRef]) -> str:
    """Compact description of the ready attachments sent with a turn."""

    lines = ["# Attached files"]
    for number, item in enumerate(attachments, start=1):
        size_kb = max(1, round(item.size / 1024)) if item.size else 0
        entry = f"{number}. {item.name} ({item.kind}, {item.mime or 'unknown type'}"
        entry += f", {size_kb} KB)" if size_kb else ")"
        if item.remote_url:
            entry += f" {item.remote_url}"
        lines.append(entry)
        if item.analysis_result is not None and item.analysis_result.summary:
            lines.append(f"   Summary: {item.analysis_result.summary}")
    return "\n".join(lines)


def build_history_window(messages: Sequence[Message], limit: int = DEFAULT_HISTORY_WINDOW) -> List[ChatCompletionMessageParam]:
    """Last ``limit`` non-system turns, without internal echoes or empty ghosts."""

    kept: List[Message] = []
    for message in messages:
        if message.role == "system" or message.internal:
            continue
        if message.kind == "image":
            if not message.url:
                continue
            kept.append(message)
            continue
        if not message.content.strip():
            continue
        kept.append(message)
    window = kept[-limit:] if limit > 0 else []
    return [_history_param(message) for message in window]


def _history_param(message: Message) -> ChatCompletionMessageParam:
    if message.kind == "image" and message.url:
        text = f"[Generated image for: {message.prompt or 'image'}] {message.url}"
        return cast(ChatCompletionMessageParam, {"role": message.role, "content": text})
    return message.to_chat_param()


def split_suggestions(markdown: str) -> tuple[str, tuple[str, ...]]:
    """Split a ``<suggested>`` block off the reply."""

    match = _SUGGESTED_RE.search(markdown or "")
    if match is None:
        return markdown, ()
    inner = _SUGGESTED_TAG_RE.sub("", match.group(0)).strip()
    suggestions = []
    for line in inner.split("\n"):
        cleaned = _SUGGESTION_PREFIX_RE.sub("", line).rstrip('"').strip()
        if cleaned:
            suggestions.append(cleaned)
    visible = (markdown[: match.start()] + markdown[match.end():]).strip()
    return visible, tuple(suggestions)
