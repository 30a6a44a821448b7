"""Lightweight language detection and plan-aware language policy."""

from __future__ import annotations

import re
from typing import Mapping, Sequence

from ...chat.message_model import Message
from ..plans import normalize_plan

__all__ = [
    "choose_preferred_language",
    "detect_conversation_language",
    "detect_language",
    "language_rules",
    "wants_full_language",
]

_SCRIPT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("ar", re.compile("[\u0600-\u06ff]")),
    ("ru", re.compile("[\u0400-\u04ff]")),
    ("hi", re.compile("[\u0900-\u097f]")),
    ("ja", re.compile("[\u3040-\u30ff]")),
    ("zh", re.compile("[\u4e00-\u9fff]")),
    ("ko", re.compile("[\uac00-\ud7af]")),
)

# Latin-script languages need at least two keyword hits to win over English.
_KEYWORDS: Mapping[str, frozenset[str]] = {
    "pcm": frozenset({"dey", "wahala", "abi", "sabi", "oga", "wetin", "abeg"}),
    "es": frozenset({"el", "la", "que", "para", "con", "pero", "gracias", "hola", "por", "qué", "cómo", "es", "una"}),
    "fr": frozenset({"le", "la", "et", "mais", "merci", "pour", "avec", "bonjour", "je", "est", "une", "les"}),
    "de": frozenset({"der", "die", "das", "und", "danke", "bitte", "ich", "ist", "nicht", "ein"}),
    "pt": frozenset({"que", "não", "sim", "obrigado", "obrigada", "para", "você", "olá", "uma", "é"}),
    "it": frozenset({"il", "la", "grazie", "per", "con", "ciao", "che", "sono", "della"}),
    "tr": frozenset({"ve", "bir", "için", "teşekkür", "merhaba", "bu", "ne"}),
}
_MIN_KEYWORD_HITS = 2

_LOCAL_FLAVOR: Mapping[str, tuple[str, tuple[str, ...]]] = {
    "yo": ("Yorùbá", ("ọrẹ", "ẹ ṣé")),
    "ig": ("Igbo", ("biko", "nne/nna")),
    "ha": ("Hausa", ("lafiya", "don Allah")),
    "pcm": ("Nigerian Pidgin", ("no wahala", "abeg")),
}


def detect_language(text: str, fallback: str = "en") -> str:
    """Guess the language of ``text`` from its script or common words."""

    stripped = (text or "").strip()
    if not stripped:
        return fallback
    for code, pattern in _SCRIPT_PATTERNS:
        if pattern.search(stripped):
            return code
    words = re.findall(r"[^\W\d_]+", stripped.lower())
    best, best_hits = fallback, 0
    for code, keywords in _KEYWORDS.items():
        hits = sum(1 for word in words if word in keywords)
        if hits >= _MIN_KEYWORD_HITS and hits > best_hits:
            best, best_hits = code, hits
    return best


def detect_conversation_language(messages: Sequence[Message], fallback: str = "en") -> str:
    """Language of the latest non-internal user message."""

    for message in reversed(messages):
        if message.role == "user" and not message.internal and message.content.strip():
            return detect_language(message.content, fallback.split("-")[0])
    return fallback.split("-")[0]


def choose_preferred_language(
    plan: str,
    conversation_hint: str | None = None,
    name_hint: str | None = None,
    locale: str = "en",
) -> str:
    base = (locale or "en").split("-")[0]
    if normalize_plan(plan) != "free":
        return conversation_hint or name_hint or base or "en"
    # Free keeps English unless the user clearly writes another language.
    if conversation_hint and conversation_hint != "en":
        return conversation_hint
    return (name_hint or "en") if base == "en" else base


def wants_full_language(text: str) -> str | None:
    """Detect explicit requests to switch the whole chat language."""

    lowered = (text or "").lower()
    if re.search(r"yoruba|yorùbá", lowered):
        return "yo"
    if re.search(r"\bigbo\b|\bibo\b", lowered):
        return "ig"
    if re.search(r"\bhausa\b", lowered):
        return "ha"
    if re.search(r"\b(?:pidgin|naija|broken english)\b", lowered):
        return "pcm"
    for code, name in (("fr", r"french"), ("es", r"spanish"), ("de", r"german"), ("ar", r"arab(?:ic)?")):
        if re.search(rf"\b(?:in|speak|reply|talk|chat)\b.*\b{name}\b", lowered):
            return code
    return None


def language_rules(plan: str, language: str | None) -> str:
    """System-prompt lines for the working language."""

    code = language or "en"
    flavor = _LOCAL_FLAVOR.get(code)
    if normalize_plan(plan) == "free":
        lines = ["Language: default to English."]
        if flavor:
            lines.append(
                f"If the user hints {flavor[0]}, add a short greeting or one or two comfort words "
                f"({', '.join(flavor[1])}) then continue in English."
            )
        elif code != "en":
            lines.append(f"The user is writing in {code.upper()}; reply in that language.")
        lines.append("Write in native orthography with correct diacritics.")
        return "\n".join(lines)
    lines = [
        f"Language: reply fully in {code.upper()} until the user switches.",
        "Write in native orthography with correct diacritics.",
    ]
    if flavor:
        lines.append(f"In sensitive moments, open with a brief reassurance in {flavor[0]} ({', '.join(flavor[1])}).")
    return "\n".join(lines)
