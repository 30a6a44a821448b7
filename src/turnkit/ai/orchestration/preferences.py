"""Sticky user preferences parsed from natural-language directives."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..plans import normalize_plan

__all__ = [
    "DirectiveResult",
    "PreferenceStore",
    "UserPrefs",
    "apply_directive",
    "gate_for_plan",
    "merge_prefs",
    "parse_user_directive",
    "preference_rules",
]

LOGGER = logging.getLogger(__name__)

_MIN_WORDS = 40
_MAX_WORDS = 5000
_FREE_MAX_WORDS = 200
_LIST_CAP = 20

_LANGUAGE_NAMES: Mapping[str, str] = {
    "english": "en",
    "french": "fr",
    "german": "de",
    "spanish": "es",
    "portuguese": "pt",
    "italian": "it",
    "turkish": "tr",
    "russian": "ru",
    "arabic": "ar",
    "hindi": "hi",
    "bengali": "bn",
    "chinese": "zh",
    "japanese": "ja",
    "korean": "ko",
    "farsi": "fa",
    "persian": "fa",
    "urdu": "ur",
    "vietnamese": "vi",
    "indonesian": "id",
    "thai": "th",
    "yoruba": "yo",
    "igbo": "ig",
    "hausa": "ha",
    "pidgin": "pcm",
    "naija": "pcm",
}
_CODE_LANGUAGES: Mapping[str, str] = {
    "typescript": "ts",
    "ts": "ts",
    "javascript": "js",
    "js": "js",
    "c#": "csharp",
    "csharp": "csharp",
    "c++": "cpp",
    "cpp": "cpp",
    "python": "python",
    "go": "go",
    "rust": "rust",
    "sql": "sql",
    "java": "java",
    "swift": "swift",
    "kotlin": "kotlin",
}


@dataclass(slots=True, frozen=True)
class UserPrefs:
    """Persisted steering preferences."""

    terse: bool = False
    max_words: int | None = None
    avoid_words: tuple[str, ...] = ()
    bold_words: tuple[str, ...] = ()
    no_pdf: bool = False
    no_tables: bool = False
    no_emojis: bool = False
    style: str = "casual"
    units: str | None = None
    call_me: str | None = None
    use_language: str | None = None
    reasoning: str = "balanced"
    code_language: str | None = None
    code_explain: bool = True
    math_steps: str = "auto"
    math_latex: bool = True
    tables: str = "auto"
    citations: str = "auto"
    image_richness: str = "auto"
    small_talk: str = "auto"
    empathy: str = "auto"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["avoid_words"] = list(self.avoid_words)
        data["bold_words"] = list(self.bold_words)
        return data

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UserPrefs":
        allowed = {item.name for item in fields(cls)}
        data = {key: value for key, value in payload.items() if key in allowed}
        for key in ("avoid_words", "bold_words"):
            if key in data:
                data[key] = tuple(str(item) for item in data[key] or ())
        return _normalize(cls(**data))


@dataclass(slots=True, frozen=True)
class DirectiveResult:
    """Preference changes found in one message plus a short acknowledgement."""

    delta: Dict[str, Any]
    ack: str | None = None

    @property
    def empty(self) -> bool:
        return not self.delta


def _unique(items: tuple[str, ...] | list[str]) -> tuple[str, ...]:
    seen: list[str] = []
    for item in items:
        cleaned = item.strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return tuple(seen[:_LIST_CAP])


def _normalize(prefs: UserPrefs) -> UserPrefs:
    max_words = prefs.max_words
    if max_words is not None:
        max_words = max(_MIN_WORDS, min(_MAX_WORDS, round(max_words)))
    return replace(
        prefs,
        max_words=max_words,
        avoid_words=_unique(prefs.avoid_words),
        bold_words=_unique(prefs.bold_words),
    )


def merge_prefs(current: UserPrefs, delta: Mapping[str, Any]) -> UserPrefs:
    """Apply ``delta``; word lists are appended, everything else overwritten."""

    changes: Dict[str, Any] = {}
    for key, value in delta.items():
        if value is None and key != "max_words":
            continue
        if key in ("avoid_words", "bold_words"):
            changes[key] = tuple(getattr(current, key)) + tuple(value)
        else:
            changes[key] = value
    return _normalize(replace(current, **changes))


def _search(pattern: str, text: str) -> re.Match[str] | None:
    return re.search(pattern, text, re.IGNORECASE)


def parse_user_directive(text: str) -> DirectiveResult:
    """Read "from now on..." style directives from a user message."""

    s = (text or "").strip()
    if not s:
        return DirectiveResult({})
    delta: Dict[str, Any] = {}
    acks: list[str] = []

    if _search(r"\b(be|keep it|make it)\s+(short|brief|concise)\b", s):
        delta["terse"] = True
        acks.append("keep replies concise")
    cap = _search(r"\b(cap|limit)\s+(at|to)\s+(\d{2,5})\s*words?\b", s)
    if cap:
        words = min(_MAX_WORDS, max(_MIN_WORDS, int(cap.group(3))))
        delta["max_words"] = words
        acks.append(f"cap ~{words} words")

    if _search(r"\b(be|go)\s+formal\b", s):
        delta["style"] = "formal"
        acks.append("use a more formal tone")
    if _search(r"\b(be|keep it)\s+casual\b", s):
        delta["style"] = "casual"
        acks.append("keep tone casual")
    if _search(r"\bmore\s+(friendly|warm|human)\b", s):
        delta["empathy"] = "high"
        acks.append("sound warmer")
    if _search(r"\bless\s+(chit\s*chat|small\s*talk)\b", s):
        delta["small_talk"] = "low"
        acks.append("reduce small talk")

    if _search(r"\buse\s+metric\b", s):
        delta["units"] = "metric"
        acks.append("use metric units")
    if _search(r"\buse\s+imperial\b", s):
        delta["units"] = "imperial"
        acks.append("use imperial units")

    avoid = _search(r"\b(?:don't|do not)\s+say\s+[\"“']?([^\"”']{2,40}?)[\"”']?(?:[.!]|$)", s)
    if avoid:
        delta["avoid_words"] = [avoid.group(1).strip()]
        acks.append(f"avoid “{avoid.group(1).strip()}”")
    bold = _search(r"\b(?:make|render)\s+[\"“']?([^\"”']{2,40}?)[\"”']?\s+bold\b", s)
    if bold:
        delta["bold_words"] = [bold.group(1).strip()]
        acks.append(f"bold “{bold.group(1).strip()}”")

    if _search(r"\bno\s+pdfs?\b", s):
        delta["no_pdf"] = True
        acks.append("no PDFs")
    if _search(r"\bno\s+tables?\b", s):
        delta["no_tables"] = True
        acks.append("avoid tables")
    if _search(r"\bno\s+emojis?\b", s):
        delta["no_emojis"] = True
        acks.append("no emojis")

    call = _search(r"\b(?:call|address)\s+me\s+([A-Za-z0-9 _.\-]{2,40}?)\s*(?:[.!,]|$)", s)
    if call:
        delta["call_me"] = call.group(1).strip()
        acks.append(f"call you “{delta['call_me']}”")

    language = _search(r"\b(?:reply|respond|use|speak)\s+(?:only\s+)?in\s+([A-Za-zÀ-ÖØ-öø-ÿ]+)\b", s)
    if language:
        code = _LANGUAGE_NAMES.get(language.group(1).lower())
        if code:
            delta["use_language"] = code
            acks.append(f"use {language.group(1)} when appropriate")

    if _search(r"\b(?:be|keep it|go)\s+(?:fast|quick)\b", s):
        delta["reasoning"] = "fast"
        acks.append("favor fast answers")
    if _search(r"\b(?:be|go)\s+(?:deep|deeper|thorough)\b", s):
        delta["reasoning"] = "deep"
        acks.append("go deeper")

    if _search(r"\b(show|include)\s+(the\s+)?steps\b", s):
        delta["math_steps"] = "always"
        acks.append("show steps for math")
    if _search(r"\b(no|hide)\s+(the\s+)?steps\b", s):
        delta["math_steps"] = "never"
        acks.append("hide steps unless asked")

    code_pref = _search(r"\b(?:prefer|use)\s+(typescript|ts|javascript|js|python|go|rust|sql|java|c#|csharp|c\+\+|cpp|swift|kotlin)(?![\w+#])", s)
    if code_pref:
        lang = _CODE_LANGUAGES[code_pref.group(1).lower()]
        delta["code_language"] = lang
        acks.append(f"prefer {lang.upper()}")

    if _search(r"\balways\s+cite\b", s):
        delta["citations"] = "always"
        acks.append("always provide citations when sourcing")
    if _search(r"\b(no|avoid)\s+citations?\b", s):
        delta["citations"] = "never"
        acks.append("no citations")

    ack = f"Got it: {', '.join(acks)}." if acks else None
    return DirectiveResult(delta, ack)


def gate_for_plan(delta: Mapping[str, Any], plan: str) -> Dict[str, Any]:
    """Free plans persist only a small subset of directives."""

    if normalize_plan(plan) != "free":
        return dict(delta)
    gated: Dict[str, Any] = {}
    if "terse" in delta:
        gated["terse"] = delta["terse"]
    if delta.get("max_words"):
        gated["max_words"] = min(int(delta["max_words"]), _FREE_MAX_WORDS)
    if delta.get("avoid_words"):
        gated["avoid_words"] = list(delta["avoid_words"])[:3]
    if delta.get("call_me"):
        gated["call_me"] = delta["call_me"]
    if delta.get("use_language"):
        gated["use_language"] = delta["use_language"]
    return gated


def apply_directive(current: UserPrefs, text: str, plan: str) -> tuple[UserPrefs, str | None]:
    """Parse, gate and merge one message; returns the new prefs and ack text."""

    result = parse_user_directive(text)
    gated = gate_for_plan(result.delta, plan)
    if not gated:
        return current, None
    return merge_prefs(current, gated), result.ack


def preference_rules(prefs: UserPrefs, plan: str) -> str:
    """Render preferences as system-prompt guidance."""

    lines: list[str] = []
    if prefs.call_me:
        lines.append(f"Address the user as “{prefs.call_me}” when natural (not every line).")
    if prefs.style:
        lines.append(f"Tone: {prefs.style}.")
    if prefs.terse:
        lines.append("Default to concise answers unless depth is required.")
    if prefs.max_words:
        lines.append(f"Target around {prefs.max_words} words when reasonable.")
    if prefs.units:
        lines.append(f"Use {prefs.units} units for measurements where relevant.")
    if prefs.no_emojis:
        lines.append("Do not use emojis.")
    if prefs.no_tables or prefs.tables == "never":
        lines.append("Avoid Markdown tables; prefer bullets or short sections.")
    if prefs.no_pdf:
        lines.append("Do not propose PDFs unless explicitly requested.")
    if prefs.avoid_words:
        lines.append(f"Avoid these words: {', '.join(prefs.avoid_words)}.")
    if prefs.bold_words:
        lines.append("Bold these terms when they appear: " + ", ".join(f"**{word}**" for word in prefs.bold_words) + ".")
    if prefs.use_language:
        if normalize_plan(plan) == "free":
            lines.append(f"You may greet or sprinkle short phrases in {prefs.use_language}; do not switch entire replies.")
        else:
            lines.append(f"Reply entirely in {prefs.use_language} when appropriate.")
    lines.append(
        {
            "fast": "Reasoning: prioritize speed; give a crisp answer first.",
            "deep": "Reasoning: be thorough; cover edge cases and assumptions.",
        }.get(prefs.reasoning, "Reasoning: balance speed and completeness.")
    )
    if prefs.code_language:
        lines.append(f"Prefer {prefs.code_language.upper()} for examples unless the user requests otherwise.")
    lines.append("Explain code briefly after the snippet." if prefs.code_explain else "Provide code with minimal commentary.")
    if prefs.math_steps == "always":
        lines.append("For math, show steps and the final answer.")
    elif prefs.math_steps == "never":
        lines.append("For math, give the final answer unless steps are requested.")
    if prefs.math_latex:
        lines.append("Use LaTeX for mathematical expressions when helpful.")
    if prefs.citations == "always":
        lines.append("When using external info, include short citations.")
    elif prefs.citations == "never":
        lines.append("Do not include citations unless explicitly asked.")
    if prefs.small_talk == "low":
        lines.append("Keep small talk minimal.")
    if prefs.empathy == "high":
        lines.append("Acknowledge feelings briefly before solving the problem.")
    return "\n".join(["# Preference rules", *lines])


class PreferenceStore:
    """JSON file persistence for :class:`UserPrefs`."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> UserPrefs:
        if not self._path.exists():
            return UserPrefs()
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Preferences file %s unreadable: %s", self._path, exc)
            return UserPrefs()
        if not isinstance(payload, Mapping):
            return UserPrefs()
        try:
            return UserPrefs.from_dict(payload)
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Preferences file %s contained unexpected data: %s", self._path, exc)
            return UserPrefs()

    def save(self, prefs: UserPrefs) -> Path:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(prefs.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)
        return self._path
