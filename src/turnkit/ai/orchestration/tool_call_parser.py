"""Decoding of tool markers embedded in completed model replies.

The model may request one side-channel lookup per kind by emitting a line such
as ``##WEB_SEARCH: rust ownership``. A completed reply is decoded exactly once
into :data:`ModelReply`, either :class:`PlainText` or :class:`ToolReply`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Union

__all__ = [
    "ToolKind",
    "TOOL_MARKER_TRANSLATION",
    "TOOL_MARKER_RE",
    "PlainText",
    "ToolRequest",
    "ToolReply",
    "ModelReply",
    "decode_reply",
    "strip_tool_markers",
    "normalize_marker_text",
    "normalize_symbols",
    "parse_weather_argument",
]

ToolKind = Literal["web_search", "stocks", "weather"]

_TAG_TO_KIND: dict[str, ToolKind] = {
    "WEB_SEARCH": "web_search",
    "STOCKS": "stocks",
    "WEATHER": "weather",
}

# Fullwidth and stylized glyphs some models emit inside markers.
TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        ord("＃"): "#",
        ord("﹟"): "#",
        ord("："): ":",
        ord("﹕"): ":",
        ord("＿"): "_",
        ord("\u00a0"): " ",
        ord("\u2009"): " ",
        ord("\u202f"): " ",
        ord("\u3000"): " ",
        ord("\ufeff"): " ",
    }
)

TOOL_MARKER_RE = re.compile(
    r"^[ \t]*##(?P<tag>WEB_SEARCH|STOCKS|WEATHER)[ \t]*:[ \t]*(?P<arg>.*?)[ \t]*$",
    re.MULTILINE,
)

_SYMBOL_RE = re.compile(r"^[A-Z][A-Z0-9.\-^=]{0,11}$")
_LAT_LON_RE = re.compile(r"^\s*(-?\d{1,2}(?:\.\d+)?)\s*,\s*(-?\d{1,3}(?:\.\d+)?)\s*$")


@dataclass(slots=True, frozen=True)
class PlainText:
    """Reply without tool markers."""

    text: str


@dataclass(slots=True, frozen=True)
class ToolRequest:
    kind: ToolKind
    argument: str


@dataclass(slots=True, frozen=True)
class ToolReply:
    """Reply carrying tool requests.

    Attributes:
        text: Reply with marker lines removed.
        requests: One request per kind, in order of first appearance.
    """

    text: str
    requests: tuple[ToolRequest, ...]


ModelReply = Union[PlainText, ToolReply]


def normalize_marker_text(text: str) -> str:
    return text.translate(TOOL_MARKER_TRANSLATION)


def decode_reply(text: str) -> ModelReply:
    """Decode a completed reply into :class:`PlainText` or :class:`ToolReply`."""

    if not text:
        return PlainText("")
    normalized = normalize_marker_text(text)
    requests: list[ToolRequest] = []
    seen: set[str] = set()
    for match in TOOL_MARKER_RE.finditer(normalized):
        kind = _TAG_TO_KIND[match.group("tag")]
        argument = match.group("arg").strip().strip("\"“”'").strip()
        if kind in seen or not argument:
            continue
        seen.add(kind)
        requests.append(ToolRequest(kind=kind, argument=argument))
    if not requests:
        return PlainText(text)
    return ToolReply(text=strip_tool_markers(normalized), requests=tuple(requests))


def strip_tool_markers(text: str) -> str:
    """Remove marker lines and collapse the blank lines they leave behind."""

    cleaned = TOOL_MARKER_RE.sub("", normalize_marker_text(text))
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def normalize_symbols(argument: str) -> list[str]:
    """Split a ``##STOCKS`` argument into distinct upper-case ticker symbols."""

    symbols: list[str] = []
    for raw in re.split(r"[\s,;/]+", argument.upper()):
        candidate = raw.strip().lstrip("$")
        if candidate and _SYMBOL_RE.match(candidate) and candidate not in symbols:
            symbols.append(candidate)
    return symbols[:10]


def parse_weather_argument(argument: str) -> tuple[float | None, float | None, str | None]:
    """Return ``(lat, lon, None)`` for coordinates or ``(None, None, query)``."""

    match = _LAT_LON_RE.match(argument)
    if match:
        lat, lon = float(match.group(1)), float(match.group(2))
        if -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0:
            return lat, lon, None
    query = argument.strip()
    return None, None, query or None
