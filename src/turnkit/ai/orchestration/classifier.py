"""Intent classification for an incoming user turn."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Sequence

from ...chat.message_model import AttachmentRef, Message

__all__ = [
    "ImageSniff",
    "TurnIntent",
    "TurnKind",
    "VisualRef",
    "classify_turn",
    "find_latest_visual",
    "has_describe_intent",
    "is_describe_followup",
    "sniff_image_request",
]

_VERBS: tuple[str, ...] = (
    "generate",
    "create",
    "make",
    "draw",
    "paint",
    "render",
    "design",
    "compose",
    "produce",
    "illustrate",
    "sketch",
    "craft",
    "emboss",
)
_NOUNS: tuple[str, ...] = (
    "image",
    "picture",
    "photo",
    "photograph",
    "logo",
    "wallpaper",
    "poster",
    "art",
    "artwork",
    "illustration",
    "avatar",
    "selfie",
    "sticker",
    "meme",
    "tattoo",
    "graphic",
    "icon",
    "banner",
    "cover",
)
_STOP_PHRASES: tuple[str, ...] = (
    "describe",
    "caption",
    "what is in",
    "what's in",
    "what’s in",
    "analyze",
    "analyse",
    "detect",
    "recognize",
)

_VERB_RE = re.compile(r"\b(?:%s)\b" % "|".join(_VERBS), re.IGNORECASE)
_NOUN_RE = re.compile(r"\b(?:%s)s?\b" % "|".join(_NOUNS), re.IGNORECASE)
_LEAD_DRAW_RE = re.compile(r"^\s*(?:please\s+)?(?:draw|paint|sketch|illustrate|render)\b", re.IGNORECASE)
_RATIO_OR_SIZE_RE = re.compile(r"\b(?:\d{2,4}\s*[x:]\s*\d{2,4}|1:1|4:3|3:2|16:9|9:16)\b", re.IGNORECASE)
_IMG_COMMAND_RE = re.compile(r"^/(?:img|image)\b", re.IGNORECASE)
_STYLE_HINT_RE = re.compile(
    r"\b(?:in the style of|cinematic|pixel art|oil painting|watercolor|hdr|studio light)\b", re.IGNORECASE
)
_MEDIUM_OF_RE = re.compile(r"\b(?:image|picture|photo)\s+of\b", re.IGNORECASE)
_LEAD_VERB_RE = re.compile(
    r"^(?:(?:make|give|show)\s+me|%s)\s+" % "|".join(_VERBS), re.IGNORECASE
)
_LEAD_ARTICLE_RE = re.compile(r"^(?:me|an?|the)\s+", re.IGNORECASE)
_MEDIUM_PREFIX_RE = re.compile(r"^(?:image|picture|photo(?:graph)?)\s+of\s+", re.IGNORECASE)

_DESCRIBE_INTENT_RE = re.compile(
    r"\b(?:describe|caption|what(?:'s|’s| is)\s+(?:in|on)\s+(?:this|the|these|it)|"
    r"what do you see|what does (?:it|this) show|explain (?:this|the) (?:image|picture|photo)|"
    r"tell me about (?:this|the) (?:image|picture|photo)|analy[sz]e (?:this|the) (?:image|picture|photo))\b",
    re.IGNORECASE,
)
_FOLLOWUP_RE = re.compile(
    r"^\s*(?:(?:so|ok|okay|and|hey)[, ]+)?(?:"
    r"what(?:'s|’s| is)\s+(?:this|that|it)|"
    r"what(?:'s|’s| is)\s+in\s+(?:it|this|that|the (?:image|picture|photo))|"
    r"what do you see|what does (?:it|this|that) show|"
    r"describe (?:it|this|that|the (?:image|picture|photo))|"
    r"explain (?:it|this|that|the (?:image|picture|photo))|"
    r"tell me about (?:it|this|that|the (?:image|picture|photo))|"
    r"caption (?:it|this|that)"
    r")\s*[?.!]*\s*$",
    re.IGNORECASE,
)


@dataclass(slots=True, frozen=True)
class ImageSniff:
    is_image: bool
    prompt: str = ""


def sniff_image_request(raw: str) -> ImageSniff:
    """Detect an explicit image request and clean it into an image prompt."""

    text = (raw or "").strip()
    if not text:
        return ImageSniff(False)
    lowered = text.lower()
    if any(phrase in lowered for phrase in _STOP_PHRASES):
        return ImageSniff(False)
    likely = bool(
        _IMG_COMMAND_RE.search(text)
        or (_VERB_RE.search(text) and _NOUN_RE.search(text))
        or _LEAD_DRAW_RE.search(text)
        or _RATIO_OR_SIZE_RE.search(text)
        or _STYLE_HINT_RE.search(text)
        or _MEDIUM_OF_RE.search(text)
    )
    if not likely:
        return ImageSniff(False)
    cleaned = re.sub(r"^/(?:img|image)\s*", "", text, flags=re.IGNORECASE)
    cleaned = _LEAD_VERB_RE.sub("", cleaned.strip())
    cleaned = _LEAD_ARTICLE_RE.sub("", cleaned)
    cleaned = _MEDIUM_PREFIX_RE.sub("", cleaned)
    cleaned = re.sub(r"\s+please\.?$", "", cleaned, flags=re.IGNORECASE).strip()[:800]
    return ImageSniff(True, cleaned or text)


def has_describe_intent(text: str) -> bool:
    """True when the user asks for a description of attached or prior visuals."""

    return bool(_DESCRIBE_INTENT_RE.search(text or "")) or is_describe_followup(text)


def is_describe_followup(text: str) -> bool:
    """Short follow-ups such as "what's this?" that refer to an earlier visual."""

    return bool(_FOLLOWUP_RE.match(text or ""))


@dataclass(slots=True, frozen=True)
class VisualRef:
    """Most recent image in the conversation."""

    url: str
    message_id: str
    source: Literal["generated", "attachment"]
    name: str | None = None
    mime: str | None = None


def find_latest_visual(messages: Sequence[Message]) -> VisualRef | None:
    """Walk ``messages`` backward for an assistant image or a user image attachment."""

    for message in reversed(messages):
        if message.role == "assistant" and message.kind == "image" and message.url:
            return VisualRef(url=message.url, message_id=message.id, source="generated", mime="image/png")
        if message.role == "user":
            for attachment in reversed(message.attachments):
                if attachment.kind == "image" and attachment.remote_url:
                    return VisualRef(
                        url=attachment.remote_url,
                        message_id=message.id,
                        source="attachment",
                        name=attachment.name,
                        mime=attachment.mime,
                    )
    return None


TurnKind = Literal["image", "file", "describe", "text"]


@dataclass(slots=True, frozen=True)
class TurnIntent:
    """Classification result.

    Attributes:
        kind: Pipeline that handles the turn.
        prompt: Cleaned image prompt (image turns only).
        describe: For file turns, whether the user only wants a description.
        visual: Target image for describe follow-ups.
    """

    kind: TurnKind
    prompt: str = ""
    describe: bool = False
    visual: VisualRef | None = None


def classify_turn(
    text: str,
    attachments: Sequence[AttachmentRef],
    history: Sequence[Message],
    *,
    content_mode: str = "auto",
) -> TurnIntent:
    """Pick the pipeline for a turn; the first matching rule wins."""

    sniff = sniff_image_request(text)
    if sniff.is_image:
        return TurnIntent("image", prompt=sniff.prompt)
    if content_mode == "image" and not attachments and text.strip() and not has_describe_intent(text):
        return TurnIntent("image", prompt=text.strip())
    if attachments:
        return TurnIntent("file", describe=has_describe_intent(text))
    if has_describe_intent(text):
        visual = find_latest_visual(history)
        if visual is not None:
            return TurnIntent("describe", describe=True, visual=visual)
    return TurnIntent("text")
