"""Conversation message and attachment data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from pathlib import PurePosixPath
from typing import Any, Dict, Iterator, Literal, Mapping, Sequence, cast

from openai.types.chat import ChatCompletionMessageParam

__all__ = [
    "ChatRole",
    "MessageKind",
    "MessageStatus",
    "Feedback",
    "AttachmentStatus",
    "AnalysisStatus",
    "AnalysisResult",
    "AttachmentRef",
    "ImageProgress",
    "Message",
    "Conversation",
    "FrozenMessageError",
    "attachment_kind",
    "new_id",
]

ChatRole = Literal["user", "assistant", "system"]
MessageKind = Literal["text", "image"]
MessageStatus = Literal["pending", "streaming", "complete", "stopped", "error"]
Feedback = Literal["like", "dislike", "none"]
AttachmentStatus = Literal["pending", "uploading", "ready", "error"]
AnalysisStatus = Literal["idle", "pending", "done", "error"]

FINAL_STATUSES: frozenset[str] = frozenset({"complete", "stopped", "error"})

_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".svg", ".heic", ".avif"}
_VIDEO_EXTENSIONS = {".mp4", ".mov", ".webm", ".mkv", ".avi", ".m4v"}
_AUDIO_EXTENSIONS = {".mp3", ".wav", ".m4a", ".ogg", ".flac", ".aac"}
_DOC_EXTENSIONS = {".doc", ".docx", ".odt", ".rtf", ".ppt", ".pptx", ".key"}
_SHEET_EXTENSIONS = {".xls", ".xlsx", ".ods", ".csv", ".tsv", ".numbers"}
_TEXT_EXTENSIONS = {".txt", ".md", ".json", ".xml", ".yaml", ".yml", ".html", ".log"}


def new_id() -> str:
    """Return a fresh message/attachment identifier."""

    return uuid.uuid4().hex


def attachment_kind(mime: str | None, name: str | None = None) -> str:
    """Derive a coarse attachment kind from the MIME type or file extension."""

    mime = (mime or "").lower()
    suffix = PurePosixPath(name or "").suffix.lower()
    if mime.startswith("image/") or suffix in _IMAGE_EXTENSIONS:
        return "image"
    if mime.startswith("video/") or suffix in _VIDEO_EXTENSIONS:
        return "video"
    if mime.startswith("audio/") or suffix in _AUDIO_EXTENSIONS:
        return "audio"
    if mime == "application/pdf" or suffix == ".pdf":
        return "pdf"
    if "spreadsheet" in mime or "excel" in mime or mime == "text/csv" or suffix in _SHEET_EXTENSIONS:
        return "sheet"
    if "word" in mime or "presentation" in mime or suffix in _DOC_EXTENSIONS:
        return "doc"
    if mime.startswith("text/") or suffix in _TEXT_EXTENSIONS:
        return "text"
    return "other"


class FrozenMessageError(ValueError):
    """Raised when a finalized message is mutated outside of feedback."""


@dataclass(slots=True, frozen=True)
class AnalysisResult:
    """Outcome of a background file analysis.

    Attributes:
        summary: Short description of the file contents.
        reply: Optional assistant-ready reply drafted by the analyzer.
        followups: Suggested follow-up prompts for the composer.
        blank: True when the analyzer found nothing meaningful to say.
    """

    summary: str = ""
    reply: str | None = None
    followups: tuple[str, ...] = ()
    blank: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AnalysisResult":
        followups = payload.get("followups") or ()
        return cls(
            summary=str(payload.get("summary") or ""),
            reply=str(payload["reply"]) if payload.get("reply") else None,
            followups=tuple(str(item) for item in followups if str(item).strip()),
            blank=bool(payload.get("blank", False)),
        )


@dataclass(slots=True, frozen=True)
class AttachmentRef:
    """File attached to a user turn.

    ``remote_url`` is present exactly when ``status`` is ``ready``; the
    constructor enforces this so every transition produces a valid record.
    """

    id: str
    name: str
    mime: str = ""
    size: int = 0
    kind: str = ""
    preview_url: str | None = None
    remote_url: str | None = None
    status: AttachmentStatus = "pending"
    analysis_status: AnalysisStatus = "idle"
    analysis_result: AnalysisResult | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if bool(self.remote_url) != (self.status == "ready"):
            raise ValueError(
                f"Attachment {self.id!r}: remote_url must be set if and only if status is 'ready' "
                f"(status={self.status!r})"
            )
        if not self.kind:
            object.__setattr__(self, "kind", attachment_kind(self.mime, self.name))

    @classmethod
    def create(cls, name: str, mime: str = "", size: int = 0, *, preview_url: str | None = None) -> "AttachmentRef":
        return cls(id=new_id(), name=name, mime=mime, size=size, preview_url=preview_url)

    def with_updates(self, **changes: Any) -> "AttachmentRef":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "mime": self.mime,
            "size": self.size,
            "kind": self.kind,
            "status": self.status,
            "analysis_status": self.analysis_status,
        }
        if self.remote_url:
            payload["remote_url"] = self.remote_url
        if self.error:
            payload["error"] = self.error
        if self.analysis_result is not None:
            payload["analysis_result"] = {
                "summary": self.analysis_result.summary,
                "reply": self.analysis_result.reply,
                "followups": list(self.analysis_result.followups),
                "blank": self.analysis_result.blank,
            }
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AttachmentRef":
        result = payload.get("analysis_result")
        return cls(
            id=str(payload.get("id") or new_id()),
            name=str(payload.get("name") or "file"),
            mime=str(payload.get("mime") or ""),
            size=int(payload.get("size") or 0),
            kind=str(payload.get("kind") or ""),
            remote_url=payload.get("remote_url"),
            status=cast(AttachmentStatus, payload.get("status", "ready" if payload.get("remote_url") else "pending")),
            analysis_status=cast(AnalysisStatus, payload.get("analysis_status", "idle")),
            analysis_result=AnalysisResult.from_payload(result) if isinstance(result, Mapping) else None,
            error=payload.get("error"),
        )


@dataclass(slots=True, frozen=True)
class ImageProgress:
    """HUD readout published while an image job is outstanding."""

    label: str
    index: int
    steps: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable conversation entry.

    Attributes:
        id: Unique identifier, generated at creation.
        role: Message author.
        content: Text content; empty while a ghost placeholder is streaming.
        kind: ``text`` or ``image``.
        url: Generated image location, present only once generation finishes.
        prompt: Echo of the image request that produced this message.
        attachments: Files attached to a user turn.
        feedback: User rating of an assistant reply.
        progress: Image HUD readout while a job is outstanding.
        status: Lifecycle state; complete/stopped/error are final.
        internal: Directive acknowledgements and injected context that are
            never sent back to the model as history.
        suggestions: Follow-up prompts split from the reply.
    """

    role: ChatRole
    content: str = ""
    id: str = field(default_factory=new_id)
    kind: MessageKind = "text"
    url: str | None = None
    prompt: str | None = None
    attachments: tuple[AttachmentRef, ...] = ()
    feedback: Feedback = "none"
    progress: ImageProgress | None = None
    status: MessageStatus = "complete"
    internal: bool = False
    suggestions: tuple[str, ...] = ()

    @property
    def finalized(self) -> bool:
        return self.status in FINAL_STATUSES

    @property
    def is_image(self) -> bool:
        return self.kind == "image"

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Return the OpenAI-compatible representation sent to the completion endpoint."""

        return cast(ChatCompletionMessageParam, {"role": self.role, "content": self.content})

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for history persistence."""

        payload: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "kind": self.kind,
            "status": self.status,
            "feedback": self.feedback,
        }
        if self.url:
            payload["url"] = self.url
        if self.prompt:
            payload["prompt"] = self.prompt
        if self.attachments:
            payload["attachments"] = [item.to_dict() for item in self.attachments]
        if self.internal:
            payload["internal"] = True
        if self.suggestions:
            payload["suggestions"] = list(self.suggestions)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Message":
        status = payload.get("status", "complete")
        # Anything persisted mid-flight is treated as stopped on reload.
        if status not in FINAL_STATUSES:
            status = "stopped"
        return cls(
            id=str(payload.get("id") or new_id()),
            role=cast(ChatRole, payload.get("role", "user")),
            content=str(payload.get("content") or ""),
            kind=cast(MessageKind, payload.get("kind", "text")),
            url=payload.get("url"),
            prompt=payload.get("prompt"),
            attachments=tuple(AttachmentRef.from_dict(item) for item in payload.get("attachments") or ()),
            feedback=cast(Feedback, payload.get("feedback", "none")),
            status=cast(MessageStatus, status),
            internal=bool(payload.get("internal", False)),
            suggestions=tuple(payload.get("suggestions") or ()),
        )


class Conversation:
    """Ordered, append-only message list.

    Records are replaced by id. A message whose status is final can only
    have its feedback changed, unless the caller passes ``force=True``
    (used by stop handling, which rewrites an open placeholder).
    """

    def __init__(self, messages: Sequence[Message] | None = None) -> None:
        self._messages: list[Message] = list(messages or ())
        self._index: dict[str, int] = {message.id: pos for pos, message in enumerate(self._messages)}

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def append(self, message: Message) -> Message:
        if message.id in self._index:
            raise ValueError(f"Duplicate message id: {message.id}")
        self._index[message.id] = len(self._messages)
        self._messages.append(message)
        return message

    def get(self, message_id: str) -> Message | None:
        pos = self._index.get(message_id)
        return None if pos is None else self._messages[pos]

    def update(self, message_id: str, *, force: bool = False, **changes: Any) -> Message:
        """Replace the message with ``message_id`` by a copy carrying ``changes``."""

        pos = self._index.get(message_id)
        if pos is None:
            raise KeyError(message_id)
        current = self._messages[pos]
        if current.finalized and not force and set(changes) - {"feedback"}:
            raise FrozenMessageError(f"Message {message_id} is {current.status} and cannot change")
        updated = replace(current, **changes)
        self._messages[pos] = updated
        return updated

    def replace_all(self, messages: Sequence[Message]) -> None:
        self._messages = list(messages)
        self._index = {message.id: pos for pos, message in enumerate(self._messages)}

    def reset(self) -> None:
        self._messages.clear()
        self._index.clear()

    def last_open_assistant(self) -> Message | None:
        """Return the most recent assistant message that has not been finalized."""

        for message in reversed(self._messages):
            if message.role == "assistant" and not message.finalized:
                return message
        return None

    def previous_user(self, message_id: str) -> Message | None:
        pos = self._index.get(message_id)
        if pos is None:
            return None
        for message in reversed(self._messages[:pos]):
            if message.role == "user" and not message.internal:
                return message
        return None

    def to_dicts(self) -> list[Dict[str, Any]]:
        return [message.to_dict() for message in self._messages]

    @classmethod
    def from_dicts(cls, payload: Sequence[Mapping[str, Any]]) -> "Conversation":
        return cls([Message.from_dict(item) for item in payload])
