"""Shared types flowing between the orchestrator and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Protocol, Sequence, runtime_checkable

from ...chat.message_model import AnalysisResult
from ..client import ChatRequest, DeltaSink
from .cancellation import CancellationToken

__all__ = [
    "TurnEventType",
    "TurnEvent",
    "UpsellSignal",
    "TurnStatus",
    "TurnOutcome",
    "StreamingClient",
    "BackendPort",
    "ChatHistoryStore",
]

# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------

TurnEventType = Literal["message.updated", "upsell", "notice", "hints.updated", "stopped", "error"]


@dataclass(slots=True, frozen=True)
class TurnEvent:
    """Notification published to the UI layer.

    Attributes:
        type: Event category.
        message_id: Message the event refers to, when any.
        payload: Event specific data (notice text, upsell details, hints).
    """

    type: TurnEventType
    message_id: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class UpsellSignal:
    """A feature was requested that the user's plan does not include."""

    feature: str
    required_plan: str
    message: str


TurnStatus = Literal["finalized", "stopped", "errored", "rejected", "deferred", "upsell"]


@dataclass(slots=True, frozen=True)
class TurnOutcome:
    """Result of one ``submit``/``regenerate`` call.

    ``rejected``, ``deferred`` and ``upsell`` outcomes never start any work
    and never touch the conversation.
    """

    status: TurnStatus
    message_id: str | None = None
    error: str | None = None
    upsell: UpsellSignal | None = None
    branch: str | None = None


# -----------------------------------------------------------------------------
# Collaborator protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class StreamingClient(Protocol):
    async def stream(
        self,
        request: ChatRequest,
        *,
        on_delta: DeltaSink | None = None,
        token: CancellationToken | None = None,
    ) -> str:
        ...


@runtime_checkable
class BackendPort(Protocol):
    """Subset of :class:`~turnkit.ai.gateway.BackendGateway` used by the orchestrator."""

    async def generate_image(self, prompt: str, *, plan: str, model: str | None = None, config: Any = None) -> str:
        ...

    async def analyze_files(
        self,
        files: Sequence[Mapping[str, Any]],
        *,
        plan: str,
        model: str,
        prompt: str | None = None,
    ) -> AnalysisResult:
        ...

    async def web_search(self, query: str, *, limit: int = 6) -> Sequence[Any]:
        ...

    async def fetch_quotes(self, symbols: Sequence[str]) -> Sequence[Any]:
        ...

    async def fetch_weather(
        self,
        *,
        lat: float | None = None,
        lon: float | None = None,
        query: str | None = None,
    ) -> Any:
        ...

    async def transcribe(self, audio: Any) -> str:
        ...

    async def synthesize(self, text: str, *, voice: str = "alloy") -> bytes:
        ...


@runtime_checkable
class ChatHistoryStore(Protocol):
    """Persistent chat history keyed by session id."""

    def load(self, session_id: str) -> Sequence[Mapping[str, Any]]:
        ...

    def save(self, session_id: str, messages: Sequence[Mapping[str, Any]]) -> None:
        ...
