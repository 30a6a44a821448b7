"""Streaming completion client built on httpx."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

import httpx
from openai.types.chat import ChatCompletionMessageParam

from ..services.settings import Settings
from .errors import TransportError
from .orchestration.cancellation import CancellationToken
from .plans import Capabilities, capabilities_for_plan, normalize_plan, resolve_model

__all__ = [
    "ChatRequest",
    "CompletionClient",
    "DeltaSink",
    "EventStreamDecoder",
    "build_http_client",
    "extract_delta",
]

LOGGER = logging.getLogger(__name__)

DeltaSink = Callable[[str, str], None]
"""Callback receiving ``(full_text_so_far, new_text)``."""

_DONE_SENTINEL = "[DONE]"


@dataclass(slots=True, frozen=True)
class ChatRequest:
    """Completion request body.

    Attributes:
        messages: Ordered context (system + history + new user turn).
        plan: Plan tier of the requester.
        model: UI model identifier chosen by the user.
        resolved_model: Provider model the backend should call.
        capabilities: Feature switches for the plan.
        mode: Speed mode (``auto``, ``instant``, ``thinking``).
        content_mode: Content hint (``auto``, ``text``, ``code``, ``image``).
        allow_control_tags: Whether the model may emit tool markers and
            ``<suggested>`` blocks.
    """

    messages: tuple[ChatCompletionMessageParam, ...]
    plan: str = "free"
    model: str = "free-core"
    resolved_model: str = ""
    capabilities: Capabilities = field(default_factory=lambda: capabilities_for_plan("free"))
    mode: str = "auto"
    content_mode: str = "text"
    allow_control_tags: bool = True

    @classmethod
    def build(
        cls,
        messages: Iterable[ChatCompletionMessageParam],
        *,
        plan: str,
        model: str,
        mode: str = "auto",
        content_mode: str = "text",
        allow_control_tags: bool = True,
    ) -> "ChatRequest":
        tier = normalize_plan(plan)
        return cls(
            messages=tuple(messages),
            plan=tier,
            model=model,
            resolved_model=resolve_model(model, tier),
            capabilities=capabilities_for_plan(tier),
            mode=mode,
            content_mode=content_mode,
            allow_control_tags=allow_control_tags,
        )

    def with_messages(self, messages: Iterable[ChatCompletionMessageParam]) -> "ChatRequest":
        return replace(self, messages=tuple(messages))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "plan": self.plan,
            "model": self.model,
            "resolvedModel": self.resolved_model or resolve_model(self.model, self.plan),
            "capabilities": self.capabilities.to_payload(),
            "mode": self.mode,
            "contentMode": self.content_mode,
            "stream": True,
            "allowControlTags": self.allow_control_tags,
            "messages": [dict(message) for message in self.messages],
        }


def extract_delta(data: str) -> str | None:
    """Return the text carried by one ``data`` payload.

    JSON payloads are checked for ``choices[0].delta.content``,
    ``choices[0].message.content``, ``delta.content`` and ``content`` in that
    order; anything that is not JSON is returned verbatim.
    """

    try:
        parsed = json.loads(data)
    except ValueError:
        return data
    if not isinstance(parsed, Mapping):
        return None
    choices = parsed.get("choices")
    first = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], Mapping) else {}
    candidates = (
        _content_of(first.get("delta")),
        _content_of(first.get("message")),
        _content_of(parsed.get("delta")),
        parsed.get("content"),
    )
    for candidate in candidates:
        if candidate is not None:
            return candidate if isinstance(candidate, str) and candidate else None
    return None


def _content_of(value: Any) -> Any:
    if isinstance(value, Mapping):
        return value.get("content")
    return None


class EventStreamDecoder:
    """Incremental decoder for blank-line separated ``data:`` blocks.

    ``raw_blocks`` controls blocks that carry no ``data:`` line at all: a
    non-incremental body treats them as raw payloads, an event stream
    ignores them.
    """

    def __init__(self, *, raw_blocks: bool = False) -> None:
        self._raw_blocks = raw_blocks
        self._buffer = ""
        self.done = False

    def feed(self, chunk: str) -> List[str]:
        """Buffer ``chunk`` and return deltas from every completed block."""

        if self.done or not chunk:
            return []
        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        *blocks, self._buffer = self._buffer.split("\n\n")
        return self._decode_blocks(blocks)

    def flush(self) -> List[str]:
        """Decode whatever remains buffered once the body ends."""

        if self.done:
            return []
        remainder, self._buffer = self._buffer, ""
        return self._decode_blocks([remainder])

    def _decode_blocks(self, blocks: Sequence[str]) -> List[str]:
        deltas: List[str] = []
        for block in blocks:
            if self.done:
                break
            deltas.extend(self._decode_block(block))
        return deltas

    def _decode_block(self, block: str) -> List[str]:
        trimmed = block.strip()
        if not trimmed or trimmed.startswith(":"):
            return []
        lines = [line for line in trimmed.split("\n") if not line.lstrip().startswith(":")]
        payloads = [_data_value(line) for line in lines if line.lstrip().startswith("data:")]
        if not payloads:
            if not self._raw_blocks:
                return []
            payloads = ["\n".join(lines).strip()]
        deltas: List[str] = []
        for data in payloads:
            if data.strip() == _DONE_SENTINEL:
                self.done = True
                break
            if not data:
                continue
            delta = extract_delta(data)
            if delta:
                deltas.append(delta)
        return deltas


def _data_value(line: str) -> str:
    value = line.lstrip()[len("data:"):]
    # A single space after the colon belongs to the framing.
    return value[1:] if value.startswith(" ") else value


class _Accumulator:
    def __init__(self, sink: DeltaSink | None, token: CancellationToken) -> None:
        self._sink = sink
        self._token = token
        self.text = ""
        self.deltas = 0

    def push(self, delta: str) -> None:
        if self._token.cancelled:
            return
        self.text += delta
        self.deltas += 1
        if self._sink is not None:
            self._sink(self.text, delta)


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """Return an :class:`httpx.AsyncClient` configured from ``settings``."""

    headers = dict(settings.default_headers)
    if settings.api_key:
        headers.setdefault("Authorization", f"Bearer {settings.api_key}")
    return httpx.AsyncClient(timeout=settings.request_timeout, headers=headers)


class CompletionClient:
    """Cancelable POST to the completion endpoint with delta decoding."""

    def __init__(self, settings: Settings, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = http_client or build_http_client(settings)
        self._owns_client = http_client is None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def url(self) -> str:
        return self._settings.base_url.rstrip("/") + self._settings.endpoints.completion

    async def stream(
        self,
        request: ChatRequest,
        *,
        on_delta: DeltaSink | None = None,
        token: CancellationToken | None = None,
    ) -> str:
        """Stream ``request`` and return the final accumulated text.

        Raises:
            TransportError: non-success status or network failure.
            TurnCancelled: ``token`` fired before the body was consumed.
        """

        token = token or CancellationToken(name="stream")
        accumulator = _Accumulator(on_delta, token)
        payload = request.to_payload()
        LOGGER.debug(
            "Starting completion stream via %s with %s message(s)",
            payload["resolvedModel"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            _log_payload(payload)
        await token.guard(self._consume(payload, accumulator), detach=False)
        LOGGER.debug("Completion stream finished: %s delta(s), %s char(s)", accumulator.deltas, len(accumulator.text))
        return accumulator.text

    async def _consume(self, payload: Mapping[str, Any], accumulator: _Accumulator) -> None:
        try:
            async with self._client.stream(
                "POST",
                self.url,
                json=payload,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise TransportError(
                        f"Completion endpoint returned HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                content_type = response.headers.get("content-type", "")
                if "text/event-stream" in content_type:
                    decoder = EventStreamDecoder(raw_blocks=False)
                    async for chunk in response.aiter_text():
                        for delta in decoder.feed(chunk):
                            accumulator.push(delta)
                        if decoder.done:
                            break
                else:
                    decoder = EventStreamDecoder(raw_blocks=True)
                    await response.aread()
                    for delta in decoder.feed(response.text):
                        accumulator.push(delta)
                for delta in decoder.flush():
                    accumulator.push(delta)
        except httpx.HTTPError as exc:
            raise TransportError(f"Completion request failed: {exc}") from exc

    async def aclose(self) -> None:
        """Close the underlying HTTP client when this instance created it."""

        if self._owns_client:
            await self._client.aclose()


def _log_payload(payload: Mapping[str, Any]) -> None:
    try:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        LOGGER.debug("Completion payload (unserializable): %s", payload)
    else:
        LOGGER.debug("Completion payload:\n%s", serialized)
