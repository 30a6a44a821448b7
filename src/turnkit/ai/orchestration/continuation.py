"""Tool execution and the second streamed pass that incorporates tool output."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Sequence, cast

from openai.types.chat import ChatCompletionMessageParam

from ..client import ChatRequest, DeltaSink
from ..errors import ToolExecutionError, TransportError
from ..gateway import Quote, SearchResult, WeatherReport
from ..plans import Capabilities
from .cancellation import CancellationToken
from .tool_call_parser import ModelReply, PlainText, ToolKind, ToolRequest, normalize_symbols, parse_weather_argument
from .types import BackendPort, StreamingClient

__all__ = [
    "SOURCES_INSTRUCTION",
    "ContinuationProtocol",
    "ContinuationResult",
    "ToolRunner",
    "format_quotes",
    "format_search_results",
    "format_weather",
]

LOGGER = logging.getLogger(__name__)

SOURCES_INSTRUCTION = (
    "You requested a tool lookup. The results are below. Rewrite your previous reply so it "
    "answers the user's last message using these results, keep the same language and tone, "
    "and do not emit any ## tool markers. End with a \"Sources\" section that lists the "
    "links or data providers you relied on."
)


# -----------------------------------------------------------------------------
# Formatting
# -----------------------------------------------------------------------------


def format_search_results(query: str, results: Sequence[SearchResult]) -> str:
    lines = [f'### Web results for "{query}"']
    for number, result in enumerate(results, start=1):
        lines.append(f"{number}. [{result.title}]({result.url})")
        snippet = " ".join(result.snippet.split())
        if snippet:
            lines.append(f"   {snippet}")
    return "\n".join(lines)


def format_quotes(quotes: Sequence[Quote]) -> str:
    lines = ["### Market quotes"]
    for quote in quotes:
        price = "n/a" if quote.price is None else f"{quote.price:.2f}"
        currency = f" {quote.currency}" if quote.currency else ""
        change = "n/a" if quote.change is None else f"{quote.change:+.2f}"
        change_pct = "n/a" if quote.change_pct is None else f"{quote.change_pct:+.2f}%"
        lines.append(f"- {quote.symbol}: {price}{currency} ({change}, {change_pct})")
    return "\n".join(lines)


def format_weather(report: WeatherReport) -> str:
    temperature = "n/a" if report.temperature is None else f"{report.temperature:.1f}°"
    conditions = ", ".join(report.conditions) or "n/a"
    return "\n".join(
        [
            f"### Weather for {report.name}",
            f"- Temperature: {temperature}",
            f"- Conditions: {conditions}",
        ]
    )


# -----------------------------------------------------------------------------
# Tool execution
# -----------------------------------------------------------------------------


class ToolRunner:
    """Executes one :class:`ToolRequest` and returns its Markdown block."""

    def __init__(self, gateway: BackendPort, *, search_limit: int = 6) -> None:
        self._gateway = gateway
        self._search_limit = search_limit

    async def run(self, request: ToolRequest) -> str:
        if request.kind == "web_search":
            results = await self._gateway.web_search(request.argument, limit=self._search_limit)
            return format_search_results(request.argument, cast(Sequence[SearchResult], results))
        if request.kind == "stocks":
            symbols = normalize_symbols(request.argument)
            if not symbols:
                raise ToolExecutionError("stocks", f"no ticker symbols in {request.argument!r}")
            quotes = await self._gateway.fetch_quotes(symbols)
            return format_quotes(cast(Sequence[Quote], quotes))
        if request.kind == "weather":
            lat, lon, query = parse_weather_argument(request.argument)
            report = await self._gateway.fetch_weather(lat=lat, lon=lon, query=query)
            return format_weather(cast(WeatherReport, report))
        raise ToolExecutionError(request.kind, "unsupported tool")


# -----------------------------------------------------------------------------
# Continuation
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ContinuationResult:
    """Final text after every continuation round.

    Attributes:
        text: Reply to store on the message slot.
        rounds: Number of continuation streams that completed.
        upsells: Tool kinds the plan did not allow.
        skipped: Tool kinds whose fetch or continuation stream failed.
    """

    text: str
    rounds: int = 0
    upsells: List[ToolKind] = field(default_factory=list)
    skipped: List[ToolKind] = field(default_factory=list)


class ContinuationProtocol:
    """Runs one continuation stream per decoded tool request, in order."""

    def __init__(self, client: StreamingClient, tools: ToolRunner) -> None:
        self._client = client
        self._tools = tools

    async def run(
        self,
        reply: ModelReply,
        *,
        request: ChatRequest,
        capabilities: Capabilities,
        token: CancellationToken,
        on_delta: DeltaSink | None = None,
        on_upsell: Callable[[ToolKind], None] | None = None,
    ) -> ContinuationResult:
        """Execute the requests carried by ``reply``.

        Continuation output is never decoded again, so a round cannot trigger
        further rounds.
        """

        if isinstance(reply, PlainText):
            return ContinuationResult(text=reply.text)

        result = ContinuationResult(text=reply.text)
        for tool_request in reply.requests:
            token.raise_if_cancelled()
            if not capabilities.allows_tool(tool_request.kind):
                LOGGER.info("Tool %s not available on this plan; surfacing upsell", tool_request.kind)
                result.upsells.append(tool_request.kind)
                if on_upsell is not None:
                    on_upsell(tool_request.kind)
                continue
            try:
                block = await token.guard(self._tools.run(tool_request))
            except ToolExecutionError as exc:
                LOGGER.warning("Tool %s failed, keeping first-pass reply: %s", tool_request.kind, exc)
                result.skipped.append(tool_request.kind)
                continue

            context = self._continuation_context(request.messages, result.text, block)
            try:
                text = await self._client.stream(
                    request.with_messages(context),
                    on_delta=on_delta,
                    token=token,
                )
            except TransportError as exc:
                LOGGER.warning("Continuation stream for %s failed: %s", tool_request.kind, exc)
                result.skipped.append(tool_request.kind)
                continue
            LOGGER.debug("Continuation round for %s produced %s char(s)", tool_request.kind, len(text))
            result.text = text
            result.rounds += 1
        return result

    @staticmethod
    def _continuation_context(
        messages: Sequence[ChatCompletionMessageParam],
        assistant_text: str,
        block: str,
    ) -> List[ChatCompletionMessageParam]:
        context: List[ChatCompletionMessageParam] = list(messages)
        if assistant_text.strip():
            context.append(cast(ChatCompletionMessageParam, {"role": "assistant", "content": assistant_text}))
        context.append(
            cast(ChatCompletionMessageParam, {"role": "system", "content": f"{SOURCES_INSTRUCTION}\n\n{block}"})
        )
        return context
