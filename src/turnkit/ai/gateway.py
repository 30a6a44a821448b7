"""HTTP gateway for the non-streaming backend endpoints.

Covers image generation, file ingest and analysis, voice notes (transcription
and speech) and the side-channel tools: web search, stock quotes and weather.
Every failure is mapped onto the exception taxonomy in
:mod:`turnkit.ai.errors`; nothing is retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence

import httpx

from ..chat.message_model import AnalysisResult
from ..services.settings import Settings
from .client import build_http_client
from .errors import AnalysisError, ImageGenerationError, ToolExecutionError, UploadError, VoiceError
from .plans import ImageConfig, image_config_for_plan, normalize_plan

__all__ = [
    "BackendGateway",
    "IngestedFile",
    "Quote",
    "SPEECH_MAX_CHARS",
    "SearchResult",
    "UploadFile",
    "WeatherReport",
]

LOGGER = logging.getLogger(__name__)

# Longest text the speech endpoint accepts.
SPEECH_MAX_CHARS = 4000


@dataclass(slots=True, frozen=True)
class UploadFile:
    """In-memory file handed to the ingest endpoint."""

    name: str
    content: bytes
    mime: str = "application/octet-stream"


@dataclass(slots=True, frozen=True)
class IngestedFile:
    name: str
    mime: str
    size: int
    url: str


@dataclass(slots=True, frozen=True)
class SearchResult:
    title: str
    url: str
    snippet: str = ""


@dataclass(slots=True, frozen=True)
class Quote:
    symbol: str
    price: float | None
    change: float | None = None
    change_pct: float | None = None
    currency: str | None = None
    market_time: int | None = None
    name: str | None = None


@dataclass(slots=True, frozen=True)
class WeatherReport:
    name: str
    temperature: float | None
    conditions: tuple[str, ...] = ()


class BackendGateway:
    """Request/response calls to the backend, sharing one :class:`httpx.AsyncClient`."""

    def __init__(self, settings: Settings, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = http_client or build_http_client(settings)
        self._owns_client = http_client is None

    def _url(self, path: str) -> str:
        return self._settings.base_url.rstrip("/") + path

    # ------------------------------------------------------------------
    # Image generation
    # ------------------------------------------------------------------
    async def generate_image(
        self,
        prompt: str,
        *,
        plan: str,
        model: str | None = None,
        config: ImageConfig | None = None,
    ) -> str:
        """Generate one image and return its URL."""

        config = config or image_config_for_plan(plan)
        body: Dict[str, Any] = {"prompt": prompt, "plan": normalize_plan(plan), **config.to_payload()}
        if model:
            body["model"] = model
        LOGGER.debug("Requesting image (%s, %s)", body.get("model"), body.get("size"))
        try:
            response = await self._client.post(self._url(self._settings.endpoints.image), json=body)
        except httpx.HTTPError as exc:
            raise ImageGenerationError(f"Image request failed: {exc}") from exc
        data = _json_or_none(response)
        error = data.get("error") if isinstance(data, Mapping) else None
        if not response.is_success:
            raise ImageGenerationError(str(error or f"HTTP {response.status_code}"))
        url = data.get("url") if isinstance(data, Mapping) else None
        if not url or (isinstance(data, Mapping) and data.get("ok") is False):
            raise ImageGenerationError(str(error or "no_image"))
        return str(url)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    async def ingest_files(self, files: Sequence[UploadFile], *, plan: str) -> List[IngestedFile]:
        """Upload ``files`` and return their remote descriptors in the same order."""

        multipart = [("files", (item.name, item.content, item.mime)) for item in files]
        try:
            response = await self._client.post(
                self._url(self._settings.endpoints.file_ingest),
                data={"plan": normalize_plan(plan)},
                files=multipart,
            )
        except httpx.HTTPError as exc:
            raise UploadError(f"Upload failed: {exc}") from exc
        if not response.is_success:
            raise UploadError(f"Upload failed with HTTP {response.status_code}")
        data = _json_or_none(response)
        if not isinstance(data, list):
            raise UploadError("Upload response was not a list")
        ingested: List[IngestedFile] = []
        for entry in data:
            if not isinstance(entry, Mapping) or not entry.get("url"):
                raise UploadError("Upload response entry is missing a url")
            try:
                size = int(entry.get("size") or 0)
            except (TypeError, ValueError) as exc:
                raise UploadError(f"Upload response entry has an invalid size: {entry.get('size')!r}") from exc
            ingested.append(
                IngestedFile(
                    name=str(entry.get("name") or ""),
                    mime=str(entry.get("mime") or ""),
                    size=size,
                    url=str(entry["url"]),
                )
            )
        return ingested

    async def analyze_files(
        self,
        files: Sequence[Mapping[str, Any]],
        *,
        plan: str,
        model: str,
        prompt: str | None = None,
    ) -> AnalysisResult:
        """Ask the backend to summarize ``files`` (``{name, mime, url}`` mappings)."""

        body: Dict[str, Any] = {"files": [dict(item) for item in files], "plan": normalize_plan(plan), "model": model}
        if prompt:
            body["prompt"] = prompt
        try:
            response = await self._client.post(self._url(self._settings.endpoints.file_analyze), json=body)
        except httpx.HTTPError as exc:
            raise AnalysisError(f"Analysis failed: {exc}") from exc
        data = _json_or_none(response)
        if not response.is_success or not isinstance(data, Mapping):
            detail = data.get("error") if isinstance(data, Mapping) else None
            raise AnalysisError(str(detail or f"Analysis failed with HTTP {response.status_code}"))
        return AnalysisResult.from_payload(data)

    # ------------------------------------------------------------------
    # Voice
    # ------------------------------------------------------------------
    async def transcribe(self, audio: UploadFile) -> str:
        """Send a recorded voice note for transcription and return its text."""

        try:
            response = await self._client.post(
                self._url(self._settings.endpoints.transcribe),
                files=[("file", (audio.name, audio.content, audio.mime))],
            )
        except httpx.HTTPError as exc:
            raise VoiceError(f"Transcription failed: {exc}") from exc
        data = _json_or_none(response)
        if not response.is_success or not isinstance(data, Mapping):
            detail = data.get("error") if isinstance(data, Mapping) else None
            raise VoiceError(str(detail or f"Transcription failed with HTTP {response.status_code}"))
        return str(data.get("text") or "").strip()

    async def synthesize(self, text: str, *, voice: str = "alloy") -> bytes:
        """Return spoken audio (mp3) for ``text``, truncated to :data:`SPEECH_MAX_CHARS`."""

        cleaned = text.strip()
        if not cleaned:
            raise VoiceError("nothing to speak")
        body = {"text": cleaned[:SPEECH_MAX_CHARS], "voice": voice}
        try:
            response = await self._client.post(self._url(self._settings.endpoints.speech), json=body)
        except httpx.HTTPError as exc:
            raise VoiceError(f"Speech request failed: {exc}") from exc
        if not response.is_success:
            raise VoiceError(f"Speech failed with HTTP {response.status_code}")
        if not response.content:
            raise VoiceError("Speech response was empty")
        return response.content

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------
    async def web_search(self, query: str, *, limit: int = 6) -> List[SearchResult]:
        limit = min(max(int(limit), 1), 10)
        data = await self._get_tool("web_search", self._settings.endpoints.web_search, {"q": query, "n": limit})
        if not isinstance(data, list):
            raise ToolExecutionError("web_search", "unexpected response shape")
        results = [
            SearchResult(
                title=str(item.get("title") or "Result"),
                url=str(item.get("url") or ""),
                snippet=str(item.get("snippet") or "")[:300],
            )
            for item in data
            if isinstance(item, Mapping) and item.get("url")
        ]
        if not results:
            raise ToolExecutionError("web_search", f"no results for {query!r}")
        return results[:limit]

    async def fetch_quotes(self, symbols: Sequence[str]) -> List[Quote]:
        joined = ",".join(symbol.upper() for symbol in symbols if symbol)
        if not joined:
            raise ToolExecutionError("stocks", "no symbols")
        data = await self._get_tool("stocks", self._settings.endpoints.stocks, {"s": joined})
        if not isinstance(data, list) or not data:
            raise ToolExecutionError("stocks", f"no quotes for {joined}")
        quotes: List[Quote] = []
        for item in data[:10]:
            if not isinstance(item, Mapping) or not item.get("symbol"):
                continue
            quotes.append(
                Quote(
                    symbol=str(item["symbol"]),
                    price=_as_float(item.get("price")),
                    change=_as_float(item.get("change")),
                    change_pct=_as_float(item.get("changePct")),
                    currency=item.get("currency"),
                    market_time=item.get("marketTime"),
                    name=item.get("name"),
                )
            )
        if not quotes:
            raise ToolExecutionError("stocks", f"no quotes for {joined}")
        return quotes

    async def fetch_weather(
        self,
        *,
        lat: float | None = None,
        lon: float | None = None,
        query: str | None = None,
    ) -> WeatherReport:
        if lat is not None and lon is not None:
            params: Dict[str, Any] = {"lat": lat, "lon": lon}
        elif query:
            params = {"q": query}
        else:
            raise ToolExecutionError("weather", "no location")
        data = await self._get_tool("weather", self._settings.endpoints.weather, params)
        if not isinstance(data, Mapping) or data.get("ok") is False:
            raise ToolExecutionError("weather", "lookup failed")
        main = data.get("main") if isinstance(data.get("main"), Mapping) else {}
        conditions = tuple(
            str(entry.get("description"))
            for entry in data.get("weather") or ()
            if isinstance(entry, Mapping) and entry.get("description")
        )
        return WeatherReport(
            name=str(data.get("name") or query or f"{lat},{lon}"),
            temperature=_as_float(main.get("temp")),
            conditions=conditions,
        )

    async def _get_tool(self, tool: str, path: str, params: Mapping[str, Any]) -> Any:
        try:
            response = await self._client.get(self._url(path), params=dict(params))
        except httpx.HTTPError as exc:
            raise ToolExecutionError(tool, str(exc)) from exc
        if not response.is_success:
            raise ToolExecutionError(tool, f"HTTP {response.status_code}")
        return _json_or_none(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _as_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None

