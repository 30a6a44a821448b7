"""Shared pytest fixtures and fakes for the orchestration tests."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Sequence

import pytest

from turnkit.ai.client import ChatRequest, DeltaSink
from turnkit.ai.errors import AnalysisError, ImageGenerationError, TransportError, UploadError, VoiceError
from turnkit.ai.gateway import IngestedFile, Quote, SearchResult, UploadFile, WeatherReport
from turnkit.ai.orchestration.cancellation import CancellationToken
from turnkit.chat.message_model import AnalysisResult


class ScriptedClient:
    """Streaming client that replays canned replies a few characters at a time.

    When ``hold`` is set, the stream pauses after its first delta until the
    event fires, which lets tests act while a reply is mid-flight.
    """

    def __init__(self, replies: Sequence[str] = ("Hello!",), *, chunk: int = 4) -> None:
        self.replies = list(replies)
        self.chunk = chunk
        self.requests: List[ChatRequest] = []
        self.started = asyncio.Event()
        self.hold: asyncio.Event | None = None
        self.fail_with: TransportError | None = None

    async def stream(
        self,
        request: ChatRequest,
        *,
        on_delta: DeltaSink | None = None,
        token: CancellationToken | None = None,
    ) -> str:
        self.requests.append(request)
        reply = self.replies[min(len(self.requests) - 1, len(self.replies) - 1)]
        token = token or CancellationToken(name="scripted")
        return await token.guard(self._produce(reply, on_delta, token), detach=False)

    async def _produce(self, reply: str, on_delta: DeltaSink | None, token: CancellationToken) -> str:
        text = ""
        for start in range(0, len(reply), self.chunk):
            piece = reply[start : start + self.chunk]
            text += piece
            if on_delta is not None and not token.cancelled:
                on_delta(text, piece)
            self.started.set()
            if self.hold is not None:
                await self.hold.wait()
            await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        return text


class FakeGateway:
    """In-memory stand-in for :class:`turnkit.ai.gateway.BackendGateway`."""

    def __init__(self) -> None:
        self.image_url = "https://cdn.example.com/generated.png"
        self.image_error: str | None = None
        self.image_hold: asyncio.Event | None = None
        self.image_calls: List[Dict[str, Any]] = []
        self.analysis = AnalysisResult(summary="A tabby cat on a sofa.", reply="That's a tabby cat.", followups=("Zoom in",))
        self.analysis_error: str | None = None
        self.analyze_calls: List[Dict[str, Any]] = []
        self.upload_failures: set[str] = set()
        self.ingest_calls: List[str] = []
        self.search_results = [SearchResult("The Rust Book", "https://doc.rust-lang.org/book/", "Ownership rules")]
        self.search_calls: List[str] = []
        self.quote_calls: List[List[str]] = []
        self.weather_calls: List[Dict[str, Any]] = []
        self.transcript = "remind me to water the plants"
        self.speech_audio = b"ID3-fake-mp3"
        self.voice_error: str | None = None
        self.transcribe_calls: List[UploadFile] = []
        self.speech_calls: List[Dict[str, Any]] = []

    async def generate_image(self, prompt: str, *, plan: str, model: str | None = None, config: Any = None) -> str:
        self.image_calls.append({"prompt": prompt, "plan": plan, "model": model, "config": config})
        if self.image_hold is not None:
            await self.image_hold.wait()
        if self.image_error:
            raise ImageGenerationError(self.image_error)
        return self.image_url

    async def ingest_files(self, files: Sequence[UploadFile], *, plan: str) -> List[IngestedFile]:
        await asyncio.sleep(0)
        ingested = []
        for item in files:
            self.ingest_calls.append(item.name)
            if item.name in self.upload_failures:
                raise UploadError(f"rejected {item.name}")
            ingested.append(IngestedFile(item.name, item.mime, len(item.content), f"https://files.example.com/{item.name}"))
        return ingested

    async def analyze_files(
        self,
        files: Sequence[Mapping[str, Any]],
        *,
        plan: str,
        model: str,
        prompt: str | None = None,
    ) -> AnalysisResult:
        self.analyze_calls.append({"files": [dict(item) for item in files], "plan": plan, "model": model, "prompt": prompt})
        await asyncio.sleep(0)
        if self.analysis_error:
            raise AnalysisError(self.analysis_error)
        return self.analysis

    async def web_search(self, query: str, *, limit: int = 6) -> List[SearchResult]:
        self.search_calls.append(query)
        return list(self.search_results)

    async def fetch_quotes(self, symbols: Sequence[str]) -> List[Quote]:
        self.quote_calls.append(list(symbols))
        return [Quote(symbol, 101.5, 1.25, 1.25, "USD") for symbol in symbols]

    async def fetch_weather(
        self,
        *,
        lat: float | None = None,
        lon: float | None = None,
        query: str | None = None,
    ) -> WeatherReport:
        self.weather_calls.append({"lat": lat, "lon": lon, "query": query})
        return WeatherReport(query or "Here", 21.5, ("clear sky",))

    async def transcribe(self, audio: UploadFile) -> str:
        self.transcribe_calls.append(audio)
        await asyncio.sleep(0)
        if self.voice_error:
            raise VoiceError(self.voice_error)
        return self.transcript

    async def synthesize(self, text: str, *, voice: str = "alloy") -> bytes:
        self.speech_calls.append({"text": text, "voice": voice})
        await asyncio.sleep(0)
        if self.voice_error:
            raise VoiceError(self.voice_error)
        return self.speech_audio


class MemoryHistoryStore:
    def __init__(self) -> None:
        self.saved: Dict[str, List[Dict[str, Any]]] = {}

    def load(self, session_id: str) -> List[Dict[str, Any]]:
        return list(self.saved.get(session_id, []))

    def save(self, session_id: str, messages: Sequence[Mapping[str, Any]]) -> None:
        self.saved[session_id] = [dict(item) for item in messages]


@pytest.fixture
def scripted_client() -> ScriptedClient:
    return ScriptedClient()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def history_store() -> MemoryHistoryStore:
    return MemoryHistoryStore()
