"""Turn orchestrator: classifies user turns and drives the matching pipeline.

One orchestrator owns one conversation. It decides whether a turn becomes an
image job, a file turn, a describe follow-up or a streamed text reply, and it
is the only writer of the conversation while a turn is in flight. Stream and
image work each run under their own :class:`CancellationToken`, derived from
the current session token, so :meth:`TurnOrchestrator.stop` and
:meth:`TurnOrchestrator.reset` can abort them independently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Sequence, cast

from openai.types.chat import ChatCompletionMessageParam

from ...chat.message_model import AttachmentRef, Conversation, Feedback, ImageProgress, Message, new_id
from ...services.settings import Settings
from ...utils.logging import turn_scope
from ..client import ChatRequest
from ..errors import AnalysisError, ImageGenerationError, QuotaExceeded, TransportError, TurnCancelled, VoiceError
from ..gateway import UploadFile
from ..plans import PLAN_ORDER, image_config_for_plan, normalize_plan, resolve_model, resolve_ui_model
from .attachments import DEFAULT_MAX_HINTS, PRE_ANALYSIS_DELAYS, AnalysisPort, AttachmentPipeline, AttachmentTray, PreAnalyzer
from .cancellation import CancellationToken
from .classifier import TurnIntent, classify_turn
from .continuation import ContinuationProtocol, ToolRunner
from .guard import ConcurrencyGuard, QuotaKind
from .hydration import HydrationCandidate, HydrationQueue
from .image_job import DEFAULT_HUD_INTERVAL, ImageJob
from .language import choose_preferred_language, detect_conversation_language, wants_full_language
from .preferences import PreferenceStore, UserPrefs, apply_directive
from .prompts import DEFAULT_HISTORY_WINDOW, build_file_manifest, build_history_window, build_system_prompt, split_suggestions
from .stop_messages import StopKind, image_failed_text, stopped_text
from .tool_call_parser import ToolKind, ToolReply, decode_reply
from .types import BackendPort, ChatHistoryStore, StreamingClient, TurnEvent, TurnOutcome, UpsellSignal

__all__ = ["EventPublisher", "OrchestratorConfig", "TurnOrchestrator"]

LOGGER = logging.getLogger(__name__)

EventPublisher = Callable[[TurnEvent], None]

_UPLOADING_NOTICE = "Your files are still uploading. Send again once they're ready."
_NO_FILES_NOTICE = "None of the attached files could be uploaded. Remove them or try again."
_TRANSCRIBE_FAILED_NOTICE = "Could not transcribe that voice note. Please try again."
_SPEECH_FAILED_NOTICE = "Could not read that reply aloud right now."
_TOOL_LABELS: Mapping[str, str] = {
    "web_search": "Live web search",
    "stocks": "Live market data",
    "weather": "Live weather",
}


@dataclass(slots=True)
class OrchestratorConfig:
    """Knobs for one :class:`TurnOrchestrator`.

    Attributes:
        plan: Plan tier used when a call does not pass one.
        model: UI model identifier used when a call does not pass one.
        mode: Speed mode forwarded to the completion endpoint.
        display_name: Name used in stopped and failure messages.
        fallback_language: Language used before any user text is seen.
        history_window: Number of prior turns sent as context.
        hud_interval: Seconds between image HUD steps.
        max_hints: Cap on composer hints derived from file analysis.
        pre_analysis_delays: Debounce delay per plan for pre-analysis.
        session_id: Key under which history is persisted.
    """

    plan: str = "free"
    model: str = "free-core"
    mode: str = "auto"
    display_name: str | None = None
    fallback_language: str = "en"
    history_window: int = DEFAULT_HISTORY_WINDOW
    hud_interval: float = DEFAULT_HUD_INTERVAL
    max_hints: int = DEFAULT_MAX_HINTS
    pre_analysis_delays: Mapping[str, float] = field(default_factory=lambda: dict(PRE_ANALYSIS_DELAYS))
    session_id: str = "default"

    @classmethod
    def from_settings(cls, settings: Settings, *, session_id: str = "default") -> "OrchestratorConfig":
        return cls(
            plan=normalize_plan(settings.plan),
            model=settings.model,
            mode=settings.mode,
            display_name=settings.display_name,
            fallback_language=settings.fallback_language,
            history_window=settings.history_window,
            hud_interval=settings.hud_interval,
            max_hints=settings.max_hints,
            pre_analysis_delays=dict(settings.pre_analysis_delays),
            session_id=session_id,
        )


class TurnOrchestrator:
    """Single writer of one conversation.

    At most one stream and one image job exist at a time, and a new turn is
    rejected while either is active. ``rejected``, ``deferred`` and
    ``upsell`` outcomes return before anything is appended to the
    conversation. Every network failure is resolved here into a message
    status; nothing is retried.
    """

    def __init__(
        self,
        client: StreamingClient,
        gateway: BackendPort,
        *,
        config: OrchestratorConfig | None = None,
        conversation: Conversation | None = None,
        guard: ConcurrencyGuard | None = None,
        tray: AttachmentTray | None = None,
        pipeline: AttachmentPipeline | None = None,
        pre_analyzer: PreAnalyzer | None = None,
        preference_store: PreferenceStore | None = None,
        history_store: ChatHistoryStore | None = None,
        hydration: HydrationQueue | None = None,
        on_event: EventPublisher | None = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.client = client
        self.gateway = gateway
        self.conversation = conversation or Conversation()
        self.guard = guard or ConcurrencyGuard()
        self.tray = tray or AttachmentTray(on_change=self._on_attachment_change)
        analysis_port = cast(AnalysisPort, gateway)
        self.pipeline = pipeline or AttachmentPipeline(
            self.tray,
            analysis_port,
            plan=self.config.plan,
            model=resolve_model(self.config.model, self.config.plan),
            max_hints=self.config.max_hints,
            on_hints=self._on_hints,
        )
        self.pre_analyzer = pre_analyzer or PreAnalyzer(
            self.tray,
            analysis_port,
            plan=self.config.plan,
            model=resolve_model(self.config.model, self.config.plan),
            delays=self.config.pre_analysis_delays,
        )
        self.preference_store = preference_store
        self.history_store = history_store
        self.hydration = hydration or HydrationQueue()
        self.hydration.subscribe(self._on_hydration_available)
        self._on_event = on_event
        self._continuation = ContinuationProtocol(client, ToolRunner(gateway))
        self._prefs = preference_store.load() if preference_store is not None else UserPrefs()
        self._language = self.config.fallback_language
        self._session = CancellationToken(name="session")
        self._tokens: Dict[str, CancellationToken] = {}
        self._image_job: ImageJob | None = None
        self._stopping = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def busy(self) -> bool:
        """True while a stream, an image job or an upload is in flight."""

        return self.guard.busy or any(item.status == "uploading" for item in self.tray.items())

    @property
    def streaming(self) -> bool:
        return self.guard.stream.held

    @property
    def generating_image(self) -> bool:
        return self.guard.image.held

    @property
    def prefs(self) -> UserPrefs:
        return self._prefs

    @property
    def language(self) -> str:
        return self._language

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.conversation.messages

    def restore_history(self) -> int:
        """Load persisted history for the configured session, returning the message count."""

        if self.history_store is None:
            return 0
        try:
            payload = self.history_store.load(self.config.session_id)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Unable to load history for session %s: %s", self.config.session_id, exc)
            return 0
        restored = Conversation.from_dicts(payload)
        self.conversation.replace_all(restored.messages)
        LOGGER.info("Restored %s message(s) for session %s", len(restored), self.config.session_id)
        return len(restored)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------
    def attach(self, name: str, content: bytes, mime: str = "", *, preview_url: str | None = None) -> AttachmentRef:
        return self.tray.add(AttachmentRef.create(name, mime, len(content), preview_url=preview_url), content)

    def remove_attachment(self, attachment_id: str) -> AttachmentRef | None:
        return self.tray.remove(attachment_id)

    async def upload_attachments(self) -> List[AttachmentRef]:
        ready = await self.pipeline.upload_pending()
        self._on_hydration_available()
        return ready

    def on_text_change(self, text: str, *, plan: str | None = None, model: str | None = None) -> bool:
        """Composer edits: restart the debounced pre-analysis."""

        tier = normalize_plan(plan or self.config.plan)
        self.pre_analyzer.plan = tier
        self.pre_analyzer.model = resolve_model(resolve_ui_model(model or self.config.model, tier), tier)
        return self.pre_analyzer.schedule(text)

    # ------------------------------------------------------------------
    # Turn entry points
    # ------------------------------------------------------------------
    async def submit(
        self,
        text: str,
        *,
        plan: str | None = None,
        model: str | None = None,
        content_mode: str = "auto",
    ) -> TurnOutcome:
        """Run one user turn to completion."""

        with turn_scope(new_id()[:8]):
            return await self._run_turn(text, plan=plan, model=model, content_mode=content_mode)

    async def _run_turn(self, text: str, *, plan: str | None, model: str | None, content_mode: str) -> TurnOutcome:
        text = (text or "").strip()
        tier = normalize_plan(plan or self.config.plan)
        ui_model = resolve_ui_model(model or self.config.model, tier)
        if self.guard.busy:
            LOGGER.info("Turn rejected: %s is still running", "stream" if self.guard.stream.held else "image job")
            return TurnOutcome("rejected", error="busy")
        # Failed uploads stay visible in the tray but never route a turn.
        attachments = tuple(item for item in self.tray.items() if item.status != "error")
        if not text and not attachments:
            return TurnOutcome("rejected", error="empty")

        intent = classify_turn(text, attachments, self.conversation.messages, content_mode=content_mode)
        LOGGER.info("Turn classified as %s (plan=%s, model=%s)", intent.kind, tier, ui_model)
        self._stopping = False
        self.pipeline.plan = tier
        self.pipeline.model = resolve_model(ui_model, tier)
        self.pre_analyzer.plan = tier
        self.pre_analyzer.model = self.pipeline.model
        if intent.kind == "image":
            return await self._image_turn(text, intent.prompt, tier)
        if intent.kind == "file":
            return await self._file_turn(text, intent, tier, ui_model, content_mode)
        if intent.kind == "describe" and intent.visual is not None:
            files = [{"name": intent.visual.name or "image", "mime": intent.visual.mime or "image/png", "url": intent.visual.url, "kind": "image"}]
            return await self._describe_turn(text, files, (), tier, ui_model, branch="describe")
        return await self._text_turn(text, tier, ui_model, content_mode)

    async def regenerate(self, message_id: str, *, plan: str | None = None, model: str | None = None) -> TurnOutcome:
        """Stream an alternative answer to the user turn preceding ``message_id``."""

        tier = normalize_plan(plan or self.config.plan)
        ui_model = resolve_ui_model(model or self.config.model, tier)
        if self.guard.busy:
            return TurnOutcome("rejected", error="busy", branch="regenerate")
        target = self.conversation.get(message_id)
        if target is None or target.role != "assistant" or target.is_image:
            return TurnOutcome("rejected", error="not a text reply", branch="regenerate")
        user = self.conversation.previous_user(message_id)
        if user is None:
            return TurnOutcome("rejected", error="no prompt to regenerate", branch="regenerate")
        try:
            self.guard.quotas.check(tier, QuotaKind.CHAT)
        except QuotaExceeded as exc:
            return self._upsell(exc, branch="regenerate")
        lease = self.guard.stream.try_acquire("regenerate")
        if lease is None:
            return TurnOutcome("rejected", error="busy", branch="regenerate")
        self._stopping = False
        try:
            with turn_scope(new_id()[:8]):
                history = self._messages_through(user.id)
                request = self._build_request(history, user.content, tier, ui_model, "text")
                return await self._stream_reply(request, tier, branch="regenerate")
        finally:
            lease.release()
            self._settle()

    # ------------------------------------------------------------------
    # Stop, feedback and reset
    # ------------------------------------------------------------------
    def stop(self) -> bool:
        """Abort the running turn.

        The latest open assistant message is rewritten to the stopped text
        before any token fires, so nothing a worker delivers afterwards can
        reach it. Returns False when there was nothing to stop.
        """

        self._stopping = True
        stopped_any = False
        target = self.conversation.last_open_assistant()
        if target is not None:
            self._write_stopped(target)
            stopped_any = True
        for slot, token in list(self._tokens.items()):
            if token.cancel("stopped by user"):
                LOGGER.info("Stopped %s slot", slot)
                stopped_any = True
        job = self._image_job
        if job is not None:
            job.stop_hud()
        return stopped_any

    def set_feedback(self, message_id: str, feedback: Feedback) -> bool:
        """Rate an assistant reply. A message can be rated once."""

        message = self.conversation.get(message_id)
        if message is None or message.role != "assistant" or message.feedback != "none" or feedback == "none":
            return False
        self.conversation.update(message_id, feedback=feedback)
        self._emit_message(message_id)
        self._save_history()
        return True

    def reset(self) -> None:
        """Stop everything and start a new, empty session."""

        self.stop()
        self._session.cancel("session reset")
        self._session = CancellationToken(name="session")
        self._tokens.clear()
        self.pipeline.cancel_all()
        self.pre_analyzer.clear()
        self.tray.clear()
        self.conversation.reset()
        self._language = self.config.fallback_language
        self._stopping = False
        self._emit(TurnEvent("message.updated", payload={"reason": "reset"}))
        self._save_history()

    # ------------------------------------------------------------------
    # Voice
    # ------------------------------------------------------------------
    async def transcribe(
        self,
        audio: bytes,
        *,
        name: str = "voice.webm",
        mime: str = "audio/webm",
        plan: str | None = None,
    ) -> str | None:
        """Turn a recorded voice note into composer text.

        Returns None when the plan's daily voice allowance is used up (an
        upsell is published) or the backend fails (a notice is published).
        Only successful transcriptions count against the allowance.
        """

        tier = normalize_plan(plan or self.config.plan)
        try:
            self.guard.quotas.check(tier, QuotaKind.VOICE)
        except QuotaExceeded as exc:
            self._upsell(exc, branch="voice")
            return None
        try:
            text = await self._session.guard(self.gateway.transcribe(UploadFile(name=name, content=audio, mime=mime)))
        except TurnCancelled:
            return None
        except VoiceError as exc:
            LOGGER.warning("Transcription failed: %s", exc)
            self._emit(TurnEvent("notice", payload={"text": _TRANSCRIBE_FAILED_NOTICE}))
            return None
        self.guard.quotas.record(tier, QuotaKind.VOICE)
        return text

    async def speak(self, message_id: str, *, plan: str | None = None, voice: str = "alloy") -> bytes | None:
        """Synthesize speech for an assistant text reply.

        Returns the audio bytes, or None when the message cannot be spoken,
        the daily speech allowance is used up, or the backend fails.
        """

        message = self.conversation.get(message_id)
        if message is None or message.role != "assistant" or message.is_image or message.internal or not message.content.strip():
            return None
        tier = normalize_plan(plan or self.config.plan)
        try:
            self.guard.quotas.check(tier, QuotaKind.SPEECH)
        except QuotaExceeded as exc:
            self._upsell(exc, branch="speech")
            return None
        try:
            audio = await self._session.guard(self.gateway.synthesize(message.content, voice=voice))
        except TurnCancelled:
            return None
        except VoiceError as exc:
            LOGGER.warning("Speech synthesis failed for %s: %s", message_id, exc)
            self._emit(TurnEvent("notice", message_id=message_id, payload={"text": _SPEECH_FAILED_NOTICE}))
            return None
        self.guard.quotas.record(tier, QuotaKind.SPEECH)
        return audio

    # ------------------------------------------------------------------
    # Hydration
    # ------------------------------------------------------------------
    def apply_hydration(self, candidate: HydrationCandidate) -> bool:
        """Queue ``candidate``; it is applied now when idle, otherwise once the turn settles."""

        self.hydration.publish(candidate)
        return self.hydration.pending is None

    def _on_hydration_available(self) -> None:
        if not self.busy:
            self._drain_hydration()

    def _drain_hydration(self) -> None:
        candidate = self.hydration.drain()
        if candidate is None:
            return
        if candidate.plan and candidate.plan in PLAN_ORDER:
            self.config.plan = candidate.plan
            self.pipeline.plan = candidate.plan
            self.pre_analyzer.plan = candidate.plan
        if candidate.display_name:
            self.config.display_name = candidate.display_name
        if candidate.messages is not None:
            self.conversation.replace_all(candidate.messages)
        LOGGER.info("Applied hydration from %s", candidate.source)
        self._emit(TurnEvent("message.updated", payload={"reason": "hydrated", "source": candidate.source}))

    # ------------------------------------------------------------------
    # Image branch
    # ------------------------------------------------------------------
    async def _image_turn(self, text: str, prompt: str, tier: str) -> TurnOutcome:
        try:
            self.guard.quotas.check(tier, QuotaKind.IMAGE)
        except QuotaExceeded as exc:
            return self._upsell(exc, branch="image")
        lease = self.guard.image.try_acquire("image-turn")
        if lease is None:
            return TurnOutcome("rejected", error="busy", branch="image")

        try:
            user = self.conversation.append(Message(role="user", content=text))
            placeholder = self.conversation.append(
                Message(role="assistant", kind="image", prompt=prompt, status="pending")
            )
            self._emit_message(user.id)
            self._emit_message(placeholder.id)
            token = self._open_slot("image")
            job = ImageJob(
                prompt,
                plan=tier,
                job_id=placeholder.id,
                config=image_config_for_plan(tier),
                token=token,
                interval=self.config.hud_interval,
            )
            self._image_job = job
            try:
                url = await job.run(self.gateway, lambda progress: self._publish_progress(placeholder.id, progress))
            except TurnCancelled:
                self._finish_stopped(placeholder.id)
                return TurnOutcome("stopped", message_id=placeholder.id, branch="image")
            except ImageGenerationError as exc:
                LOGGER.warning("Image job %s failed: %s", job.id, exc)
                if not self._is_final(placeholder.id):
                    self._update(
                        placeholder.id,
                        content=image_failed_text(str(exc), display_name=self._name()),
                        progress=None,
                        status="error",
                    )
                return TurnOutcome("errored", message_id=placeholder.id, error=str(exc), branch="image")
            finally:
                self._image_job = None
                self._close_slot("image", token)

            if self._is_final(placeholder.id):
                return TurnOutcome("stopped", message_id=placeholder.id, branch="image")
            self.guard.quotas.record(tier, QuotaKind.IMAGE)
            self._update(placeholder.id, url=url, progress=None, status="complete")
            return TurnOutcome("finalized", message_id=placeholder.id, branch="image")
        finally:
            lease.release()
            self._settle()

    def _publish_progress(self, message_id: str, progress: ImageProgress) -> None:
        if self._stopping or self._is_final(message_id):
            return
        self._update(message_id, progress=progress)

    # ------------------------------------------------------------------
    # File and describe branches
    # ------------------------------------------------------------------
    async def _file_turn(self, text: str, intent: TurnIntent, tier: str, ui_model: str, content_mode: str) -> TurnOutcome:
        if self.tray.in_flight:
            self._emit(TurnEvent("notice", payload={"text": _UPLOADING_NOTICE}))
            return TurnOutcome("deferred", branch="file")
        if not self.tray.ready():
            self._emit(TurnEvent("notice", payload={"text": _NO_FILES_NOTICE}))
            return TurnOutcome("rejected", error="no ready attachments", branch="file")
        if intent.describe:
            return await self._describe_turn(text, (), self.tray.ready(), tier, ui_model, branch="file")

        try:
            self.guard.quotas.check(tier, QuotaKind.CHAT)
        except QuotaExceeded as exc:
            return self._upsell(exc, branch="file")
        lease = self.guard.stream.try_acquire("file-turn")
        if lease is None:
            return TurnOutcome("rejected", error="busy", branch="file")
        try:
            ids = [item.id for item in self.tray.ready()]
            cached = self.pre_analyzer.cached_for(ids)
            self.pre_analyzer.cancel()
            sent = self.tray.clear_sent()
            manifest = build_file_manifest(sent)
            prompt = text or "Please take a look at the attached files."
            user = self._append_user(prompt, tier, attachments=sent)
            request = self._build_request(self.conversation.messages, user.content, tier, ui_model, content_mode, extra=(manifest,))
            prefill = cached.reply if cached is not None and cached.reply else None
            return await self._stream_reply(request, tier, branch="file", prefill=prefill)
        finally:
            lease.release()
            self._settle()

    async def _describe_turn(
        self,
        text: str,
        files: Sequence[Mapping[str, Any]],
        attachments: Sequence[AttachmentRef],
        tier: str,
        ui_model: str,
        *,
        branch: str,
    ) -> TurnOutcome:
        try:
            self.guard.quotas.check(tier, QuotaKind.CHAT)
        except QuotaExceeded as exc:
            return self._upsell(exc, branch=branch)
        lease = self.guard.stream.try_acquire(f"{branch}-describe")
        if lease is None:
            return TurnOutcome("rejected", error="busy", branch=branch)
        try:
            if attachments:
                self.pre_analyzer.cancel()
                attachments = self.tray.clear_sent()
            self.conversation.append(Message(role="user", content=text, attachments=tuple(attachments)))
            ghost = self.conversation.append(Message(role="assistant", status="pending"))
            self._emit_message(ghost.id)
            token = self._open_slot("stream")
            if attachments:
                analysis = self.pipeline.describe(attachments, text or None)
            else:
                analysis = self.gateway.analyze_files(files, plan=tier, model=resolve_model(ui_model, tier), prompt=text or None)
            try:
                result = await token.guard(analysis)
            except TurnCancelled:
                self._finish_stopped(ghost.id)
                return TurnOutcome("stopped", message_id=ghost.id, branch=branch)
            except AnalysisError as exc:
                LOGGER.warning("Describe analysis failed: %s", exc)
                if not self._is_final(ghost.id):
                    self._update(ghost.id, content="I couldn't analyze that image right now. Please try again.", status="error")
                return TurnOutcome("errored", message_id=ghost.id, error=str(exc), branch=branch)
            finally:
                self._close_slot("stream", token)

            if self._is_final(ghost.id):
                return TurnOutcome("stopped", message_id=ghost.id, branch=branch)
            content = result.reply or result.summary or "I couldn't find anything to describe."
            self._update(ghost.id, content=content, suggestions=result.followups[:3], status="complete")
            self.guard.quotas.record(tier, QuotaKind.CHAT)
            return TurnOutcome("finalized", message_id=ghost.id, branch=branch)
        finally:
            lease.release()
            self._settle()

    # ------------------------------------------------------------------
    # Text branch
    # ------------------------------------------------------------------
    async def _text_turn(self, text: str, tier: str, ui_model: str, content_mode: str) -> TurnOutcome:
        try:
            self.guard.quotas.check(tier, QuotaKind.CHAT)
        except QuotaExceeded as exc:
            return self._upsell(exc, branch="text")
        lease = self.guard.stream.try_acquire("text-turn")
        if lease is None:
            return TurnOutcome("rejected", error="busy", branch="text")
        try:
            user = self._append_user(text, tier)
            request = self._build_request(self.conversation.messages, user.content, tier, ui_model, content_mode)
            return await self._stream_reply(request, tier, branch="text")
        finally:
            lease.release()
            self._settle()

    def _append_user(self, text: str, tier: str, *, attachments: Sequence[AttachmentRef] = ()) -> Message:
        """Append the user turn plus an internal acknowledgement for any directive it carries."""

        prefs, ack = apply_directive(self._prefs, text, tier)
        user = self.conversation.append(Message(role="user", content=text, attachments=tuple(attachments)))
        self._emit_message(user.id)
        if ack is not None:
            self._prefs = prefs
            self._save_prefs()
            note = self.conversation.append(Message(role="assistant", content=ack, internal=True))
            self._emit_message(note.id)
        return user

    def _build_request(
        self,
        history: Sequence[Message],
        latest_text: str,
        tier: str,
        ui_model: str,
        content_mode: str,
        *,
        extra: Sequence[str] = (),
    ) -> ChatRequest:
        hint = detect_conversation_language(history, self.config.fallback_language)
        requested = wants_full_language(latest_text)
        language = requested or choose_preferred_language(tier, hint, None, self.config.fallback_language)
        self._language = language
        base = ChatRequest.build((), plan=tier, model=ui_model, mode=self.config.mode, content_mode=_stream_content_mode(content_mode))
        system = build_system_prompt(
            plan=tier,
            capabilities=base.capabilities,
            prefs=self._prefs,
            language=language,
            display_name=self._prefs.call_me or self.config.display_name,
            extra=extra,
        )
        context: List[ChatCompletionMessageParam] = [cast(ChatCompletionMessageParam, {"role": "system", "content": system})]
        context.extend(build_history_window(history, self.config.history_window))
        return base.with_messages(context)

    async def _stream_reply(
        self,
        request: ChatRequest,
        tier: str,
        *,
        branch: str,
        prefill: str | None = None,
    ) -> TurnOutcome:
        ghost = self.conversation.append(Message(role="assistant", content=prefill or "", status="streaming"))
        self._emit_message(ghost.id)
        token = self._open_slot("stream")

        def on_delta(full_text: str, _delta: str) -> None:
            if token.cancelled or self._is_final(ghost.id):
                return
            self._update(ghost.id, content=full_text)

        def on_upsell(kind: ToolKind) -> None:
            signal = UpsellSignal(
                feature=kind,
                required_plan="pro",
                message=f"{_TOOL_LABELS.get(kind, kind)} is available on Pro and Max plans.",
            )
            self._emit(TurnEvent("upsell", message_id=ghost.id, payload={"signal": signal}))

        try:
            first_pass = await self.client.stream(request, on_delta=on_delta, token=token)
            reply = decode_reply(first_pass)
            if isinstance(reply, ToolReply) and not self._is_final(ghost.id):
                self._update(ghost.id, content=reply.text)
            result = await self._continuation.run(
                reply,
                request=request,
                capabilities=request.capabilities,
                token=token,
                on_delta=on_delta,
                on_upsell=on_upsell,
            )
        except TurnCancelled:
            self._finish_stopped(ghost.id)
            return TurnOutcome("stopped", message_id=ghost.id, branch=branch)
        except TransportError as exc:
            LOGGER.warning("Stream failed (%s): %s", branch, exc)
            if not self._is_final(ghost.id):
                partial = self.conversation.get(ghost.id)
                content = partial.content if partial is not None and partial.content else "Something went wrong while replying. Please try again."
                self._update(ghost.id, content=content, status="error")
            self._emit(TurnEvent("error", message_id=ghost.id, payload={"error": str(exc), "status_code": exc.status_code}))
            return TurnOutcome("errored", message_id=ghost.id, error=str(exc), branch=branch)
        finally:
            self._close_slot("stream", token)

        if token.cancelled or self._is_final(ghost.id):
            self._finish_stopped(ghost.id)
            return TurnOutcome("stopped", message_id=ghost.id, branch=branch)
        visible, suggestions = split_suggestions(result.text)
        self._update(ghost.id, content=visible, suggestions=suggestions, status="complete")
        self.guard.quotas.record(tier, QuotaKind.CHAT)
        LOGGER.info("Turn finalized (%s, %s continuation round(s))", branch, result.rounds)
        return TurnOutcome("finalized", message_id=ghost.id, branch=branch)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _open_slot(self, slot: str) -> CancellationToken:
        previous = self._tokens.pop(slot, None)
        if previous is not None:
            previous.cancel("superseded")
        token = self._session.child(name=slot)
        self._tokens[slot] = token
        return token

    def _close_slot(self, slot: str, token: CancellationToken) -> None:
        if self._tokens.get(slot) is token:
            del self._tokens[slot]
        token.detach()

    def _settle(self) -> None:
        if not self.busy:
            self._drain_hydration()
        self._save_history()

    def _messages_through(self, message_id: str) -> tuple[Message, ...]:
        messages = self.conversation.messages
        for pos, message in enumerate(messages):
            if message.id == message_id:
                return messages[: pos + 1]
        return messages

    def _upsell(self, exc: QuotaExceeded, *, branch: str) -> TurnOutcome:
        LOGGER.info("Quota reached: %s", exc)
        required = "pro" if exc.plan == "free" else "max"
        signal = UpsellSignal(
            feature=exc.kind,
            required_plan=required,
            message=f"You've used today's {exc.kind} allowance on the {exc.plan} plan. Upgrade to {required.title()} for more.",
        )
        self._emit(TurnEvent("upsell", payload={"signal": signal}))
        return TurnOutcome("upsell", upsell=signal, branch=branch)

    def _write_stopped(self, message: Message) -> None:
        kind: StopKind = "image" if message.is_image else "text"
        self.conversation.update(
            message.id,
            force=True,
            content=stopped_text(kind, language=self._language, display_name=self._name(), seed=message.id),
            progress=None,
            suggestions=(),
            status="stopped",
        )
        self._emit_message(message.id)
        self._emit(TurnEvent("stopped", message_id=message.id))

    def _finish_stopped(self, message_id: str) -> None:
        message = self.conversation.get(message_id)
        if message is None or message.status == "stopped":
            return
        self._write_stopped(message)

    def _is_final(self, message_id: str) -> bool:
        message = self.conversation.get(message_id)
        return message is None or message.finalized

    def _update(self, message_id: str, **changes: Any) -> Message:
        updated = self.conversation.update(message_id, **changes)
        self._emit_message(message_id)
        return updated

    def _name(self) -> str | None:
        return self._prefs.call_me or self.config.display_name

    def _save_prefs(self) -> None:
        if self.preference_store is None:
            return
        try:
            self.preference_store.save(self._prefs)
        except OSError as exc:
            LOGGER.warning("Unable to save preferences: %s", exc)

    def _save_history(self) -> None:
        if self.history_store is None:
            return
        try:
            self.history_store.save(self.config.session_id, self.conversation.to_dicts())
        except (OSError, ValueError, TypeError) as exc:
            LOGGER.warning("Unable to save history for session %s: %s", self.config.session_id, exc)

    def _emit_message(self, message_id: str) -> None:
        self._emit(TurnEvent("message.updated", message_id=message_id))

    def _emit(self, event: TurnEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)

    def _on_attachment_change(self, attachment: AttachmentRef) -> None:
        if attachment.status in ("ready", "error") and self.hydration.pending is not None:
            self._on_hydration_available()

    def _on_hints(self, hints: List[str]) -> None:
        self._emit(TurnEvent("hints.updated", payload={"hints": tuple(hints)}))


def _stream_content_mode(content_mode: str) -> str:
    return content_mode if content_mode in ("text", "code") else "text"
