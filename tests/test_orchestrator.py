"""Tests for TurnOrchestrator."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List

import pytest

from turnkit.ai.errors import TransportError
from turnkit.ai.orchestration.guard import QuotaKind
from turnkit.ai.orchestration.hydration import HydrationCandidate
from turnkit.ai.orchestration.orchestrator import OrchestratorConfig, TurnOrchestrator
from turnkit.ai.orchestration.preferences import PreferenceStore
from turnkit.ai.orchestration.stop_messages import image_failed_text, stopped_text
from turnkit.ai.orchestration.types import TurnEvent
from turnkit.chat.message_model import AttachmentRef, Conversation, Message


def _build(client, gateway, *, plan: str = "free", events: List[TurnEvent] | None = None, **kwargs) -> TurnOrchestrator:
    config = OrchestratorConfig(plan=plan, model="max-core" if plan == "max" else f"{plan}-core", display_name="Ada Lovelace", hud_interval=0.01)
    return TurnOrchestrator(client, gateway, config=config, on_event=events.append if events is not None else None, **kwargs)


def _assistant_replies(orchestrator: TurnOrchestrator) -> List[Message]:
    return [message for message in orchestrator.messages if message.role == "assistant" and not message.internal]


# =============================================================================
# Text turns
# =============================================================================


class TestTextTurn:
    """Streaming text replies."""

    @pytest.mark.asyncio
    async def test_reply_is_streamed_and_finalized(self, scripted_client, fake_gateway):
        scripted_client.replies = ["Hi Ada, how can I help today?"]
        orchestrator = _build(scripted_client, fake_gateway)

        outcome = await orchestrator.submit("hello there")

        assert outcome.status == "finalized"
        assert outcome.branch == "text"
        user, reply = orchestrator.messages
        assert user.role == "user" and user.content == "hello there"
        assert reply.content == "Hi Ada, how can I help today?"
        assert reply.status == "complete"
        assert orchestrator.guard.quotas.used("free", QuotaKind.CHAT) == 1

    @pytest.mark.asyncio
    async def test_request_carries_system_prompt_and_history(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)

        await orchestrator.submit("first question")
        await orchestrator.submit("second question")

        request = scripted_client.requests[-1]
        assert request.messages[0]["role"] == "system"
        assert "# Assistant rules" in request.messages[0]["content"]
        contents = [message["content"] for message in request.messages[1:]]
        assert contents == ["first question", "Hello!", "second question"]

    @pytest.mark.asyncio
    async def test_empty_turn_is_rejected(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)

        outcome = await orchestrator.submit("   ")

        assert outcome.status == "rejected"
        assert len(orchestrator.conversation) == 0
        assert scripted_client.requests == []

    @pytest.mark.asyncio
    async def test_suggested_block_becomes_suggestions(self, scripted_client, fake_gateway):
        scripted_client.replies = ["Here you go.\n<suggested>\n- Tell me more\n- Give an example\n</suggested>"]
        orchestrator = _build(scripted_client, fake_gateway, plan="pro")

        await orchestrator.submit("explain closures")

        reply = _assistant_replies(orchestrator)[-1]
        assert reply.content == "Here you go."
        assert reply.suggestions == ("Tell me more", "Give an example")

    @pytest.mark.asyncio
    async def test_transport_error_keeps_partial_text(self, scripted_client, fake_gateway):
        scripted_client.replies = ["Partial answer"]
        scripted_client.fail_with = TransportError("HTTP 502", status_code=502)
        events: List[TurnEvent] = []
        orchestrator = _build(scripted_client, fake_gateway, events=events)

        outcome = await orchestrator.submit("hello there")

        assert outcome.status == "errored"
        reply = _assistant_replies(orchestrator)[-1]
        assert reply.status == "error"
        assert reply.content == "Partial answer"
        assert any(event.type == "error" and event.payload["status_code"] == 502 for event in events)
        assert orchestrator.guard.quotas.used("free", QuotaKind.CHAT) == 0
        assert not orchestrator.busy

    @pytest.mark.asyncio
    async def test_directive_is_acknowledged_internally(self, scripted_client, fake_gateway, tmp_path: Path):
        store = PreferenceStore(tmp_path / "prefs.json")
        orchestrator = _build(scripted_client, fake_gateway, preference_store=store)

        await orchestrator.submit("from now on keep it short please")

        internal = [message for message in orchestrator.messages if message.internal]
        assert len(internal) == 1
        assert internal[0].content.startswith("Got it:")
        assert orchestrator.prefs.terse is True
        assert store.load().terse is True
        system = scripted_client.requests[-1].messages[0]["content"]
        assert "Default to concise answers" in system
        assert all(message["content"] != internal[0].content for message in scripted_client.requests[-1].messages)


# =============================================================================
# Single flight and stop
# =============================================================================


class TestConcurrency:
    """One stream and one image job at a time; stop rewrites synchronously."""

    @pytest.mark.asyncio
    async def test_second_submit_while_streaming_is_rejected_without_mutation(self, scripted_client, fake_gateway):
        scripted_client.replies = ["A fairly long reply that streams slowly"]
        scripted_client.hold = asyncio.Event()
        orchestrator = _build(scripted_client, fake_gateway)

        first = asyncio.create_task(orchestrator.submit("hello there"))
        await scripted_client.started.wait()
        snapshot = orchestrator.messages

        second = await orchestrator.submit("another question")

        assert second.status == "rejected"
        assert orchestrator.messages == snapshot
        assert len(scripted_client.requests) == 1

        scripted_client.hold.set()
        assert (await first).status == "finalized"

    @pytest.mark.asyncio
    async def test_image_request_while_streaming_is_rejected(self, scripted_client, fake_gateway):
        scripted_client.hold = asyncio.Event()
        orchestrator = _build(scripted_client, fake_gateway)

        first = asyncio.create_task(orchestrator.submit("hello there"))
        await scripted_client.started.wait()
        outcome = await orchestrator.submit("draw a cat in a hat")

        assert outcome.status == "rejected"
        assert fake_gateway.image_calls == []
        scripted_client.hold.set()
        await first

    @pytest.mark.asyncio
    async def test_stop_mid_stream_leaves_only_the_stopped_text(self, scripted_client, fake_gateway):
        scripted_client.replies = ["This reply will be interrupted before it finishes"]
        scripted_client.hold = asyncio.Event()
        orchestrator = _build(scripted_client, fake_gateway)

        task = asyncio.create_task(orchestrator.submit("hello there"))
        await scripted_client.started.wait()
        ghost = orchestrator.conversation.last_open_assistant()
        assert ghost is not None and ghost.content

        assert orchestrator.stop() is True
        stopped = orchestrator.conversation.get(ghost.id)
        expected = stopped_text("text", language="en", display_name="Ada Lovelace", seed=ghost.id)
        assert stopped.content == expected
        assert stopped.status == "stopped"

        scripted_client.hold.set()
        outcome = await task

        assert outcome.status == "stopped"
        assert orchestrator.conversation.get(ghost.id).content == expected
        assert not orchestrator.busy

    def test_stop_when_idle_is_safe(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)

        assert orchestrator.stop() is False
        assert orchestrator.messages == ()

    @pytest.mark.asyncio
    async def test_next_turn_runs_after_stop(self, scripted_client, fake_gateway):
        scripted_client.hold = asyncio.Event()
        orchestrator = _build(scripted_client, fake_gateway)

        task = asyncio.create_task(orchestrator.submit("hello there"))
        await scripted_client.started.wait()
        orchestrator.stop()
        await task

        scripted_client.hold = None
        outcome = await orchestrator.submit("try again")

        assert outcome.status == "finalized"
        assert _assistant_replies(orchestrator)[-1].content == "Hello!"


# =============================================================================
# Tool continuation
# =============================================================================


class TestToolContinuation:
    """Marker lines trigger exactly one continuation per tool."""

    @pytest.mark.asyncio
    async def test_web_search_marker_runs_one_continuation_with_sources(self, scripted_client, fake_gateway):
        scripted_client.replies = [
            "Let me look that up.\n##WEB_SEARCH: rust ownership",
            "Ownership means each value has one owner.\n\nSources\n- The Rust Book",
        ]
        orchestrator = _build(scripted_client, fake_gateway, plan="pro")

        outcome = await orchestrator.submit("how does rust ownership work?")

        assert outcome.status == "finalized"
        assert len(scripted_client.requests) == 2
        assert fake_gateway.search_calls == ["rust ownership"]
        continuation = scripted_client.requests[1].messages
        assert continuation[-1]["role"] == "system"
        assert "Sources" in continuation[-1]["content"]
        assert '### Web results for "rust ownership"' in continuation[-1]["content"]
        reply = _assistant_replies(orchestrator)[-1]
        assert reply.content.startswith("Ownership means each value has one owner.")
        assert "##WEB_SEARCH" not in reply.content

    @pytest.mark.asyncio
    async def test_reply_without_marker_runs_no_continuation(self, scripted_client, fake_gateway):
        scripted_client.replies = ["Ownership is about who frees memory."]
        orchestrator = _build(scripted_client, fake_gateway, plan="pro")

        await orchestrator.submit("how does rust ownership work?")

        assert len(scripted_client.requests) == 1
        assert fake_gateway.search_calls == []

    @pytest.mark.asyncio
    async def test_free_plan_marker_surfaces_upsell(self, scripted_client, fake_gateway):
        scripted_client.replies = ["From memory: ownership moves values.\n##WEB_SEARCH: rust ownership"]
        events: List[TurnEvent] = []
        orchestrator = _build(scripted_client, fake_gateway, events=events)

        outcome = await orchestrator.submit("how does rust ownership work?")

        assert outcome.status == "finalized"
        assert len(scripted_client.requests) == 1
        assert fake_gateway.search_calls == []
        upsells = [event for event in events if event.type == "upsell"]
        assert upsells and upsells[0].payload["signal"].feature == "web_search"
        assert _assistant_replies(orchestrator)[-1].content == "From memory: ownership moves values."

    @pytest.mark.asyncio
    async def test_weather_is_available_on_free_plan(self, scripted_client, fake_gateway):
        scripted_client.replies = ["##WEATHER: Lagos", "It's 21.5° and clear in Lagos.\n\nSources\n- Weather service"]
        orchestrator = _build(scripted_client, fake_gateway)

        await orchestrator.submit("weather in lagos?")

        assert fake_gateway.weather_calls == [{"lat": None, "lon": None, "query": "Lagos"}]
        assert len(scripted_client.requests) == 2


# =============================================================================
# Image turns
# =============================================================================


class TestImageTurn:
    """Image jobs, quota and HUD."""

    @pytest.mark.asyncio
    async def test_image_request_creates_placeholder_and_finishes_with_url(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)

        outcome = await orchestrator.submit("draw a cat in a hat")

        assert outcome.status == "finalized"
        assert outcome.branch == "image"
        assert scripted_client.requests == []
        image = orchestrator.conversation.get(outcome.message_id)
        assert image.kind == "image"
        assert image.url == fake_gateway.image_url
        assert image.progress is None
        assert image.status == "complete"
        assert fake_gateway.image_calls[0]["prompt"] == "cat in a hat"
        assert orchestrator.guard.quotas.used("free", QuotaKind.IMAGE) == 1

    @pytest.mark.asyncio
    async def test_free_image_limit_surfaces_upsell_without_job(self, scripted_client, fake_gateway):
        events: List[TurnEvent] = []
        orchestrator = _build(scripted_client, fake_gateway, events=events)
        quotas = orchestrator.guard.quotas
        quotas.record("free", QuotaKind.IMAGE, quotas.limit("free", QuotaKind.IMAGE))
        before = quotas.used("free", QuotaKind.IMAGE)

        outcome = await orchestrator.submit("draw a cat in a hat")

        assert outcome.status == "upsell"
        assert outcome.upsell is not None and outcome.upsell.required_plan == "pro"
        assert fake_gateway.image_calls == []
        assert orchestrator.messages == ()
        assert quotas.used("free", QuotaKind.IMAGE) == before
        assert [event.type for event in events] == ["upsell"]

    @pytest.mark.asyncio
    async def test_image_failure_writes_apology(self, scripted_client, fake_gateway):
        fake_gateway.image_error = "content_policy"
        orchestrator = _build(scripted_client, fake_gateway)

        outcome = await orchestrator.submit("draw a cat in a hat")

        assert outcome.status == "errored"
        image = orchestrator.conversation.get(outcome.message_id)
        assert image.status == "error"
        assert image.content == image_failed_text("content_policy", display_name="Ada Lovelace")
        assert image.url is None
        assert orchestrator.guard.quotas.used("free", QuotaKind.IMAGE) == 0

    @pytest.mark.asyncio
    async def test_stop_during_image_discards_late_url(self, scripted_client, fake_gateway):
        fake_gateway.image_hold = asyncio.Event()
        orchestrator = _build(scripted_client, fake_gateway)

        task = asyncio.create_task(orchestrator.submit("draw a cat in a hat"))
        for _ in range(5):
            await asyncio.sleep(0)
        placeholder = orchestrator.conversation.last_open_assistant()
        assert placeholder is not None and placeholder.progress is not None

        orchestrator.stop()
        fake_gateway.image_hold.set()
        outcome = await task

        assert outcome.status == "stopped"
        image = orchestrator.conversation.get(placeholder.id)
        assert image.url is None
        assert image.progress is None
        assert image.content == stopped_text("image", language="en", display_name="Ada Lovelace", seed=placeholder.id)
        assert not orchestrator.generating_image


# =============================================================================
# Files and describe follow-ups
# =============================================================================


class TestFilesAndDescribe:
    """Attachment turns and describe follow-ups."""

    @pytest.mark.asyncio
    async def test_turn_is_deferred_while_files_upload(self, scripted_client, fake_gateway):
        events: List[TurnEvent] = []
        orchestrator = _build(scripted_client, fake_gateway, events=events)
        orchestrator.attach("notes.txt", b"hello", "text/plain")

        outcome = await orchestrator.submit("summarize this")

        assert outcome.status == "deferred"
        assert orchestrator.messages == ()
        assert any(event.type == "notice" for event in events)

    @pytest.mark.asyncio
    async def test_file_turn_sends_manifest_and_attaches_files(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)
        orchestrator.attach("report.pdf", b"%PDF-1.4", "application/pdf")
        ready = await orchestrator.upload_attachments()
        assert [item.status for item in ready] == ["ready"]

        outcome = await orchestrator.submit("what are the key numbers?")

        assert outcome.status == "finalized"
        assert outcome.branch == "file"
        system = scripted_client.requests[-1].messages[0]["content"]
        assert "# Attached files" in system
        assert "report.pdf" in system
        user = next(message for message in orchestrator.messages if message.role == "user")
        assert [item.name for item in user.attachments] == ["report.pdf"]
        assert user.attachments[0].remote_url == "https://files.example.com/report.pdf"
        assert len(orchestrator.tray) == 0

    @pytest.mark.asyncio
    async def test_describe_intent_with_attachment_calls_analysis(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)
        orchestrator.attach("cat.png", b"\x89PNG", "image/png")
        await orchestrator.upload_attachments()
        await orchestrator.pipeline.wait_idle()

        outcome = await orchestrator.submit("describe this")

        assert outcome.status == "finalized"
        assert scripted_client.requests == []
        call = fake_gateway.analyze_calls[-1]
        assert call["prompt"] == "describe this"
        assert call["files"][0]["url"] == "https://files.example.com/cat.png"
        assert _assistant_replies(orchestrator)[-1].content == "That's a tabby cat."

    @pytest.mark.asyncio
    async def test_whats_this_describes_earlier_generated_image(self, scripted_client, fake_gateway):
        image = Message(role="assistant", kind="image", url="https://cdn.example.com/fox.png", prompt="red fox")
        conversation = Conversation([Message(role="user", content="draw a red fox"), image, Message(role="user", content="nice"), Message(role="assistant", content="Thanks!")])
        orchestrator = _build(scripted_client, fake_gateway, conversation=conversation)

        outcome = await orchestrator.submit("what's this?")

        assert outcome.branch == "describe"
        assert outcome.status == "finalized"
        assert scripted_client.requests == []
        assert fake_gateway.analyze_calls[-1]["files"][0]["url"] == "https://cdn.example.com/fox.png"
        assert _assistant_replies(orchestrator)[-1].content == "That's a tabby cat."

    @pytest.mark.asyncio
    async def test_failed_upload_marks_attachment_error(self, scripted_client, fake_gateway):
        fake_gateway.upload_failures.add("broken.bin")
        orchestrator = _build(scripted_client, fake_gateway)
        attachment = orchestrator.attach("broken.bin", b"\x00", "application/octet-stream")

        ready = await orchestrator.upload_attachments()

        assert ready == []
        stored = orchestrator.tray.get(attachment.id)
        assert stored.status == "error"
        assert stored.remote_url is None

    @pytest.mark.asyncio
    async def test_failed_upload_does_not_block_a_text_turn(self, scripted_client, fake_gateway):
        fake_gateway.upload_failures.add("broken.bin")
        orchestrator = _build(scripted_client, fake_gateway)
        orchestrator.attach("broken.bin", b"\x00", "application/octet-stream")
        await orchestrator.upload_attachments()

        first = await orchestrator.submit("hello there")
        second = await orchestrator.submit("and another thing")

        assert (first.status, first.branch) == ("finalized", "text")
        assert (second.status, second.branch) == ("finalized", "text")
        assert len(scripted_client.requests) == 2
        assert all(message.attachments == () for message in orchestrator.messages)

    @pytest.mark.asyncio
    async def test_failed_upload_is_dropped_once_files_are_sent(self, scripted_client, fake_gateway):
        fake_gateway.upload_failures.add("broken.bin")
        orchestrator = _build(scripted_client, fake_gateway)
        orchestrator.attach("ok.txt", b"notes", "text/plain")
        orchestrator.attach("broken.bin", b"\x00", "application/octet-stream")
        await orchestrator.upload_attachments()

        first = await orchestrator.submit("what are the key numbers?")
        second = await orchestrator.submit("thanks, now tell me a joke")

        assert (first.status, first.branch) == ("finalized", "file")
        user = next(message for message in orchestrator.messages if message.role == "user")
        assert [item.name for item in user.attachments] == ["ok.txt"]
        assert len(orchestrator.tray) == 0
        assert (second.status, second.branch) == ("finalized", "text")

    @pytest.mark.asyncio
    async def test_describe_with_attachments_goes_through_the_pipeline(self, scripted_client, fake_gateway, monkeypatch):
        orchestrator = _build(scripted_client, fake_gateway, plan="pro")
        orchestrator.attach("cat.png", b"\x89PNG", "image/png")
        await orchestrator.upload_attachments()
        await orchestrator.pipeline.wait_idle()
        described: List[List[str]] = []
        original = orchestrator.pipeline.describe

        async def recording(attachments, prompt=None):
            described.append([item.name for item in attachments])
            return await original(attachments, prompt)

        monkeypatch.setattr(orchestrator.pipeline, "describe", recording)

        outcome = await orchestrator.submit("describe this", model="pro-reason")

        assert outcome.status == "finalized"
        assert described == [["cat.png"]]
        assert fake_gateway.analyze_calls[-1]["model"] == "o3-mini"

    @pytest.mark.asyncio
    async def test_pre_analysis_follows_the_selected_model(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway, plan="pro")

        await orchestrator.submit("hello there", model="pro-reason")

        assert orchestrator.pipeline.model == "o3-mini"
        assert orchestrator.pre_analyzer.model == "o3-mini"

        orchestrator.on_text_change("typing", model="pro-core")

        assert orchestrator.pre_analyzer.model == "gpt-4o"


# =============================================================================
# Feedback, regenerate, hydration, history
# =============================================================================


class TestConversationControls:
    """Feedback, regenerate, reset and hydration."""

    @pytest.mark.asyncio
    async def test_feedback_can_be_set_once(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)
        outcome = await orchestrator.submit("hello there")

        assert orchestrator.set_feedback(outcome.message_id, "like") is True
        assert orchestrator.set_feedback(outcome.message_id, "dislike") is False
        assert orchestrator.conversation.get(outcome.message_id).feedback == "like"

    @pytest.mark.asyncio
    async def test_regenerate_appends_an_alternative_answer(self, scripted_client, fake_gateway):
        scripted_client.replies = ["First answer", "Second answer"]
        orchestrator = _build(scripted_client, fake_gateway)
        first = await orchestrator.submit("hello there")

        outcome = await orchestrator.regenerate(first.message_id)

        assert outcome.status == "finalized"
        assert [message.content for message in _assistant_replies(orchestrator)] == ["First answer", "Second answer"]
        assert scripted_client.requests[-1].messages[-1]["content"] == "hello there"

    @pytest.mark.asyncio
    async def test_hydration_waits_for_the_turn_to_settle(self, scripted_client, fake_gateway):
        scripted_client.hold = asyncio.Event()
        orchestrator = _build(scripted_client, fake_gateway)

        task = asyncio.create_task(orchestrator.submit("hello there"))
        await scripted_client.started.wait()
        applied = orchestrator.apply_hydration(HydrationCandidate(source="profile", plan="pro", display_name="Grace"))

        assert applied is False
        assert orchestrator.config.plan == "free"

        scripted_client.hold.set()
        await task

        assert orchestrator.hydration.pending is None
        assert orchestrator.config.plan == "pro"
        assert orchestrator.config.display_name == "Grace"

    def test_hydration_applies_immediately_when_idle(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)
        replacement = (Message(role="user", content="from another tab"),)

        assert orchestrator.apply_hydration(HydrationCandidate(source="history", messages=replacement)) is True
        assert orchestrator.messages == replacement

    @pytest.mark.asyncio
    async def test_history_is_saved_and_restored(self, scripted_client, fake_gateway, history_store):
        orchestrator = _build(scripted_client, fake_gateway, history_store=history_store)
        await orchestrator.submit("hello there")

        restored = _build(scripted_client, fake_gateway, history_store=history_store)

        assert restored.restore_history() == 2
        assert [message.content for message in restored.messages] == ["hello there", "Hello!"]

    @pytest.mark.asyncio
    async def test_reset_clears_conversation_and_tray(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)
        await orchestrator.submit("hello there")
        orchestrator.tray.add(AttachmentRef.create("a.txt", "text/plain"))

        orchestrator.reset()

        assert orchestrator.messages == ()
        assert len(orchestrator.tray) == 0
        assert (await orchestrator.submit("fresh start")).status == "finalized"

    @pytest.mark.asyncio
    async def test_finished_turns_release_their_cancellation_tokens(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway, plan="pro")

        for number in range(5):
            await orchestrator.submit(f"question {number}")
        await orchestrator.submit("draw a lighthouse at dusk")

        assert orchestrator._session.children == ()


# =============================================================================
# Voice notes
# =============================================================================


class TestVoice:
    """Transcription and speech, gated by the daily voice and speech allowances."""

    @pytest.mark.asyncio
    async def test_transcribe_returns_text_and_counts_on_success(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)

        text = await orchestrator.transcribe(b"OggS", name="note.ogg", mime="audio/ogg")

        assert text == "remind me to water the plants"
        assert fake_gateway.transcribe_calls[0].name == "note.ogg"
        assert fake_gateway.transcribe_calls[0].mime == "audio/ogg"
        assert orchestrator.guard.quotas.used("free", QuotaKind.VOICE) == 1
        assert orchestrator.messages == ()

    @pytest.mark.asyncio
    async def test_free_plan_gets_one_voice_note_per_day(self, scripted_client, fake_gateway):
        events: List[TurnEvent] = []
        orchestrator = _build(scripted_client, fake_gateway, events=events)

        assert await orchestrator.transcribe(b"OggS") is not None
        assert await orchestrator.transcribe(b"OggS") is None

        assert len(fake_gateway.transcribe_calls) == 1
        signal = next(event.payload["signal"] for event in events if event.type == "upsell")
        assert signal.feature == "voice"
        assert signal.required_plan == "pro"

    @pytest.mark.asyncio
    async def test_failed_transcription_is_not_counted(self, scripted_client, fake_gateway):
        fake_gateway.voice_error = "stt_failed"
        events: List[TurnEvent] = []
        orchestrator = _build(scripted_client, fake_gateway, events=events)

        assert await orchestrator.transcribe(b"OggS") is None

        assert orchestrator.guard.quotas.used("free", QuotaKind.VOICE) == 0
        assert [event.type for event in events] == ["notice"]

    @pytest.mark.asyncio
    async def test_speak_reads_a_finished_reply(self, scripted_client, fake_gateway):
        scripted_client.replies = ["Water them on Sunday."]
        orchestrator = _build(scripted_client, fake_gateway)
        outcome = await orchestrator.submit("hello there")

        audio = await orchestrator.speak(outcome.message_id, voice="verse")

        assert audio == b"ID3-fake-mp3"
        assert fake_gateway.speech_calls == [{"text": "Water them on Sunday.", "voice": "verse"}]
        assert orchestrator.guard.quotas.used("free", QuotaKind.SPEECH) == 1

    @pytest.mark.asyncio
    async def test_speak_ignores_user_messages(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)
        await orchestrator.submit("hello there")
        user = orchestrator.messages[0]

        assert await orchestrator.speak(user.id) is None
        assert await orchestrator.speak("missing") is None
        assert fake_gateway.speech_calls == []

    @pytest.mark.asyncio
    async def test_free_speech_limit_surfaces_upsell(self, scripted_client, fake_gateway):
        events: List[TurnEvent] = []
        orchestrator = _build(scripted_client, fake_gateway, events=events)
        outcome = await orchestrator.submit("hello there")

        spoken = [await orchestrator.speak(outcome.message_id) for _ in range(7)]

        assert spoken[:6] == [b"ID3-fake-mp3"] * 6
        assert spoken[6] is None
        assert len(fake_gateway.speech_calls) == 6
        assert any(event.type == "upsell" and event.payload["signal"].feature == "speech" for event in events)

    @pytest.mark.asyncio
    async def test_failed_speech_is_not_counted(self, scripted_client, fake_gateway):
        orchestrator = _build(scripted_client, fake_gateway)
        outcome = await orchestrator.submit("hello there")
        fake_gateway.voice_error = "tts_error"

        assert await orchestrator.speak(outcome.message_id) is None
        assert orchestrator.guard.quotas.used("free", QuotaKind.SPEECH) == 0
