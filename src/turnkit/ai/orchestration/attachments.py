"""Attachment tray, upload/analysis pipeline and debounced pre-analysis."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from ...chat.message_model import AnalysisResult, AttachmentRef
from ..errors import AnalysisError, UploadError
from ..gateway import UploadFile
from ..plans import normalize_plan

__all__ = [
    "DEFAULT_MAX_HINTS",
    "GENERIC_HINTS",
    "PRE_ANALYSIS_DELAYS",
    "AttachmentPipeline",
    "AttachmentTray",
    "PreAnalyzer",
    "merge_hints",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_HINTS = 8
GENERIC_HINTS: tuple[str, ...] = (
    "Summarize the key points",
    "What stands out in this file?",
    "Suggest next steps based on this",
)
# Seconds to wait after the last keystroke; plans missing here skip pre-analysis.
PRE_ANALYSIS_DELAYS: Mapping[str, float] = {"pro": 0.9, "max": 0.5}

PreviewRevoker = Callable[[str], None]


def merge_hints(results: Iterable[AnalysisResult | None], *, limit: int = DEFAULT_MAX_HINTS) -> list[str]:
    """De-duplicated follow-ups across ``results``, falling back to generic prompts."""

    hints: list[str] = []
    seen: set[str] = set()
    for result in results:
        if result is None:
            continue
        for followup in result.followups:
            cleaned = " ".join(followup.split())
            key = cleaned.casefold()
            if cleaned and key not in seen:
                seen.add(key)
                hints.append(cleaned)
    if not hints:
        return list(GENERIC_HINTS)
    return hints[:limit]


class AttachmentTray:
    """Attachments selected for the next user turn, in selection order."""

    def __init__(
        self,
        *,
        revoke_preview: PreviewRevoker | None = None,
        on_change: Callable[[AttachmentRef], None] | None = None,
    ) -> None:
        self._items: Dict[str, AttachmentRef] = {}
        self._contents: Dict[str, bytes] = {}
        self._revoke_preview = revoke_preview
        self._on_change = on_change

    def __len__(self) -> int:
        return len(self._items)

    def add(self, attachment: AttachmentRef, content: bytes = b"") -> AttachmentRef:
        self._items[attachment.id] = attachment
        self._contents[attachment.id] = content
        self._notify(attachment)
        return attachment

    def get(self, attachment_id: str) -> AttachmentRef | None:
        return self._items.get(attachment_id)

    def content(self, attachment_id: str) -> bytes:
        return self._contents.get(attachment_id, b"")

    def items(self) -> tuple[AttachmentRef, ...]:
        return tuple(self._items.values())

    def pending(self) -> tuple[AttachmentRef, ...]:
        return tuple(item for item in self._items.values() if item.status == "pending")

    def ready(self) -> tuple[AttachmentRef, ...]:
        return tuple(item for item in self._items.values() if item.status == "ready")

    @property
    def in_flight(self) -> bool:
        """True while any attachment is still pending or uploading."""

        return any(item.status in ("pending", "uploading") for item in self._items.values())

    def update(self, attachment_id: str, **changes: Any) -> AttachmentRef | None:
        """Apply ``changes``; returns None when the attachment was removed meanwhile."""

        current = self._items.get(attachment_id)
        if current is None:
            return None
        updated = current.with_updates(**changes)
        self._items[attachment_id] = updated
        if current.preview_url and not updated.preview_url:
            self._revoke(current.preview_url)
        self._notify(updated)
        return updated

    def remove(self, attachment_id: str) -> AttachmentRef | None:
        removed = self._items.pop(attachment_id, None)
        self._contents.pop(attachment_id, None)
        if removed is not None and removed.preview_url:
            self._revoke(removed.preview_url)
        return removed

    def payload(self, attachments: Sequence[AttachmentRef] | None = None) -> list[Dict[str, Any]]:
        """``{name, mime, url, kind}`` descriptors for ready attachments."""

        source = attachments if attachments is not None else self.ready()
        return [
            {"name": item.name, "mime": item.mime, "url": item.remote_url, "kind": item.kind}
            for item in source
            if item.status == "ready"
        ]

    def clear_sent(self) -> tuple[AttachmentRef, ...]:
        """Detach ready attachments for the turn being sent and release their previews.

        Attachments whose upload failed are dropped as well.
        """

        sent = self.ready()
        failed = [item for item in self._items.values() if item.status == "error"]
        for item in (*sent, *failed):
            self.remove(item.id)
        return tuple(item.with_updates(preview_url=None) for item in sent)

    def clear(self) -> None:
        for attachment_id in list(self._items):
            self.remove(attachment_id)

    def _revoke(self, preview_url: str) -> None:
        if self._revoke_preview is not None:
            self._revoke_preview(preview_url)

    def _notify(self, attachment: AttachmentRef) -> None:
        if self._on_change is not None:
            self._on_change(attachment)


@runtime_checkable
class AnalysisPort(Protocol):
    """Gateway calls the pipeline needs."""

    async def ingest_files(self, files: Sequence[UploadFile], *, plan: str) -> Sequence[Any]:
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


class AttachmentPipeline:
    """Uploads pending attachments and analyzes them in the background.

    Each upload and analysis is an independent task keyed by attachment id,
    touching only its own record; results for attachments removed in the
    meantime are dropped.
    """

    def __init__(
        self,
        tray: AttachmentTray,
        gateway: AnalysisPort,
        *,
        plan: str = "free",
        model: str = "free-core",
        max_hints: int = DEFAULT_MAX_HINTS,
        on_hints: Callable[[list[str]], None] | None = None,
    ) -> None:
        self._tray = tray
        self._gateway = gateway
        self.plan = normalize_plan(plan)
        self.model = model
        self._max_hints = max_hints
        self._on_hints = on_hints
        self._tasks: Dict[str, asyncio.Task[Any]] = {}
        self.hints: list[str] = []

    @property
    def tray(self) -> AttachmentTray:
        return self._tray

    @property
    def active(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    async def upload_pending(self) -> list[AttachmentRef]:
        """Upload every pending attachment concurrently; returns the ones now ready."""

        pending = self._tray.pending()
        if not pending:
            return []
        for item in pending:
            self._tray.update(item.id, status="uploading")
        tasks = [self._spawn(f"upload:{item.id}", self._upload_one(item.id)) for item in pending]
        outcomes = await asyncio.gather(*tasks)
        ready = [item for item in outcomes if item is not None]
        LOGGER.info("Uploaded %s of %s attachment(s)", len(ready), len(pending))
        if ready:
            self._spawn("analysis:" + ",".join(item.id for item in ready), self._analyze_batch([item.id for item in ready]))
        return ready

    async def _upload_one(self, attachment_id: str) -> AttachmentRef | None:
        item = self._tray.get(attachment_id)
        if item is None:
            return None
        upload = UploadFile(name=item.name, content=self._tray.content(attachment_id), mime=item.mime or "application/octet-stream")
        remote_url: str | None = None
        try:
            ingested = await self._gateway.ingest_files([upload], plan=self.plan)
            if not ingested:
                raise UploadError(f"No upload result for {item.name}")
            remote_url = str(getattr(ingested[0], "url"))
        except UploadError as exc:
            LOGGER.warning("Upload of %s failed: %s", item.name, exc)
            self._tray.update(attachment_id, status="error", error=str(exc))
            return None
        finally:
            current = self._tray.get(attachment_id)
            if remote_url is None and current is not None and current.status == "uploading":
                self._tray.update(attachment_id, status="error", error="upload interrupted")
        return self._tray.update(attachment_id, status="ready", remote_url=remote_url, preview_url=None, error=None)

    async def _analyze_batch(self, attachment_ids: Sequence[str]) -> list[str]:
        for attachment_id in attachment_ids:
            self._tray.update(attachment_id, analysis_status="pending")
        await asyncio.gather(*(self._analyze_one(attachment_id) for attachment_id in attachment_ids))
        hints = merge_hints((item.analysis_result for item in self._tray.items()), limit=self._max_hints)
        self.hints = hints
        if self._on_hints is not None:
            self._on_hints(list(hints))
        return hints

    async def _analyze_one(self, attachment_id: str) -> None:
        item = self._tray.get(attachment_id)
        if item is None or item.status != "ready":
            return
        try:
            result = await self._gateway.analyze_files(self._tray.payload([item]), plan=self.plan, model=self.model)
        except AnalysisError as exc:
            LOGGER.warning("Analysis of %s failed: %s", item.name, exc)
            self._tray.update(attachment_id, analysis_status="error", error=str(exc))
            return
        self._tray.update(attachment_id, analysis_status="done", analysis_result=result)

    async def describe(self, attachments: Sequence[AttachmentRef], prompt: str | None = None) -> AnalysisResult:
        """Direct describe-only analysis of attachments sent with a descriptive turn."""

        return await self._gateway.analyze_files(
            self._tray.payload(attachments), plan=self.plan, model=self.model, prompt=prompt
        )

    def _spawn(self, key: str, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._tasks[key] = task
        task.add_done_callback(lambda finished, key=key: self._forget(key, finished))
        return task

    def _forget(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error("Attachment task %s crashed", key, exc_info=task.exception())

    async def wait_idle(self) -> None:
        """Wait for every background upload and analysis task to finish."""

        while self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()


class PreAnalyzer:
    """Debounced re-analysis of ready attachments while the user types.

    Only plans listed in ``delays`` take part. The cached result is read
    with :meth:`cached_for`, which never waits.
    """

    def __init__(
        self,
        tray: AttachmentTray,
        gateway: AnalysisPort,
        *,
        plan: str = "free",
        model: str = "free-core",
        delays: Mapping[str, float] = PRE_ANALYSIS_DELAYS,
    ) -> None:
        self._tray = tray
        self._gateway = gateway
        self.plan = normalize_plan(plan)
        self.model = model
        self._delays = dict(delays)
        self._task: asyncio.Task[None] | None = None
        self._cache: tuple[frozenset[str], str, AnalysisResult] | None = None

    @property
    def delay(self) -> float | None:
        return self._delays.get(self.plan)

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, text: str) -> bool:
        """Restart the debounce timer for ``text``; returns False when disabled."""

        delay = self.delay
        ready = self._tray.ready()
        if delay is None or not ready or not text.strip():
            return False
        self.cancel()
        ids = frozenset(item.id for item in ready)
        self._task = asyncio.ensure_future(self._run(text, ids, delay))
        return True

    async def _run(self, text: str, ids: frozenset[str], delay: float) -> None:
        await asyncio.sleep(delay)
        attachments = [item for item in self._tray.ready() if item.id in ids]
        if not attachments:
            return
        try:
            result = await self._gateway.analyze_files(
                self._tray.payload(attachments), plan=self.plan, model=self.model, prompt=text
            )
        except AnalysisError as exc:
            LOGGER.debug("Pre-analysis failed: %s", exc)
            return
        self._cache = (ids, text, result)
        LOGGER.debug("Pre-analysis cached for %s attachment(s)", len(ids))

    def cached_for(self, attachment_ids: Iterable[str]) -> AnalysisResult | None:
        if self._cache is None:
            return None
        ids, _, result = self._cache
        return result if ids == frozenset(attachment_ids) else None

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def clear(self) -> None:
        self.cancel()
        self._cache = None
