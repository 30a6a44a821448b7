"""Background state refreshes delivered to the orchestrator as messages."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ...chat.message_model import Message

__all__ = ["HydrationCandidate", "HydrationQueue", "ProfileRefresher"]

LOGGER = logging.getLogger(__name__)

ProfileProvider = Callable[[], Awaitable[Mapping[str, Any]]]


@dataclass(slots=True, frozen=True)
class HydrationCandidate:
    """State proposed by a background reader.

    Attributes:
        source: ``profile`` for plan/profile refreshes, ``history`` for
            conversation changes made elsewhere (another tab or device).
        plan: Refreshed plan tier.
        display_name: Refreshed display name.
        messages: Replacement conversation.
    """

    source: str
    plan: str | None = None
    display_name: str | None = None
    messages: tuple[Message, ...] | None = None

    def merged_with(self, newer: "HydrationCandidate") -> "HydrationCandidate":
        return replace(
            self,
            source=newer.source if newer.source == self.source else f"{self.source}+{newer.source}",
            plan=newer.plan if newer.plan is not None else self.plan,
            display_name=newer.display_name if newer.display_name is not None else self.display_name,
            messages=newer.messages if newer.messages is not None else self.messages,
        )


class HydrationQueue:
    """Holds the latest candidate until the orchestrator is free to apply it.

    Publishers never touch conversation state; the subscriber (the
    orchestrator) decides synchronously whether to apply now or later.
    """

    def __init__(self) -> None:
        self._pending: HydrationCandidate | None = None
        self._subscribers: list[Callable[[], None]] = []

    @property
    def pending(self) -> HydrationCandidate | None:
        return self._pending

    def subscribe(self, callback: Callable[[], None]) -> None:
        self._subscribers.append(callback)

    def publish(self, candidate: HydrationCandidate) -> None:
        self._pending = candidate if self._pending is None else self._pending.merged_with(candidate)
        LOGGER.debug("Hydration candidate queued from %s", candidate.source)
        for callback in tuple(self._subscribers):
            callback()

    def publish_history(self, messages: Sequence[Message]) -> None:
        self.publish(HydrationCandidate(source="history", messages=tuple(messages)))

    def drain(self) -> HydrationCandidate | None:
        candidate, self._pending = self._pending, None
        return candidate


class ProfileRefresher:
    """Periodically polls a profile provider and publishes the result."""

    def __init__(self, provider: ProfileProvider, queue: HydrationQueue, *, interval: float = 15.0) -> None:
        self._provider = provider
        self._queue = queue
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="profile-refresh")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def refresh_once(self) -> HydrationCandidate | None:
        try:
            profile = await self._provider()
        except Exception as exc:  # provider is user supplied; keep polling
            LOGGER.warning("Profile refresh failed: %s", exc)
            return None
        candidate = HydrationCandidate(
            source="profile",
            plan=profile.get("plan"),
            display_name=profile.get("display_name") or profile.get("displayName"),
        )
        self._queue.publish(candidate)
        return candidate

    async def _loop(self) -> None:
        while True:
            await self.refresh_once()
            await asyncio.sleep(self._interval)
