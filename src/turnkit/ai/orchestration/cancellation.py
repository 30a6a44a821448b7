"""Cooperative cancellation tokens for streams, image jobs and tool calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ..errors import TurnCancelled

__all__ = ["CancellationToken"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal shared by the orchestrator and its workers.

    Cancelling is idempotent and cascades to tokens created via :meth:`child`.
    Work wrapped with :meth:`guard` stops being observed the moment the token
    fires: detached requests keep running in the background with their result
    discarded, attached ones (the stream read loop) are cancelled outright.
    """

    def __init__(self, *, name: str = "token") -> None:
        self.name = name
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._parent: CancellationToken | None = None
        self._children: list[CancellationToken] = []
        self._callbacks: list[Callable[[str | None], None]] = []

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"CancellationToken(name={self.name!r}, {state})"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def children(self) -> tuple["CancellationToken", ...]:
        return tuple(self._children)

    def cancel(self, reason: str | None = None) -> bool:
        """Fire the token. Returns False when it had already fired."""

        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        LOGGER.debug("Token %s cancelled (%s)", self.name, reason or "no reason")
        for callback in tuple(self._callbacks):
            callback(reason)
        self._callbacks.clear()
        for child in tuple(self._children):
            child.cancel(reason)
        return True

    def child(self, name: str | None = None) -> "CancellationToken":
        """Return a token that fires whenever this one does."""

        token = CancellationToken(name=name or f"{self.name}.child")
        if self.cancelled:
            token.cancel(self._reason)
        else:
            token._parent = self
            self._children.append(token)
        return token

    def detach(self) -> None:
        """Unlink from the parent token. Safe to call more than once."""

        parent = self._parent
        if parent is None:
            return
        self._parent = None
        if self in parent._children:
            parent._children.remove(self)

    def on_cancel(self, callback: Callable[[str | None], None]) -> None:
        if self.cancelled:
            callback(self._reason)
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TurnCancelled(self._reason)

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason

    async def guard(self, awaitable: Awaitable[T], *, detach: bool = True) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises :class:`TurnCancelled` when the token fires before (or at the
        same time as) the work completes; a late result is dropped.
        """

        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        waiter.cancel()

        if work in done and not self.cancelled:
            return work.result()

        if work.done():
            _drain(work)
        elif detach:
            work.add_done_callback(_drain)
        else:
            work.cancel()
            work.add_done_callback(_drain)
        raise TurnCancelled(self._reason)


def _drain(task: "asyncio.Future[object]") -> None:
    # Retrieve the outcome so discarded failures are not reported as unhandled.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, TurnCancelled):
        LOGGER.debug("Discarded result of cancelled work: %s", exc)
