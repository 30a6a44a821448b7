"""Single-flight locks and per-plan daily quota counters."""

from __future__ import annotations

import enum
import logging
from datetime import date, datetime, timezone
from typing import Callable, Dict, Mapping, Protocol, runtime_checkable

from ..errors import GuardRejected, QuotaExceeded
from ..plans import daily_limit, normalize_plan

__all__ = [
    "ConcurrencyGuard",
    "Lease",
    "QuotaCounters",
    "QuotaKind",
    "SingleFlight",
    "UsageStore",
]

LOGGER = logging.getLogger(__name__)


class Lease:
    """Proof of holding a :class:`SingleFlight` lock. Releasing twice is a no-op."""

    __slots__ = ("_flight", "owner", "_released")

    def __init__(self, flight: "SingleFlight", owner: str) -> None:
        self._flight = flight
        self.owner = owner
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._flight._release(self)

    def __enter__(self) -> "Lease":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class SingleFlight:
    """Non-blocking lock: a second acquire is rejected rather than queued."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lease: Lease | None = None

    @property
    def held(self) -> bool:
        return self._lease is not None

    @property
    def holder(self) -> str | None:
        return self._lease.owner if self._lease is not None else None

    def try_acquire(self, owner: str) -> Lease | None:
        if self._lease is not None:
            LOGGER.debug("%s busy (held by %s); rejecting %s", self.name, self._lease.owner, owner)
            return None
        self._lease = Lease(self, owner)
        return self._lease

    def acquire(self, owner: str) -> Lease:
        lease = self.try_acquire(owner)
        if lease is None:
            raise GuardRejected(self.name, self.holder)
        return lease

    def _release(self, lease: Lease) -> None:
        if self._lease is lease:
            self._lease = None


class QuotaKind(str, enum.Enum):
    CHAT = "chat"
    IMAGE = "image"
    VOICE = "voice"
    SPEECH = "speech"


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


@runtime_checkable
class UsageStore(Protocol):
    """Persistence for :meth:`QuotaCounters.snapshot` payloads."""

    def load(self) -> Mapping[str, object]:
        ...

    def save(self, payload: Mapping[str, object]) -> None:
        ...


class QuotaCounters:
    """Daily usage counters keyed by plan and kind.

    Counters reset when the UTC date changes and only grow through
    :meth:`record`, which callers invoke after an operation succeeds. With a
    ``store``, today's counts are restored on construction and saved after
    every record, so the allowance survives restarts.
    """

    def __init__(self, *, clock: Callable[[], date] = _utc_today, store: UsageStore | None = None) -> None:
        self._clock = clock
        self._day = clock()
        self._counts: Dict[tuple[str, QuotaKind], int] = {}
        self._store = store
        if store is not None:
            self.restore(store.load())

    def _roll(self) -> None:
        today = self._clock()
        if today != self._day:
            LOGGER.info("Quota day rolled over from %s to %s", self._day, today)
            self._day = today
            self._counts.clear()

    def used(self, plan: str, kind: QuotaKind) -> int:
        self._roll()
        return self._counts.get((normalize_plan(plan), QuotaKind(kind)), 0)

    def limit(self, plan: str, kind: QuotaKind) -> int:
        return daily_limit(plan, QuotaKind(kind).value)

    def remaining(self, plan: str, kind: QuotaKind) -> int:
        return max(0, self.limit(plan, kind) - self.used(plan, kind))

    def allows(self, plan: str, kind: QuotaKind) -> bool:
        return self.remaining(plan, kind) > 0

    def check(self, plan: str, kind: QuotaKind) -> None:
        if not self.allows(plan, kind):
            raise QuotaExceeded(QuotaKind(kind).value, normalize_plan(plan), limit=self.limit(plan, kind))

    def record(self, plan: str, kind: QuotaKind, amount: int = 1) -> int:
        self._roll()
        key = (normalize_plan(plan), QuotaKind(kind))
        self._counts[key] = self._counts.get(key, 0) + amount
        self._persist()
        return self._counts[key]

    def snapshot(self) -> Dict[str, object]:
        self._roll()
        return {
            "day": self._day.isoformat(),
            "counts": {f"{plan}:{kind.value}": count for (plan, kind), count in self._counts.items()},
        }

    def restore(self, payload: Mapping[str, object]) -> None:
        """Load counters persisted by :meth:`snapshot`; stale days are ignored."""

        day = payload.get("day")
        counts = payload.get("counts")
        if day != self._clock().isoformat() or not isinstance(counts, Mapping):
            return
        self._day = self._clock()
        self._counts.clear()
        for key, value in counts.items():
            plan, _, kind = str(key).partition(":")
            try:
                self._counts[(normalize_plan(plan), QuotaKind(kind))] = int(value)  # type: ignore[arg-type]
            except (TypeError, ValueError):
                LOGGER.warning("Ignoring malformed quota entry %s=%r", key, value)

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save(self.snapshot())
        except OSError as exc:
            LOGGER.warning("Unable to save quota usage: %s", exc)


class ConcurrencyGuard:
    """Locks and counters shared by one conversation."""

    def __init__(self, quotas: QuotaCounters | None = None) -> None:
        self.stream = SingleFlight("stream")
        self.image = SingleFlight("image")
        self.quotas = quotas or QuotaCounters()

    @property
    def busy(self) -> bool:
        return self.stream.held or self.image.held
