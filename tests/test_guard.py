"""Tests for single-flight locks, quota counters and cancellation tokens."""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Dict, List, Mapping

import pytest

from turnkit.ai.errors import GuardRejected, QuotaExceeded, TurnCancelled
from turnkit.ai.orchestration.cancellation import CancellationToken
from turnkit.ai.orchestration.guard import ConcurrencyGuard, QuotaCounters, QuotaKind, SingleFlight


class _Clock:
    def __init__(self, today: date) -> None:
        self.today = today

    def __call__(self) -> date:
        return self.today


class _MemoryUsageStore:
    def __init__(self, payload: Mapping[str, object] | None = None) -> None:
        self.payload = dict(payload or {})
        self.saved: List[Dict[str, object]] = []
        self.fail = False

    def load(self) -> Mapping[str, object]:
        return self.payload

    def save(self, payload: Mapping[str, object]) -> None:
        if self.fail:
            raise OSError("read-only disk")
        self.saved.append(dict(payload))


class TestSingleFlight:
    def test_second_acquire_is_rejected(self) -> None:
        flight = SingleFlight("stream")

        lease = flight.try_acquire("first")

        assert lease is not None
        assert flight.try_acquire("second") is None
        assert flight.holder == "first"

    def test_release_is_idempotent(self) -> None:
        flight = SingleFlight("stream")
        lease = flight.try_acquire("first")
        assert lease is not None

        lease.release()
        lease.release()

        assert not flight.held
        assert flight.try_acquire("second") is not None

    def test_stale_lease_cannot_release_new_holder(self) -> None:
        flight = SingleFlight("image")
        stale = flight.acquire("old")
        stale.release()
        current = flight.acquire("new")

        stale.release()

        assert flight.holder == "new"
        current.release()

    def test_acquire_raises_when_held(self) -> None:
        flight = SingleFlight("image")

        with flight.acquire("job"):
            with pytest.raises(GuardRejected) as excinfo:
                flight.acquire("other")
        assert excinfo.value.holder == "job"
        assert not flight.held

    def test_guard_is_busy_while_either_slot_is_held(self) -> None:
        guard = ConcurrencyGuard()

        with guard.image.acquire("job"):
            assert guard.busy
        assert not guard.busy


class TestQuotaCounters:
    def test_free_image_limit(self) -> None:
        quotas = QuotaCounters()
        quotas.record("free", QuotaKind.IMAGE, 6)

        with pytest.raises(QuotaExceeded) as excinfo:
            quotas.check("free", QuotaKind.IMAGE)

        assert excinfo.value.kind == "image"
        assert excinfo.value.plan == "free"
        assert excinfo.value.limit == 6
        assert quotas.used("free", QuotaKind.IMAGE) == 6

    def test_plans_are_counted_separately(self) -> None:
        quotas = QuotaCounters()
        quotas.record("free", QuotaKind.CHAT, 60)

        quotas.check("pro", QuotaKind.CHAT)
        assert quotas.remaining("free", QuotaKind.CHAT) == 0
        assert quotas.remaining("pro", QuotaKind.CHAT) == 9999

    def test_unknown_plan_counts_as_free(self) -> None:
        quotas = QuotaCounters()

        quotas.record("enterprise", QuotaKind.IMAGE)

        assert quotas.used("free", QuotaKind.IMAGE) == 1

    def test_counters_reset_when_the_day_rolls_over(self) -> None:
        clock = _Clock(date(2024, 5, 1))
        quotas = QuotaCounters(clock=clock)
        quotas.record("free", QuotaKind.IMAGE, 6)

        clock.today = date(2024, 5, 2)

        assert quotas.used("free", QuotaKind.IMAGE) == 0
        quotas.check("free", QuotaKind.IMAGE)

    def test_snapshot_restores_same_day_only(self) -> None:
        clock = _Clock(date(2024, 5, 1))
        original = QuotaCounters(clock=clock)
        original.record("free", QuotaKind.CHAT, 3)
        snapshot = original.snapshot()

        same_day = QuotaCounters(clock=clock)
        same_day.restore(snapshot)
        next_day = QuotaCounters(clock=_Clock(date(2024, 5, 2)))
        next_day.restore(snapshot)

        assert snapshot == {"day": "2024-05-01", "counts": {"free:chat": 3}}
        assert same_day.used("free", QuotaKind.CHAT) == 3
        assert next_day.used("free", QuotaKind.CHAT) == 0

    def test_restore_skips_malformed_entries(self) -> None:
        clock = _Clock(date(2024, 5, 1))
        quotas = QuotaCounters(clock=clock)

        quotas.restore({"day": "2024-05-01", "counts": {"free:chat": "x", "free:rockets": 1, "pro:image": 2}})

        assert quotas.used("free", QuotaKind.CHAT) == 0
        assert quotas.used("pro", QuotaKind.IMAGE) == 2

    def test_store_restores_on_start_and_saves_each_record(self) -> None:
        clock = _Clock(date(2024, 5, 1))
        store = _MemoryUsageStore({"day": "2024-05-01", "counts": {"free:voice": 1}})

        quotas = QuotaCounters(clock=clock, store=store)
        quotas.record("free", QuotaKind.SPEECH)

        assert not quotas.allows("free", QuotaKind.VOICE)
        assert store.saved == [{"day": "2024-05-01", "counts": {"free:voice": 1, "free:speech": 1}}]

    def test_store_write_failures_do_not_lose_the_count(self) -> None:
        store = _MemoryUsageStore()
        store.fail = True
        quotas = QuotaCounters(clock=_Clock(date(2024, 5, 1)), store=store)

        assert quotas.record("free", QuotaKind.CHAT) == 1
        assert quotas.used("free", QuotaKind.CHAT) == 1


class TestCancellationToken:
    """Cooperative cancellation."""

    def test_cancel_is_idempotent_and_cascades(self) -> None:
        parent = CancellationToken(name="session")
        child = parent.child(name="stream")
        reasons: list[str | None] = []
        child.on_cancel(reasons.append)

        assert parent.cancel("reset") is True
        assert parent.cancel("again") is False
        assert child.cancelled
        assert child.reason == "reset"
        assert reasons == ["reset"]

    def test_child_of_cancelled_token_starts_cancelled(self) -> None:
        parent = CancellationToken()
        parent.cancel("gone")

        child = parent.child()

        assert child.cancelled
        with pytest.raises(TurnCancelled):
            child.raise_if_cancelled()

    def test_detached_child_is_forgotten_by_its_parent(self) -> None:
        parent = CancellationToken(name="session")
        kept = parent.child(name="image")
        finished = parent.child(name="stream")

        finished.detach()
        finished.detach()
        parent.cancel("reset")

        assert parent.children == (kept,)
        assert kept.cancelled
        assert not finished.cancelled

    @pytest.mark.asyncio
    async def test_guard_returns_result(self) -> None:
        async def work() -> int:
            await asyncio.sleep(0)
            return 7

        assert await CancellationToken().guard(work()) == 7

    @pytest.mark.asyncio
    async def test_guard_propagates_errors(self) -> None:
        async def work() -> None:
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await CancellationToken().guard(work())

    @pytest.mark.asyncio
    async def test_detached_work_keeps_running_but_result_is_dropped(self) -> None:
        token = CancellationToken()
        release = asyncio.Event()
        finished: list[str] = []

        async def work() -> str:
            await release.wait()
            finished.append("done")
            return "late"

        guarded = asyncio.create_task(token.guard(work()))
        await asyncio.sleep(0)
        token.cancel("stopped")

        with pytest.raises(TurnCancelled):
            await guarded
        release.set()
        for _ in range(3):
            await asyncio.sleep(0)
        assert finished == ["done"]

    @pytest.mark.asyncio
    async def test_attached_work_is_cancelled(self) -> None:
        token = CancellationToken()
        started = asyncio.Event()
        cancelled: list[bool] = []

        async def work() -> None:
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        guarded = asyncio.create_task(token.guard(work(), detach=False))
        await started.wait()
        token.cancel("stopped")

        with pytest.raises(TurnCancelled):
            await guarded
        for _ in range(3):
            await asyncio.sleep(0)
        assert cancelled == [True]
