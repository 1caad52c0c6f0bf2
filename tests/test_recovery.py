import asyncio
import logging
import threading
from pathlib import Path

import pytest

from coinbase_feed_lake.core.errors import BackfillUnsupportedError, FetchError, SequenceInvariantError
from coinbase_feed_lake.core.models import (
    SOURCE_BACKFILL,
    GapInterval,
    GapStatus,
    Message,
    SequenceStatus,
    SubscriptionKey,
)
from coinbase_feed_lake.pipeline.recovery import GapRecoveryCoordinator, SequenceTracker
from coinbase_feed_lake.writer.store import SQLiteMessageStore

BTC = SubscriptionKey("BTC-USD", "matches")


def _message(sequence: int | None, *, channel: str = "matches", source: str = "live") -> Message:
    return Message(
        product_id="BTC-USD",
        channel=channel,
        type="match" if channel == "matches" else "ticker",
        sequence=sequence,
        payload={"trade_id": sequence},
        received_at_ms=1_700_000_000_000,
        source=source,
    )


class _HistoryFetcher:
    """Serves backfill from a fixed set of sequences and records each call."""

    def __init__(self, available: set[int], *, block_first: bool = False) -> None:
        self.available = available
        self.calls: list[tuple[str, str, int, int]] = []
        self.started = threading.Event()
        self.release = threading.Event()
        if not block_first:
            self.release.set()

    def __call__(self, product_id: str, channel: str, low: int, high: int) -> list[Message]:
        self.calls.append((product_id, channel, low, high))
        self.started.set()
        self.release.wait(timeout=5.0)
        return [
            _message(sequence, source=SOURCE_BACKFILL)
            for sequence in range(low, high + 1)
            if sequence in self.available
        ]


async def _no_sleep(seconds: float) -> None:
    return None


async def _wait_started(fetcher: _HistoryFetcher) -> None:
    for _ in range(500):
        if fetcher.started.is_set():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("fetch never started")


async def _drain(coordinator: GapRecoveryCoordinator, key: SubscriptionKey = BTC) -> None:
    task = coordinator.recovery_task(key)
    if task is not None:
        await task


def test_tracker_classifies_in_order_duplicate_and_gap() -> None:
    tracker = SequenceTracker()

    statuses = [tracker.check(_message(sequence)).status for sequence in (1, 2, 2, 1)]
    gap = tracker.check(_message(6))

    assert statuses == [
        SequenceStatus.IN_ORDER,
        SequenceStatus.IN_ORDER,
        SequenceStatus.DUPLICATE,
        SequenceStatus.DUPLICATE,
    ]
    assert (gap.status, gap.low, gap.high) == (SequenceStatus.GAP, 3, 5)
    assert tracker.last_seen(BTC) == 6
    assert tracker.check(_message(7)).status is SequenceStatus.IN_ORDER


def test_tracker_seed_detects_restart_gap() -> None:
    tracker = SequenceTracker()
    tracker.seed(BTC, 10)

    check = tracker.check(_message(14))

    assert (check.status, check.low, check.high) == (SequenceStatus.GAP, 11, 13)


def test_tracker_passes_unsequenced_messages() -> None:
    tracker = SequenceTracker()

    assert tracker.check(_message(None, channel="ticker")).status is SequenceStatus.UNSEQUENCED


def test_finish_without_pending_gap_is_an_invariant_violation() -> None:
    with pytest.raises(SequenceInvariantError):
        SequenceTracker().finish_recovery(BTC, [])


def test_out_of_order_arrival_is_repaired_by_one_task(caplog: pytest.LogCaptureFixture) -> None:
    delivered: list[Message] = []
    fetcher = _HistoryFetcher(available={3, 4})
    coordinator = GapRecoveryCoordinator(SequenceTracker(), fetcher, delivered.append, sleep=_no_sleep)

    async def scenario() -> None:
        for sequence in (1, 2, 5, 3, 4, 6):
            coordinator.on_live(_message(sequence))
        assert coordinator.stats().in_flight == 1
        await _drain(coordinator)

    with caplog.at_level(logging.INFO):
        asyncio.run(scenario())

    assert [message.sequence for message in delivered] == [1, 2, 3, 4, 5, 6]
    assert [message.source for message in delivered] == ["live"] * 6
    # the late arrivals already filled [3, 4], so nothing had to be fetched
    assert fetcher.calls == []
    stats = coordinator.stats()
    assert (stats.gaps_detected, stats.gaps_recovered, stats.gaps_lost, stats.duplicates) == (1, 1, 0, 0)
    assert stats.messages_replayed == 0
    assert stats.in_flight == 0
    events = [getattr(record, "event", None) for record in caplog.records]
    assert events.count("gap_detected") == 1
    assert events.count("gap_recovered") == 1


def test_late_arrivals_survive_a_channel_without_rest_history() -> None:
    full = SubscriptionKey("BTC-USD", "full")
    delivered: list[Message] = []

    def unsupported(product_id: str, channel: str, low: int, high: int) -> list[Message]:
        raise BackfillUnsupportedError("no REST history for full")

    coordinator = GapRecoveryCoordinator(SequenceTracker(), unsupported, delivered.append, sleep=_no_sleep)

    async def scenario() -> None:
        for sequence in (1, 2, 5, 3, 4, 6):
            coordinator.on_live(_message(sequence, channel="full"))
        await _drain(coordinator, full)

    asyncio.run(scenario())

    assert [message.sequence for message in delivered] == [1, 2, 3, 4, 5, 6]
    assert coordinator.stats().gaps_lost == 0
    assert coordinator.stats().gaps_recovered == 1


def test_only_sequences_still_missing_are_fetched() -> None:
    delivered: list[Message] = []
    fetcher = _HistoryFetcher(available={3, 4})
    coordinator = GapRecoveryCoordinator(SequenceTracker(), fetcher, delivered.append, sleep=_no_sleep)

    async def scenario() -> None:
        for sequence in (1, 2, 5, 3, 3, 6):
            coordinator.on_live(_message(sequence))
        await _drain(coordinator)

    asyncio.run(scenario())

    assert fetcher.calls == [("BTC-USD", "matches", 4, 4)]
    assert [message.sequence for message in delivered] == [1, 2, 3, 4, 5, 6]
    assert [message.source for message in delivered] == ["live", "live", "live", "backfill", "live", "live"]
    assert coordinator.stats().duplicates == 1
    assert coordinator.stats().messages_replayed == 1


def test_tracker_holds_late_arrival_inside_pending_gap() -> None:
    tracker = SequenceTracker()
    for sequence in (1, 4):
        tracker.admit(_message(sequence))

    late = tracker.admit(_message(2))
    again = tracker.admit(_message(2))

    assert late.check.status is SequenceStatus.LATE
    assert not late.deliver
    assert again.check.status is SequenceStatus.DUPLICATE
    assert tracker.unfilled(BTC, 2, 3) == [3]
    assert tracker.buffered(BTC) == 2


def test_gap_arriving_during_recovery_extends_the_pending_repair() -> None:
    delivered: list[Message] = []
    fetcher = _HistoryFetcher(available=set(range(1, 20)), block_first=True)
    coordinator = GapRecoveryCoordinator(SequenceTracker(), fetcher, delivered.append, sleep=_no_sleep)

    async def scenario() -> None:
        for sequence in (1, 2, 5, 6):
            coordinator.on_live(_message(sequence))
        await _wait_started(fetcher)
        coordinator.on_live(_message(8))
        assert coordinator.tracker.pending(BTC) == GapInterval(3, 7)
        fetcher.release.set()
        await _drain(coordinator)

    asyncio.run(scenario())

    assert fetcher.calls == [("BTC-USD", "matches", 3, 4), ("BTC-USD", "matches", 7, 7)]
    assert [message.sequence for message in delivered] == [1, 2, 3, 4, 5, 6, 7, 8]
    assert coordinator.stats().gaps_detected == 2
    assert coordinator.stats().gaps_recovered == 1


def test_unrecoverable_gap_is_logged_and_later_messages_flow(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    delivered: list[Message] = []
    calls: list[int] = []
    store = SQLiteMessageStore(tmp_path / "lake.sqlite")

    def failing_fetch(product_id: str, channel: str, low: int, high: int) -> list[Message]:
        calls.append(low)
        raise FetchError("HTTP 503")

    coordinator = GapRecoveryCoordinator(
        SequenceTracker(),
        failing_fetch,
        delivered.append,
        max_attempts=3,
        ledger=store,
        sleep=_no_sleep,
    )

    async def scenario() -> None:
        for sequence in (1, 2, 5, 6):
            coordinator.on_live(_message(sequence))
        await _drain(coordinator)
        coordinator.on_live(_message(7))

    with caplog.at_level(logging.WARNING):
        asyncio.run(scenario())

    assert len(calls) == 3
    assert [message.sequence for message in delivered] == [1, 2, 5, 6, 7]
    (record,) = [record for record in caplog.records if getattr(record, "event", None) == "gap_unrecoverable"]
    assert record.missing == "3-4"
    assert record.missing_count == 2
    (gap,) = store.list_gaps()
    assert gap.status is GapStatus.LOST
    assert gap.missing_count == 2
    assert coordinator.stats().gaps_lost == 1


def test_unsupported_backfill_is_not_retried() -> None:
    delivered: list[Message] = []
    calls: list[int] = []

    def unsupported(product_id: str, channel: str, low: int, high: int) -> list[Message]:
        calls.append(low)
        raise BackfillUnsupportedError("no REST history for full")

    coordinator = GapRecoveryCoordinator(SequenceTracker(), unsupported, delivered.append, sleep=_no_sleep)

    async def scenario() -> None:
        for sequence in (1, 4):
            coordinator.on_live(_message(sequence))
        await _drain(coordinator)

    asyncio.run(scenario())

    assert calls == [2]
    assert [message.sequence for message in delivered] == [1, 4]


def test_incomplete_backfill_delivers_what_exists() -> None:
    delivered: list[Message] = []
    coordinator = GapRecoveryCoordinator(
        SequenceTracker(),
        _HistoryFetcher(available={3}),
        delivered.append,
        sleep=_no_sleep,
    )

    async def scenario() -> None:
        for sequence in (1, 2, 5):
            coordinator.on_live(_message(sequence))
        await _drain(coordinator)

    asyncio.run(scenario())

    assert [message.sequence for message in delivered] == [1, 2, 3, 5]
    assert coordinator.stats().gaps_lost == 1


def test_cancelled_recovery_keeps_gap_pending() -> None:
    delivered: list[Message] = []
    fetcher = _HistoryFetcher(available={3, 4}, block_first=True)
    coordinator = GapRecoveryCoordinator(SequenceTracker(), fetcher, delivered.append, sleep=_no_sleep)

    async def scenario() -> None:
        for sequence in (1, 2, 5):
            coordinator.on_live(_message(sequence))
        await _wait_started(fetcher)
        await coordinator.aclose()
        coordinator.on_live(_message(6))
        fetcher.release.set()

    asyncio.run(scenario())

    assert [message.sequence for message in delivered] == [1, 2]
    assert coordinator.tracker.pending(BTC) == GapInterval(3, 4)
    assert coordinator.tracker.buffered(BTC) == 2
    assert coordinator.stats().in_flight == 0


def test_unsequenced_messages_bypass_a_pending_gap() -> None:
    delivered: list[Message] = []
    fetcher = _HistoryFetcher(available={2}, block_first=True)
    coordinator = GapRecoveryCoordinator(SequenceTracker(), fetcher, delivered.append, sleep=_no_sleep)

    async def scenario() -> None:
        coordinator.on_live(_message(1))
        coordinator.on_live(_message(3))
        coordinator.on_live(_message(None, channel="ticker"))
        assert [message.channel for message in delivered] == ["matches", "ticker"]
        fetcher.release.set()
        await _drain(coordinator)

    asyncio.run(scenario())

    assert [message.sequence for message in delivered] == [1, None, 2, 3]


def test_resume_pending_repairs_gaps_from_previous_run(tmp_path: Path) -> None:
    store = SQLiteMessageStore(tmp_path / "lake.sqlite")
    gap_id = store.record_gap(BTC, GapInterval(3, 4))
    delivered: list[Message] = []
    tracker = SequenceTracker()
    tracker.seed(BTC, 10)
    coordinator = GapRecoveryCoordinator(
        tracker,
        _HistoryFetcher(available={3, 4}),
        delivered.append,
        ledger=store,
        sleep=_no_sleep,
    )

    async def scenario() -> int:
        scheduled = coordinator.resume_pending()
        coordinator.on_live(_message(11))
        await _drain(coordinator)
        return scheduled

    scheduled = asyncio.run(scenario())

    assert scheduled == 1
    assert [message.sequence for message in delivered] == [3, 4, 11]
    (gap,) = store.list_gaps()
    assert (gap.gap_id, gap.status) == (gap_id, GapStatus.RECOVERED)


def test_gap_ledger_tracks_merged_interval(tmp_path: Path) -> None:
    store = SQLiteMessageStore(tmp_path / "lake.sqlite")
    fetcher = _HistoryFetcher(available=set(), block_first=True)
    coordinator = GapRecoveryCoordinator(SequenceTracker(), fetcher, lambda message: None, ledger=store)

    async def scenario() -> None:
        for sequence in (1, 3, 5):
            coordinator.on_live(_message(sequence))
        (gap,) = store.pending_gaps()
        assert (gap.low, gap.high) == (2, 4)
        await coordinator.aclose()
        fetcher.release.set()

    asyncio.run(scenario())

    (gap,) = store.pending_gaps()
    assert gap.status is GapStatus.PENDING
