from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol

from coinbase_feed_lake.core.errors import BackfillUnsupportedError, FetchError, SequenceInvariantError
from coinbase_feed_lake.core.logging import EVENT_GAP_DETECTED, EVENT_GAP_RECOVERED, EVENT_GAP_UNRECOVERABLE
from coinbase_feed_lake.core.models import (
    GapInterval,
    GapRecord,
    GapStatus,
    Message,
    SequenceCheck,
    SequenceStatus,
    SubscriptionKey,
)
from coinbase_feed_lake.core.throttle import BackoffPolicy

logger = logging.getLogger(__name__)

RangeFetcher = Callable[[str, str, int, int], list[Message]]
Deliver = Callable[[Message], object]


class GapLedger(Protocol):
    def record_gap(self, key: SubscriptionKey, interval: GapInterval, *, detected_at_ms: int | None = None) -> int: ...

    def extend_gap(self, gap_id: int, interval: GapInterval) -> None: ...

    def resolve_gap(
        self,
        gap_id: int,
        status: GapStatus,
        *,
        missing: list[int] | None = None,
        detail: str | None = None,
    ) -> None: ...

    def pending_gaps(self) -> list[GapRecord]: ...


@dataclass(frozen=True, slots=True)
class Admission:
    check: SequenceCheck
    deliver: bool
    opened: bool = False
    pending: GapInterval | None = None


@dataclass(frozen=True, slots=True)
class RecoveryRelease:
    interval: GapInterval
    messages: tuple[Message, ...]
    missing: tuple[int, ...]


@dataclass(slots=True)
class _KeyState:
    lock: threading.Lock = field(default_factory=threading.Lock)
    last_seen: int | None = None
    last_delivered: int | None = None
    pending: GapInterval | None = None
    buffer: list[Message] = field(default_factory=list)
    held: set[int] = field(default_factory=set)

    def hold(self, message: Message) -> None:
        self.buffer.append(message)
        if message.sequence is not None:
            self.held.add(message.sequence)


class SequenceTracker:
    """Per-(product, channel) sequence state: last seen, pending gap and held-back live messages."""

    def __init__(self) -> None:
        self._states: dict[SubscriptionKey, _KeyState] = {}
        self._registry_lock = threading.Lock()

    def _state(self, key: SubscriptionKey) -> _KeyState:
        with self._registry_lock:
            state = self._states.get(key)
            if state is None:
                state = _KeyState()
                self._states[key] = state
            return state

    def seed(self, key: SubscriptionKey, last_sequence: int) -> None:
        state = self._state(key)
        with state.lock:
            if state.last_seen is None or last_sequence > state.last_seen:
                state.last_seen = last_sequence

    def last_seen(self, key: SubscriptionKey) -> int | None:
        state = self._state(key)
        with state.lock:
            return state.last_seen

    def pending(self, key: SubscriptionKey) -> GapInterval | None:
        state = self._state(key)
        with state.lock:
            return state.pending

    def buffered(self, key: SubscriptionKey) -> int:
        state = self._state(key)
        with state.lock:
            return len(state.buffer)

    def check(self, message: Message) -> SequenceCheck:
        """Classify a message and advance ``last_seen``; no gating."""
        if message.sequence is None:
            return SequenceCheck(SequenceStatus.UNSEQUENCED)
        state = self._state(message.key)
        with state.lock:
            return self._check_locked(state, message.sequence)

    def admit(self, message: Message) -> Admission:
        """Classify a live message and decide whether it may be delivered now.

        While a gap is pending for the key, in-order messages, the message that opened
        or extended the gap and late arrivals inside the gap are held back until the
        recovery releases them.
        """
        if message.sequence is None:
            return Admission(SequenceCheck(SequenceStatus.UNSEQUENCED), deliver=True)

        sequence = message.sequence
        state = self._state(message.key)
        with state.lock:
            result = self._check_locked(state, sequence)
            if result.status is SequenceStatus.DUPLICATE:
                if state.pending is not None and sequence in state.pending and sequence not in state.held:
                    state.hold(message)
                    return Admission(SequenceCheck(SequenceStatus.LATE), deliver=False, pending=state.pending)
                return Admission(result, deliver=False, pending=state.pending)

            gap = result.interval()
            if gap is not None:
                opened = state.pending is None
                state.pending = gap if state.pending is None else state.pending.merge(gap)
                state.hold(message)
                return Admission(result, deliver=False, opened=opened, pending=state.pending)

            if state.pending is not None:
                state.hold(message)
                return Admission(result, deliver=False, pending=state.pending)

            state.last_delivered = sequence
            return Admission(result, deliver=True)

    def unfilled(self, key: SubscriptionKey, low: int, high: int) -> list[int]:
        """Sequences in ``[low, high]`` that no held-back live message covers."""
        state = self._state(key)
        with state.lock:
            return [sequence for sequence in range(low, high + 1) if sequence not in state.held]

    def restore_pending(self, key: SubscriptionKey, interval: GapInterval) -> bool:
        """Mark a gap left pending by an earlier run; return True if the key had none."""
        state = self._state(key)
        with state.lock:
            opened = state.pending is None
            state.pending = interval if state.pending is None else state.pending.merge(interval)
            return opened

    def finish_recovery(self, key: SubscriptionKey, recovered: Iterable[Message]) -> RecoveryRelease:
        """Clear the pending gap and return recovered plus held-back messages in delivery order."""
        state = self._state(key)
        with state.lock:
            interval = state.pending
            if interval is None:
                raise SequenceInvariantError(f"No pending gap to finish for {key}")

            by_sequence: dict[int, Message] = {}
            for message in state.buffer:
                if message.sequence is not None:
                    by_sequence.setdefault(message.sequence, message)
            for message in recovered:
                if message.sequence is not None and message.sequence in interval:
                    by_sequence.setdefault(message.sequence, message)

            floor = state.last_delivered
            ordered = tuple(
                by_sequence[sequence] for sequence in sorted(by_sequence) if floor is None or sequence > floor
            )
            missing = tuple(
                sequence for sequence in range(interval.low, interval.high + 1) if sequence not in by_sequence
            )

            state.pending = None
            state.buffer = []
            state.held = set()
            if ordered:
                state.last_delivered = ordered[-1].sequence
            if (
                state.last_delivered is not None
                and state.last_seen is not None
                and state.last_delivered > state.last_seen
            ):
                raise SequenceInvariantError(
                    f"Delivered sequence {state.last_delivered} is ahead of last seen {state.last_seen} for {key}"
                )
            return RecoveryRelease(interval=interval, messages=ordered, missing=missing)

    @staticmethod
    def _check_locked(state: _KeyState, sequence: int) -> SequenceCheck:
        last = state.last_seen
        if last is None or sequence == last + 1:
            state.last_seen = sequence
            return SequenceCheck(SequenceStatus.IN_ORDER)
        if sequence <= last:
            return SequenceCheck(SequenceStatus.DUPLICATE)
        state.last_seen = sequence
        return SequenceCheck.gap(last + 1, sequence - 1)


class _GapFetchExhausted(FetchError):
    pass


@dataclass(slots=True)
class RecoveryStats:
    duplicates: int = 0
    gaps_detected: int = 0
    gaps_recovered: int = 0
    gaps_lost: int = 0
    messages_replayed: int = 0
    in_flight: int = 0


def _compress_ranges(sequences: Iterable[int]) -> str:
    runs: list[list[int]] = []
    for sequence in sorted(sequences):
        if runs and sequence == runs[-1][1] + 1:
            runs[-1][1] = sequence
        else:
            runs.append([sequence, sequence])
    return ",".join(str(low) if low == high else f"{low}-{high}" for low, high in runs)


class GapRecoveryCoordinator:
    """Gate live delivery on sequence order and repair gaps from the REST API.

    ``on_live`` must be called from the event loop that runs the recovery tasks, so the
    release of a repaired gap can never interleave with live delivery for the same key.
    """

    def __init__(
        self,
        tracker: SequenceTracker,
        fetcher: RangeFetcher,
        deliver: Deliver,
        *,
        max_attempts: int = 5,
        backoff_factory: Callable[[], BackoffPolicy] | None = None,
        ledger: GapLedger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._tracker = tracker
        self._fetcher = fetcher
        self._deliver = deliver
        self._max_attempts = max_attempts
        self._backoff_factory = backoff_factory or (
            lambda: BackoffPolicy(initial_seconds=1.0, maximum_seconds=30.0, floor_seconds=0.0)
        )
        self._ledger = ledger
        self._sleep = sleep
        self._tasks: dict[SubscriptionKey, asyncio.Task[None]] = {}
        self._gap_ids: dict[SubscriptionKey, list[int]] = {}
        self._stats = RecoveryStats()

    @property
    def tracker(self) -> SequenceTracker:
        return self._tracker

    def stats(self) -> RecoveryStats:
        return RecoveryStats(
            duplicates=self._stats.duplicates,
            gaps_detected=self._stats.gaps_detected,
            gaps_recovered=self._stats.gaps_recovered,
            gaps_lost=self._stats.gaps_lost,
            messages_replayed=self._stats.messages_replayed,
            in_flight=len(self._tasks),
        )

    def recovery_task(self, key: SubscriptionKey) -> asyncio.Task[None] | None:
        return self._tasks.get(key)

    def on_live(self, message: Message) -> SequenceCheck:
        admission = self._tracker.admit(message)
        check = admission.check

        if check.status is SequenceStatus.DUPLICATE:
            self._stats.duplicates += 1
            logger.debug(
                "Dropping duplicate message",
                extra={"product_id": message.product_id, "channel": message.channel, "sequence": message.sequence},
            )
        elif check.status is SequenceStatus.LATE:
            logger.debug(
                "Holding late message inside pending gap",
                extra={"product_id": message.product_id, "channel": message.channel, "sequence": message.sequence},
            )
        elif check.status is SequenceStatus.GAP and admission.pending is not None:
            self._stats.gaps_detected += 1
            logger.warning(
                "Sequence gap detected",
                extra={
                    "event": EVENT_GAP_DETECTED,
                    "product_id": message.product_id,
                    "channel": message.channel,
                    "low": check.low,
                    "high": check.high,
                    "pending_low": admission.pending.low,
                    "pending_high": admission.pending.high,
                    "merged": not admission.opened,
                },
            )
            self._record_gap(message.key, admission.pending, opened=admission.opened)
            if admission.opened:
                self._schedule(message.key)

        if admission.deliver:
            self._deliver(message)
        return check

    def resume_pending(self) -> int:
        """Re-queue gaps a previous run left pending. Returns the number of keys scheduled."""
        if self._ledger is None:
            return 0
        scheduled = 0
        for record in self._ledger.pending_gaps():
            opened = self._tracker.restore_pending(record.key, GapInterval(record.low, record.high))
            self._gap_ids.setdefault(record.key, []).append(record.gap_id)
            logger.info(
                "Resuming pending gap from ledger",
                extra={
                    "product_id": record.product_id,
                    "channel": record.channel,
                    "low": record.low,
                    "high": record.high,
                    "gap_id": record.gap_id,
                },
            )
            if opened:
                self._schedule(record.key)
                scheduled += 1
        return scheduled

    async def aclose(self) -> None:
        """Cancel in-flight recoveries; their keys stay pending for a later run."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _schedule(self, key: SubscriptionKey) -> None:
        task = asyncio.get_running_loop().create_task(self._recover(key), name=f"gap-recovery-{key}")
        self._tasks[key] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._tasks.get(key) is done:
                del self._tasks[key]

        task.add_done_callback(_forget)

    async def _recover(self, key: SubscriptionKey) -> None:
        fetched: dict[int, Message] = {}
        fetched_through: int | None = None
        failure: str | None = None
        try:
            while True:
                pending = self._tracker.pending(key)
                if pending is None:
                    raise SequenceInvariantError(f"Recovery running for {key} without a pending gap")
                start = pending.low if fetched_through is None else fetched_through + 1
                if start > pending.high:
                    break
                # late live arrivals may already cover part of the range
                unfilled = self._tracker.unfilled(key, start, pending.high)
                if unfilled:
                    low, high = unfilled[0], unfilled[-1]
                    for message in await self._fetch_with_retry(key, low, high):
                        if message.sequence is not None and low <= message.sequence <= high:
                            fetched[message.sequence] = message
                fetched_through = pending.high
        except _GapFetchExhausted as exc:
            failure = str(exc)

        # no await from here on: live delivery for this key cannot interleave with the release
        release = self._tracker.finish_recovery(key, fetched.values())
        for message in release.messages:
            self._deliver(message)
        self._stats.messages_replayed += sum(
            1 for message in release.messages if fetched.get(message.sequence or -1) is message
        )
        self._report(key, release, failure)

    async def _fetch_with_retry(self, key: SubscriptionKey, low: int, high: int) -> list[Message]:
        backoff = self._backoff_factory()
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await asyncio.to_thread(self._fetcher, key.product_id, key.channel, low, high)
            except BackfillUnsupportedError as exc:
                raise _GapFetchExhausted(str(exc)) from exc
            except FetchError as exc:
                if attempt >= self._max_attempts:
                    raise _GapFetchExhausted(f"Backfill failed after {attempt} attempts: {exc}") from exc
                delay = backoff.next_delay()
                logger.warning(
                    "Retrying gap backfill",
                    extra={
                        "product_id": key.product_id,
                        "channel": key.channel,
                        "low": low,
                        "high": high,
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                        "sleep_seconds": round(delay, 3),
                        "error": str(exc),
                    },
                )
                await self._sleep(delay)
        raise SequenceInvariantError("unreachable: retry loop exited without result")

    def _report(self, key: SubscriptionKey, release: RecoveryRelease, failure: str | None) -> None:
        extra = {
            "product_id": key.product_id,
            "channel": key.channel,
            "low": release.interval.low,
            "high": release.interval.high,
            "released": len(release.messages),
        }
        gap_ids = self._gap_ids.pop(key, [])
        if not release.missing:
            self._stats.gaps_recovered += 1
            logger.info("Sequence gap recovered", extra={"event": EVENT_GAP_RECOVERED, **extra})
            self._resolve_gaps(gap_ids, GapStatus.RECOVERED, missing=[], detail=None)
            return

        self._stats.gaps_lost += 1
        reason = failure or "backfill returned an incomplete range"
        missing_ranges = _compress_ranges(release.missing)
        logger.error(
            "Sequence gap could not be recovered; data lost",
            extra={
                "event": EVENT_GAP_UNRECOVERABLE,
                "missing_count": len(release.missing),
                "missing": missing_ranges,
                "reason": reason,
                **extra,
            },
        )
        self._resolve_gaps(
            gap_ids,
            GapStatus.LOST,
            missing=list(release.missing),
            detail=f"{reason}; missing={missing_ranges}",
        )

    def _record_gap(self, key: SubscriptionKey, pending: GapInterval, *, opened: bool) -> None:
        if self._ledger is None:
            return
        try:
            gap_ids = self._gap_ids.get(key)
            if opened or not gap_ids:
                self._gap_ids[key] = [self._ledger.record_gap(key, pending)]
            else:
                self._ledger.extend_gap(gap_ids[0], pending)
        except Exception:
            logger.exception("Gap ledger update failed", extra={"product_id": key.product_id, "channel": key.channel})

    def _resolve_gaps(self, gap_ids: list[int], status: GapStatus, *, missing: list[int], detail: str | None) -> None:
        if self._ledger is None:
            return
        for gap_id in gap_ids:
            try:
                self._ledger.resolve_gap(gap_id, status, missing=missing, detail=detail)
            except Exception:
                logger.exception("Gap ledger update failed", extra={"gap_id": gap_id})
