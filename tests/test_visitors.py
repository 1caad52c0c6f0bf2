import logging

import pytest

from coinbase_feed_lake.core.errors import WriteError
from coinbase_feed_lake.core.models import SOURCE_BACKFILL, Message
from coinbase_feed_lake.pipeline.visitors import MetricsVisitor, PersistenceVisitor, VisitorChain


def _message(sequence: int, source: str = "live") -> Message:
    return Message(
        product_id="BTC-USD",
        channel="matches",
        type="match",
        sequence=sequence,
        payload={"trade_id": sequence},
        received_at_ms=sequence,
        source=source,
    )


class _RecordingVisitor:
    def __init__(self, name: str) -> None:
        self.name = name
        self.seen: list[int | None] = []

    def visit(self, message: Message) -> None:
        self.seen.append(message.sequence)


class _ExplodingVisitor:
    name = "exploding"

    def visit(self, message: Message) -> None:
        raise RuntimeError(f"boom on {message.sequence}")


class _FailingSink:
    def append(self, message: Message) -> bool:
        raise WriteError("disk full")

    def close(self) -> None:
        return None


class _MemorySink:
    def __init__(self) -> None:
        self.sequences: set[int | None] = set()

    def append(self, message: Message) -> bool:
        if message.sequence in self.sequences:
            return False
        self.sequences.add(message.sequence)
        return True

    def close(self) -> None:
        return None


def test_failing_visitor_does_not_block_later_visitors(caplog: pytest.LogCaptureFixture) -> None:
    first = _RecordingVisitor("first")
    last = _RecordingVisitor("last")
    chain = VisitorChain([first, _ExplodingVisitor(), last])

    with caplog.at_level(logging.WARNING):
        failures = chain.visit(_message(1))
        chain.visit(_message(2))

    assert first.seen == [1, 2]
    assert last.seen == [1, 2]
    assert [failure.visitor for failure in failures] == ["exploding"]
    assert chain.failure_counts() == {"exploding": 2}
    events = [record for record in caplog.records if getattr(record, "event", None) == "visitor_failed"]
    assert len(events) == 2
    assert events[0].visitor == "exploding"
    assert events[0].exc_info is not None


def test_write_errors_are_logged_without_traceback(caplog: pytest.LogCaptureFixture) -> None:
    metrics = MetricsVisitor()
    chain = VisitorChain([PersistenceVisitor(_FailingSink()), metrics])

    with caplog.at_level(logging.WARNING):
        failures = chain.visit(_message(1))

    assert [failure.visitor for failure in failures] == ["persist"]
    assert "disk full" in failures[0].error
    assert metrics.snapshot()["matches:BTC-USD"]["live"] == 1
    (record,) = [record for record in caplog.records if getattr(record, "event", None) == "visitor_failed"]
    assert record.exc_info is None


def test_persistence_visitor_counts_duplicates() -> None:
    sink = _MemorySink()
    visitor = PersistenceVisitor(sink)

    visitor.visit(_message(1))
    visitor.visit(_message(1))

    assert visitor.duplicates == 1
    assert sink.sequences == {1}


def test_metrics_visitor_splits_sources() -> None:
    metrics = MetricsVisitor()

    metrics.visit(_message(1))
    metrics.visit(_message(2, source=SOURCE_BACKFILL))
    metrics.visit(_message(3))

    snapshot = metrics.snapshot()["matches:BTC-USD"]
    assert snapshot["live"] == 2
    assert snapshot["backfill"] == 1
    assert snapshot["last_sequence"] == 3


def test_with_visitor_builds_extended_chain() -> None:
    base = VisitorChain([_RecordingVisitor("a")])
    extended = base.with_visitor(_RecordingVisitor("first"), index=0)

    assert [visitor.name for visitor in extended.visitors] == ["first", "a"]
    assert [visitor.name for visitor in base.visitors] == ["a"]
