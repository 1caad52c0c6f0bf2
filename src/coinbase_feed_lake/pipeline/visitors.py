from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from coinbase_feed_lake.core.errors import WriteError
from coinbase_feed_lake.core.logging import EVENT_VISITOR_FAILED
from coinbase_feed_lake.core.models import SOURCE_BACKFILL, Message, SubscriptionKey

logger = logging.getLogger(__name__)


class MessageSink(Protocol):
    def append(self, message: Message) -> bool: ...

    def close(self) -> None: ...


class MessageVisitor(Protocol):
    """Something that does work with a valid message and may fail by raising."""

    name: str

    def visit(self, message: Message) -> None: ...


@dataclass(frozen=True, slots=True)
class VisitorFailure:
    visitor: str
    error: str


class VisitorChain:
    """Run visitors in order; a failing visitor never stops the ones after it."""

    def __init__(self, visitors: Sequence[MessageVisitor]) -> None:
        self._visitors = tuple(visitors)
        self._failures: Counter[str] = Counter()
        self._lock = threading.Lock()

    @property
    def visitors(self) -> tuple[MessageVisitor, ...]:
        return self._visitors

    def with_visitor(self, visitor: MessageVisitor, index: int | None = None) -> VisitorChain:
        visitors = list(self._visitors)
        if index is None:
            visitors.append(visitor)
        else:
            visitors.insert(index, visitor)
        return VisitorChain(visitors)

    def visit(self, message: Message) -> tuple[VisitorFailure, ...]:
        failures: list[VisitorFailure] = []
        for visitor in self._visitors:
            try:
                visitor.visit(message)
            except WriteError as exc:
                failures.append(self._record_failure(visitor, message, exc, with_traceback=False))
            except Exception as exc:
                failures.append(self._record_failure(visitor, message, exc, with_traceback=True))
        return tuple(failures)

    def failure_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._failures)

    def _record_failure(
        self,
        visitor: MessageVisitor,
        message: Message,
        exc: Exception,
        *,
        with_traceback: bool,
    ) -> VisitorFailure:
        with self._lock:
            self._failures[visitor.name] += 1
        logger.warning(
            "Message visitor failed",
            exc_info=exc if with_traceback else None,
            extra={
                "event": EVENT_VISITOR_FAILED,
                "visitor": visitor.name,
                "product_id": message.product_id,
                "channel": message.channel,
                "sequence": message.sequence,
                "error": repr(exc),
            },
        )
        return VisitorFailure(visitor=visitor.name, error=repr(exc))


class PersistenceVisitor:
    name = "persist"

    def __init__(self, sink: MessageSink) -> None:
        self._sink = sink
        self.duplicates = 0

    def visit(self, message: Message) -> None:
        if not self._sink.append(message):
            self.duplicates += 1
            logger.debug(
                "Sink already held message",
                extra={"product_id": message.product_id, "channel": message.channel, "sequence": message.sequence},
            )


@dataclass(slots=True)
class _KeyMetrics:
    live: int = 0
    backfill: int = 0
    last_sequence: int | None = None
    last_received_at_ms: int | None = None


class MetricsVisitor:
    name = "metrics"

    def __init__(self) -> None:
        self._metrics: dict[SubscriptionKey, _KeyMetrics] = {}
        self._lock = threading.Lock()

    def visit(self, message: Message) -> None:
        with self._lock:
            metrics = self._metrics.setdefault(message.key, _KeyMetrics())
            if message.source == SOURCE_BACKFILL:
                metrics.backfill += 1
            else:
                metrics.live += 1
            if message.sequence is not None:
                metrics.last_sequence = message.sequence
            metrics.last_received_at_ms = message.received_at_ms

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                str(key): {
                    "live": metrics.live,
                    "backfill": metrics.backfill,
                    "last_sequence": metrics.last_sequence,
                    "last_received_at_ms": metrics.last_received_at_ms,
                }
                for key, metrics in sorted(self._metrics.items())
            }
