from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Any

SOURCE_LIVE = "live"
SOURCE_BACKFILL = "backfill"


def now_ms() -> int:
    return int(datetime.now(tz=UTC).timestamp() * 1000)


class Channel(StrEnum):
    HEARTBEAT = "heartbeat"
    STATUS = "status"
    TICKER = "ticker"
    LEVEL2 = "level2"
    MATCHES = "matches"
    FULL = "full"

    @classmethod
    def parse(cls, value: str) -> Channel:
        normalized = value.strip().lower()
        try:
            return cls(normalized)
        except ValueError as exc:
            known = ", ".join(item.value for item in cls)
            raise ValueError(f"Unknown channel {value!r}; expected one of: {known}") from exc


@dataclass(frozen=True, slots=True, order=True)
class SubscriptionKey:
    product_id: str
    channel: str

    def __str__(self) -> str:
        return f"{self.channel}:{self.product_id}"


class DesiredState(Enum):
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


@dataclass(slots=True)
class SubscriptionEntry:
    key: SubscriptionKey
    desired: DesiredState = DesiredState.SUBSCRIBED
    applied: bool = False


@dataclass(frozen=True, slots=True)
class Message:
    product_id: str
    channel: str
    type: str
    sequence: int | None
    payload: dict[str, Any] = field(compare=False, hash=False)
    received_at_ms: int
    exchange_time: str | None = None
    source: str = SOURCE_LIVE

    @property
    def key(self) -> SubscriptionKey:
        return SubscriptionKey(self.product_id, self.channel)

    @property
    def sequenced(self) -> bool:
        return self.sequence is not None


@dataclass(frozen=True, slots=True)
class SubscriptionsAck:
    channels: tuple[tuple[str, tuple[str, ...]], ...]

    def keys(self) -> frozenset[SubscriptionKey]:
        return frozenset(
            SubscriptionKey(product_id, name) for name, product_ids in self.channels for product_id in product_ids
        )


@dataclass(frozen=True, slots=True)
class ExchangeError:
    message: str
    reason: str | None = None
    payload: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


class FrameType(Enum):
    TEXT = "text"
    BINARY = "binary"
    CLOSE = "close"
    ERROR = "error"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class Frame:
    type: FrameType
    data: str | bytes | None = None
    close_code: int | None = None
    reason: str | None = None
    error: BaseException | None = None

    @classmethod
    def text(cls, data: str) -> Frame:
        return cls(FrameType.TEXT, data=data)

    @classmethod
    def binary(cls, data: bytes) -> Frame:
        return cls(FrameType.BINARY, data=data)

    @classmethod
    def close(cls, code: int | None = None, reason: str | None = None) -> Frame:
        return cls(FrameType.CLOSE, close_code=code, reason=reason)

    @classmethod
    def failure(cls, error: BaseException) -> Frame:
        return cls(FrameType.ERROR, error=error, reason=f"{error.__class__.__name__}: {error}")

    @classmethod
    def other(cls) -> Frame:
        return cls(FrameType.OTHER)

    def describe(self) -> str:
        if self.type is FrameType.CLOSE:
            return f"close frame (code={self.close_code}, reason={self.reason or ''})"
        if self.type is FrameType.ERROR:
            return f"read error ({self.reason})"
        return self.type.value


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_SUBSCRIBE_ACK = "awaiting_subscribe_ack"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    STOPPED = "stopped"


class SequenceStatus(Enum):
    IN_ORDER = "in_order"
    DUPLICATE = "duplicate"
    GAP = "gap"
    LATE = "late"
    UNSEQUENCED = "unsequenced"


@dataclass(frozen=True, slots=True)
class SequenceCheck:
    status: SequenceStatus
    low: int | None = None
    high: int | None = None

    @classmethod
    def gap(cls, low: int, high: int) -> SequenceCheck:
        return cls(SequenceStatus.GAP, low=low, high=high)

    def interval(self) -> GapInterval | None:
        if self.low is None or self.high is None:
            return None
        return GapInterval(self.low, self.high)


class GapStatus(StrEnum):
    PENDING = "pending"
    RECOVERED = "recovered"
    LOST = "lost"


@dataclass(frozen=True, slots=True)
class GapRecord:
    gap_id: int
    product_id: str
    channel: str
    low: int
    high: int
    status: GapStatus
    detected_at_ms: int
    resolved_at_ms: int | None = None
    missing_count: int = 0
    detail: str | None = None

    @property
    def key(self) -> SubscriptionKey:
        return SubscriptionKey(self.product_id, self.channel)


@dataclass(frozen=True, slots=True)
class GapInterval:
    low: int
    high: int

    def __post_init__(self) -> None:
        if self.low > self.high:
            raise ValueError(f"Invalid gap interval: low={self.low} > high={self.high}")

    @property
    def size(self) -> int:
        return self.high - self.low + 1

    def merge(self, other: GapInterval) -> GapInterval:
        return GapInterval(min(self.low, other.low), max(self.high, other.high))

    def __contains__(self, sequence: object) -> bool:
        return isinstance(sequence, int) and self.low <= sequence <= self.high
