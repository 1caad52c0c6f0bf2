from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from coinbase_feed_lake.core.errors import ParseError
from coinbase_feed_lake.core.logging import EVENT_EXCHANGE_ERROR, EVENT_PARSE_ERROR
from coinbase_feed_lake.core.models import ExchangeError, Frame, FrameType, Message, SubscriptionKey, SubscriptionsAck
from coinbase_feed_lake.pipeline.recovery import GapRecoveryCoordinator
from coinbase_feed_lake.pipeline.visitors import VisitorChain
from coinbase_feed_lake.sources.parser import SHARED_TYPES, CoinbaseMessageParser, message_from_payload

logger = logging.getLogger(__name__)

_RAW_PREVIEW_CHARS = 200


class FrameDisposition(Enum):
    DISPATCHED = "dispatched"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    DROPPED = "dropped"
    DISCARDED = "discarded"
    DISCONNECTED = "disconnected"


@dataclass(slots=True)
class PipelineStats:
    frames: int = 0
    parsed: int = 0
    parse_errors: int = 0
    acknowledgements: int = 0
    rejected: int = 0
    discarded: int = 0


def _preview(raw: str | bytes | None) -> str:
    if raw is None:
        return ""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    return text[:_RAW_PREVIEW_CHARS]


class MessagePipeline:
    """Turn raw frames into messages and push them through the sequence gate and visitor chain.

    A bad frame never affects the frames after it: parse failures are logged and dropped.
    """

    def __init__(
        self,
        parser: CoinbaseMessageParser,
        coordinator: GapRecoveryCoordinator,
        chain: VisitorChain,
        *,
        subscribed: Callable[[], frozenset[SubscriptionKey]] | None = None,
    ) -> None:
        self._parser = parser
        self._coordinator = coordinator
        self._chain = chain
        self._subscribed = subscribed
        self._stats = PipelineStats()
        self._last_ack: SubscriptionsAck | None = None
        self._last_error: ExchangeError | None = None

    @property
    def chain(self) -> VisitorChain:
        return self._chain

    @property
    def coordinator(self) -> GapRecoveryCoordinator:
        return self._coordinator

    @property
    def last_ack(self) -> SubscriptionsAck | None:
        return self._last_ack

    @property
    def last_error(self) -> ExchangeError | None:
        return self._last_error

    def stats(self) -> PipelineStats:
        return PipelineStats(
            frames=self._stats.frames,
            parsed=self._stats.parsed,
            parse_errors=self._stats.parse_errors,
            acknowledgements=self._stats.acknowledgements,
            rejected=self._stats.rejected,
            discarded=self._stats.discarded,
        )

    def open(self) -> int:
        """Re-queue gaps left pending by a previous run. Must run inside the event loop."""
        return self._coordinator.resume_pending()

    async def aclose(self) -> None:
        await self._coordinator.aclose()

    def on_frame(self, frame: Frame) -> FrameDisposition:
        self._stats.frames += 1
        if frame.type in {FrameType.CLOSE, FrameType.ERROR}:
            return FrameDisposition.DISCONNECTED
        if frame.type is not FrameType.TEXT or not isinstance(frame.data, str):
            self._stats.discarded += 1
            logger.debug("Discarding non-text frame", extra={"frame": frame.describe()})
            return FrameDisposition.DISCARDED

        try:
            parsed = self._parser.parse(frame.data)
        except ParseError as exc:
            return self._drop(exc, frame.data)

        if isinstance(parsed, SubscriptionsAck):
            self._stats.acknowledgements += 1
            self._last_ack = parsed
            logger.debug("Subscriptions acknowledged", extra={"subscriptions": sorted(map(str, parsed.keys()))})
            return FrameDisposition.ACKNOWLEDGED

        if isinstance(parsed, ExchangeError):
            self._stats.rejected += 1
            self._last_error = parsed
            logger.warning(
                "Exchange reported an error",
                extra={"event": EVENT_EXCHANGE_ERROR, "error": parsed.message, "reason": parsed.reason},
            )
            return FrameDisposition.REJECTED

        try:
            messages = self._route(parsed)
        except ParseError as exc:
            return self._drop(exc, frame.data)

        self._stats.parsed += 1
        for message in messages:
            self.dispatch(message)
        return FrameDisposition.DISPATCHED

    def dispatch(self, message: Message) -> None:
        """Deliver a live message through the sequence gate."""
        self._coordinator.on_live(message)

    def _route(self, message: Message) -> list[Message]:
        """Copy a shared message type onto every subscribed channel that publishes it.

        A ``match`` on the full channel consumes a full-channel sequence number, while the
        matches channel numbers the same trade by ``trade_id``.
        """
        shared = SHARED_TYPES.get(message.type)
        if shared is None or self._subscribed is None:
            return [message]
        channels = sorted(
            {
                key.channel
                for key in self._subscribed()
                if key.product_id == message.product_id and key.channel in shared
            }
        )
        if not channels or channels == [message.channel]:
            return [message]
        return [
            message
            if channel == message.channel
            else message_from_payload(
                message.payload,
                received_at_ms=message.received_at_ms,
                source=message.source,
                channel=channel,
            )
            for channel in channels
        ]

    def _drop(self, exc: ParseError, data: str) -> FrameDisposition:
        self._stats.parse_errors += 1
        logger.warning(
            "Dropping unparseable frame",
            extra={"event": EVENT_PARSE_ERROR, "error": str(exc), "raw": _preview(exc.raw or data)},
        )
        return FrameDisposition.DROPPED
