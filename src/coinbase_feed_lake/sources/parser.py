from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from coinbase_feed_lake.core.errors import ParseError
from coinbase_feed_lake.core.models import (
    SOURCE_LIVE,
    Channel,
    ExchangeError,
    Message,
    SubscriptionsAck,
    now_ms,
)

ParsedPayload = Message | SubscriptionsAck | ExchangeError

# message type -> (channel, field carrying the per-(product, channel) sequence or None)
_TYPE_ROUTES: dict[str, tuple[str, str | None]] = {
    "match": (Channel.MATCHES.value, "trade_id"),
    "last_match": (Channel.MATCHES.value, "trade_id"),
    "ticker": (Channel.TICKER.value, None),
    "heartbeat": (Channel.HEARTBEAT.value, None),
    "snapshot": (Channel.LEVEL2.value, None),
    "l2update": (Channel.LEVEL2.value, None),
    "status": (Channel.STATUS.value, None),
    "received": (Channel.FULL.value, "sequence"),
    "open": (Channel.FULL.value, "sequence"),
    "done": (Channel.FULL.value, "sequence"),
    "change": (Channel.FULL.value, "sequence"),
    "activate": (Channel.FULL.value, "sequence"),
}

SEQUENCE_FIELDS: dict[str, str] = {
    Channel.MATCHES.value: "trade_id",
    Channel.FULL.value: "sequence",
}

# message types the exchange publishes on more than one sequenced channel
SHARED_TYPES: dict[str, frozenset[str]] = {
    "match": frozenset({Channel.MATCHES.value, Channel.FULL.value}),
}


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            return int(stripped)
        except ValueError:
            return None
    return None


def message_from_payload(
    payload: dict[str, Any],
    *,
    received_at_ms: int,
    source: str = SOURCE_LIVE,
    channel: str | None = None,
) -> Message:
    """Build a ``Message`` from a decoded Coinbase data payload.

    ``channel`` picks one of the channels a shared type such as ``match`` is published on;
    the sequence is then read from that channel's field.
    """
    message_type = payload.get("type")
    if not isinstance(message_type, str):
        raise ParseError("Payload has no 'type' field")
    route = _TYPE_ROUTES.get(message_type)
    if route is None:
        raise ParseError(f"Unsupported message type {message_type!r}")
    routed_channel, sequence_field = route
    if channel is None or channel == routed_channel:
        channel = routed_channel
    elif channel in SHARED_TYPES.get(message_type, frozenset()):
        sequence_field = SEQUENCE_FIELDS[channel]
    else:
        raise ParseError(f"{message_type} messages are not published on the {channel} channel")

    product_id = payload.get("product_id")
    if channel == Channel.STATUS.value:
        product_id = product_id or ""
    elif not isinstance(product_id, str) or not product_id:
        raise ParseError(f"{message_type} payload has no product_id")

    sequence: int | None = None
    if sequence_field is not None:
        sequence = _coerce_int(payload.get(sequence_field))
        if sequence is None:
            raise ParseError(f"{message_type} payload has no valid {sequence_field}")

    exchange_time = payload.get("time")
    return Message(
        product_id=product_id.upper(),
        channel=channel,
        type=message_type,
        sequence=sequence,
        payload=payload,
        received_at_ms=received_at_ms,
        exchange_time=exchange_time if isinstance(exchange_time, str) else None,
        source=source,
    )


class CoinbaseMessageParser:
    """Parse Coinbase Exchange websocket payloads."""

    def __init__(self, clock_ms: Callable[[], int] = now_ms) -> None:
        self._clock_ms = clock_ms

    def parse(self, raw: str | bytes) -> ParsedPayload:
        received_at_ms = self._clock_ms()
        try:
            text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            payload = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ParseError(f"Payload is not valid JSON: {exc}", raw=raw) from exc
        if not isinstance(payload, dict):
            raise ParseError("Payload is not a JSON object", raw=raw)

        message_type = payload.get("type")
        if message_type == "subscriptions":
            return self._parse_subscriptions(payload, raw)
        if message_type == "error":
            return ExchangeError(
                message=str(payload.get("message") or "unknown error"),
                reason=payload.get("reason"),
                payload=payload,
            )

        try:
            return message_from_payload(payload, received_at_ms=received_at_ms)
        except ParseError as exc:
            exc.raw = raw
            raise

    @staticmethod
    def _parse_subscriptions(payload: dict[str, Any], raw: str | bytes) -> SubscriptionsAck:
        channels = payload.get("channels")
        if not isinstance(channels, list):
            raise ParseError("subscriptions payload has no channel list", raw=raw)

        parsed: list[tuple[str, tuple[str, ...]]] = []
        for item in channels:
            # the exchange echoes channels either as bare names or as {name, product_ids}
            if isinstance(item, str):
                parsed.append((item.lower(), ()))
                continue
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                raise ParseError("subscriptions payload has a malformed channel entry", raw=raw)
            product_ids = item.get("product_ids") or []
            parsed.append((item["name"].lower(), tuple(str(product).upper() for product in product_ids)))
        return SubscriptionsAck(channels=tuple(parsed))
