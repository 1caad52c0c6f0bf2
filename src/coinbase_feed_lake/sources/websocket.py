from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterable
from typing import Any, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from coinbase_feed_lake.core.errors import ConnectError, SendError
from coinbase_feed_lake.core.models import Frame, SubscriptionKey, now_ms

REQUEST_SUBSCRIBE = "subscribe"
REQUEST_UNSUBSCRIBE = "unsubscribe"

logger = logging.getLogger(__name__)


class Session(Protocol):
    session_id: str
    created_at_ms: int
    last_activity_ms: int

    async def send(self, text: str) -> None: ...

    async def receive(self) -> Frame: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def connect(self) -> Session: ...


def encode_request(request_type: str, keys: Iterable[SubscriptionKey]) -> str:
    if request_type not in {REQUEST_SUBSCRIBE, REQUEST_UNSUBSCRIBE}:
        raise ValueError(f"Unsupported request type {request_type!r}")

    product_ids_by_channel: dict[str, list[str]] = {}
    for key in sorted(keys):
        product_ids_by_channel.setdefault(key.channel, []).append(key.product_id)

    payload: dict[str, Any] = {
        "type": request_type,
        "channels": [
            {"name": channel, "product_ids": product_ids}
            for channel, product_ids in sorted(product_ids_by_channel.items())
        ],
    }
    return json.dumps(payload, separators=(",", ":"))


class WebSocketSession:
    """One physical websocket connection. Never reused after it is closed."""

    def __init__(self, connection: Any, *, url: str) -> None:
        self._connection = connection
        self._url = url
        self.session_id = uuid.uuid4().hex[:12]
        self.created_at_ms = now_ms()
        self.last_activity_ms = self.created_at_ms
        self._closed = False

    async def send(self, text: str) -> None:
        if self._closed:
            raise SendError(f"Session {self.session_id} is closed")
        try:
            await self._connection.send(text)
        except (ConnectionClosed, OSError) as exc:
            raise SendError(f"Send failed on session {self.session_id}: {exc}") from exc
        self.last_activity_ms = now_ms()

    async def receive(self) -> Frame:
        try:
            data = await self._connection.recv()
        except ConnectionClosedOK as exc:
            return _close_frame(exc)
        except ConnectionClosed as exc:
            if exc.rcvd is not None:
                return _close_frame(exc)
            return Frame.failure(exc)
        except (OSError, WebSocketException) as exc:
            return Frame.failure(exc)

        self.last_activity_ms = now_ms()
        if isinstance(data, bytes):
            return Frame.binary(data)
        if isinstance(data, str):
            return Frame.text(data)
        return Frame.other()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._connection.close()
        except (ConnectionClosed, OSError) as exc:
            logger.debug(
                "Ignoring error while closing websocket session",
                extra={"session_id": self.session_id, "error": repr(exc)},
            )


def _close_frame(exc: ConnectionClosed) -> Frame:
    close = exc.rcvd
    if close is None:
        return Frame.close()
    return Frame.close(code=close.code, reason=close.reason)


class WebSocketTransport:
    def __init__(
        self,
        url: str,
        *,
        open_timeout_seconds: float = 10.0,
        ping_interval_seconds: float = 20.0,
        ping_timeout_seconds: float = 20.0,
        close_timeout_seconds: float = 5.0,
        max_size: int = 2**22,
    ) -> None:
        self._url = url
        self._open_timeout_seconds = open_timeout_seconds
        self._ping_interval_seconds = ping_interval_seconds
        self._ping_timeout_seconds = ping_timeout_seconds
        self._close_timeout_seconds = close_timeout_seconds
        self._max_size = max_size

    @property
    def url(self) -> str:
        return self._url

    async def connect(self) -> WebSocketSession:
        try:
            connection = await websockets.connect(
                self._url,
                open_timeout=self._open_timeout_seconds,
                ping_interval=self._ping_interval_seconds,
                ping_timeout=self._ping_timeout_seconds,
                close_timeout=self._close_timeout_seconds,
                max_size=self._max_size,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            raise ConnectError(f"Could not connect to {self._url}: {exc}") from exc

        session = WebSocketSession(connection, url=self._url)
        logger.info("Connected to websocket feed", extra={"url": self._url, "session_id": session.session_id})
        return session
