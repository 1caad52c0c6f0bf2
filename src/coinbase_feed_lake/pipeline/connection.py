from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from coinbase_feed_lake.core.errors import ConnectError, SendError
from coinbase_feed_lake.core.logging import (
    EVENT_RECONNECT,
    EVENT_SLOW_INITIAL_CONNECT,
    EVENT_STATE_TRANSITION,
    EVENT_SUBSCRIPTION_UPDATE_FAILED,
)
from coinbase_feed_lake.core.models import ConnectionState
from coinbase_feed_lake.core.subscriptions import SubscriptionSet
from coinbase_feed_lake.core.throttle import BackoffPolicy, DeadlineTimer, RateLimiter
from coinbase_feed_lake.pipeline.dispatch import FrameDisposition, MessagePipeline
from coinbase_feed_lake.sources.websocket import (
    REQUEST_SUBSCRIBE,
    REQUEST_UNSUBSCRIBE,
    Session,
    Transport,
    encode_request,
)

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.IDLE: frozenset({ConnectionState.CONNECTING, ConnectionState.CLOSING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.AWAITING_SUBSCRIBE_ACK, ConnectionState.RECONNECTING, ConnectionState.CLOSING}
    ),
    ConnectionState.AWAITING_SUBSCRIBE_ACK: frozenset(
        {ConnectionState.STREAMING, ConnectionState.RECONNECTING, ConnectionState.CLOSING}
    ),
    ConnectionState.STREAMING: frozenset({ConnectionState.RECONNECTING, ConnectionState.CLOSING}),
    ConnectionState.RECONNECTING: frozenset(
        {ConnectionState.IDLE, ConnectionState.CONNECTING, ConnectionState.CLOSING}
    ),
    ConnectionState.CLOSING: frozenset({ConnectionState.STOPPED}),
    ConnectionState.STOPPED: frozenset(),
}


@dataclass(slots=True)
class ConnectionStats:
    connect_attempts: int = 0
    sessions: int = 0
    reconnects: int = 0
    subscription_updates: int = 0
    subscription_update_failures: int = 0
    last_disconnect_reason: str | None = None


class ConnectionStateMachine:
    """Own the websocket lifecycle: connect, subscribe, stream, reconcile and reconnect.

    Every session is used for exactly one connect-subscribe-stream cycle. A failure of any
    kind discards the session and reconnects after a backoff delay; only ``stop()`` ends
    the lifecycle.
    """

    def __init__(
        self,
        transport: Transport,
        subscriptions: SubscriptionSet,
        pipeline: MessagePipeline,
        *,
        rate_limiter: RateLimiter | None = None,
        backoff: BackoffPolicy | None = None,
        initial_connect_deadline_seconds: float = 15.0,
        subscribe_ack_timeout_seconds: float = 5.0,
        reconcile_debounce_seconds: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._subscriptions = subscriptions
        self._pipeline = pipeline
        self._rate_limiter = rate_limiter or RateLimiter(clock=clock, sleep=sleep)
        self._backoff = backoff or BackoffPolicy()
        self._subscribe_ack_timeout_seconds = subscribe_ack_timeout_seconds
        self._reconcile_debounce_seconds = reconcile_debounce_seconds
        self._sleep = sleep
        self._initial_deadline = DeadlineTimer(
            "initial_connect",
            initial_connect_deadline_seconds,
            on_expire=self._on_initial_deadline,
            clock=clock,
        )

        self._state = ConnectionState.IDLE
        self._state_lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._streaming = threading.Event()
        self._ever_streamed = False
        self._stats = ConnectionStats()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._main_task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._session: Session | None = None
        self._reader: asyncio.Task[str] | None = None
        self._thread: threading.Thread | None = None

        subscriptions.set_listener(self.request_resubscribe)

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def ever_streamed(self) -> bool:
        return self._ever_streamed

    @property
    def initial_deadline(self) -> DeadlineTimer:
        return self._initial_deadline

    def stats(self) -> ConnectionStats:
        return ConnectionStats(
            connect_attempts=self._stats.connect_attempts,
            sessions=self._stats.sessions,
            reconnects=self._stats.reconnects,
            subscription_updates=self._stats.subscription_updates,
            subscription_update_failures=self._stats.subscription_update_failures,
            last_disconnect_reason=self._stats.last_disconnect_reason,
        )

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_in_thread, name="coinbase-feed-connection", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop permanently. Safe to call from any thread, including the event loop itself."""
        self._stop_requested.set()
        loop = self._loop
        task = self._main_task
        if loop is None or task is None:
            if self._thread is None:
                self._close_without_loop()
            elif self._thread is not threading.current_thread():
                self._thread.join(timeout)
            return

        if self._on_loop_thread(loop):
            task.cancel()
            return
        try:
            loop.call_soon_threadsafe(task.cancel)
        except RuntimeError:
            # loop already closed; run() has finished
            pass
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def request_resubscribe(self) -> None:
        """Ask the loop to reconcile desired vs applied subscriptions. Thread-safe and idempotent."""
        loop = self._loop
        if loop is None:
            return
        if self._on_loop_thread(loop):
            self._wake.set()
            return
        try:
            loop.call_soon_threadsafe(self._wake.set)
        except RuntimeError:
            logger.debug("Ignoring resubscribe request after the loop closed")

    def wait_until_streaming(self, timeout: float | None = None) -> bool:
        return self._streaming.wait(timeout)

    async def run(self) -> None:
        if self.state is not ConnectionState.IDLE:
            raise RuntimeError(f"Connection already ran (state={self.state.value})")
        self._loop = asyncio.get_running_loop()
        self._main_task = asyncio.current_task()  # type: ignore[assignment]

        try:
            self._pipeline.open()
            while not self._stopping:
                await self._wait_for_subscriptions()
                if self._stopping:
                    break
                reason = await self._run_session()
                if self._stopping:
                    break
                self._stats.reconnects += 1
                self._stats.last_disconnect_reason = reason
                delay = self._backoff.next_delay()
                self._transition(ConnectionState.RECONNECTING, reason=reason)
                logger.warning(
                    "Reconnecting to websocket feed",
                    extra={
                        "event": EVENT_RECONNECT,
                        "reason": reason,
                        "delay_seconds": round(delay, 3),
                        "attempt": self._backoff.attempt,
                    },
                )
                await self._sleep(delay)
        except asyncio.CancelledError:
            if not self._stopping:
                raise
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
        finally:
            self._transition(ConnectionState.CLOSING)
            self._initial_deadline.disarm()
            await self._discard_session()
            await self._pipeline.aclose()
            self._transition(ConnectionState.STOPPED)

    @property
    def _stopping(self) -> bool:
        return self._stop_requested.is_set()

    def _run_in_thread(self) -> None:
        with asyncio.Runner() as runner:
            try:
                runner.run(self.run())
            except Exception:
                logger.exception("Connection state machine failed")

    def _close_without_loop(self) -> None:
        with self._state_lock:
            if self._state is not ConnectionState.IDLE:
                return
        self._transition(ConnectionState.CLOSING)
        self._transition(ConnectionState.STOPPED)

    @staticmethod
    def _on_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    async def _wait_for_subscriptions(self) -> None:
        while True:
            self._wake.clear()
            if self._stopping or self._subscriptions.desired():
                return
            self._transition(ConnectionState.IDLE)
            logger.debug("Waiting for a product to subscribe to")
            await self._wake.wait()

    async def _run_session(self) -> str:
        """Connect, subscribe and stream until the session is discarded. Returns the reason."""
        self._transition(ConnectionState.CONNECTING)
        if not self._ever_streamed and not self._initial_deadline.armed:
            self._initial_deadline.arm()
        await self._rate_limiter.acquire()
        self._stats.connect_attempts += 1
        try:
            session = await self._transport.connect()
        except ConnectError as exc:
            return f"connect failed: {exc}"

        self._session = session
        self._stats.sessions += 1
        try:
            desired = self._subscriptions.begin_session()
            try:
                await session.send(encode_request(REQUEST_SUBSCRIBE, desired))
            except SendError as exc:
                return f"subscribe send failed: {exc}"
            self._subscriptions.mark_subscribed(desired)
            self._transition(ConnectionState.AWAITING_SUBSCRIBE_ACK)

            acknowledged: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            reader = asyncio.create_task(self._consume(session, acknowledged), name=f"ws-reader-{session.session_id}")
            self._reader = reader
            done, _ = await asyncio.wait(
                {reader, acknowledged},
                timeout=self._subscribe_ack_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not acknowledged.done():
                if reader in done:
                    return reader.result()
                return f"subscribe acknowledgement timed out after {self._subscribe_ack_timeout_seconds}s"

            self._on_streaming()
            return await self._stream(session, reader)
        finally:
            self._streaming.clear()
            await self._discard_session()

    async def _consume(self, session: Session, acknowledged: asyncio.Future[None]) -> str:
        while True:
            frame = await session.receive()
            disposition = self._pipeline.on_frame(frame)
            if disposition is FrameDisposition.DISCONNECTED:
                return f"session {session.session_id} ended: {frame.describe()}"
            if acknowledged.done():
                continue
            if disposition is FrameDisposition.ACKNOWLEDGED:
                acknowledged.set_result(None)
            elif disposition is FrameDisposition.REJECTED:
                error = self._pipeline.last_error
                return f"subscribe rejected: {error.message if error is not None else 'unknown error'}"

    async def _stream(self, session: Session, reader: asyncio.Task[str]) -> str:
        self._wake.clear()
        await self._reconcile(session)
        while True:
            waker = asyncio.create_task(self._wake.wait())
            try:
                done, _ = await asyncio.wait({reader, waker}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                waker.cancel()
            if reader in done:
                return reader.result()

            # coalesce bursts of add/remove calls into one delta
            await self._sleep(self._reconcile_debounce_seconds)
            self._wake.clear()
            if reader.done():
                return reader.result()
            await self._reconcile(session)

    async def _reconcile(self, session: Session) -> None:
        delta = self._subscriptions.plan_delta()
        if delta.empty:
            return
        subscribe = sorted(map(str, delta.to_subscribe))
        unsubscribe = sorted(map(str, delta.to_unsubscribe))
        try:
            if delta.to_unsubscribe:
                await session.send(encode_request(REQUEST_UNSUBSCRIBE, delta.to_unsubscribe))
                self._subscriptions.mark_unsubscribed(delta.to_unsubscribe)
            if delta.to_subscribe:
                await session.send(encode_request(REQUEST_SUBSCRIBE, delta.to_subscribe))
                self._subscriptions.mark_subscribed(delta.to_subscribe)
        except SendError as exc:
            self._stats.subscription_update_failures += 1
            logger.warning(
                "Subscription update failed; retrying on next change",
                extra={
                    "event": EVENT_SUBSCRIPTION_UPDATE_FAILED,
                    "error": str(exc),
                    "subscribe": subscribe,
                    "unsubscribe": unsubscribe,
                },
            )
            return
        self._stats.subscription_updates += 1
        logger.info("Subscription update sent", extra={"subscribe": subscribe, "unsubscribe": unsubscribe})

    async def _discard_session(self) -> None:
        reader = self._reader
        self._reader = None
        if reader is not None and not reader.done():
            reader.cancel()
            await asyncio.wait({reader})

        session = self._session
        self._session = None
        if session is not None:
            await session.close()

    def _on_streaming(self) -> None:
        self._transition(ConnectionState.STREAMING)
        self._backoff.reset()
        self._ever_streamed = True
        self._initial_deadline.disarm()
        self._streaming.set()

    def _on_initial_deadline(self, timer: DeadlineTimer) -> None:
        if self._ever_streamed:
            return
        logger.warning(
            "Websocket feed is not streaming yet",
            extra={
                "event": EVENT_SLOW_INITIAL_CONNECT,
                "deadline_seconds": timer.deadline_seconds,
                "state": self.state.value,
            },
        )

    def _transition(self, state: ConnectionState, *, reason: str | None = None) -> None:
        with self._state_lock:
            previous = self._state
            if previous is state:
                return
            if state not in _TRANSITIONS[previous]:
                raise RuntimeError(f"Invalid connection transition {previous.value} -> {state.value}")
            self._state = state
        extra = {"event": EVENT_STATE_TRANSITION, "from_state": previous.value, "to_state": state.value}
        if reason is not None:
            extra["reason"] = reason
        logger.info("Connection state changed", extra=extra)
