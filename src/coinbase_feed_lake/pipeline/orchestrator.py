from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from coinbase_feed_lake.core.config import Settings
from coinbase_feed_lake.core.models import ConnectionState
from coinbase_feed_lake.core.subscriptions import SubscriptionSet
from coinbase_feed_lake.core.throttle import BackoffPolicy, RateLimiter
from coinbase_feed_lake.pipeline.connection import ConnectionStateMachine, ConnectionStats
from coinbase_feed_lake.pipeline.dispatch import MessagePipeline, PipelineStats
from coinbase_feed_lake.pipeline.recovery import GapRecoveryCoordinator, RecoveryStats, SequenceTracker
from coinbase_feed_lake.pipeline.visitors import (
    MessageSink,
    MessageVisitor,
    MetricsVisitor,
    PersistenceVisitor,
    VisitorChain,
)
from coinbase_feed_lake.sources.discovery import ProductDiscovery
from coinbase_feed_lake.sources.parser import CoinbaseMessageParser
from coinbase_feed_lake.sources.rest import CoinbaseRESTClient
from coinbase_feed_lake.sources.websocket import Transport, WebSocketTransport
from coinbase_feed_lake.writer.jsonl import JsonLinesSink
from coinbase_feed_lake.writer.store import SQLiteMessageStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ServiceStats:
    state: ConnectionState
    subscriptions: tuple[str, ...]
    connection: ConnectionStats
    pipeline: PipelineStats
    recovery: RecoveryStats
    visitor_failures: dict[str, int]
    metrics: dict[str, dict[str, Any]]


class FeedIngestionService:
    """Wire the store, sink, visitors, gap recovery and connection from settings."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Transport | None = None,
        rest_client: CoinbaseRESTClient | None = None,
        sink: MessageSink | None = None,
        extra_visitors: Sequence[MessageVisitor] = (),
    ) -> None:
        self._settings = settings
        self._store = SQLiteMessageStore(settings.store_path)
        self._sink: MessageSink = sink or self._default_sink()

        self._owns_rest = rest_client is None
        self._rest = rest_client or CoinbaseRESTClient(
            base_url=settings.rest_base_url,
            timeout_seconds=settings.rest_timeout_seconds,
            retries=settings.rest_max_retries,
            page_limit=settings.backfill_page_limit,
        )

        self._metrics = MetricsVisitor()
        self._chain = VisitorChain([*self._configured_visitors(), *extra_visitors])

        self._tracker = SequenceTracker()
        for key, last_sequence in self._store.last_sequences().items():
            self._tracker.seed(key, last_sequence)

        self._coordinator = GapRecoveryCoordinator(
            self._tracker,
            self._rest.fetch_range,
            self._chain.visit,
            max_attempts=settings.backfill_max_attempts,
            backoff_factory=lambda: BackoffPolicy(
                initial_seconds=settings.backfill_retry_initial_seconds,
                maximum_seconds=max(settings.backfill_retry_max_seconds, settings.backfill_retry_initial_seconds),
            ),
            ledger=self._store,
        )
        self._subscriptions = SubscriptionSet(settings.channels, settings.products)
        self._pipeline = MessagePipeline(
            CoinbaseMessageParser(),
            self._coordinator,
            self._chain,
            subscribed=self._subscriptions.desired,
        )
        self._connection = ConnectionStateMachine(
            transport
            or WebSocketTransport(
                settings.websocket_url,
                open_timeout_seconds=settings.ws_open_timeout_seconds,
                ping_interval_seconds=settings.ws_ping_interval_seconds,
            ),
            self._subscriptions,
            self._pipeline,
            rate_limiter=RateLimiter(settings.connect_min_interval_seconds),
            backoff=BackoffPolicy(
                initial_seconds=settings.reconnect_initial_seconds,
                maximum_seconds=max(settings.reconnect_max_seconds, settings.reconnect_initial_seconds),
                multiplier=settings.reconnect_multiplier,
                jitter=settings.reconnect_jitter,
                floor_seconds=settings.connect_min_interval_seconds,
            ),
            initial_connect_deadline_seconds=settings.initial_connect_deadline_seconds,
            subscribe_ack_timeout_seconds=settings.subscribe_ack_timeout_seconds,
            reconcile_debounce_seconds=settings.reconcile_debounce_seconds,
        )
        self._discovery = (
            ProductDiscovery(
                self._rest.fetch_products,
                self._subscriptions,
                quote_currencies=settings.discovery_quote_currencies,
                interval_seconds=settings.discovery_interval_seconds,
            )
            if settings.discovery_enabled
            else None
        )
        self._released = False
        self._release_lock = threading.Lock()

    @property
    def store(self) -> SQLiteMessageStore:
        return self._store

    @property
    def subscriptions(self) -> SubscriptionSet:
        return self._subscriptions

    @property
    def connection(self) -> ConnectionStateMachine:
        return self._connection

    @property
    def pipeline(self) -> MessagePipeline:
        return self._pipeline

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    def start(self) -> None:
        """Run the connection on its own thread and return immediately."""
        logger.info(
            "Starting feed ingestion",
            extra={
                "products": list(self._subscriptions.products()),
                "channels": list(self._subscriptions.channels),
                "sink": self._settings.sink,
            },
        )
        if self._discovery is not None:
            self._discovery.start()
        self._connection.start()

    async def run(self) -> None:
        """Run the connection in the current event loop until ``stop()``."""
        if self._discovery is not None:
            self._discovery.start()
        try:
            await self._connection.run()
        finally:
            self._release()

    def stop(self, timeout: float = 5.0) -> None:
        if self._discovery is not None:
            self._discovery.stop()
        self._connection.stop(timeout)
        if self._connection.state is ConnectionState.STOPPED:
            self._release()

    def wait_until_streaming(self, timeout: float | None = None) -> bool:
        return self._connection.wait_until_streaming(timeout)

    def add_product(self, product_id: str) -> bool:
        return self._subscriptions.add_product(product_id)

    def remove_product(self, product_id: str) -> bool:
        return self._subscriptions.remove_product(product_id)

    def request_resubscribe(self) -> None:
        self._connection.request_resubscribe()

    def stats(self) -> ServiceStats:
        return ServiceStats(
            state=self._connection.state,
            subscriptions=tuple(str(key) for key in sorted(self._subscriptions.desired())),
            connection=self._connection.stats(),
            pipeline=self._pipeline.stats(),
            recovery=self._coordinator.stats(),
            visitor_failures=self._chain.failure_counts(),
            metrics=self._metrics.snapshot(),
        )

    def _default_sink(self) -> MessageSink:
        if self._settings.sink == "jsonl":
            return JsonLinesSink(self._settings.jsonl_dir)
        return self._store

    def _configured_visitors(self) -> list[MessageVisitor]:
        visitors: list[MessageVisitor] = []
        for name in self._settings.visitors:
            if name == PersistenceVisitor.name:
                visitors.append(PersistenceVisitor(self._sink))
            elif name == MetricsVisitor.name:
                visitors.append(self._metrics)
        return visitors

    def _release(self) -> None:
        with self._release_lock:
            if self._released:
                return
            self._released = True
        self._sink.close()
        if self._owns_rest:
            self._rest.close()
        logger.info("Feed ingestion stopped", extra={"messages_stored": self._store.count_messages()})
