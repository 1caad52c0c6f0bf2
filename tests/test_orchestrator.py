import asyncio
import json
from collections.abc import Callable
from pathlib import Path

from coinbase_feed_lake.core.config import Settings
from coinbase_feed_lake.core.errors import BackfillUnsupportedError
from coinbase_feed_lake.core.models import (
    SOURCE_BACKFILL,
    ConnectionState,
    Frame,
    GapStatus,
    Message,
    SubscriptionKey,
)
from coinbase_feed_lake.pipeline.orchestrator import FeedIngestionService
from coinbase_feed_lake.sources.parser import message_from_payload

BTC = SubscriptionKey("BTC-USD", "matches")


class _FakeSession:
    def __init__(self) -> None:
        self.session_id = "s1"
        self.created_at_ms = 0
        self.last_activity_ms = 0
        self.sent: list[dict[str, object]] = []
        self.inbox: asyncio.Queue[Frame] = asyncio.Queue()
        self.closed = False

    def push(self, payload: dict[str, object]) -> None:
        self.inbox.put_nowait(Frame.text(json.dumps(payload)))

    async def send(self, text: str) -> None:
        request = json.loads(text)
        self.sent.append(request)
        self.push({"type": "subscriptions", "channels": request["channels"]})

    async def receive(self) -> Frame:
        return await self.inbox.get()

    async def close(self) -> None:
        self.closed = True


class _FakeTransport:
    def __init__(self) -> None:
        self.sessions: list[_FakeSession] = []

    async def connect(self) -> _FakeSession:
        session = _FakeSession()
        self.sessions.append(session)
        return session


class _FakeRest:
    def __init__(self) -> None:
        self.ranges: list[tuple[str, str, int, int]] = []

    def fetch_range(self, product_id: str, channel: str, low: int, high: int) -> list[Message]:
        self.ranges.append((product_id, channel, low, high))
        if channel != "matches":
            raise BackfillUnsupportedError(channel)
        return [
            message_from_payload(
                {"type": "match", "trade_id": trade_id, "product_id": product_id},
                received_at_ms=0,
                source=SOURCE_BACKFILL,
            )
            for trade_id in range(low, high + 1)
        ]

    def fetch_products(self) -> list[dict[str, object]]:
        return []


def _settings(tmp_path: Path, **overrides: object) -> Settings:
    return Settings(
        _env_file=None,
        products=["BTC-USD"],
        channels=["matches"],
        store_path=tmp_path / "lake.sqlite",
        jsonl_dir=tmp_path / "jsonl",
        reconcile_debounce_seconds=0.0,
        **overrides,
    )


def _match(trade_id: int) -> dict[str, object]:
    return {"type": "match", "trade_id": trade_id, "product_id": "BTC-USD", "price": "1", "size": "1"}


async def _until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def test_service_persists_in_order_and_repairs_gaps(tmp_path: Path) -> None:
    transport = _FakeTransport()
    rest = _FakeRest()
    service = FeedIngestionService(_settings(tmp_path), transport=transport, rest_client=rest)

    async def scenario() -> None:
        task = asyncio.create_task(service.run())
        await _until(lambda: service.state is ConnectionState.STREAMING)
        session = transport.sessions[0]
        for trade_id in (1, 2, 5, 3, 6):
            session.push(_match(trade_id))
        await _until(lambda: service.stats().recovery.gaps_recovered == 1)
        service.stop()
        await asyncio.wait_for(task, timeout=3.0)

    asyncio.run(scenario())

    assert service.store.sequences(BTC) == [1, 2, 3, 4, 5, 6]
    assert rest.ranges == [("BTC-USD", "matches", 4, 4)]
    (gap,) = service.store.list_gaps()
    assert gap.status is GapStatus.RECOVERED
    stats = service.stats()
    assert stats.state is ConnectionState.STOPPED
    assert stats.metrics["matches:BTC-USD"]["backfill"] == 1
    assert stats.metrics["matches:BTC-USD"]["live"] == 5


def test_service_seeds_offsets_from_store_and_detects_restart_gap(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    transport = _FakeTransport()
    rest = _FakeRest()

    first = FeedIngestionService(settings, transport=transport, rest_client=rest)

    async def run_first() -> None:
        task = asyncio.create_task(first.run())
        await _until(lambda: first.state is ConnectionState.STREAMING)
        transport.sessions[-1].push(_match(10))
        await _until(lambda: first.store.last_sequences().get(BTC) == 10)
        first.stop()
        await task

    asyncio.run(run_first())

    second = FeedIngestionService(settings, transport=transport, rest_client=rest)

    async def run_second() -> None:
        task = asyncio.create_task(second.run())
        await _until(lambda: second.state is ConnectionState.STREAMING)
        transport.sessions[-1].push(_match(13))
        await _until(lambda: second.stats().recovery.gaps_recovered == 1)
        second.stop()
        await task

    asyncio.run(run_second())

    assert rest.ranges == [("BTC-USD", "matches", 11, 12)]
    assert second.store.sequences(BTC) == [10, 11, 12, 13]


def test_service_runtime_subscription_changes(tmp_path: Path) -> None:
    transport = _FakeTransport()
    service = FeedIngestionService(_settings(tmp_path), transport=transport, rest_client=_FakeRest())

    async def scenario() -> None:
        task = asyncio.create_task(service.run())
        await _until(lambda: service.state is ConnectionState.STREAMING)
        assert service.add_product("eth-usd") is True
        assert service.remove_product("BTC-USD") is True
        await _until(lambda: len(transport.sessions[0].sent) == 3)
        service.request_resubscribe()
        await asyncio.sleep(0.02)
        service.stop()
        await task

    asyncio.run(scenario())

    sent = transport.sessions[0].sent
    assert [request["type"] for request in sent] == ["subscribe", "unsubscribe", "subscribe"]
    assert service.stats().subscriptions == ("matches:ETH-USD",)


def test_service_writes_jsonl_when_configured(tmp_path: Path) -> None:
    transport = _FakeTransport()
    service = FeedIngestionService(_settings(tmp_path, sink="jsonl"), transport=transport, rest_client=_FakeRest())

    async def scenario() -> None:
        task = asyncio.create_task(service.run())
        await _until(lambda: service.state is ConnectionState.STREAMING)
        transport.sessions[0].push(_match(1))
        await _until(lambda: service.stats().pipeline.parsed == 1)
        service.stop()
        await task

    asyncio.run(scenario())

    lines = (tmp_path / "jsonl" / "matches_BTC-USD.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["sequence"] for line in lines] == [1]
    assert service.store.count_messages() == 0


def test_extra_visitors_run_after_configured_ones(tmp_path: Path) -> None:
    seen: list[int | None] = []

    class _Tap:
        name = "tap"

        def visit(self, message: Message) -> None:
            seen.append(message.sequence)

    transport = _FakeTransport()
    service = FeedIngestionService(
        _settings(tmp_path, visitors=["metrics"]),
        transport=transport,
        rest_client=_FakeRest(),
        extra_visitors=[_Tap()],
    )

    async def scenario() -> None:
        task = asyncio.create_task(service.run())
        await _until(lambda: service.state is ConnectionState.STREAMING)
        transport.sessions[0].push(_match(7))
        await _until(lambda: seen == [7])
        service.stop()
        await task

    asyncio.run(scenario())

    assert [visitor.name for visitor in service.pipeline.chain.visitors] == ["metrics", "tap"]
    assert service.store.count_messages() == 0
