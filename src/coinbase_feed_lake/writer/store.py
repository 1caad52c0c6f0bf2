from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from coinbase_feed_lake.core.errors import WriteError
from coinbase_feed_lake.core.models import (
    GapInterval,
    GapRecord,
    GapStatus,
    Message,
    SubscriptionKey,
    now_ms,
)


def _payload_to_json(payload: dict[str, Any] | None) -> str:
    if payload is None:
        return "{}"
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


class SQLiteMessageStore:
    """Append-only message store plus the gap ledger.

    Appends are idempotent on (product_id, channel, sequence); unsequenced messages are
    always inserted.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @property
    def path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self, *, timeout: float = 5.0) -> Iterator[sqlite3.Connection]:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self._db_path, timeout=timeout)
        try:
            yield connection
        finally:
            connection.close()

    def _initialize(self) -> None:
        with self._connect() as connection:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute("PRAGMA synchronous=NORMAL")
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    ingest_id TEXT PRIMARY KEY,
                    product_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    sequence INTEGER,
                    type TEXT NOT NULL,
                    source TEXT NOT NULL,
                    exchange_time TEXT,
                    received_at INTEGER NOT NULL,
                    raw_json TEXT NOT NULL,
                    UNIQUE (product_id, channel, sequence)
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS gaps (
                    gap_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    product_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    low INTEGER NOT NULL,
                    high INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    detected_at INTEGER NOT NULL,
                    resolved_at INTEGER,
                    missing_count INTEGER NOT NULL DEFAULT 0,
                    detail TEXT
                )
                """
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_product_received ON messages(product_id, received_at)"
            )
            connection.execute("CREATE INDEX IF NOT EXISTS idx_gaps_status ON gaps(status)")
            connection.commit()

    def append(self, message: Message) -> bool:
        """Persist a message; return False when the sequence was already stored."""
        try:
            with self._connect() as connection:
                cursor = connection.execute(
                    """
                    INSERT OR IGNORE INTO messages(
                        ingest_id, product_id, channel, sequence, type, source, exchange_time, received_at, raw_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        uuid.uuid4().hex,
                        message.product_id,
                        message.channel,
                        message.sequence,
                        message.type,
                        message.source,
                        message.exchange_time,
                        message.received_at_ms,
                        _payload_to_json(message.payload),
                    ),
                )
                connection.commit()
                inserted = cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise WriteError(f"Could not persist {message.key} seq={message.sequence}: {exc}") from exc
        return inserted

    def close(self) -> None:
        """Connections are opened per operation; nothing to release."""

    def last_sequences(self) -> dict[SubscriptionKey, int]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT product_id, channel, MAX(sequence)
                FROM messages
                WHERE sequence IS NOT NULL
                GROUP BY product_id, channel
                """
            ).fetchall()
        return {SubscriptionKey(product_id, channel): int(last) for product_id, channel, last in rows}

    def sequences(self, key: SubscriptionKey) -> list[int]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT sequence FROM messages
                WHERE product_id = ? AND channel = ? AND sequence IS NOT NULL
                ORDER BY rowid
                """,
                (key.product_id, key.channel),
            ).fetchall()
        return [int(row[0]) for row in rows]

    def count_messages(self) -> int:
        with self._connect() as connection:
            (count,) = connection.execute("SELECT COUNT(*) FROM messages").fetchone()
        return int(count)

    def record_gap(self, key: SubscriptionKey, interval: GapInterval, *, detected_at_ms: int | None = None) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO gaps(product_id, channel, low, high, status, detected_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    key.product_id,
                    key.channel,
                    interval.low,
                    interval.high,
                    GapStatus.PENDING.value,
                    now_ms() if detected_at_ms is None else detected_at_ms,
                ),
            )
            connection.commit()
            gap_id = cursor.lastrowid
        if gap_id is None:
            raise WriteError(f"Gap ledger insert for {key} returned no row id")
        return int(gap_id)

    def extend_gap(self, gap_id: int, interval: GapInterval) -> None:
        with self._connect() as connection:
            connection.execute(
                "UPDATE gaps SET low = ?, high = ? WHERE gap_id = ?",
                (interval.low, interval.high, gap_id),
            )
            connection.commit()

    def resolve_gap(
        self,
        gap_id: int,
        status: GapStatus,
        *,
        missing: list[int] | None = None,
        detail: str | None = None,
    ) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                UPDATE gaps
                SET status = ?, resolved_at = ?, missing_count = ?, detail = ?
                WHERE gap_id = ?
                """,
                (status.value, now_ms(), len(missing or []), detail, gap_id),
            )
            connection.commit()

    def pending_gaps(self) -> list[GapRecord]:
        return self.list_gaps(status=GapStatus.PENDING)

    def list_gaps(self, status: GapStatus | None = None) -> list[GapRecord]:
        query = """
            SELECT gap_id, product_id, channel, low, high, status, detected_at, resolved_at, missing_count, detail
            FROM gaps
        """
        params: tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY gap_id"

        with self._connect() as connection:
            rows = connection.execute(query, params).fetchall()
        return [
            GapRecord(
                gap_id=int(row[0]),
                product_id=row[1],
                channel=row[2],
                low=int(row[3]),
                high=int(row[4]),
                status=GapStatus(row[5]),
                detected_at_ms=int(row[6]),
                resolved_at_ms=None if row[7] is None else int(row[7]),
                missing_count=int(row[8]),
                detail=row[9],
            )
            for row in rows
        ]
