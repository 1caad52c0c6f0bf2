from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import TextIO

from coinbase_feed_lake.core.errors import WriteError
from coinbase_feed_lake.core.models import Message, SubscriptionKey


class JsonLinesSink:
    """Append each message as one JSON line to ``{channel}_{product}.jsonl``.

    Files are line buffered so every append reaches the OS before ``append`` returns.
    Duplicate appends are not filtered here; the sequence gate upstream prevents them.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = directory
        self._directory.mkdir(parents=True, exist_ok=True)
        self._handles: dict[SubscriptionKey, TextIO] = {}
        self._lock = threading.Lock()

    def path_for(self, key: SubscriptionKey) -> Path:
        return self._directory / f"{key.channel}_{key.product_id}.jsonl"

    def append(self, message: Message) -> bool:
        line = json.dumps(
            {
                "product_id": message.product_id,
                "channel": message.channel,
                "type": message.type,
                "sequence": message.sequence,
                "source": message.source,
                "received_at": message.received_at_ms,
                "exchange_time": message.exchange_time,
                "payload": message.payload,
            },
            separators=(",", ":"),
            default=str,
        )
        with self._lock:
            try:
                handle = self._handles.get(message.key)
                if handle is None:
                    handle = self.path_for(message.key).open("a", encoding="utf-8", buffering=1)
                    self._handles[message.key] = handle
                handle.write(line + "\n")
            except OSError as exc:
                raise WriteError(f"Could not append {message.key} to {self._directory}: {exc}") from exc
        return True

    def close(self) -> None:
        with self._lock:
            for handle in self._handles.values():
                handle.close()
            self._handles = {}
