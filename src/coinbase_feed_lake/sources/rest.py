from __future__ import annotations

import logging
import random
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from coinbase_feed_lake.core.errors import BackfillUnsupportedError, FetchError, ParseError
from coinbase_feed_lake.core.models import SOURCE_BACKFILL, Channel, Message, now_ms
from coinbase_feed_lake.sources.parser import message_from_payload

logger = logging.getLogger(__name__)


class CoinbaseRESTClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 20,
        retries: int = 3,
        *,
        page_limit: int = 1000,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
            headers={"User-Agent": "coinbase-feed-lake", "Accept": "application/json"},
        )
        self._retries = max(1, retries)
        self._page_limit = max(1, min(page_limit, 1000))
        self._min_retry_delay_seconds = 1.0
        self._max_backoff_seconds = 60.0
        self._min_interval_seconds = 0.1  # public endpoints allow ~10 requests/sec per IP
        self._last_request_monotonic: float | None = None

    def close(self) -> None:
        self._client.close()

    def _get(self, path: str, params: dict[str, Any] | None = None, *, retries: int | None = None) -> Any:
        attempts = self._retries if retries is None else max(1, retries)
        last_transport_error: httpx.TransportError | None = None

        for attempt in range(1, attempts + 1):
            try:
                now = time.monotonic()
                if self._last_request_monotonic is not None:
                    wait = self._min_interval_seconds - (now - self._last_request_monotonic)
                    if wait > 0:
                        time.sleep(wait)
                response = self._client.get(path, params=params)
                self._last_request_monotonic = time.monotonic()
            except httpx.TransportError as exc:
                last_transport_error = exc
                if attempt >= attempts:
                    raise
                self._sleep_before_retry(
                    attempt=attempt,
                    max_attempts=attempts,
                    path=path,
                    status_code=None,
                    reason=exc.__class__.__name__,
                )
                continue

            if response.status_code < 400:
                return response.json()

            if self._is_retryable_status(response.status_code) and attempt < attempts:
                retry_after_seconds = self._parse_retry_after_seconds(response=response)
                self._sleep_before_retry(
                    attempt=attempt,
                    max_attempts=attempts,
                    path=path,
                    status_code=response.status_code,
                    reason=f"HTTP {response.status_code}",
                    retry_after_seconds=retry_after_seconds,
                )
                continue

            response.raise_for_status()

        if last_transport_error is not None:
            raise last_transport_error
        raise RuntimeError("REST call exhausted retries without a concrete error")

    @staticmethod
    def _is_retryable_status(status_code: int) -> bool:
        return status_code == 429 or 500 <= status_code < 600

    @staticmethod
    def _parse_retry_after_seconds(response: httpx.Response) -> float | None:
        raw_value = response.headers.get("Retry-After")
        if raw_value is None:
            return None

        raw_value = raw_value.strip()
        try:
            return max(0.0, float(raw_value))
        except ValueError:
            pass

        try:
            parsed = parsedate_to_datetime(raw_value)
        except (TypeError, ValueError):
            return None

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        delay_seconds = float((parsed.astimezone(UTC) - datetime.now(tz=UTC)).total_seconds())
        return max(0.0, delay_seconds)

    def _sleep_before_retry(
        self,
        *,
        attempt: int,
        max_attempts: int,
        path: str,
        status_code: int | None,
        reason: str,
        retry_after_seconds: float | None = None,
    ) -> None:
        if retry_after_seconds is not None:
            delay = retry_after_seconds
        else:
            delay = min(
                self._max_backoff_seconds,
                self._min_retry_delay_seconds * (2 ** max(attempt - 1, 0)),
            )
        delay += random.uniform(0.0, 0.3)  # noqa: S311

        logger.warning(
            "Retrying Coinbase REST request",
            extra={
                "path": path,
                "attempt": attempt,
                "max_attempts": max_attempts,
                "status_code": status_code,
                "reason": reason,
                "sleep_seconds": round(delay, 3),
            },
        )
        time.sleep(delay)

    def fetch_products(self) -> list[dict[str, Any]]:
        payload = self._get("/products")
        return [
            {
                "product_id": str(item["id"]).upper(),
                "base_currency": str(item.get("base_currency", "")).upper(),
                "quote_currency": str(item.get("quote_currency", "")).upper(),
                "status": str(item.get("status", "")).lower(),
                "trading_disabled": bool(item.get("trading_disabled", False)),
            }
            for item in payload
        ]

    def fetch_trades(
        self,
        product_id: str,
        *,
        after: int | None = None,
        limit: int | None = None,
        retries: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return one page of trades, newest first; ``after`` pages to trade ids below it."""
        params: dict[str, Any] = {"limit": limit or self._page_limit}
        if after is not None:
            params["after"] = after

        payload = self._get(f"/products/{product_id.upper()}/trades", params, retries=retries)
        return [
            {
                "trade_id": int(item["trade_id"]),
                "price": str(item["price"]),
                "size": str(item["size"]),
                "side": str(item["side"]),
                "time": str(item["time"]),
            }
            for item in payload
        ]

    def fetch_range(self, product_id: str, channel: str, from_seq: int, to_seq: int) -> list[Message]:
        """Fetch the messages with sequence in ``[from_seq, to_seq]``, ascending.

        Each page gets a single HTTP attempt; the gap recovery coordinator owns the retries.
        """
        if channel != Channel.MATCHES.value:
            raise BackfillUnsupportedError(f"REST backfill is not available for the {channel!r} channel")
        if from_seq > to_seq:
            return []

        product = product_id.upper()
        collected: dict[int, dict[str, Any]] = {}
        cursor = to_seq + 1
        try:
            while True:
                page = self.fetch_trades(product, after=cursor, retries=1)
                if not page:
                    break
                for trade in page:
                    if from_seq <= trade["trade_id"] <= to_seq:
                        collected[trade["trade_id"]] = trade
                oldest = min(trade["trade_id"] for trade in page)
                if oldest <= from_seq or oldest >= cursor:
                    break
                cursor = oldest
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            raise FetchError(f"Trades backfill failed for {product} [{from_seq}, {to_seq}]: {exc}") from exc

        received_at_ms = now_ms()
        try:
            return [
                message_from_payload(
                    {"type": "match", "product_id": product, **collected[trade_id]},
                    received_at_ms=received_at_ms,
                    source=SOURCE_BACKFILL,
                )
                for trade_id in sorted(collected)
            ]
        except ParseError as exc:
            raise FetchError(f"Trades backfill returned an unusable trade for {product}: {exc}") from exc
