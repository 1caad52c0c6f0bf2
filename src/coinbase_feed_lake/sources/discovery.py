from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

import httpx

from coinbase_feed_lake.core.subscriptions import SubscriptionSet

logger = logging.getLogger(__name__)


def tradable_products(products: Iterable[dict[str, Any]], quote_currencies: Iterable[str]) -> set[str]:
    quotes = {quote.upper() for quote in quote_currencies}
    return {
        item["product_id"]
        for item in products
        if item.get("status") == "online"
        and not item.get("trading_disabled", False)
        and (not quotes or item.get("quote_currency") in quotes)
    }


class ProductDiscovery:
    """Poll the product listing and keep the subscription set in step with it.

    Only products this poller added are ever removed, so products configured by hand
    stay subscribed when the exchange delists them.
    """

    def __init__(
        self,
        fetch_products: Callable[[], list[dict[str, Any]]],
        subscriptions: SubscriptionSet,
        *,
        quote_currencies: Iterable[str] = ("USD",),
        interval_seconds: float = 300.0,
    ) -> None:
        self._fetch_products = fetch_products
        self._subscriptions = subscriptions
        self._quote_currencies = tuple(quote_currencies)
        self._interval_seconds = interval_seconds
        self._discovered: set[str] = set()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def discovered(self) -> frozenset[str]:
        return frozenset(self._discovered)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._poll_loop, name="product-discovery", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)

    def poll_once(self) -> tuple[set[str], set[str]]:
        """Apply one listing snapshot; return the products added and removed."""
        listed = tradable_products(self._fetch_products(), self._quote_currencies)
        configured = set(self._subscriptions.products())

        added = {product for product in listed - configured if self._subscriptions.add_product(product)}
        self._discovered |= added
        delisted = self._discovered - listed
        removed = {product for product in delisted if self._subscriptions.remove_product(product)}
        self._discovered -= delisted

        if added or removed:
            logger.info(
                "Product listing changed",
                extra={"added": sorted(added), "removed": sorted(removed), "listed": len(listed)},
            )
        return added, removed

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Product discovery poll failed", extra={"error": repr(exc)})
            self._stop_event.wait(self._interval_seconds)
