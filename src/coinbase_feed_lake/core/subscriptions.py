from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from coinbase_feed_lake.core.models import DesiredState, SubscriptionEntry, SubscriptionKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SubscriptionDelta:
    to_subscribe: frozenset[SubscriptionKey]
    to_unsubscribe: frozenset[SubscriptionKey]

    @property
    def empty(self) -> bool:
        return not self.to_subscribe and not self.to_unsubscribe


class SubscriptionSet:
    """Desired-vs-applied (product, channel) pairs.

    Mutators are safe to call from any thread and never touch the network; they only
    record the desired state and notify the listener so the connection can reconcile.
    Applied state is updated optimistically when a request is sent.
    """

    def __init__(self, channels: Iterable[str], products: Iterable[str] = ()) -> None:
        self._channels = tuple(dict.fromkeys(str(channel) for channel in channels))
        if not self._channels:
            raise ValueError("at least one channel is required")
        self._entries: dict[SubscriptionKey, SubscriptionEntry] = {}
        self._lock = threading.Lock()
        self._listener: Callable[[], None] | None = None
        for product_id in products:
            self._add_product_locked(product_id)

    @property
    def channels(self) -> tuple[str, ...]:
        return self._channels

    def set_listener(self, listener: Callable[[], None] | None) -> None:
        with self._lock:
            self._listener = listener

    def add_product(self, product_id: str) -> bool:
        with self._lock:
            changed = self._add_product_locked(product_id)
        if changed:
            logger.info("Product added to subscription set", extra={"product_id": product_id.upper()})
            self._notify()
        return changed

    def remove_product(self, product_id: str) -> bool:
        normalized = _normalize_product(product_id)
        with self._lock:
            changed = False
            for channel in self._channels:
                changed |= self._remove_locked(SubscriptionKey(normalized, channel))
        if changed:
            logger.info("Product removed from subscription set", extra={"product_id": normalized})
            self._notify()
        return changed

    def add(self, key: SubscriptionKey) -> bool:
        key = SubscriptionKey(_normalize_product(key.product_id), key.channel)
        with self._lock:
            changed = self._add_locked(key)
        if changed:
            self._notify()
        return changed

    def remove(self, key: SubscriptionKey) -> bool:
        key = SubscriptionKey(_normalize_product(key.product_id), key.channel)
        with self._lock:
            changed = self._remove_locked(key)
        if changed:
            self._notify()
        return changed

    def desired(self) -> frozenset[SubscriptionKey]:
        with self._lock:
            return frozenset(
                key for key, entry in self._entries.items() if entry.desired is DesiredState.SUBSCRIBED
            )

    def applied(self) -> frozenset[SubscriptionKey]:
        with self._lock:
            return frozenset(key for key, entry in self._entries.items() if entry.applied)

    def products(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(
                sorted(
                    {key.product_id for key, entry in self._entries.items() if entry.desired is DesiredState.SUBSCRIBED}
                )
            )

    def entries(self) -> tuple[SubscriptionEntry, ...]:
        with self._lock:
            return tuple(
                SubscriptionEntry(key=entry.key, desired=entry.desired, applied=entry.applied)
                for entry in sorted(self._entries.values(), key=lambda item: item.key)
            )

    def plan_delta(self) -> SubscriptionDelta:
        with self._lock:
            to_subscribe = frozenset(
                key
                for key, entry in self._entries.items()
                if entry.desired is DesiredState.SUBSCRIBED and not entry.applied
            )
            to_unsubscribe = frozenset(
                key
                for key, entry in self._entries.items()
                if entry.desired is DesiredState.UNSUBSCRIBED and entry.applied
            )
        return SubscriptionDelta(to_subscribe=to_subscribe, to_unsubscribe=to_unsubscribe)

    def begin_session(self) -> frozenset[SubscriptionKey]:
        """Forget applied state for a fresh session and return the handshake subscription."""
        with self._lock:
            for entry in self._entries.values():
                entry.applied = False
            self._prune_locked()
            return frozenset(
                key for key, entry in self._entries.items() if entry.desired is DesiredState.SUBSCRIBED
            )

    def mark_subscribed(self, keys: Iterable[SubscriptionKey]) -> None:
        with self._lock:
            for key in keys:
                entry = self._entries.get(key)
                if entry is not None and entry.desired is DesiredState.SUBSCRIBED:
                    entry.applied = True

    def mark_unsubscribed(self, keys: Iterable[SubscriptionKey]) -> None:
        with self._lock:
            for key in keys:
                entry = self._entries.get(key)
                if entry is not None:
                    entry.applied = False
            self._prune_locked()

    def _add_product_locked(self, product_id: str) -> bool:
        normalized = _normalize_product(product_id)
        changed = False
        for channel in self._channels:
            changed |= self._add_locked(SubscriptionKey(normalized, channel))
        return changed

    def _add_locked(self, key: SubscriptionKey) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            self._entries[key] = SubscriptionEntry(key=key)
            return True
        if entry.desired is DesiredState.SUBSCRIBED:
            return False
        entry.desired = DesiredState.SUBSCRIBED
        return True

    def _remove_locked(self, key: SubscriptionKey) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.desired is DesiredState.UNSUBSCRIBED:
            return False
        entry.desired = DesiredState.UNSUBSCRIBED
        self._prune_locked()
        return True

    def _prune_locked(self) -> None:
        stale = [
            key
            for key, entry in self._entries.items()
            if entry.desired is DesiredState.UNSUBSCRIBED and not entry.applied
        ]
        for key in stale:
            del self._entries[key]

    def _notify(self) -> None:
        listener = self._listener
        if listener is not None:
            listener()


def _normalize_product(product_id: str) -> str:
    normalized = product_id.strip().upper()
    if not normalized:
        raise ValueError("product_id must not be empty")
    return normalized
