"""
Cache Invalidation Bus
======================

Chain-event driven invalidation for the marketplace cache.

The bus watches the gateway's read handle for marketplace events and turns
them into InvalidationSignals for the query keys subscribed to those events.
It keeps only key strings; entries are changed through QueryCache.apply().
"""

from __future__ import annotations

import asyncio
import inspect
from collections import OrderedDict, defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import structlog

from marketsync.caching.query_cache import QueryCache
from marketsync.caching.signals import InvalidationReason, InvalidationSignal
from marketsync.chain.gateway import ChainEvent, ContractGateway, ContractHandle
from marketsync.config import MarketSyncConfig, get_config

logger = structlog.get_logger(__name__)

SignalListener = Callable[[InvalidationSignal], Any]


@dataclass
class InvalidationStats:
    """Statistics for invalidation monitoring."""

    events_received: int = 0
    duplicates_coalesced: int = 0
    signals_emitted: int = 0
    rebinds: int = 0
    poll_errors: int = 0


class BusSubscription:
    """One key's interest in a set of events. Call close() to unsubscribe."""

    def __init__(self, bus: InvalidationBus, key: str, events: frozenset[str]) -> None:
        self.key = key
        self.events = events
        self._bus = bus
        self.closed = False

    def matches(self, event_name: str) -> bool:
        return not self.closed and event_name in self.events

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._remove(self)


class InvalidationBus:
    """
    Watches contract events and signals the cache which keys are stale.

    One watcher task polls the current read handle. When the gateway swaps
    the handle, the old watcher is cancelled and awaited before a new one is
    started on the replacement.
    """

    def __init__(
        self,
        gateway: ContractGateway,
        cache: QueryCache,
        config: MarketSyncConfig | None = None,
        *,
        poll_interval_seconds: float | None = None,
        coalesce_window: int | None = None,
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._config = config or get_config()
        self.poll_interval_seconds = (
            poll_interval_seconds or self._config.event_poll_interval_seconds
        )
        self.coalesce_window = coalesce_window or self._config.coalesce_window
        self.default_events = frozenset(self._config.invalidation_events)

        self._subscriptions: dict[str, list[BusSubscription]] = defaultdict(list)
        self._listeners: list[SignalListener] = []
        self._seen: OrderedDict[tuple[str, str], None] = OrderedDict()

        self._handle: ContractHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._unsubscribe_handle: Callable[[], None] | None = None
        self._stopped = False
        self._stats = InvalidationStats()
        self._logger = logger.bind(service="invalidation_bus")

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, key: str, events: Iterable[str] | None = None) -> BusSubscription:
        """Signal ``key`` whenever one of ``events`` is observed."""
        names = frozenset(events) if events is not None else self.default_events
        subscription = BusSubscription(self, key, names)
        self._subscriptions[key].append(subscription)
        self._logger.debug("bus_subscribed", key=key, events=sorted(names))
        return subscription

    def _remove(self, subscription: BusSubscription) -> None:
        subscriptions = self._subscriptions.get(subscription.key)
        if subscriptions and subscription in subscriptions:
            subscriptions.remove(subscription)
            if not subscriptions:
                del self._subscriptions[subscription.key]
            self._logger.debug("bus_unsubscribed", key=subscription.key)

    def subscribed_keys(self) -> list[str]:
        return list(self._subscriptions)

    def watched_events(self) -> list[str]:
        names: set[str] = set()
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                names |= subscription.events
        return sorted(names)

    def add_listener(self, listener: SignalListener) -> Callable[[], None]:
        """Register a callback for every emitted signal. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def get_stats(self) -> InvalidationStats:
        return self._stats

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def handle_generation(self) -> int | None:
        return self._handle.generation if self._handle is not None else None

    async def start(self) -> None:
        """Start watching the gateway's current read handle."""
        if self.is_running:
            return
        self._stopped = False
        if self._unsubscribe_handle is None:
            self._unsubscribe_handle = self._gateway.on_handle_changed(self._on_handle_changed)
        await self._bind(self._gateway.read_handle())
        self._logger.info("bus_started", generation=self.handle_generation)

    async def stop(self) -> None:
        """Stop watching. No further event signals are emitted."""
        self._stopped = True
        if self._unsubscribe_handle is not None:
            self._unsubscribe_handle()
            self._unsubscribe_handle = None
        await self._cancel_watcher()
        self._handle = None
        self._logger.info("bus_stopped")

    async def _cancel_watcher(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _bind(self, handle: ContractHandle) -> None:
        await self._cancel_watcher()
        self._handle = handle
        self._task = asyncio.create_task(
            self._watch(handle), name=f"invalidation-watch:{handle.generation}"
        )

    async def _on_handle_changed(self, handle: ContractHandle) -> None:
        if self._stopped:
            return
        self._stats.rebinds += 1
        self._logger.info(
            "bus_rebinding",
            old_generation=self.handle_generation,
            new_generation=handle.generation,
        )
        await self._bind(handle)
        # Data read from the previous endpoint is no longer authoritative.
        for key in self.subscribed_keys():
            await self.signal(key, InvalidationReason.MANUAL)

    async def _watch(self, handle: ContractHandle) -> None:
        from_block: int | None = None
        while True:
            try:
                if from_block is None:
                    from_block = await handle.current_block() + 1
                else:
                    names = self.watched_events()
                    if names:
                        events, from_block = await handle.poll_events(names, from_block)
                        for event in events:
                            await self.handle_event(event)
                    else:
                        # Keys subscribed later start from the head, not from start()
                        from_block = await handle.current_block() + 1
            except Exception as e:
                self._stats.poll_errors += 1
                self._logger.warning(
                    "bus_poll_failed",
                    generation=handle.generation,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            await asyncio.sleep(self.poll_interval_seconds)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle_event(self, event: ChainEvent) -> list[InvalidationSignal]:
        """
        Turn one chain event into signals for every key subscribed to it.

        A transaction is signalled at most once per key, no matter how many
        matching logs it produced or how often it was delivered.
        """
        if self._stopped:
            return []
        self._stats.events_received += 1

        signals = []
        for key, subscriptions in list(self._subscriptions.items()):
            if not any(s.matches(event.name) for s in subscriptions):
                continue
            if (event.tx_hash, key) in self._seen:
                self._stats.duplicates_coalesced += 1
                continue
            signals.append(
                await self.signal(key, InvalidationReason.EVENT, tx_hash=event.tx_hash)
            )

        if signals:
            self._logger.debug(
                "bus_event_dispatched",
                event=event.name,
                tx_hash=event.tx_hash,
                block=event.block_number,
                keys=[s.key for s in signals],
            )
        return signals

    def _remember(self, marker: tuple[str, str]) -> None:
        self._seen[marker] = None
        while len(self._seen) > self.coalesce_window:
            self._seen.popitem(last=False)

    async def signal(
        self,
        key: str,
        reason: InvalidationReason = InvalidationReason.MANUAL,
        *,
        tx_hash: str | None = None,
    ) -> InvalidationSignal:
        """
        Emit an InvalidationSignal for ``key`` and apply it to the cache.

        When ``tx_hash`` is given, later chain events from the same
        transaction are coalesced into this signal.
        """
        if tx_hash is not None:
            self._remember((tx_hash, key))
        signal = InvalidationSignal(key=key, reason=reason, tx_hash=tx_hash)
        self._cache.apply(signal)
        self._stats.signals_emitted += 1

        for listener in list(self._listeners):
            try:
                if inspect.iscoroutinefunction(listener):
                    await listener(signal)
                else:
                    listener(signal)
            except Exception as e:
                self._logger.warning("bus_listener_error", key=key, error=str(e))
        return signal
