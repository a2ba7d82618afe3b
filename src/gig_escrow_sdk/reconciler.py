"""
Order state reconciliation against the escrow contract.

The reconciler keeps a non-authoritative cached snapshot per order id and
brings it in line with the contract by polling. Each fetch is tagged with a
per-order sequence number when it is dispatched; a response carrying a
lower number than the cached snapshot is discarded even if it arrives
later, so the cache for an order only ever moves forward.

Lifecycle events are emitted when an accepted snapshot changes one of the
tracked escrow flags (isPaid, isCompleted, paymentReleased). Polling for an
order stops on its own once paymentReleased is observed.

Example:
    >>> reconciler = OrderStateReconciler(gateway, poll_interval=10)
    >>> snapshot = await reconciler.fetch(7)
    >>>
    >>> async def on_change(event):
    ...     print(event.order_id, event.changed_fields, event.new_status)
    >>>
    >>> async with reconciler.polling(7, on_change=on_change) as subscription:
    ...     await subscription.wait()  # returns once the order is released
"""

import asyncio
import contextlib
import inspect
import logging
import random
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional, TypeVar, Union

from gig_escrow_sdk.errors import raw_message
from gig_escrow_sdk.exceptions import (
    GatewayError,
    GatewayErrorKind,
    GigEscrowError,
    NotFoundError,
    StaleWriteRejected,
)
from gig_escrow_sdk.gateway import ContractGateway
from gig_escrow_sdk.models import TRACKED_FIELDS, Gig, LifecycleEvent, OrderSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

OnChange = Callable[[LifecycleEvent], Union[None, Awaitable[None]]]
OnError = Callable[[int, GigEscrowError], Union[None, Awaitable[None]]]


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception(f"Callback {getattr(callback, '__name__', callback)!r} failed")


class PollingSubscription:
    """Handle for a background polling loop on one order id."""

    def __init__(
        self,
        order_id: int,
        interval: float,
        on_change: Optional[OnChange],
        on_error: Optional[OnError],
    ):
        self.order_id = order_id
        self.interval = interval
        self.on_change = on_change
        self.on_error = on_error
        self.ticks = 0
        self.skipped_ticks = 0
        self.errors = 0
        self.stop_reason: Optional[str] = None
        self._task: Optional["asyncio.Task[None]"] = None
        self._done = asyncio.Event()

    @property
    def active(self) -> bool:
        return self.stop_reason is None

    def _mark_stopped(self, reason: str) -> None:
        if self.stop_reason is None:
            self.stop_reason = reason
        self._done.set()

    async def wait(self) -> Optional[str]:
        """Wait until the subscription stops; returns the stop reason."""
        await self._done.wait()
        if self._task is not None and self._task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        return self.stop_reason

    def __repr__(self) -> str:
        state = "active" if self.active else f"stopped:{self.stop_reason}"
        return f"<PollingSubscription order={self.order_id} {state} ticks={self.ticks}>"


class OrderStateReconciler:
    """
    Owns cached order snapshots and their polling loops.

    Args:
        gateway: Contract gateway (injected, shared with the payment flow)
        poll_interval: Default seconds between polling ticks
        poll_jitter: Random +/- fraction applied to every delay
        poll_backoff_factor: Delay multiplier per consecutive tick error
        poll_max_interval: Upper bound for the backed-off delay
        max_concurrent_reads: Bound on in-flight gateway reads
        rng: Random source for jitter
    """

    def __init__(
        self,
        gateway: ContractGateway,
        *,
        poll_interval: float = 10.0,
        poll_jitter: float = 0.2,
        poll_backoff_factor: float = 2.0,
        poll_max_interval: float = 120.0,
        max_concurrent_reads: int = 8,
        rng: Optional[random.Random] = None,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if not 0 <= poll_jitter < 1:
            raise ValueError("poll_jitter must be in [0, 1)")
        if max_concurrent_reads < 1:
            raise ValueError("max_concurrent_reads must be >= 1")
        self.gateway = gateway
        self.poll_interval = poll_interval
        self.poll_jitter = poll_jitter
        self.poll_backoff_factor = max(poll_backoff_factor, 1.0)
        self.poll_max_interval = max(poll_max_interval, poll_interval)
        self.max_concurrent_reads = max_concurrent_reads
        self._rng = rng or random.Random()
        self._reads = asyncio.Semaphore(max_concurrent_reads)

        self._sequences: dict[int, int] = {}
        self._snapshots: dict[int, OrderSnapshot] = {}
        self._gigs: dict[int, Gig] = {}
        self._in_flight: dict[int, int] = {}
        self._subscriptions: dict[int, set[PollingSubscription]] = {}

    @classmethod
    def from_config(cls, gateway: ContractGateway, config: Any, **kwargs: Any) -> "OrderStateReconciler":
        """Build a reconciler from an ``EscrowConfig``."""
        return cls(
            gateway,
            poll_interval=config.poll_interval,
            poll_jitter=config.poll_jitter,
            poll_backoff_factor=config.poll_backoff_factor,
            poll_max_interval=config.poll_max_interval,
            max_concurrent_reads=config.max_concurrent_reads,
            **kwargs,
        )

    async def __aenter__(self) -> "OrderStateReconciler":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def get_cached(self, order_id: int) -> Optional[OrderSnapshot]:
        return self._snapshots.get(order_id)

    def is_fetching(self, order_id: int) -> bool:
        return self._in_flight.get(order_id, 0) > 0

    def evict(self, order_id: int) -> None:
        """
        Drop everything cached for an order nobody is polling.

        The gig is dropped too unless another cached order refers to it. The
        sequence counter is kept while a fetch is still in flight so that its
        response cannot overwrite a newer one.
        """
        if self._subscriptions.get(order_id):
            raise RuntimeError(f"Order {order_id} still has active subscriptions")
        cached = self._snapshots.pop(order_id, None)
        if not self.is_fetching(order_id):
            self._sequences.pop(order_id, None)
        if cached is not None:
            gig_id = cached.order.gig_id
            if not any(s.order.gig_id == gig_id for s in self._snapshots.values()):
                self._gigs.pop(gig_id, None)

    def _next_sequence(self, order_id: int) -> int:
        sequence = self._sequences.get(order_id, 0) + 1
        self._sequences[order_id] = sequence
        return sequence

    def _apply(self, snapshot: OrderSnapshot) -> Optional[LifecycleEvent]:
        """Accept or discard a fetched snapshot; return the event it causes."""
        order_id = snapshot.order_id
        cached = self._snapshots.get(order_id)
        if cached is not None and snapshot.sequence_number < cached.sequence_number:
            rejected = StaleWriteRejected(order_id, snapshot.sequence_number, cached.sequence_number)
            logger.debug(str(rejected))
            return None

        if cached is not None:
            # Escrow flags only move forward on-chain; a cleared flag comes from a lagging node
            regressed = [
                name for name in TRACKED_FIELDS
                if getattr(cached.order, name) and not getattr(snapshot.order, name)
            ]
            if regressed:
                rejected = StaleWriteRejected(order_id, snapshot.sequence_number, cached.sequence_number)
                logger.debug(f"{rejected}: {', '.join(regressed)} went backwards")
                return None

        self._snapshots[order_id] = snapshot
        if cached is None:
            return None

        changed = tuple(
            name for name in TRACKED_FIELDS
            if getattr(cached.order, name) != getattr(snapshot.order, name)
        )
        if not changed:
            return None
        logger.info(
            f"Order {order_id} {cached.order.status.value} -> {snapshot.order.status.value} "
            f"(#{snapshot.sequence_number}, changed: {', '.join(changed)})"
        )
        return LifecycleEvent(
            order_id=order_id,
            previous_snapshot=cached,
            new_snapshot=snapshot,
            changed_fields=changed,
        )

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _gateway_read(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        async with self._reads:
            try:
                return await fn(*args)
            except GigEscrowError:
                raise
            except Exception as e:
                raise GatewayError(GatewayErrorKind.OTHER, raw_message=raw_message(e)) from e

    async def _load_gig(self, gig_id: int, *, use_cache: bool = False) -> Gig:
        if use_cache and gig_id in self._gigs:
            return self._gigs[gig_id]
        gig = await self._gateway_read(self.gateway.get_gig, gig_id)
        self._gigs[gig_id] = gig
        return gig

    async def _fetch(self, order_id: int, *, reuse_gig: bool) -> OrderSnapshot:
        # Sequence and in-flight marker are taken before the first await
        sequence = self._next_sequence(order_id)
        self._in_flight[order_id] = self._in_flight.get(order_id, 0) + 1
        try:
            order = await self._gateway_read(self.gateway.get_order, order_id)
            gig = await self._load_gig(order.gig_id, use_cache=reuse_gig)
        finally:
            self._in_flight[order_id] -= 1
            if not self._in_flight[order_id]:
                del self._in_flight[order_id]

        snapshot = OrderSnapshot(
            order=order,
            gig=gig,
            sequence_number=sequence,
            fetched_at=datetime.now(timezone.utc),
        )
        event = self._apply(snapshot)
        if event is not None:
            await self._emit(event)
        current = self._snapshots[order_id]
        if current.order.is_terminal:
            self._stop_terminal(order_id)
        return current

    async def fetch(self, order_id: int) -> OrderSnapshot:
        """
        Fetch an order and its gig from the contract.

        Args:
            order_id: Order id

        Returns:
            The newest accepted snapshot. If this response lost to a newer
            one, the newer cached snapshot is returned.

        Raises:
            NotFoundError: If the order (or its gig) does not exist
            GatewayError: On RPC-level failures
        """
        return await self._fetch(order_id, reuse_gig=False)

    async def refresh(self, order_id: int) -> OrderSnapshot:
        """
        Forced fetch that bypasses the poll interval.

        Dispatched with a fresh sequence number, so it wins over any poll
        tick already in flight for the same order.
        """
        logger.debug(f"Forced refresh of order {order_id}")
        return await self._fetch(order_id, reuse_gig=False)

    async def invalidate(self, order_id: int) -> OrderSnapshot:
        """Push hint (e.g. from an event log listener): drop the cached gig and refresh."""
        cached = self._snapshots.get(order_id)
        if cached is not None:
            self._gigs.pop(cached.order.gig_id, None)
        return await self.refresh(order_id)

    async def fetch_gigs(self, gig_ids: Iterable[int]) -> list[Gig]:
        """
        Fetch many gigs with bounded concurrency.

        Ids that do not exist are skipped. A GatewayError is raised as soon
        as one read fails; remaining reads are cancelled.
        """
        return await self._bulk("gig", list(gig_ids), self._load_gig)

    async def fetch_active_gigs(self, limit: Optional[int] = None) -> list[Gig]:
        """Fetch every active gig (optionally only the first ``limit`` ids)."""
        gig_ids = await self._gateway_read(self.gateway.get_all_active_gig_ids)
        if limit is not None:
            gig_ids = gig_ids[:limit]
        return await self.fetch_gigs(gig_ids)

    async def fetch_orders(self, order_ids: Iterable[int]) -> list[OrderSnapshot]:
        """Fetch many orders with bounded concurrency; missing ids are skipped."""
        return await self._bulk("order", list(order_ids), self.fetch)

    async def _bulk(
        self,
        kind: str,
        ids: list[int],
        loader: Callable[[int], Awaitable[T]],
    ) -> list[T]:
        async def load(record_id: int) -> Optional[T]:
            try:
                return await loader(record_id)
            except NotFoundError:
                logger.info(f"Skipping {kind} {record_id}: not found")
                return None

        tasks = [asyncio.ensure_future(load(record_id)) for record_id in ids]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return [result for result in results if result is not None]

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def start_polling(
        self,
        order_id: int,
        interval: Optional[float] = None,
        on_change: Optional[OnChange] = None,
        *,
        on_error: Optional[OnError] = None,
        immediate: bool = False,
    ) -> PollingSubscription:
        """
        Start polling an order in the background.

        Args:
            order_id: Order id
            interval: Seconds between ticks (defaults to ``poll_interval``)
            on_change: Called with each LifecycleEvent (sync or async)
            on_error: Called with (order_id, error) for failed ticks;
                polling continues with backoff
            immediate: Run the first tick without waiting

        Returns:
            Subscription handle; pass it to ``stop_polling``

        Raises:
            ValueError: If ``interval`` is not positive
        """
        if interval is None:
            interval = self.poll_interval
        elif interval <= 0:
            raise ValueError("interval must be positive")
        subscription = PollingSubscription(order_id, interval, on_change, on_error)
        cached = self._snapshots.get(order_id)
        if cached is not None and cached.order.is_terminal:
            subscription._mark_stopped("terminal")
            return subscription

        self._subscriptions.setdefault(order_id, set()).add(subscription)
        subscription._task = asyncio.create_task(
            self._poll(subscription, immediate),
            name=f"poll-order-{order_id}",
        )
        logger.debug(f"Started polling order {order_id} every {subscription.interval}s")
        return subscription

    async def stop_polling(self, subscription: PollingSubscription) -> None:
        """Stop a subscription; no further ticks fire once this returns."""
        subscription._mark_stopped("stopped")
        self._discard(subscription)
        task = subscription._task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @contextlib.asynccontextmanager
    async def polling(
        self,
        order_id: int,
        interval: Optional[float] = None,
        on_change: Optional[OnChange] = None,
        **kwargs: Any,
    ) -> AsyncIterator[PollingSubscription]:
        """Scoped polling: the subscription is stopped when the block exits."""
        subscription = self.start_polling(order_id, interval, on_change, **kwargs)
        try:
            yield subscription
        finally:
            await self.stop_polling(subscription)

    def subscriptions(self, order_id: int) -> list[PollingSubscription]:
        return list(self._subscriptions.get(order_id, ()))

    async def aclose(self) -> None:
        """Stop every polling subscription."""
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                await self.stop_polling(subscription)

    def _discard(self, subscription: PollingSubscription) -> None:
        subscriptions = self._subscriptions.get(subscription.order_id)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.order_id]

    def _stop_terminal(self, order_id: int) -> None:
        subscriptions = self._subscriptions.pop(order_id, set())
        if subscriptions:
            logger.info(f"Order {order_id} released, stopping {len(subscriptions)} subscription(s)")
        current = asyncio.current_task()
        for subscription in subscriptions:
            subscription._mark_stopped("terminal")
            task = subscription._task
            if task is not None and task is not current and not task.done():
                task.cancel()

    async def _emit(self, event: LifecycleEvent) -> None:
        for subscription in list(self._subscriptions.get(event.order_id, ())):
            if subscription.active and subscription.on_change is not None:
                await _invoke(subscription.on_change, event)

    def _next_delay(self, interval: float, failures: int) -> float:
        delay = min(interval * self.poll_backoff_factor**failures, max(self.poll_max_interval, interval))
        if self.poll_jitter:
            delay *= 1 + self._rng.uniform(-self.poll_jitter, self.poll_jitter)
        return delay

    async def _poll(self, subscription: PollingSubscription, immediate: bool) -> None:
        order_id = subscription.order_id
        failures = 0
        first = True
        try:
            while subscription.active:
                if not (first and immediate):
                    await asyncio.sleep(self._next_delay(subscription.interval, failures))
                first = False
                if not subscription.active:
                    break
                if self.is_fetching(order_id):
                    subscription.skipped_ticks += 1
                    logger.debug(f"Skipping tick for order {order_id}: fetch already in flight")
                    continue

                subscription.ticks += 1
                try:
                    await self._fetch(order_id, reuse_gig=True)
                    failures = 0
                except GigEscrowError as e:
                    failures += 1
                    subscription.errors += 1
                    if subscription.on_error is not None:
                        await _invoke(subscription.on_error, order_id, e)
                    else:
                        logger.warning(f"Polling order {order_id} failed: {e}")
        finally:
            subscription._mark_stopped("stopped")
            self._discard(subscription)
