import asyncio
import logging

import pytest

from conftest import eventually, make_gig, make_order
from gig_escrow_sdk.exceptions import GatewayError, GatewayErrorKind, NotFoundError
from gig_escrow_sdk.models import OrderStatus
from gig_escrow_sdk.reconciler import OrderStateReconciler


class TestFetch:
    async def test_fetch_returns_order_and_gig(self, reconciler, gateway):
        snapshot = await reconciler.fetch(7)

        assert snapshot.order_id == 7
        assert snapshot.gig.title == "Logo design"
        assert snapshot.sequence_number == 1
        assert reconciler.get_cached(7) is snapshot

    async def test_sequence_numbers_increase(self, reconciler):
        first = await reconciler.fetch(7)
        second = await reconciler.fetch(7)
        assert second.sequence_number > first.sequence_number

    async def test_missing_order(self, reconciler):
        with pytest.raises(NotFoundError) as exc:
            await reconciler.fetch(404)
        assert exc.value.record_id == 404
        assert reconciler.get_cached(404) is None

    async def test_unclassified_gateway_failure_is_wrapped(self, reconciler, gateway):
        gateway.read_errors[7] = RuntimeError("socket closed")
        with pytest.raises(GatewayError) as exc:
            await reconciler.fetch(7)
        assert exc.value.kind == GatewayErrorKind.OTHER
        assert exc.value.raw_message == "socket closed"

    async def test_out_of_order_responses_keep_newest(self, reconciler, gateway, caplog):
        older, newer = asyncio.Event(), asyncio.Event()
        gateway.scripted_orders = [
            (older, make_order(is_paid=False)),
            (newer, make_order(is_paid=True)),
        ]

        first = asyncio.create_task(reconciler.fetch(7))
        await asyncio.sleep(0)
        second = asyncio.create_task(reconciler.fetch(7))
        await asyncio.sleep(0)

        newer.set()
        latest = await second
        assert latest.sequence_number == 2

        with caplog.at_level(logging.DEBUG, logger="gig_escrow_sdk.reconciler"):
            older.set()
            returned = await first

        assert returned is latest
        assert reconciler.get_cached(7).order.is_paid is True
        assert reconciler.get_cached(7).sequence_number == 2
        assert "Discarded order 7 response #1 (cached #2)" in caplog.text

    async def test_in_order_responses_keep_higher_sequence(self, reconciler, gateway):
        for _ in range(4):
            await reconciler.fetch(7)
        first_gate, second_gate = asyncio.Event(), asyncio.Event()
        gateway.scripted_orders = [
            (first_gate, make_order(is_paid=True)),
            (second_gate, make_order(is_paid=True, is_completed=True)),
        ]

        b = asyncio.create_task(reconciler.fetch(7))
        await asyncio.sleep(0)
        a = asyncio.create_task(reconciler.fetch(7))
        await asyncio.sleep(0)

        first_gate.set()
        assert (await b).sequence_number == 5
        second_gate.set()
        assert (await a).sequence_number == 6

        cached = reconciler.get_cached(7)
        assert cached.sequence_number == 6
        assert cached.order.is_completed is True

    async def test_refresh_wins_over_tick_in_flight(self, reconciler, gateway):
        tick_gate, refresh_gate = asyncio.Event(), asyncio.Event()
        gateway.scripted_orders = [
            (tick_gate, make_order()),
            (refresh_gate, make_order(is_paid=True)),
        ]

        tick = asyncio.create_task(reconciler.fetch(7))
        await asyncio.sleep(0)
        refresh = asyncio.create_task(reconciler.refresh(7))
        await asyncio.sleep(0)

        refresh_gate.set()
        await refresh
        tick_gate.set()
        await tick

        assert reconciler.get_cached(7).order.is_paid is True

    async def test_invalidate_reloads_gig(self, reconciler, gateway):
        await reconciler.fetch(7)
        gateway.gigs[1] = make_gig(title="Logo design v2")

        snapshot = await reconciler.invalidate(7)
        assert snapshot.gig.title == "Logo design v2"

    async def test_evict(self, reconciler):
        await reconciler.fetch(7)
        reconciler.evict(7)
        assert reconciler.get_cached(7) is None

    async def test_evict_releases_gig_and_sequence(self, reconciler, gateway):
        gateway.add_order(make_order(8))
        await reconciler.fetch(7)
        await reconciler.fetch(8)

        reconciler.evict(7)
        assert 1 in reconciler._gigs
        assert 7 not in reconciler._sequences

        reconciler.evict(8)
        assert 1 not in reconciler._gigs
        assert (await reconciler.fetch(7)).sequence_number == 1

    async def test_cleared_flag_from_lagging_node_is_ignored(self, reconciler, gateway):
        events = []
        subscription = reconciler.start_polling(7, interval=60, on_change=events.append)

        await reconciler.fetch(7)
        gateway.set_order(7, is_paid=True)
        paid = await reconciler.fetch(7)

        gateway.set_order(7, is_paid=False)
        returned = await reconciler.fetch(7)
        assert returned is paid
        assert reconciler.get_cached(7).order.is_paid is True

        gateway.set_order(7, is_paid=True)
        await reconciler.fetch(7)

        assert [(e.previous_status, e.new_status) for e in events] == [
            (OrderStatus.PENDING, OrderStatus.PAID)
        ]
        await reconciler.stop_polling(subscription)


class TestPolling:
    async def test_emits_once_per_change(self, reconciler, gateway):
        events = []
        subscription = reconciler.start_polling(7, on_change=events.append, immediate=True)

        await eventually(lambda: subscription.ticks >= 3)
        assert events == []

        gateway.set_order(7, is_paid=True)
        await eventually(lambda: len(events) == 1)
        ticks = subscription.ticks
        await eventually(lambda: subscription.ticks >= ticks + 3)

        assert len(events) == 1
        event = events[0]
        assert event.order_id == 7
        assert event.changed_fields == ("is_paid",)
        assert event.previous_status == OrderStatus.PENDING
        assert event.new_status == OrderStatus.PAID
        assert event.new_snapshot.sequence_number > event.previous_snapshot.sequence_number

        await reconciler.stop_polling(subscription)

    async def test_async_callbacks_are_awaited(self, reconciler, gateway):
        seen = []

        async def on_change(event):
            await asyncio.sleep(0)
            seen.append(event.changed_fields)

        subscription = reconciler.start_polling(7, on_change=on_change, immediate=True)
        await eventually(lambda: subscription.ticks >= 1)
        gateway.set_order(7, is_paid=True, is_completed=True)
        await eventually(lambda: seen)

        assert seen == [("is_paid", "is_completed")]
        await reconciler.stop_polling(subscription)

    async def test_stops_when_payment_released(self, reconciler, gateway):
        events = []
        subscription = reconciler.start_polling(7, on_change=events.append, immediate=True)
        await eventually(lambda: subscription.ticks >= 1)

        gateway.set_order(7, is_paid=True, is_completed=True, payment_released=True)
        reason = await asyncio.wait_for(subscription.wait(), timeout=2)

        assert reason == "terminal"
        assert not subscription.active
        assert events[-1].new_status == OrderStatus.RELEASED
        assert reconciler.subscriptions(7) == []

        ticks = subscription.ticks
        await asyncio.sleep(0.05)
        assert subscription.ticks == ticks

    async def test_polling_released_order_never_starts(self, reconciler, gateway):
        gateway.set_order(7, is_paid=True, is_completed=True, payment_released=True)
        await reconciler.fetch(7)

        subscription = reconciler.start_polling(7)
        assert subscription.stop_reason == "terminal"
        assert reconciler.subscriptions(7) == []

    async def test_tick_skipped_while_fetch_in_flight(self, reconciler, gateway):
        gateway.read_delay = 0.1
        manual = asyncio.create_task(reconciler.fetch(7))
        await asyncio.sleep(0)
        assert reconciler.is_fetching(7)

        subscription = reconciler.start_polling(7, interval=0.01)
        await manual

        assert subscription.skipped_ticks >= 1
        assert gateway.calls["get_order"] >= 1
        await reconciler.stop_polling(subscription)

    async def test_errors_reported_and_polling_continues(self, reconciler, gateway):
        errors = []
        gateway.read_errors[7] = GatewayError(GatewayErrorKind.TIMEOUT)
        subscription = reconciler.start_polling(
            7, on_error=lambda order_id, error: errors.append((order_id, error)), immediate=True
        )

        await eventually(lambda: len(errors) >= 2)
        assert subscription.active
        assert errors[0][0] == 7
        assert errors[0][1].kind == GatewayErrorKind.TIMEOUT

        del gateway.read_errors[7]
        await eventually(lambda: reconciler.get_cached(7) is not None)
        assert subscription.errors >= 2
        await reconciler.stop_polling(subscription)

    async def test_errors_logged_without_handler(self, reconciler, gateway, caplog):
        gateway.read_errors[7] = GatewayError(GatewayErrorKind.CONNECTION_REFUSED)
        with caplog.at_level(logging.WARNING, logger="gig_escrow_sdk.reconciler"):
            subscription = reconciler.start_polling(7, immediate=True)
            await eventually(lambda: subscription.errors >= 1)
            await reconciler.stop_polling(subscription)

        assert "Polling order 7 failed" in caplog.text

    async def test_no_ticks_after_stop(self, reconciler, gateway):
        subscription = reconciler.start_polling(7, immediate=True)
        await eventually(lambda: subscription.ticks >= 2)

        await reconciler.stop_polling(subscription)
        calls = gateway.calls["get_order"]
        await asyncio.sleep(0.05)

        assert gateway.calls["get_order"] == calls
        assert subscription.stop_reason == "stopped"
        assert reconciler.subscriptions(7) == []

    async def test_scoped_polling(self, reconciler):
        async with reconciler.polling(7, immediate=True) as subscription:
            await eventually(lambda: subscription.ticks >= 1)
            assert reconciler.subscriptions(7) == [subscription]

        assert not subscription.active
        assert reconciler.subscriptions(7) == []

    @pytest.mark.parametrize("interval", [0, -1])
    async def test_non_positive_interval_rejected(self, reconciler, interval):
        with pytest.raises(ValueError):
            reconciler.start_polling(7, interval=interval)
        assert reconciler.subscriptions(7) == []

    async def test_evict_refused_while_polling(self, reconciler):
        subscription = reconciler.start_polling(7, immediate=True)
        with pytest.raises(RuntimeError):
            reconciler.evict(7)
        await reconciler.stop_polling(subscription)

    async def test_callback_failure_does_not_stop_polling(self, reconciler, gateway):
        def on_change(event):
            raise RuntimeError("boom")

        subscription = reconciler.start_polling(7, on_change=on_change, immediate=True)
        await eventually(lambda: subscription.ticks >= 1)
        gateway.set_order(7, is_paid=True)
        ticks = subscription.ticks
        await eventually(lambda: subscription.ticks >= ticks + 2)

        assert subscription.active
        await reconciler.stop_polling(subscription)


class TestBackoff:
    def test_delay_grows_and_caps(self, gateway):
        reconciler = OrderStateReconciler(
            gateway, poll_interval=1, poll_jitter=0, poll_backoff_factor=2, poll_max_interval=5
        )
        assert [reconciler._next_delay(1, n) for n in range(5)] == [1, 2, 4, 5, 5]

    def test_jitter_stays_in_range(self, gateway):
        reconciler = OrderStateReconciler(gateway, poll_interval=10, poll_jitter=0.2)
        delays = [reconciler._next_delay(10, 0) for _ in range(200)]
        assert all(8 <= delay <= 12 for delay in delays)

    @pytest.mark.parametrize(
        "kwargs",
        [{"poll_interval": 0}, {"poll_jitter": 1}, {"max_concurrent_reads": 0}],
    )
    def test_invalid_settings(self, gateway, kwargs):
        with pytest.raises(ValueError):
            OrderStateReconciler(gateway, **kwargs)


class TestBulk:
    async def test_concurrency_is_bounded(self, gateway):
        for gig_id in range(2, 21):
            gateway.add_gig(make_gig(gig_id))
        gateway.read_delay = 0.01
        reconciler = OrderStateReconciler(gateway, max_concurrent_reads=3)

        gigs = await reconciler.fetch_gigs(range(1, 21))

        assert [gig.id for gig in gigs] == list(range(1, 21))
        assert gateway.max_in_flight <= 3

    async def test_missing_ids_skipped(self, reconciler):
        gigs = await reconciler.fetch_gigs([1, 99])
        assert [gig.id for gig in gigs] == [1]

    async def test_gateway_error_surfaces(self, reconciler, gateway):
        gateway.add_gig(make_gig(2))
        gateway.gig_errors[2] = GatewayError(GatewayErrorKind.CONNECTION_REFUSED)
        with pytest.raises(GatewayError):
            await reconciler.fetch_gigs([1, 2])

    async def test_active_gigs_with_limit(self, reconciler, gateway):
        gateway.add_gig(make_gig(2))
        gateway.add_gig(make_gig(3, active=False))
        gateway.add_gig(make_gig(4))

        assert [gig.id for gig in await reconciler.fetch_active_gigs()] == [1, 2, 4]
        assert [gig.id for gig in await reconciler.fetch_active_gigs(limit=2)] == [1, 2]

    async def test_fetch_orders_skips_missing(self, reconciler, gateway):
        gateway.add_order(make_order(8))
        snapshots = await reconciler.fetch_orders([7, 8, 9])
        assert [snapshot.order_id for snapshot in snapshots] == [7, 8]
