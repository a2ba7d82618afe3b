"""Shared fixtures: an in-memory contract gateway and wired-up components."""

import asyncio
from collections import Counter
from typing import Any, Callable, Optional

import pytest

from gig_escrow_sdk.exceptions import NotFoundError
from gig_escrow_sdk.models import Gig, Order, Receipt
from gig_escrow_sdk.networks import HEDERA_TESTNET
from gig_escrow_sdk.payloads import PaymentPayloadBuilder
from gig_escrow_sdk.payment_flow import EscrowPaymentFlow
from gig_escrow_sdk.reconciler import OrderStateReconciler

CONTRACT = "0x" + "12" * 20
PROVIDER = "0x" + "ab" * 20
CLIENT = "0x" + "cd" * 20


class FakeTxHandle:
    def __init__(
        self,
        tx_hash: str,
        *,
        status: int = 1,
        error: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
        on_mined: Optional[Callable[[], None]] = None,
    ):
        self.hash = tx_hash
        self.status = status
        self.error = error
        self.gate = gate
        self.on_mined = on_mined

    async def wait(self) -> Receipt:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.status == 1 and self.on_mined is not None:
            self.on_mined()
        return Receipt(status=self.status, hash=self.hash)


class FakeGateway:
    """In-memory ContractGateway. Confirmed payOrder receipts mark the order paid."""

    receipt_timeout = 5.0

    def __init__(self) -> None:
        self.gigs: dict[int, Gig] = {}
        self.orders: dict[int, Order] = {}
        self.active_gig_ids: list[int] = []
        self.calls: Counter = Counter()

        self.read_delay = 0.0
        self.read_errors: dict[int, BaseException] = {}
        self.gig_errors: dict[int, BaseException] = {}
        self.scripted_orders: list[tuple[asyncio.Event, Order]] = []

        self.pay_gate: Optional[asyncio.Event] = None
        self.pay_error: Optional[BaseException] = None
        self.receipt_gate: Optional[asyncio.Event] = None
        self.receipt_status = 1
        self.receipt_error: Optional[BaseException] = None
        self.order_gig_amounts: list[tuple[int, int]] = []

        self.in_flight = 0
        self.max_in_flight = 0
        self._tx_counter = 0

    def add_gig(self, gig: Gig) -> Gig:
        self.gigs[gig.id] = gig
        if gig.active:
            self.active_gig_ids.append(gig.id)
        return gig

    def add_order(self, order: Order) -> Order:
        self.orders[order.id] = order
        return order

    def set_order(self, order_id: int, **changes: Any) -> Order:
        order = self.orders[order_id].model_copy(update=changes)
        self.orders[order_id] = order
        return order

    async def _read(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.read_delay:
                await asyncio.sleep(self.read_delay)
        finally:
            self.in_flight -= 1

    async def get_gig(self, gig_id: int) -> Gig:
        self.calls["get_gig"] += 1
        await self._read()
        if gig_id in self.gig_errors:
            raise self.gig_errors[gig_id]
        if gig_id not in self.gigs:
            raise NotFoundError("gig", gig_id)
        return self.gigs[gig_id]

    async def get_order(self, order_id: int) -> Order:
        self.calls["get_order"] += 1
        if self.scripted_orders:
            gate, order = self.scripted_orders.pop(0)
            await gate.wait()
            return order
        await self._read()
        if order_id in self.read_errors:
            raise self.read_errors[order_id]
        if order_id not in self.orders:
            raise NotFoundError("order", order_id)
        return self.orders[order_id]

    async def get_all_active_gig_ids(self) -> list[int]:
        self.calls["get_all_active_gig_ids"] += 1
        return list(self.active_gig_ids)

    def _next_hash(self) -> str:
        self._tx_counter += 1
        return "0x" + f"{self._tx_counter:064x}"

    async def pay_order(self, order_id: int) -> FakeTxHandle:
        self.calls["pay_order"] += 1
        if self.pay_gate is not None:
            await self.pay_gate.wait()
        if self.pay_error is not None:
            raise self.pay_error
        if order_id not in self.orders:
            raise NotFoundError("order", order_id)
        return FakeTxHandle(
            self._next_hash(),
            status=self.receipt_status,
            error=self.receipt_error,
            gate=self.receipt_gate,
            on_mined=lambda: self.set_order(order_id, is_paid=True),
        )

    async def order_gig(self, gig_id: int, payment_amount: int) -> FakeTxHandle:
        self.calls["order_gig"] += 1
        self.order_gig_amounts.append((gig_id, payment_amount))
        if self.pay_error is not None:
            raise self.pay_error
        return FakeTxHandle(self._next_hash(), status=self.receipt_status, error=self.receipt_error)


def make_gig(gig_id: int = 1, **overrides: Any) -> Gig:
    fields = dict(
        id=gig_id,
        provider=PROVIDER,
        title="Logo design",
        description="Vector logo with two revisions",
        price="1.5",
        category="Design & Creative",
        delivery_time="3 days",
    )
    fields.update(overrides)
    return Gig(**fields)


def make_order(order_id: int = 7, gig_id: int = 1, **overrides: Any) -> Order:
    fields = dict(
        id=order_id,
        gig_id=gig_id,
        client=CLIENT,
        provider=PROVIDER,
        amount="1.5",
        created_at=1_700_000_000,
    )
    fields.update(overrides)
    return Order(**fields)


@pytest.fixture
def gig() -> Gig:
    return make_gig()


@pytest.fixture
def order() -> Order:
    return make_order()


@pytest.fixture
def gateway(gig: Gig, order: Order) -> FakeGateway:
    fake = FakeGateway()
    fake.add_gig(gig)
    fake.add_order(order)
    return fake


@pytest.fixture
async def reconciler(gateway: FakeGateway):
    instance = OrderStateReconciler(gateway, poll_interval=0.01, poll_jitter=0, poll_max_interval=0.05)
    yield instance
    await instance.aclose()


@pytest.fixture
def flow(gateway: FakeGateway, reconciler: OrderStateReconciler) -> EscrowPaymentFlow:
    return EscrowPaymentFlow(gateway, reconciler)


@pytest.fixture
def builder() -> PaymentPayloadBuilder:
    return PaymentPayloadBuilder(HEDERA_TESTNET, CONTRACT)


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
