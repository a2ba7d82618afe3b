"""
Escrow payment submission.

Each order id gets one state machine:

    IDLE -> SUBMITTING -> AWAITING_CONFIRMATION -> CONFIRMED | FAILED

A ``submit`` while a machine is submitting, awaiting confirmation or
already confirmed issues no gateway call and returns that machine's result.
From FAILED a new ``submit`` restarts at SUBMITTING. Nothing is retried
automatically.

After a confirmed receipt the reconciler is told to refresh the order
right away, so views see the paid state without waiting for the next tick.

Example:
    >>> flow = EscrowPaymentFlow(gateway, reconciler)
    >>> result = await flow.submit(7)
    >>> if not result.success:
    ...     print(result.error.message, result.error.raw_message)
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from gig_escrow_sdk.amounts import EVM_DECIMALS, to_base_units
from gig_escrow_sdk.errors import classify_error
from gig_escrow_sdk.exceptions import (
    ContractRevertError,
    GigEscrowError,
    InvalidStateError,
    NetworkTimeoutError,
    PaymentError,
    UnknownPaymentError,
)
from gig_escrow_sdk.gateway import ContractGateway, TxHandle
from gig_escrow_sdk.models import Gig, PaymentResult, PaymentState
from gig_escrow_sdk.reconciler import OrderStateReconciler

logger = logging.getLogger(__name__)

# States in which a new submission may start
RESTARTABLE_STATES = (PaymentState.IDLE, PaymentState.FAILED)
TERMINAL_STATES = (PaymentState.CONFIRMED, PaymentState.FAILED)

OnStateChange = Callable[[str, PaymentState, PaymentState], None]


class _PaymentMachine:
    def __init__(self, key: str):
        self.key = key
        self.result = PaymentResult(key=key, state=PaymentState.IDLE)
        self.task: Optional["asyncio.Task[PaymentResult]"] = None

    @property
    def state(self) -> PaymentState:
        return self.result.state


class EscrowPaymentFlow:
    """
    Drives escrow payments through the contract gateway.

    Args:
        gateway: Contract gateway (same instance the reconciler uses)
        reconciler: Reconciler refreshed after confirmation
        receipt_timeout: Seconds to wait for a receipt; defaults to the
            gateway's ``receipt_timeout``
        on_state_change: Called with (key, old_state, new_state)
    """

    def __init__(
        self,
        gateway: ContractGateway,
        reconciler: OrderStateReconciler,
        *,
        receipt_timeout: Optional[float] = None,
        on_state_change: Optional[OnStateChange] = None,
    ):
        self.gateway = gateway
        self.reconciler = reconciler
        self.receipt_timeout = receipt_timeout or getattr(gateway, "receipt_timeout", 120.0)
        self.on_state_change = on_state_change
        self._machines: dict[str, _PaymentMachine] = {}

    @staticmethod
    def order_key(order_id: int) -> str:
        return f"order:{order_id}"

    @staticmethod
    def gig_key(gig_id: int) -> str:
        return f"gig:{gig_id}"

    def state(self, order_id: int) -> PaymentState:
        machine = self._machines.get(self.order_key(order_id))
        return machine.state if machine else PaymentState.IDLE

    def result(self, order_id: int) -> Optional[PaymentResult]:
        machine = self._machines.get(self.order_key(order_id))
        return machine.result if machine else None

    def reset(self, order_id: int) -> None:
        """
        Forget a finished submission so the order reads as IDLE again.

        Finished machines are kept until reset so that a repeated ``submit``
        of a confirmed order returns the stored result instead of paying
        twice. Use ``clear_finished`` to drop all of them at once.
        """
        key = self.order_key(order_id)
        machine = self._machines.get(key)
        if machine is None:
            return
        if machine.state not in TERMINAL_STATES:
            raise InvalidStateError(f"Cannot reset {key} while {machine.state.value}")
        del self._machines[key]

    def clear_finished(self) -> int:
        """Drop every CONFIRMED or FAILED machine; returns how many were dropped."""
        finished = [key for key, m in self._machines.items() if m.state in TERMINAL_STATES]
        for key in finished:
            del self._machines[key]
        return len(finished)

    async def submit(self, order_id: int) -> PaymentResult:
        """
        Pay an order into escrow.

        Args:
            order_id: Order to pay

        Returns:
            PaymentResult in CONFIRMED or FAILED state (or the result of the
            submission already in progress)
        """
        return await self._start(
            self.order_key(order_id),
            lambda: self.gateway.pay_order(order_id),
            refresh_order_id=order_id,
        )

    async def order_gig(self, gig: Gig) -> PaymentResult:
        """
        Order a gig directly, paying its price into escrow.

        Raises:
            PrecisionError: If the gig price does not fit 18 decimals
        """
        payment_amount = to_base_units(gig.price, EVM_DECIMALS)
        return await self._start(
            self.gig_key(gig.id),
            lambda: self.gateway.order_gig(gig.id, payment_amount),
            refresh_order_id=None,
        )

    async def _start(
        self,
        key: str,
        broadcast: Callable[[], Awaitable[TxHandle]],
        refresh_order_id: Optional[int],
    ) -> PaymentResult:
        machine = self._machines.get(key)
        if machine is not None and machine.state not in RESTARTABLE_STATES:
            if machine.task is not None and not machine.task.done():
                logger.info(f"Payment {key} already {machine.state.value}, joining it")
                return await asyncio.shield(machine.task)
            return machine.result

        if machine is None:
            machine = self._machines[key] = _PaymentMachine(key)
        attempts = machine.result.attempts + 1
        machine.result = PaymentResult(key=key, state=machine.result.state, attempts=attempts)
        # Leave IDLE/FAILED before the first await so concurrent calls see the guard
        self._transition(machine, PaymentState.SUBMITTING)
        machine.task = asyncio.ensure_future(self._drive(machine, broadcast, refresh_order_id))
        return await asyncio.shield(machine.task)

    async def _drive(
        self,
        machine: _PaymentMachine,
        broadcast: Callable[[], Awaitable[TxHandle]],
        refresh_order_id: Optional[int],
    ) -> PaymentResult:
        try:
            return await self._attempt(machine, broadcast, refresh_order_id)
        finally:
            if machine.state not in TERMINAL_STATES:
                self._fail(machine, UnknownPaymentError("Payment submission was interrupted"))

    async def _attempt(
        self,
        machine: _PaymentMachine,
        broadcast: Callable[[], Awaitable[TxHandle]],
        refresh_order_id: Optional[int],
    ) -> PaymentResult:
        result = machine.result
        try:
            handle = await broadcast()
        except Exception as e:
            return self._fail(machine, classify_error(e))

        result.tx_hash = handle.hash
        self._transition(machine, PaymentState.AWAITING_CONFIRMATION)

        try:
            receipt = await asyncio.wait_for(handle.wait(), timeout=self.receipt_timeout)
        except asyncio.TimeoutError:
            return self._fail(
                machine,
                NetworkTimeoutError(raw_message=f"No receipt for {handle.hash} after {self.receipt_timeout}s"),
            )
        except Exception as e:
            return self._fail(machine, classify_error(e))

        result.receipt = receipt
        if receipt.status != 1:
            return self._fail(machine, ContractRevertError(raw_message=f"Transaction {receipt.hash} reverted"))

        self._transition(machine, PaymentState.CONFIRMED)
        logger.info(f"Payment {machine.key} confirmed in {receipt.hash}")

        if refresh_order_id is not None:
            try:
                await self.reconciler.refresh(refresh_order_id)
            except GigEscrowError as e:
                logger.warning(f"Refresh after payment {machine.key} failed: {e}")
        return result

    def _fail(self, machine: _PaymentMachine, error: PaymentError) -> PaymentResult:
        machine.result.error = error
        self._transition(machine, PaymentState.FAILED)
        logger.warning(f"Payment {machine.key} failed: {error}")
        return machine.result

    def _transition(self, machine: _PaymentMachine, new_state: PaymentState) -> None:
        old_state = machine.result.state
        machine.result.state = new_state
        machine.result.history.append(new_state)
        logger.debug(f"Payment {machine.key}: {old_state.value} -> {new_state.value}")
        if self.on_state_change is not None:
            try:
                self.on_state_change(machine.key, old_state, new_state)
            except Exception:
                logger.exception(f"on_state_change failed for {machine.key}")

    def pending(self) -> list[str]:
        """Keys of submissions currently in flight."""
        return [key for key, m in self._machines.items() if m.state not in TERMINAL_STATES + RESTARTABLE_STATES]

    async def wait_all(self) -> list[PaymentResult]:
        """Wait for every in-flight submission to finish."""
        tasks = [m.task for m in self._machines.values() if m.task is not None and not m.task.done()]
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    def __repr__(self) -> str:
        return f"<EscrowPaymentFlow machines={len(self._machines)} pending={self.pending()}>"
