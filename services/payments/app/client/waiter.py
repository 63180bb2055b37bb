"""Client-side view of an in-flight payment.

The waiter never decides payment state itself: it initiates the push through
the API and then observes the order's stored payment status by polling. A
timeout only ends the *wait*; the order stays pending on the server and the
reconciler can still settle it when the callback lands.
"""

import asyncio
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Protocol

from app.application.schemas import PaymentStatusRead
from app.core_settings import Settings
from app.domain.errors import InvalidTransition, PaymentError
from app.domain.models import PaymentStatus
from shared.core import get_logger
from .polling import PollingTask

logger = get_logger(__name__)

class WaiterState(str, Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

TRANSITIONS: Dict[WaiterState, FrozenSet[WaiterState]] = {
    WaiterState.IDLE: frozenset({WaiterState.INITIATING}),
    WaiterState.INITIATING: frozenset({
        WaiterState.AWAITING_CONFIRMATION, WaiterState.FAILED, WaiterState.IDLE,
    }),
    WaiterState.AWAITING_CONFIRMATION: frozenset({
        WaiterState.CONFIRMED, WaiterState.FAILED, WaiterState.TIMED_OUT, WaiterState.IDLE,
    }),
    WaiterState.TIMED_OUT: frozenset({
        WaiterState.AWAITING_CONFIRMATION, WaiterState.INITIATING,
        WaiterState.CONFIRMED, WaiterState.FAILED, WaiterState.IDLE,
    }),
    WaiterState.FAILED: frozenset({
        WaiterState.AWAITING_CONFIRMATION, WaiterState.INITIATING,
        WaiterState.CONFIRMED, WaiterState.IDLE,
    }),
    WaiterState.CONFIRMED: frozenset({WaiterState.IDLE}),
}

# States in which nothing is running on the waiter's behalf
SETTLED = frozenset({
    WaiterState.IDLE, WaiterState.CONFIRMED, WaiterState.FAILED, WaiterState.TIMED_OUT,
})

MESSAGES = {
    WaiterState.INITIATING: "Sending payment request to your phone...",
    WaiterState.AWAITING_CONFIRMATION: "Check your phone and enter your M-Pesa PIN to complete the payment.",
    WaiterState.CONFIRMED: "Payment received. Thank you!",
    WaiterState.FAILED: "Payment failed or was cancelled. Please try again.",
    WaiterState.TIMED_OUT: (
        "We have not received confirmation yet. If you paid, it will show up shortly; "
        "otherwise try again."
    ),
}

class PaymentApi(Protocol):
    async def initiate(self, order_id: int, phone_number: str) -> str: ...

    async def payment_status(self, order_id: int) -> PaymentStatusRead: ...

Listener = Callable[["PaymentWaiter"], None]

class PaymentWaiter:
    def __init__(self, api: PaymentApi, interval: float = 5.0, timeout: float = 120.0):
        self.api = api
        self.interval = interval
        self.timeout = timeout
        self.state = WaiterState.IDLE
        self.message: Optional[str] = None
        self.order_id: Optional[int] = None
        self.phone_number: Optional[str] = None
        self.checkout_request_id: Optional[str] = None
        self._poller: Optional[PollingTask] = None
        self._listeners: List[Listener] = []
        self._settled = asyncio.Event()
        self._settled.set()

    @classmethod
    def from_settings(cls, api: PaymentApi, settings: Settings) -> "PaymentWaiter":
        return cls(
            api,
            interval=settings.PAYMENT_POLL_INTERVAL_SECONDS,
            timeout=settings.PAYMENT_WAIT_TIMEOUT_SECONDS,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def polling(self) -> bool:
        return self._poller is not None and self._poller.running

    def _transition(self, new: WaiterState, message: Optional[str] = None) -> None:
        if new == self.state:
            self.message = message or self.message
            return
        if new not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot go from {self.state.value} to {new.value}")

        logger.info(
            "Payment waiter state changed",
            extra={'extra_fields': {
                'order_id': self.order_id,
                'from_state': self.state.value,
                'to_state': new.value,
            }},
        )
        self.state = new
        self.message = message or MESSAGES.get(new)
        if new in SETTLED:
            self._settled.set()
        else:
            self._settled.clear()
        for listener in list(self._listeners):
            listener(self)

    async def start(self, order_id: int, phone_number: str) -> WaiterState:
        """Send the push and begin watching the order. Returns once polling has begun (or failed to)."""
        if WaiterState.INITIATING not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot start from state {self.state.value}")
        # Listeners see the new order from the first transition on
        self.order_id = order_id
        self.phone_number = phone_number
        self.checkout_request_id = None
        self._transition(WaiterState.INITIATING)
        await self._initiate()
        return self.state

    async def wait(self) -> WaiterState:
        await self._settled.wait()
        return self.state

    def cancel(self) -> None:
        """Stop watching. The push, if any, is not revoked."""
        if self.state != WaiterState.AWAITING_CONFIRMATION:
            raise InvalidTransition(f"Nothing to cancel in state {self.state.value}")
        self._stop_polling()
        self._transition(WaiterState.IDLE, "Payment check cancelled.")

    async def retry(self) -> WaiterState:
        """Read the stored status before acting, so a retry never sends a second push for a paid order."""
        if self.state not in (WaiterState.TIMED_OUT, WaiterState.FAILED):
            raise InvalidTransition(f"Cannot retry from state {self.state.value}")
        if self.order_id is None:
            raise InvalidTransition("No payment to retry")

        try:
            status = await self.api.payment_status(self.order_id)
        except PaymentError as e:
            self.message = e.user_message
            return self.state

        if status.payment_status == PaymentStatus.PAID:
            self._transition(WaiterState.CONFIRMED)
        elif status.payment_status == PaymentStatus.FAILED:
            self._transition(WaiterState.FAILED)
        elif status.awaiting_callback:
            self._transition(WaiterState.AWAITING_CONFIRMATION)
            self._start_polling()
        else:
            self._transition(WaiterState.INITIATING)
            await self._initiate()
        return self.state

    def reset(self) -> None:
        if self.state not in SETTLED:
            raise InvalidTransition(f"Cannot reset while {self.state.value}")
        self._transition(WaiterState.IDLE)
        self.order_id = None
        self.phone_number = None
        self.checkout_request_id = None
        self.message = None

    async def _initiate(self) -> None:
        try:
            self.checkout_request_id = await self.api.initiate(self.order_id, self.phone_number)
        except PaymentError as e:
            logger.warning(
                "Payment initiation failed",
                extra={'extra_fields': {'order_id': self.order_id, 'error': str(e)}},
            )
            self._transition(WaiterState.FAILED, e.user_message)
            return
        self._transition(WaiterState.AWAITING_CONFIRMATION)
        self._start_polling()

    def _start_polling(self) -> None:
        self._stop_polling()
        self._poller = PollingTask(
            self._poll,
            interval=self.interval,
            timeout=self.timeout,
            on_timeout=self._on_timeout,
        )
        self._poller.start()

    def _stop_polling(self) -> None:
        if self._poller is not None:
            self._poller.stop()
            self._poller = None

    async def _poll(self) -> None:
        status = await self.api.payment_status(self.order_id)
        if self.state != WaiterState.AWAITING_CONFIRMATION:
            return
        if status.payment_status == PaymentStatus.PAID:
            self._stop_polling()
            self._transition(WaiterState.CONFIRMED)
        elif status.payment_status == PaymentStatus.FAILED:
            self._stop_polling()
            self._transition(WaiterState.FAILED)

    def _on_timeout(self) -> None:
        if self.state != WaiterState.AWAITING_CONFIRMATION:
            return
        self._poller = None
        logger.info(
            "Stopped waiting for payment confirmation",
            extra={'extra_fields': {
                'order_id': self.order_id,
                'checkout_request_id': self.checkout_request_id,
            }},
        )
        self._transition(WaiterState.TIMED_OUT)
