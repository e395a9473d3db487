"""
Checkout saga.

    created -> awaiting_payment -> verifying -> succeeded
                                            -> failed
                                            -> needs_address -> awaiting_address -> verifying ...

succeeded and failed are terminal. Every path publishes exactly one
CheckoutOutcome the UI can route on, and a confirmed payment is never
dropped: if the result is unknown it stays behind as a Pending Checkout.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

from pydantic import ValidationError as SchemaError

from ..api import routes
from ..errors import (
    ApiError,
    CheckoutError,
    EmptyCartError,
    InvalidAmountError,
    PaymentRejectedError,
    PendingCheckoutNotFoundError,
    TransientNetworkError,
    ValidationError,
)
from ..events import CART_CLEAR_REQUESTED
from .address import validate_address
from .schema import (
    CartItem,
    CheckoutOutcome,
    Coupon,
    OrderIntent,
    PaymentConfirmation,
    PendingCheckout,
    ShippingAddress,
    VerifyResult,
    to_minor_units,
)
from .verify import VERIFY_ATTEMPTS, VERIFY_BACKOFF, VERIFY_TIMEOUT, Sleep, build_verification_payload, verify_payment

if TYPE_CHECKING:
    from ..api.client import ApiClient
    from ..collectors.base import PaymentCollector
    from ..events import SignalBus
    from ..storage.pending import PendingCheckoutStore

logger = logging.getLogger(__name__)

MAX_RESUME_ATTEMPTS = 3

ADDRESS_REQUIRED_MESSAGE = "Please add a delivery address to complete your order"
UNREACHABLE_MESSAGE = "Network or server unreachable when verifying payment. Your payment is saved and can be resumed."
INCOMPLETE_CONFIRMATION_MESSAGE = (
    "Payment confirmation was incomplete and could not be verified. "
    "If you were charged, please contact support."
)


class CheckoutState(str, Enum):
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    VERIFYING = "verifying"
    NEEDS_ADDRESS = "needs_address"
    AWAITING_ADDRESS = "awaiting_address"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = frozenset({CheckoutState.SUCCEEDED, CheckoutState.FAILED})

_TRANSITIONS = {
    CheckoutState.CREATED: {CheckoutState.AWAITING_PAYMENT, CheckoutState.FAILED},
    CheckoutState.AWAITING_PAYMENT: {CheckoutState.VERIFYING, CheckoutState.FAILED},
    CheckoutState.VERIFYING: {CheckoutState.NEEDS_ADDRESS, CheckoutState.SUCCEEDED, CheckoutState.FAILED},
    CheckoutState.NEEDS_ADDRESS: {CheckoutState.AWAITING_ADDRESS, CheckoutState.FAILED},
    CheckoutState.AWAITING_ADDRESS: {CheckoutState.VERIFYING, CheckoutState.FAILED},
    CheckoutState.SUCCEEDED: set(),
    CheckoutState.FAILED: set(),
}


def _missing_fields(confirmation: PaymentConfirmation) -> list[str]:
    return [name for name in ("payment_id", "order_id", "signature") if not getattr(confirmation, name)]


class CheckoutSaga:
    """One checkout, driven step by step. Not shared between instances."""

    def __init__(
        self,
        api: ApiClient,
        pending_store: PendingCheckoutStore,
        events: SignalBus,
        collector: PaymentCollector | None = None,
        *,
        verify_attempts: int = VERIFY_ATTEMPTS,
        backoff: float = VERIFY_BACKOFF,
        verify_timeout: float = VERIFY_TIMEOUT,
        max_resume_attempts: int = MAX_RESUME_ATTEMPTS,
        sleep: Sleep = asyncio.sleep,
    ):
        self._api = api
        self._pending_store = pending_store
        self._events = events
        self._collector = collector
        self._verify_attempts = verify_attempts
        self._backoff = backoff
        self._verify_timeout = verify_timeout
        self._max_resume_attempts = max_resume_attempts
        self._sleep = sleep

        self._state = CheckoutState.CREATED
        self._items: list[CartItem] = []
        self._total_amount = 0
        self._coupon: Coupon | None = None
        self._intent: OrderIntent | None = None
        self._confirmation: PaymentConfirmation | None = None
        self._pending: PendingCheckout | None = None
        self._outcome: CheckoutOutcome | None = None
        self._settled = asyncio.Event()

    @classmethod
    def from_pending(
        cls,
        pending: PendingCheckout,
        api: ApiClient,
        pending_store: PendingCheckoutStore,
        events: SignalBus,
        **options: Any,
    ) -> "CheckoutSaga":
        """Rebuild a saga that is waiting for an address, e.g. after a reload."""
        saga = cls(api, pending_store, events, **options)
        saga._state = CheckoutState.AWAITING_ADDRESS
        saga._items = list(pending.items)
        saga._total_amount = pending.total_amount
        saga._coupon = pending.coupon
        saga._confirmation = pending.confirmation
        saga._pending = pending
        return saga

    @property
    def state(self) -> CheckoutState:
        return self._state

    @property
    def outcome(self) -> CheckoutOutcome | None:
        return self._outcome

    @property
    def intent(self) -> OrderIntent | None:
        return self._intent

    @property
    def reference(self) -> str | None:
        """Server order reference once known, else the provider order id."""
        if self._pending is not None:
            return self._pending.order_ref
        if self._intent is not None:
            return self._intent.order_ref or self._intent.provider_order_id
        return None

    def snapshot(self) -> dict:
        return {
            "state": self._state.value,
            "reference": self.reference,
            "outcome": self._outcome.to_dict() if self._outcome else None,
        }

    async def wait(self, timeout: float | None = None) -> CheckoutOutcome | None:
        """
        Wait for the next routable outcome. Returns None on timeout.

        Stopping the wait never cancels the payment widget or a verification
        in progress; the saga keeps going on its own.
        """
        try:
            await asyncio.wait_for(self._settled.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        return self._outcome

    # ------------------------------------------------------------------
    # Step 1-2: intent and payment collection
    # ------------------------------------------------------------------

    async def start(
        self,
        cart: Iterable[CartItem | dict],
        total: Decimal | float | str,
        coupon: Coupon | dict | None = None,
        prefill: dict | None = None,
    ) -> OrderIntent:
        """Create the order intent and open the payment widget. Returns without waiting for payment."""
        if self._state is not CheckoutState.CREATED:
            raise CheckoutError(f"Checkout already started (state: {self._state.value})")

        try:
            items = [i if isinstance(i, CartItem) else CartItem.model_validate(i) for i in cart or ()]
            if coupon is not None and not isinstance(coupon, Coupon):
                coupon = Coupon.model_validate(coupon)
        except SchemaError as e:
            raise ValidationError(f"Invalid cart: {e.errors()[0]['msg']}") from e
        if not items:
            raise EmptyCartError("Your cart is empty")
        amount = to_minor_units(total)
        if amount <= 0:
            raise InvalidAmountError("Invalid order amount")
        if self._collector is None:
            raise CheckoutError("No payment collector configured")

        self._items = items
        self._total_amount = amount
        self._coupon = coupon

        logger.info("Creating order intent for %d item(s), %d minor units", len(items), amount)
        try:
            data = await self._api.post(routes.CREATE_INTENT, json={
                "totalAmount": amount,
                "cartItems": [item.to_payload() for item in items],
                "couponApplied": coupon.to_payload() if coupon else None,
            })
            self._intent = OrderIntent.from_response(data if isinstance(data, dict) else {}, amount)
        except (ApiError, TransientNetworkError) as e:
            self._fail(e.message or "Failed to initiate payment")
            raise

        self._transition(CheckoutState.AWAITING_PAYMENT)
        await self._collector.open(
            self._intent,
            self.on_payment_confirmed,
            self.on_payment_dismissed,
            prefill=prefill,
        )
        return self._intent

    async def on_payment_confirmed(self, confirmation: PaymentConfirmation) -> CheckoutOutcome | None:
        """Continuation for the payment widget. Safe to call late or more than once."""
        if self._confirmation is not None:
            logger.warning("Ignoring duplicate payment confirmation %s", confirmation.payment_id)
            return self._outcome

        missing = _missing_fields(confirmation)
        if missing:
            logger.error("Payment confirmation without %s for order %s", ", ".join(missing), confirmation.order_id)
            if self._state is CheckoutState.AWAITING_PAYMENT:
                return self._fail(INCOMPLETE_CONFIRMATION_MESSAGE)
            return self._outcome

        if self._state in TERMINAL_STATES:
            return self._keep_late_confirmation(confirmation)

        if self._state is not CheckoutState.AWAITING_PAYMENT:
            raise CheckoutError(f"Payment confirmation not expected (state: {self._state.value})")

        self._confirmation = confirmation
        self._transition(CheckoutState.VERIFYING)
        payload = build_verification_payload(confirmation, self._items, self._total_amount, self._coupon)
        return await self._verify(payload, None)

    async def on_payment_dismissed(self) -> None:
        if self._state is CheckoutState.AWAITING_PAYMENT:
            self._fail("Payment cancelled")

    def _keep_late_confirmation(self, confirmation: PaymentConfirmation) -> CheckoutOutcome | None:
        self._confirmation = confirmation
        pending = self._snapshot_pending(self.reference or confirmation.order_id)
        self._pending_store.save(pending)
        self._pending = pending
        logger.warning(
            "Payment %s confirmed after checkout ended; kept as pending checkout %s",
            confirmation.payment_id, pending.order_ref,
        )
        self._publish(CheckoutOutcome.cancelled(
            "Payment received after checkout was closed. Add a delivery address to complete the order.",
            order_ref=pending.order_ref,
            resumable=True,
        ))
        return self._outcome

    # ------------------------------------------------------------------
    # Step 5: resume with an address
    # ------------------------------------------------------------------

    async def finalize(self, address: ShippingAddress | dict) -> CheckoutOutcome:
        """
        Re-submit verification with a delivery address.

        Raises:
            ValidationError: the address is malformed (nothing is sent)
            PendingCheckoutNotFoundError: no local pending record for this
                reference; it was already completed or abandoned
        """
        if self._state is not CheckoutState.AWAITING_ADDRESS:
            raise CheckoutError(f"Checkout is not waiting for an address (state: {self._state.value})")

        address = validate_address(address)
        order_ref = self.reference
        current = self._pending_store.load(order_ref) if order_ref else None
        if current is None:
            raise PendingCheckoutNotFoundError(
                "This checkout was already completed or abandoned", order_ref=order_ref,
            )

        if current.resume_attempts >= self._max_resume_attempts:
            return self._give_up(current)

        current = current.model_copy(update={"resume_attempts": current.resume_attempts + 1})
        self._pending_store.save(current)
        self._pending = current

        self._transition(CheckoutState.VERIFYING)
        payload = build_verification_payload(
            current.confirmation, current.items, current.total_amount, current.coupon, address,
        )
        payload["orderId"] = current.order_ref
        return await self._verify(payload, current)

    # ------------------------------------------------------------------

    async def _verify(self, payload: dict, pending: PendingCheckout | None) -> CheckoutOutcome:
        try:
            result = await verify_payment(
                self._api,
                payload,
                attempts=self._verify_attempts,
                backoff=self._backoff,
                timeout=self._verify_timeout,
                sleep=self._sleep,
            )
        except PaymentRejectedError as e:
            if pending is not None:
                self._pending_store.delete(pending.order_ref)
            return self._fail(e.message or "Payment verification failed")
        except (ApiError, TransientNetworkError) as e:
            if pending is None:
                pending = self._snapshot_pending(self.reference or payload["order_id"])
            self._pending_store.save(pending)
            self._pending = pending
            logger.warning("Verification outcome unknown for %s, kept for resume: %s", pending.order_ref, e.message)
            message = UNREACHABLE_MESSAGE if isinstance(e, TransientNetworkError) else e.message
            return self._fail(message, order_ref=pending.order_ref, resumable=True)

        if result.success:
            return self._succeed(result, pending)
        return self._require_address(result, pending)

    def _succeed(self, result: VerifyResult, pending: PendingCheckout | None) -> CheckoutOutcome:
        self._transition(CheckoutState.SUCCEEDED)
        order_id = result.order_id or self.reference or ""
        if pending is not None:
            self._pending_store.delete(pending.order_ref)
        self._events.emit(CART_CLEAR_REQUESTED, order_id=order_id)
        logger.info("Checkout succeeded (order %s)", order_id)
        return self._publish(CheckoutOutcome.success(self._confirmation.payment_id, order_id))

    def _require_address(self, result: VerifyResult, pending: PendingCheckout | None) -> CheckoutOutcome:
        self._transition(CheckoutState.NEEDS_ADDRESS)
        if pending is None:
            pending = self._snapshot_pending(result.order_id or self.reference or self._confirmation.order_id)
        elif pending.resume_attempts >= self._max_resume_attempts:
            return self._give_up(pending)

        self._pending_store.save(pending)
        self._pending = pending
        self._transition(CheckoutState.AWAITING_ADDRESS)
        logger.info("Order %s needs a delivery address", pending.order_ref)
        return self._publish(CheckoutOutcome.needs_address(pending, result.message or ADDRESS_REQUIRED_MESSAGE))

    def _give_up(self, pending: PendingCheckout) -> CheckoutOutcome:
        # Record is kept; only an explicit abandon removes it.
        logger.error("Order %s still needs an address after %d attempts", pending.order_ref, pending.resume_attempts)
        return self._fail(
            "Could not complete the order after several address attempts. Please contact support.",
            order_ref=pending.order_ref,
        )

    def _fail(self, message: str, order_ref: str | None = None, resumable: bool = False) -> CheckoutOutcome:
        self._transition(CheckoutState.FAILED)
        logger.warning("Checkout failed: %s", message)
        return self._publish(CheckoutOutcome.cancelled(message, order_ref=order_ref, resumable=resumable))

    def _snapshot_pending(self, order_ref: str) -> PendingCheckout:
        return PendingCheckout(
            order_ref=order_ref,
            payment_id=self._confirmation.payment_id,
            provider_order_id=self._confirmation.order_id,
            signature=self._confirmation.signature,
            items=self._items,
            total_amount=self._total_amount,
            coupon=self._coupon,
        )

    def _publish(self, outcome: CheckoutOutcome) -> CheckoutOutcome:
        self._outcome = outcome
        self._settled.set()
        return outcome

    def _transition(self, target: CheckoutState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise CheckoutError(f"Illegal checkout transition {self._state.value} -> {target.value}")
        logger.debug("Checkout %s: %s -> %s", self.reference, self._state.value, target.value)
        self._state = target
