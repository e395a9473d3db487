"""
Address capture and resume.

After a reload nothing of the original saga is left in memory. The step
recovers the Pending Checkout from, in order: the navigation state handed
over by the checkout page, the durable pending store, and finally the
server's pending-payment lookup by order reference.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as SchemaError

from ..api import routes
from ..errors import ApiError, CheckoutNotResumableError, PendingCheckoutNotFoundError, TransientNetworkError
from .address import validate_address
from .saga import CheckoutSaga, CheckoutState
from .schema import CheckoutOutcome, PendingCheckout, ShippingAddress

if TYPE_CHECKING:
    from ..api.client import ApiClient
    from ..events import SignalBus
    from ..storage.location import LocationStore
    from ..storage.pending import PendingCheckoutStore

logger = logging.getLogger(__name__)

NOT_RESUMABLE_MESSAGE = "This checkout can no longer be resumed. Please retry from your cart."


class AddressCaptureStep:
    """Recovers a pending checkout, takes the delivery address, and finalizes the order."""

    def __init__(
        self,
        api: ApiClient,
        pending_store: PendingCheckoutStore,
        locations: LocationStore,
        events: SignalBus,
        **saga_options: Any,
    ):
        self._api = api
        self._pending_store = pending_store
        self._locations = locations
        self._events = events
        self._saga_options = saga_options

    async def recover(self, order_ref: str | None, navigation_state: dict | None = None) -> PendingCheckout:
        """
        Find the pending checkout for order_ref.

        Raises:
            CheckoutNotResumableError: none of the sources has it
            TransientNetworkError: the server lookup could not be made
        """
        try:
            pending = PendingCheckout.from_navigation_state(navigation_state, order_ref=order_ref)
        except SchemaError as e:
            logger.warning("Navigation state carries an unusable pending payment: %s", e)
            pending = None
        if pending is not None and pending.is_complete():
            stored = self._pending_store.load(pending.order_ref)
            if stored is not None:
                # the stored copy carries the resume attempt count
                return stored
            self._pending_store.save(pending)
            logger.info("Pending checkout %s recovered from navigation state", pending.order_ref)
            return pending

        if not order_ref:
            raise CheckoutNotResumableError(NOT_RESUMABLE_MESSAGE)

        stored = self._pending_store.load(order_ref)
        if stored is not None:
            logger.info("Pending checkout %s recovered from local storage", order_ref)
            return stored

        return await self._lookup(order_ref)

    async def _lookup(self, order_ref: str) -> PendingCheckout:
        try:
            data = await self._api.get(routes.PENDING_PAYMENT.format(order_id=order_ref))
        except ApiError as e:
            logger.info("Server has no pending payment for %s (status=%d)", order_ref, e.status_code)
            raise CheckoutNotResumableError(NOT_RESUMABLE_MESSAGE, order_ref=order_ref) from e

        if isinstance(data, dict) and isinstance(data.get("pendingPayment"), dict):
            data = data["pendingPayment"]
        try:
            pending = PendingCheckout.from_payload(data if isinstance(data, dict) else {}, order_ref=order_ref)
        except SchemaError as e:
            raise CheckoutNotResumableError(NOT_RESUMABLE_MESSAGE, order_ref=order_ref) from e
        if not pending.is_complete():
            raise CheckoutNotResumableError(NOT_RESUMABLE_MESSAGE, order_ref=order_ref)

        self._pending_store.save(pending)
        logger.info("Pending checkout %s recovered from the server", order_ref)
        return pending

    async def submit(
        self,
        order_ref: str,
        address: ShippingAddress | dict,
        saga: CheckoutSaga | None = None,
    ) -> CheckoutOutcome:
        """
        Validate the address, remember it, and finalize the pending checkout.

        Finalization only happens while the local pending record exists;
        call recover() first when coming from a reload.

        Raises:
            ValidationError: the address is malformed (nothing is sent)
            PendingCheckoutNotFoundError: already completed or abandoned
        """
        address = validate_address(address)
        pending = self._pending_store.load(order_ref)
        if pending is None:
            raise PendingCheckoutNotFoundError(
                "This checkout was already completed or abandoned", order_ref=order_ref,
            )

        self._locations.save(address)
        await self._remember_address(address)

        if saga is None or saga.state is not CheckoutState.AWAITING_ADDRESS or saga.reference != order_ref:
            saga = CheckoutSaga.from_pending(
                pending, self._api, self._pending_store, self._events, **self._saga_options,
            )
        return await saga.finalize(address)

    async def _remember_address(self, address: ShippingAddress) -> None:
        try:
            await self._api.post(routes.ADDRESSES, json=address.to_payload())
        except (ApiError, TransientNetworkError) as e:
            logger.warning("Could not save address to the account, continuing: %s", e.message)

    def abandon(self, order_ref: str) -> bool:
        """Drop the pending checkout. The payment itself is left to the server to reconcile."""
        removed = self._pending_store.delete(order_ref)
        if removed:
            logger.warning("Pending checkout %s abandoned by the user", order_ref)
        return removed
