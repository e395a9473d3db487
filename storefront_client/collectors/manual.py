"""Collector whose confirmation is handed in by the host (for example through an MCP tool call)."""
import logging

from ..checkout.schema import OrderIntent, PaymentConfirmation
from .base import ConfirmedCallback, DismissedCallback, PaymentCollector

logger = logging.getLogger(__name__)


class ManualPaymentCollector(PaymentCollector):
    """Parks the continuation per provider order id until deliver() or dismiss() is called."""

    def __init__(self):
        self._waiting: dict[str, tuple[ConfirmedCallback, DismissedCallback | None]] = {}

    async def open(
        self,
        intent: OrderIntent,
        on_confirmed: ConfirmedCallback,
        on_dismissed: DismissedCallback | None = None,
        prefill: dict | None = None,
    ) -> None:
        self._waiting[intent.provider_order_id] = (on_confirmed, on_dismissed)
        logger.info("Awaiting payment for provider order %s", intent.provider_order_id)

    def is_waiting(self, order_id: str) -> bool:
        return order_id in self._waiting

    async def deliver(self, confirmation: PaymentConfirmation) -> bool:
        """Run the continuation for this confirmation. False if nothing is waiting on it."""
        registration = self._waiting.pop(confirmation.order_id, None)
        if registration is None:
            logger.warning("No checkout is waiting on provider order %s", confirmation.order_id)
            return False
        on_confirmed, _ = registration
        await on_confirmed(confirmation)
        return True

    async def dismiss(self, order_id: str) -> bool:
        registration = self._waiting.pop(order_id, None)
        if registration is None:
            return False
        _, on_dismissed = registration
        logger.info("Payment widget for provider order %s dismissed", order_id)
        if on_dismissed is not None:
            await on_dismissed()
        return True

    async def close(self) -> None:
        self._waiting.clear()
