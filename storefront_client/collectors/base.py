"""Seam between the checkout saga and the external payment widget."""
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from ..checkout.schema import OrderIntent, PaymentConfirmation

ConfirmedCallback = Callable[[PaymentConfirmation], Awaitable[Any]]
DismissedCallback = Callable[[], Awaitable[Any]]


class PaymentCollector(ABC):
    """
    Opens a payment widget for an order intent and reports back asynchronously.

    on_confirmed fires at most once, possibly much later, possibly never.
    on_dismissed fires if the user closes the widget without paying.
    Implementations must not block inside open() while the user pays.
    """

    @abstractmethod
    async def open(
        self,
        intent: OrderIntent,
        on_confirmed: ConfirmedCallback,
        on_dismissed: DismissedCallback | None = None,
        prefill: dict | None = None,
    ) -> None:
        ...

    async def close(self) -> None:
        """Release whatever the collector holds open."""
