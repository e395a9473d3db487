"""
One application instance, wired explicitly.

Nothing in the core reaches for module globals: the server (or a test)
builds a StorefrontContext and passes its parts where they are needed.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx

from .api.client import DEFAULT_TIMEOUT, ApiClient
from .checkout import AddressCaptureStep, CheckoutSaga
from .collectors.base import PaymentCollector
from .events import LOCATION_CHANGED, PENDING_CHECKOUT_CHANGED, SignalBus
from .session import SessionManager
from .storage import CredentialStore, DurableStore, LocationStore, PendingCheckoutStore, StoreChange
from .storage.location import LOCATION_KEY
from .storage.pending import PENDING_PREFIX

logger = logging.getLogger(__name__)


class StorefrontContext:
    """Owns the durable store, API client, session, and signal bus of one instance."""

    def __init__(
        self,
        store: DurableStore,
        api: ApiClient,
        credentials: CredentialStore,
        events: SignalBus,
        **saga_options: Any,
    ):
        self.store = store
        self.api = api
        self.credentials = credentials
        self.events = events
        self.session = SessionManager(api, credentials, events)
        self.pending = PendingCheckoutStore(store)
        self.locations = LocationStore(store)
        self._saga_options = saga_options
        self._watcher: asyncio.Task | None = None
        store.subscribe(self._relay)

    @classmethod
    def create(
        cls,
        base_url: str | None = None,
        state_dir: Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        **saga_options: Any,
    ) -> "StorefrontContext":
        store = DurableStore(root=state_dir)
        credentials = CredentialStore(store)
        api = ApiClient(credentials, base_url=base_url, timeout=timeout, transport=transport)
        return cls(store, api, credentials, SignalBus(), **saga_options)

    def new_checkout(self, collector: PaymentCollector | None = None) -> CheckoutSaga:
        return CheckoutSaga(self.api, self.pending, self.events, collector, **self._saga_options)

    def address_step(self) -> AddressCaptureStep:
        return AddressCaptureStep(self.api, self.pending, self.locations, self.events, **self._saga_options)

    def start_watching(self, interval: float = 1.0) -> None:
        """Follow changes other instances make to the durable store."""
        if self._watcher is None or self._watcher.done():
            self._watcher = asyncio.ensure_future(self.store.watch(interval))

    def _relay(self, change: StoreChange) -> None:
        if change.key == LOCATION_KEY:
            self.events.emit(LOCATION_CHANGED, location=change.value, external=change.external)
        elif change.key.startswith(PENDING_PREFIX):
            self.events.emit(
                PENDING_CHECKOUT_CHANGED,
                order_ref=change.key[len(PENDING_PREFIX):],
                removed=change.value is None,
                external=change.external,
            )

    async def close(self) -> None:
        if self._watcher is not None:
            self._watcher.cancel()
            try:
                await self._watcher
            except asyncio.CancelledError:
                pass
            self._watcher = None
        await self.api.close()
        logger.info("Storefront context closed")
