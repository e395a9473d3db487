"""Credential store: the current bearer token, persisted across restarts."""
import logging
from typing import Callable

from .store import DurableStore, StoreChange

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "access_token"


class CredentialStore:
    """
    Holds the access token in one durable slot.

    Only the session layer writes here; the request pipeline reads. The
    in-memory copy follows the slot, including writes by other processes
    picked up through DurableStore.poll().
    """

    def __init__(self, store: DurableStore):
        self._store = store
        self._token: str | None = store.get(ACCESS_TOKEN_KEY)
        self._listeners: list[Callable[[str | None, bool], None]] = []
        store.subscribe(self._on_store_change)

    def get(self) -> str | None:
        return self._token

    def set(self, token: str) -> None:
        self._token = token
        self._store.set(ACCESS_TOKEN_KEY, token)

    def clear(self) -> None:
        self._token = None
        self._store.delete(ACCESS_TOKEN_KEY)

    def subscribe(self, listener: Callable[[str | None, bool], None]) -> None:
        """listener(token, external) runs whenever the token changes."""
        self._listeners.append(listener)

    def _on_store_change(self, change: StoreChange) -> None:
        if change.key != ACCESS_TOKEN_KEY:
            return
        token = change.value if isinstance(change.value, str) else None
        self._token = token
        if change.external:
            logger.info("Access token %s by another instance", "replaced" if token else "cleared")
        for listener in list(self._listeners):
            listener(token, change.external)
