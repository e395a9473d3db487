"""Durable, encrypted client-side state: credential, pending checkouts, delivery location."""
from .credentials import CredentialStore
from .crypto import StorageCrypto
from .location import LocationStore, format_location
from .pending import PendingCheckoutStore
from .store import DurableStore, StoreChange

__all__ = [
    "CredentialStore",
    "DurableStore",
    "LocationStore",
    "PendingCheckoutStore",
    "StorageCrypto",
    "StoreChange",
    "format_location",
]
