"""Last-known delivery location, kept in one durable slot."""
import logging

from pydantic import ValidationError as SchemaError

from ..checkout.schema import ShippingAddress
from .store import DurableStore

logger = logging.getLogger(__name__)

LOCATION_KEY = "delivery_location"


def format_location(address: ShippingAddress | None, compact: bool = False) -> str:
    """
    Human label for a location.

    Full form is the street line through the PIN; compact form is "City - PIN"
    for narrow screens. Coordinates are used when no street is known.
    """
    if address is None:
        return "Set location"

    if address.street:
        pin = f" - {address.zip_code}" if address.zip_code else ""
        if compact:
            return f"{address.city}{pin}".strip()
        parts = [address.street]
        if address.apt:
            parts.append(address.apt)
        parts.append(address.city)
        if address.state:
            parts.append(address.state)
        return (", ".join(parts) + pin).strip()

    if address.lat is not None and address.lon is not None:
        if compact:
            return f"{address.lat:.2f}, {address.lon:.2f}"
        return f"Lat {address.lat:.3f}, Lon {address.lon:.3f}"

    return "Set location"


class LocationStore:
    """Reads and replaces the saved delivery location."""

    def __init__(self, store: DurableStore):
        self._store = store

    def save(self, address: ShippingAddress) -> None:
        self._store.set(LOCATION_KEY, address.model_dump(mode="json"))
        logger.info("Delivery location saved (%s)", address.city or "no city")

    def load(self) -> ShippingAddress | None:
        data = self._store.get(LOCATION_KEY)
        if data is None:
            return None
        try:
            return ShippingAddress.model_validate(data)
        except SchemaError as e:
            logger.warning("Saved location is unreadable, ignoring: %s", e)
            return None

    def label(self, compact: bool = False) -> str:
        return format_location(self.load(), compact=compact)
