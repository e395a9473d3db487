"""Durable record of unfinished checkouts, keyed by the server's order reference."""
import logging

from pydantic import ValidationError as SchemaError

from ..checkout.schema import PendingCheckout
from .store import DurableStore

logger = logging.getLogger(__name__)

PENDING_PREFIX = "pending_checkout:"


class PendingCheckoutStore:
    """Whole-record save/load/delete of PendingCheckout. Last write wins across instances."""

    def __init__(self, store: DurableStore):
        self._store = store

    @staticmethod
    def key_for(order_ref: str) -> str:
        return PENDING_PREFIX + order_ref

    def save(self, pending: PendingCheckout) -> None:
        self._store.set(self.key_for(pending.order_ref), pending.model_dump(mode="json"))
        logger.info("Pending checkout %s saved (resume attempts: %d)", pending.order_ref, pending.resume_attempts)

    def load(self, order_ref: str) -> PendingCheckout | None:
        data = self._store.get(self.key_for(order_ref))
        if data is None:
            return None
        try:
            return PendingCheckout.model_validate(data)
        except SchemaError as e:
            logger.warning("Pending checkout %s is unreadable, ignoring: %s", order_ref, e)
            return None

    def delete(self, order_ref: str) -> bool:
        removed = self._store.delete(self.key_for(order_ref))
        if removed:
            logger.info("Pending checkout %s removed", order_ref)
        return removed

    def references(self) -> list[str]:
        return [k[len(PENDING_PREFIX):] for k in self._store.keys(PENDING_PREFIX)]
