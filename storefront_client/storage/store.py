"""
Durable key-value slots that survive restarts.

Each key lives in its own encrypted file. Writes replace the whole record
atomically (temp file + rename), so a reader in another process sees either
the old record or the new one. Observers hear about local writes immediately
and about other processes' writes when poll() runs.
"""
import asyncio
import base64
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from cryptography.fernet import InvalidToken

from .crypto import StorageCrypto

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path(os.environ.get(
    "STOREFRONT_STATE_DIR",
    os.path.expanduser("~/.config/storefront-client"),
))

_SUFFIX = ".enc"


@dataclass(frozen=True)
class StoreChange:
    """A slot was written or deleted. value is None for deletions."""
    key: str
    value: Any
    external: bool = False


Listener = Callable[[StoreChange], None]


def _encode_key(key: str) -> str:
    return base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii").rstrip("=")


def _decode_key(name: str) -> str:
    padding = "=" * (-len(name) % 4)
    return base64.urlsafe_b64decode(name + padding).decode("utf-8")


class DurableStore:
    """Encrypted slots in a directory, one file per key."""

    def __init__(self, root: Path | None = None, crypto: StorageCrypto | None = None):
        self._root = root or DEFAULT_STATE_DIR
        self._slots = self._root / "slots"
        self._crypto = crypto or StorageCrypto(key_path=self._root / "storage.key")
        self._listeners: list[Listener] = []
        self._seen: dict[str, int] = self._scan()

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._slots / (_encode_key(key) + _SUFFIX)

    def _scan(self) -> dict[str, int]:
        """Map every key on disk to its file's mtime."""
        if not self._slots.exists():
            return {}
        found = {}
        for path in self._slots.glob("*" + _SUFFIX):
            try:
                found[_decode_key(path.name[: -len(_SUFFIX)])] = path.stat().st_mtime_ns
            except (OSError, ValueError):
                continue
        return found

    def get(self, key: str) -> Any | None:
        """Read a slot. Missing, unreadable or tampered slots read as None."""
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return self._crypto.decrypt(path.read_bytes())
        except (InvalidToken, OSError, ValueError) as e:
            logger.warning("Discarding unreadable slot %s: %s", key, e)
            return None

    def set(self, key: str, value: Any) -> None:
        """Replace a slot wholesale."""
        self._slots.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(self._crypto.encrypt(value))
        os.replace(tmp, path)
        self._seen[key] = path.stat().st_mtime_ns
        logger.debug("Slot %s written", key)
        self._notify(StoreChange(key=key, value=value))

    def delete(self, key: str) -> bool:
        """Remove a slot. Returns False if it did not exist."""
        path = self._path(key)
        self._seen.pop(key, None)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Slot %s deleted", key)
        self._notify(StoreChange(key=key, value=None))
        return True

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._scan() if k.startswith(prefix))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Observe slot changes. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def poll(self) -> list[StoreChange]:
        """Detect slots changed by another process since the last look and notify observers."""
        current = self._scan()
        changes = []
        for key, mtime in current.items():
            if self._seen.get(key) != mtime:
                changes.append(StoreChange(key=key, value=self.get(key), external=True))
        for key in self._seen.keys() - current.keys():
            changes.append(StoreChange(key=key, value=None, external=True))
        self._seen = current
        for change in changes:
            self._notify(change)
        return changes

    async def watch(self, interval: float = 1.0) -> None:
        """Poll forever. Run as a background task; cancel to stop."""
        logger.info("Watching %s for external changes", self._slots)
        while True:
            try:
                self.poll()
            except OSError as e:
                logger.warning("Store poll failed: %s", e)
            await asyncio.sleep(interval)

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Store listener failed for %s", change.key)
