"""
Revocable references to in-memory image blobs.

A display surface gets an opaque `blob:` URL instead of the bytes. Each slot
(`source`, `result`) holds at most one live reference; publishing into a slot
revokes whatever the slot held before.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from threading import Lock
from typing import Dict, List, Optional, Tuple
import uuid

logger = logging.getLogger(__name__)


class Slot(str, Enum):
    SOURCE = "source"
    RESULT = "result"


@dataclass(frozen=True)
class EphemeralRef:
    url: str
    slot: Slot
    owner: int
    media_type: str = "application/octet-stream"


class ResourceLifecycle:
    def __init__(self) -> None:
        self._lock = Lock()
        self._live: Dict[Slot, Tuple[EphemeralRef, bytes]] = {}

    def publish(
        self,
        slot: Slot,
        data: bytes,
        owner: int,
        media_type: str = "application/octet-stream",
    ) -> EphemeralRef:
        """Create a reference for `slot`, revoking the slot's previous one in the same step."""
        slot = Slot(slot)
        ref = EphemeralRef(url=f"blob:{uuid.uuid4()}", slot=slot, owner=owner, media_type=media_type)
        with self._lock:
            previous = self._live.pop(slot, None)
            self._live[slot] = (ref, bytes(data))
        if previous is not None:
            logger.debug("Revoked %s ref %s (owner=%s)", slot.value, previous[0].url, previous[0].owner)
        logger.debug("Published %s ref %s (owner=%s, %d bytes)", slot.value, ref.url, owner, len(data))
        return ref

    def revoke(self, ref: EphemeralRef) -> bool:
        """Revoke `ref` if it is still live; returns whether anything was revoked."""
        with self._lock:
            entry = self._live.get(ref.slot)
            if entry is None or entry[0] != ref:
                return False
            del self._live[ref.slot]
        logger.debug("Revoked %s ref %s", ref.slot.value, ref.url)
        return True

    def revoke_owned(self, owner: int) -> List[EphemeralRef]:
        """Revoke only the references published by `owner`."""
        with self._lock:
            owned = [entry[0] for entry in self._live.values() if entry[0].owner == owner]
            for ref in owned:
                del self._live[ref.slot]
        if owned:
            logger.debug("Revoked %d refs owned by session %s", len(owned), owner)
        return owned

    def revoke_all(self) -> List[EphemeralRef]:
        with self._lock:
            revoked = [entry[0] for entry in self._live.values()]
            self._live.clear()
        if revoked:
            logger.debug("Revoked all %d refs", len(revoked))
        return revoked

    def resolve(self, ref: EphemeralRef) -> bytes:
        """Return the bytes behind a live reference; raises KeyError once revoked."""
        with self._lock:
            entry = self._live.get(ref.slot)
            if entry is None or entry[0] != ref:
                raise KeyError(f"Reference {ref.url} has been revoked")
            return entry[1]

    def current(self, slot: Slot) -> Optional[EphemeralRef]:
        with self._lock:
            entry = self._live.get(Slot(slot))
        return entry[0] if entry is not None else None

    def live_count(self, slot: Slot) -> int:
        with self._lock:
            return 1 if Slot(slot) in self._live else 0
