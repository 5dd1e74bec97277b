"""
Trust-on-first-use view of the relay directory.

The first signing key seen for a principal is pinned in the local store;
later lookups that return a different key are rejected.
"""

import logging

from .exceptions import SignatureVerificationError
from .interfaces import Directory
from .primitives import now_ms
from .records import DirectoryEntry
from .store import StateStore

logger = logging.getLogger(__name__)

PIN_PREFIX = "pinned/"


class TofuDirectory:
    def __init__(self, directory: Directory, store: StateStore):
        self.directory = directory
        self.store = store

    async def lookup_public_key(self, principal: str) -> DirectoryEntry:
        entry = await self.directory.lookup_public_key(principal)
        pinned = self.store.get(PIN_PREFIX + principal)
        if pinned is None:
            self.store.put(PIN_PREFIX + principal, {
                "signingPublicKey": entry.signing_public_key,
                "pinnedAt": now_ms(),
            })
            logger.info("Pinned signing key for principal=%s", principal)
        elif pinned["signingPublicKey"] != entry.signing_public_key:
            raise SignatureVerificationError(
                f"Signing key for {principal} differs from the pinned key",
                reason="key_changed",
            )
        return entry

    def forget(self, principal: str):
        """Drop a pinned key so the next lookup pins again"""
        self.store.delete(PIN_PREFIX + principal)
        logger.warning("Forgot pinned signing key for principal=%s", principal)
