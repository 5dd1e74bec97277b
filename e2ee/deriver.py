"""
Session key derivation.

Turns a key exchange record with both signed bundles into a SessionState.
Both parties must end up with the same 256-bit key, so everything fed into
HKDF is ordered independently of role: the ephemeral public keys are sorted
bytewise before they are hashed into the salt.
"""

import logging
import struct
from typing import Callable, Optional

from .exceptions import CryptoError, DerivationError, KeyStorageError, SignatureVerificationError
from .handshake import INIT, RESPONSE, verify_bundle
from .identity import IdentityKeyManager
from .interfaces import Directory
from .primitives import (
    dh_exchange,
    hkdf_derive,
    sha256,
    deserialize_public_key,
    deserialize_private_key,
    b64decode,
    constant_time_compare,
)
from .records import SessionRecord
from .session import SessionState
from .store import EPHEMERAL_PREFIX, StateStore

logger = logging.getLogger(__name__)

SESSION_LABEL = b"e2ee/session/v1"


def derive_symmetric_key(shared_secret: bytes, session_id: str,
                         public_a: bytes, public_b: bytes) -> bytes:
    """
    HKDF-SHA256 over the DH output, bound to the session and both ephemeral keys.

    The argument order of public_a/public_b does not matter.
    """
    low, high = sorted((public_a, public_b))
    sid = session_id.encode("utf-8")
    salt = sha256(SESSION_LABEL + struct.pack(">I", len(sid)) + sid + low + high)
    return hkdf_derive(shared_secret, salt=salt, info=SESSION_LABEL + b"|" + sid)


class SessionDeriver:
    """
    Derives and stores the channel key for the local principal.

    Args:
        principal: Local username
        store: Local state store (holds cached ephemeral keys and session states)
        identity: Local identity key manager
        directory: Directory used to fetch the peer's signing key
    """

    def __init__(self, principal: str, store: StateStore,
                 identity: IdentityKeyManager, directory: Directory):
        self.principal = principal
        self.store = store
        self.identity = identity
        self.directory = directory

    async def derive_session_if_possible(
        self,
        record: SessionRecord,
        still_wanted: Optional[Callable[[], bool]] = None,
    ) -> Optional[SessionState]:
        """
        Derive the session key for a record that carries both bundles.

        Args:
            record: Parsed key exchange record
            still_wanted: Checked right before the state is written; when it
                returns False the result is discarded

        Returns:
            The stored SessionState (existing or new), or None if discarded

        Raises:
            DerivationError: Material is missing; nothing was written
            SignatureVerificationError: A bundle signature does not verify
        """
        session_id = record.session_id
        existing = self.store.load_session(session_id)
        if existing is not None:
            return existing

        init_msg = getattr(record, "init_msg", None)
        resp_msg = getattr(record, "resp_msg", None)
        if init_msg is None or resp_msg is None:
            raise DerivationError(f"Session {session_id} is missing a bundle")

        role = record.role_of(self.principal)
        if role is None:
            raise DerivationError(f"{self.principal} is not part of session {session_id}")

        cached = self.store.get(EPHEMERAL_PREFIX + session_id)
        if cached is None:
            raise DerivationError(f"No ephemeral key cached for session {session_id}")

        if role == "initiator":
            own_kind, own_bundle, peer_kind, peer_bundle = INIT, init_msg, RESPONSE, resp_msg
        else:
            own_kind, own_bundle, peer_kind, peer_bundle = RESPONSE, resp_msg, INIT, init_msg
        peer = record.peer_of(self.principal)

        try:
            own_private = deserialize_private_key(b64decode(cached["private"]))
            own_public = b64decode(own_bundle.ephemeral_public_key)
            peer_public = b64decode(peer_bundle.ephemeral_public_key)
            cached_public = b64decode(cached["public"])
        except (CryptoError, KeyError, ValueError) as e:
            raise DerivationError(f"Unusable key material for session {session_id}: {e}")

        if not constant_time_compare(own_public, cached_public):
            raise SignatureVerificationError(
                f"Relay returned a different ephemeral key for our side of {session_id}"
            )

        verify_bundle(own_kind, own_bundle, self.identity.public_key_b64())
        entry = await self.directory.lookup_public_key(peer)
        verify_bundle(peer_kind, peer_bundle, entry.signing_public_key)

        try:
            shared = dh_exchange(own_private, deserialize_public_key(peer_public))
        except (CryptoError, ValueError) as e:
            raise DerivationError(f"Key agreement failed for session {session_id}: {e}")
        key = derive_symmetric_key(shared, session_id, own_public, peer_public)

        if still_wanted is not None and not still_wanted():
            logger.info("Discarding derived key for abandoned session=%s", session_id)
            return None

        # Another derivation may have completed while we awaited the directory
        existing = self.store.load_session(session_id)
        if existing is not None:
            return existing

        state = SessionState(session_id=session_id, symmetric_key=key, peer_principal=peer)
        try:
            self.store.save_session(state)
            self.store.delete(EPHEMERAL_PREFIX + session_id)
        except KeyStorageError:
            raise
        except Exception as e:
            raise KeyStorageError(f"Failed to store session {session_id}: {e}")

        logger.info("Derived session key session=%s role=%s peer=%s", session_id, role, peer)
        return state
