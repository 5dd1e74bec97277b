"""
Long-term identity keys.

Each principal owns one Ed25519 signing keypair. The private half is kept in
the principal's local store and never leaves it; the public half is published
to the relay directory and used by peers to verify ephemeral bundles.
"""

import logging
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .exceptions import CryptoError, KeyStorageError
from .primitives import (
    generate_identity_keypair,
    serialize_identity_public_key,
    serialize_identity_private_key,
    deserialize_identity_private_key,
    b64encode,
    b64decode,
)
from .store import EPHEMERAL_PREFIX, EXCHANGE_PREFIX, StateStore

logger = logging.getLogger(__name__)

IDENTITY_KEY = "identity"


class IdentityKeyManager:
    """
    Creates and loads the local principal's signing keypair.
    """

    def __init__(self, store: StateStore):
        self.store = store
        self._cached: Optional[Ed25519PrivateKey] = None

    def ensure_identity_keys(self, principal: str) -> str:
        """
        Return the principal's public signing key, generating it on first use.

        Args:
            principal: Username the keypair is bound to

        Returns:
            Base64 raw Ed25519 public key

        Raises:
            KeyStorageError: If the keypair cannot be persisted or loaded
        """
        if principal != self.store.principal:
            raise KeyStorageError(
                f"Store belongs to {self.store.principal!r}, not {principal!r}"
            )

        record = self._load_record()
        if record is not None:
            return record["public"]

        private_key, public_key = generate_identity_keypair()
        public_b64 = b64encode(serialize_identity_public_key(public_key))
        try:
            self.store.put(IDENTITY_KEY, {
                "principal": principal,
                "private": b64encode(serialize_identity_private_key(private_key)),
                "public": public_b64,
            })
        except KeyStorageError:
            raise
        except Exception as e:
            raise KeyStorageError(f"Failed to persist identity key: {e}")

        self._cached = private_key
        logger.info("Generated identity key for principal=%s", principal)
        return public_b64

    def signing_key(self) -> Ed25519PrivateKey:
        """
        Load the identity private key.

        Raises:
            KeyStorageError: If no identity key has been created
        """
        if self._cached is None:
            record = self._load_record()
            if record is None:
                raise KeyStorageError("No identity key for this principal")
            try:
                self._cached = deserialize_identity_private_key(b64decode(record["private"]))
            except (CryptoError, ValueError, KeyError) as e:
                raise KeyStorageError(f"Corrupt identity key record: {e}")
        return self._cached

    def public_key_b64(self) -> str:
        record = self._load_record()
        if record is None:
            raise KeyStorageError("No identity key for this principal")
        return record["public"]

    def reset_identity(self):
        """
        Delete the keypair and everything derived under it.

        Session states and cached ephemeral keys are removed. Local exchange
        records are marked abandoned so pollers never pick them up again.

        Raises:
            KeyStorageError: If the store cannot be updated
        """
        try:
            self.store.delete(IDENTITY_KEY)
            session_ids = self.store.list_session_ids()
            for session_id in session_ids:
                self.store.delete_session(session_id)
            for key in self.store.keys(EPHEMERAL_PREFIX):
                self.store.delete(key)
            for key in self.store.keys(EXCHANGE_PREFIX):
                record = self.store.get(key) or {}
                record.update(status="abandoned", reason="identity_reset")
                self.store.put(key, record)
        except KeyStorageError:
            raise
        except Exception as e:
            raise KeyStorageError(f"Failed to reset identity: {e}")
        self._cached = None
        logger.warning("Identity key reset for principal=%s sessions_dropped=%d",
                       self.store.principal, len(session_ids))

    def _load_record(self) -> Optional[dict]:
        try:
            return self.store.get(IDENTITY_KEY)
        except KeyStorageError:
            raise
        except Exception as e:
            raise KeyStorageError(f"Failed to load identity key: {e}")
