"""
Signed ephemeral bundles.

Each side of a key exchange publishes an X25519 public key together with a
fresh nonce and a millisecond timestamp, signed with its Ed25519 identity key
over a canonical JSON core. The `kind` field is signed too, so an init bundle
cannot be replayed as a response.
"""

from typing import Dict, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .exceptions import CryptoError, KeyStorageError, SignatureVerificationError
from .primitives import (
    NONCE_SIZE,
    generate_dh_keypair,
    serialize_public_key,
    deserialize_identity_public_key,
    random_bytes,
    canonical_json,
    sha256,
    b64encode,
    b64decode,
    now_ms,
)
from .records import SignedBundle
from .store import StateStore

HS_VERSION = "hs.v1"
INIT = "init"
RESPONSE = "response"

NONCE_LOG_KEY = "handshake/nonces"


def bundle_core(kind: str, ephemeral_public_b64: str, nonce_b64: str, timestamp: int) -> Dict:
    return {
        "v": HS_VERSION,
        "kind": kind,
        "ephemeralPub": ephemeral_public_b64,
        "nonce": nonce_b64,
        "timestamp": timestamp,
    }


def build_bundle(
    kind: str,
    signing_key: Ed25519PrivateKey,
    nonce: bytes,
    timestamp: Optional[int] = None,
) -> Tuple[X25519PrivateKey, SignedBundle]:
    """
    Generate an ephemeral keypair and sign its public half.

    Args:
        kind: 'init' or 'response'
        signing_key: Identity private key
        nonce: Fresh random nonce for this exchange
        timestamp: Milliseconds since epoch (defaults to now)

    Returns:
        Tuple of (ephemeral_private_key, signed_bundle)
    """
    if kind not in (INIT, RESPONSE):
        raise ValueError("kind must be 'init' or 'response'")

    ephemeral_private, ephemeral_public = generate_dh_keypair()
    ts = timestamp if timestamp is not None else now_ms()
    public_b64 = b64encode(serialize_public_key(ephemeral_public))
    nonce_b64 = b64encode(nonce)

    core = bundle_core(kind, public_b64, nonce_b64, ts)
    signature = signing_key.sign(canonical_json(core))

    bundle = SignedBundle(
        ephemeral_public_key=public_b64,
        signature=b64encode(signature),
        nonce=nonce_b64,
        timestamp=ts,
    )
    return ephemeral_private, bundle


def verify_bundle(kind: str, bundle: SignedBundle, signing_public_b64: str):
    """
    Verify a bundle's Ed25519 signature against a published identity key.

    Raises:
        SignatureVerificationError: If the key, signature or bundle is malformed
            or the signature does not verify
    """
    core = bundle_core(kind, bundle.ephemeral_public_key, bundle.nonce, bundle.timestamp)
    try:
        public_key = deserialize_identity_public_key(b64decode(signing_public_b64))
        signature = b64decode(bundle.signature)
        if len(signature) != 64:
            raise CryptoError("Invalid Ed25519 signature length")
        public_key.verify(signature, canonical_json(core))
    except (InvalidSignature, CryptoError, ValueError) as e:
        raise SignatureVerificationError(f"Bundle signature rejected: {str(e) or 'invalid signature'}")


def check_freshness(bundle: SignedBundle, now: int, window_ms: int):
    """
    Raises:
        SignatureVerificationError: reason 'stale' if |timestamp - now| > window_ms
    """
    if abs(bundle.timestamp - now) > window_ms:
        raise SignatureVerificationError("Bundle timestamp outside freshness window", reason="stale")


def transcript_hash(session_id: str, init_msg: SignedBundle, resp_msg: SignedBundle) -> bytes:
    """SHA-256 over both signed bundles, bound to the session"""
    return sha256(canonical_json({
        "v": HS_VERSION,
        "sessionId": session_id,
        "init": init_msg.to_wire(),
        "response": resp_msg.to_wire(),
    }))


class HandshakeNonceLog:
    """
    Persisted record of handshake nonces this principal has used or accepted.

    Entries are pruned once their bundle timestamp is older than the freshness
    window; bundles that old are rejected as stale before the nonce is looked at.
    """

    def __init__(self, store: StateStore, window_ms: int):
        self.store = store
        self.window_ms = window_ms

    def _load(self) -> Dict[str, int]:
        try:
            return dict((self.store.get(NONCE_LOG_KEY) or {}).get("nonces", {}))
        except KeyStorageError:
            raise
        except Exception as e:
            raise KeyStorageError(f"Failed to load handshake nonce log: {e}")

    def seen(self, nonce_b64: str) -> bool:
        return nonce_b64 in self._load()

    def add(self, nonce_b64: str, timestamp: int, now: Optional[int] = None):
        nonces = self._load()
        cutoff = (now if now is not None else now_ms()) - self.window_ms
        nonces = {n: ts for n, ts in nonces.items() if ts >= cutoff}
        nonces[nonce_b64] = timestamp
        try:
            self.store.put(NONCE_LOG_KEY, {"nonces": nonces})
        except KeyStorageError:
            raise
        except Exception as e:
            raise KeyStorageError(f"Failed to persist handshake nonce: {e}")

    def fresh_nonce(self) -> bytes:
        """A random nonce that does not appear in the log"""
        while True:
            nonce = random_bytes(NONCE_SIZE)
            if not self.seen(b64encode(nonce)):
                return nonce
