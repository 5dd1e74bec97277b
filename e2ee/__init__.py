"""
End-to-end encryption core for relay based messaging.

Implements:
- Signed ephemeral X25519 key exchange with key confirmation
- AES-256-GCM message channel with sequence, nonce and freshness replay checks
- Per-transfer chunked file encryption
"""

from .exceptions import (
    CryptoError,
    KeyStorageError,
    SignatureVerificationError,
    DerivationError,
    DecryptError,
    ChunkIntegrityError,
    ReplayError,
    NetworkError,
    InvalidTransitionError,
)
from .identity import IdentityKeyManager
from .store import StateStore, MemoryStateStore
from .session import SessionState
from .exchange import KeyExchangeEngine
from .deriver import SessionDeriver
from .channel import SecureChannel, MessageEnvelope
from .events import SecurityEvents

__all__ = [
    'CryptoError',
    'KeyStorageError',
    'SignatureVerificationError',
    'DerivationError',
    'DecryptError',
    'ChunkIntegrityError',
    'ReplayError',
    'NetworkError',
    'InvalidTransitionError',
    'IdentityKeyManager',
    'StateStore',
    'MemoryStateStore',
    'SessionState',
    'KeyExchangeEngine',
    'SessionDeriver',
    'SecureChannel',
    'MessageEnvelope',
    'SecurityEvents',
]
