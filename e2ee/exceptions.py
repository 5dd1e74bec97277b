"""
Exceptions raised by the end-to-end encryption core.
"""


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyStorageError(CryptoError):
    """Local key/state persistence is unavailable."""
    pass


class SignatureVerificationError(CryptoError):
    """A signed ephemeral bundle failed verification."""

    def __init__(self, message: str, reason: str = "signature"):
        super().__init__(message)
        self.reason = reason


class DerivationError(CryptoError):
    """Session key cannot be derived yet (missing material)."""
    pass


class DecryptError(CryptoError):
    """A message failed authenticated decryption."""
    pass


class ChunkIntegrityError(CryptoError):
    """A file chunk failed authenticated decryption or reassembly."""
    pass


class ReplayError(CryptoError):
    """
    A message authenticated correctly but was rejected by a replay check.

    Attributes:
        reason: 'window', 'sequence' or 'nonce'
    """

    REASONS = ("window", "sequence", "nonce")

    def __init__(self, reason: str, message: str = ""):
        if reason not in self.REASONS:
            raise ValueError(f"Unknown replay reason: {reason}")
        super().__init__(message or f"Replay detected ({reason})")
        self.reason = reason


class NetworkError(CryptoError):
    """Transient relay failure; retried by the next poll tick."""
    pass


class InvalidTransitionError(CryptoError):
    """A key exchange status change would regress the state machine."""
    pass
