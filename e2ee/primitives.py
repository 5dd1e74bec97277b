"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational cryptographic operations used by the
key exchange, the message channel and the file cipher.
"""

import os
import json
import time
import base64
import hmac
from typing import Any, Optional, Tuple
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from .exceptions import CryptoError

KEY_SIZE = 32
IV_SIZE = 12
TAG_SIZE = 16
NONCE_SIZE = 16


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key exchange.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def generate_identity_keypair() -> Tuple[Ed25519PrivateKey, Ed25519PublicKey]:
    """
    Generate an Ed25519 keypair for digital signatures (identity keys).

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret
    """
    return private_key.exchange(public_key)


def hkdf_derive(key_material: bytes, salt: bytes, info: bytes, length: int = KEY_SIZE) -> bytes:
    """
    Derive key material with HKDF-SHA256.

    Args:
        key_material: Input key material (e.g. DH output)
        salt: HKDF salt
        info: Context binding
        length: Output length in bytes

    Returns:
        Derived key bytes
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info
    )
    return hkdf.derive(key_material)


def sha256(data: bytes) -> bytes:
    """Compute a SHA-256 digest"""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


def random_bytes(length: int) -> bytes:
    """Cryptographically secure random bytes"""
    return os.urandom(length)


def generate_aead_key() -> bytes:
    """Generate a fresh 256-bit AES-GCM key"""
    return AESGCM.generate_key(bit_length=256)


def aead_encrypt(key: bytes, iv: bytes, plaintext: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """
    Encrypt using AES-256-GCM with a caller supplied IV.

    Args:
        key: 32-byte encryption key
        iv: 12-byte initialization vector, never reused under one key
        plaintext: Data to encrypt
        associated_data: Additional authenticated data

    Returns:
        ciphertext + tag (16 bytes)
    """
    if len(iv) != IV_SIZE:
        raise CryptoError(f"IV must be {IV_SIZE} bytes")
    return AESGCM(key).encrypt(iv, plaintext, associated_data)


def aead_decrypt(key: bytes, iv: bytes, ciphertext: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """
    Decrypt AES-256-GCM ciphertext.

    Raises:
        CryptoError: If the IV is malformed or authentication fails
    """
    if len(iv) != IV_SIZE:
        raise CryptoError("Invalid IV length")
    if len(ciphertext) < TAG_SIZE:
        raise CryptoError("Ciphertext too short")
    try:
        return AESGCM(key).decrypt(iv, ciphertext, associated_data)
    except InvalidTag:
        raise CryptoError("Decryption failed: authentication tag mismatch")


def serialize_public_key(public_key: X25519PublicKey) -> bytes:
    """Serialize X25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_public_key(key_bytes: bytes) -> X25519PublicKey:
    """Deserialize bytes to X25519 public key"""
    if len(key_bytes) != 32:
        raise CryptoError("Invalid X25519 public key length")
    return X25519PublicKey.from_public_bytes(key_bytes)


def serialize_private_key(private_key: X25519PrivateKey) -> bytes:
    """Serialize X25519 private key to raw bytes (local storage only)"""
    return private_key.private_bytes_raw()


def deserialize_private_key(key_bytes: bytes) -> X25519PrivateKey:
    return X25519PrivateKey.from_private_bytes(key_bytes)


def serialize_identity_public_key(public_key: Ed25519PublicKey) -> bytes:
    """Serialize Ed25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_identity_public_key(key_bytes: bytes) -> Ed25519PublicKey:
    """Deserialize bytes to Ed25519 public key"""
    if len(key_bytes) != 32:
        raise CryptoError("Invalid Ed25519 public key length")
    return Ed25519PublicKey.from_public_bytes(key_bytes)


def serialize_identity_private_key(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.private_bytes_raw()


def deserialize_identity_private_key(key_bytes: bytes) -> Ed25519PrivateKey:
    return Ed25519PrivateKey.from_private_bytes(key_bytes)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """
    Strict base64 decoding.

    Raises:
        CryptoError: If the input is not valid base64
    """
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError, AttributeError) as e:
        raise CryptoError(f"Invalid base64 data: {e}")


def public_key_to_jwk(key_b64: str, curve: str) -> dict:
    """
    Wrap a raw base64 public key in an OKP JSON Web Key.

    Args:
        key_b64: Standard base64 of the 32 raw public key bytes
        curve: "X25519" or "Ed25519"
    """
    raw = b64decode(key_b64)
    x = base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
    return {"kty": "OKP", "crv": curve, "x": x}


def jwk_to_public_key(jwk: Any, curve: str) -> str:
    """
    Extract the raw public key from an OKP JSON Web Key.

    Returns:
        Standard base64 of the raw key bytes

    Raises:
        CryptoError: If the JWK is not an OKP key on the expected curve
    """
    if not isinstance(jwk, dict) or jwk.get("kty") != "OKP" or jwk.get("crv") != curve:
        raise CryptoError(f"Expected an OKP {curve} JWK")
    x = jwk.get("x")
    if not isinstance(x, str):
        raise CryptoError("JWK is missing the x coordinate")
    try:
        raw = base64.urlsafe_b64decode(x + "=" * (-len(x) % 4))
    except ValueError as e:
        raise CryptoError(f"Invalid JWK x coordinate: {e}")
    if len(raw) != KEY_SIZE:
        raise CryptoError(f"JWK key must be {KEY_SIZE} bytes")
    return b64encode(raw)


def canonical_json(obj: Any) -> bytes:
    """Deterministic JSON serialization for signing and transcripts"""
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


def now_ms() -> int:
    """Current Unix time in milliseconds"""
    return int(time.time() * 1000)


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
