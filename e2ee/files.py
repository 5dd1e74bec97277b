"""
Per-transfer file encryption.

Every file gets its own random AES-256-GCM key, independent of any session
key. The key is handed to the recipient over an already authenticated
channel. Chunk IVs are derived from the chunk index, so no two chunks of a
transfer can share an IV under its key.
"""

import struct
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, NamedTuple, Optional

from .exceptions import ChunkIntegrityError, CryptoError
from .primitives import (
    IV_SIZE,
    KEY_SIZE,
    aead_encrypt,
    aead_decrypt,
    generate_aead_key,
    b64encode,
    b64decode,
    constant_time_compare,
)

DEFAULT_CHUNK_SIZE = 1024 * 1024
MAX_CHUNK_INDEX = 2 ** 64 - 1


class EncryptedChunk(NamedTuple):
    iv: bytes
    ciphertext: bytes
    size: int


@dataclass
class FileManifest:
    """
    Declared shape of a transfer, sent to the relay before any chunk.

    The receiver trusts total_chunks/total_size from here, never what it
    happens to download.
    """
    original_name: str
    mime_type: str
    total_size: int
    total_chunks: int
    chunk_size: int = DEFAULT_CHUNK_SIZE
    file_id: Optional[str] = None
    chunks: List[Dict] = field(default_factory=list)
    complete: bool = False

    def to_dict(self) -> Dict:
        return {
            'originalName': self.original_name,
            'mimeType': self.mime_type,
            'totalSize': self.total_size,
            'totalChunks': self.total_chunks,
        }

    def record_chunk(self, index: int, size: int, iv: bytes):
        """Append an uploaded chunk; indexes must arrive in order"""
        if self.complete:
            raise ValueError("Transfer already marked complete")
        if index != len(self.chunks):
            raise ValueError(f"Expected chunk {len(self.chunks)}, got {index}")
        if index >= self.total_chunks:
            raise ValueError(f"Chunk {index} beyond declared total {self.total_chunks}")
        self.chunks.append({'index': index, 'size': size, 'ivB64': b64encode(iv)})

    def mark_complete(self):
        if len(self.chunks) != self.total_chunks:
            raise ValueError(
                f"Only {len(self.chunks)} of {self.total_chunks} chunks uploaded"
            )
        self.complete = True


def generate_file_key() -> bytes:
    """Fresh random 256-bit key for one transfer"""
    return generate_aead_key()


def export_file_key(key: bytes) -> str:
    return b64encode(key)


def import_file_key(key_b64: str) -> bytes:
    """
    Raises:
        ChunkIntegrityError: If the encoded key is malformed
    """
    try:
        key = b64decode(key_b64)
    except CryptoError as e:
        raise ChunkIntegrityError(f"Invalid file key: {e}")
    if len(key) != KEY_SIZE:
        raise ChunkIntegrityError("File key must be 32 bytes")
    return key


def chunk_iv(index: int) -> bytes:
    """Counter IV: 4 zero bytes followed by the 64-bit big-endian chunk index"""
    if index < 0 or index > MAX_CHUNK_INDEX:
        raise ValueError(f"Chunk index out of range: {index}")
    return b"\x00" * (IV_SIZE - 8) + struct.pack(">Q", index)


def _chunk_aad(index: int) -> bytes:
    return b"e2ee/chunk/v1|" + struct.pack(">Q", index)


def encrypt_chunk(file_key: bytes, index: int, data: bytes) -> EncryptedChunk:
    iv = chunk_iv(index)
    ciphertext = aead_encrypt(file_key, iv, data, _chunk_aad(index))
    return EncryptedChunk(iv, ciphertext, len(data))


def decrypt_chunk(file_key: bytes, index: int, iv: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt one chunk.

    Raises:
        ChunkIntegrityError: If the IV is not the counter IV for `index` or
            authentication fails
    """
    expected = chunk_iv(index)
    if not constant_time_compare(iv, expected):
        raise ChunkIntegrityError(f"Chunk {index} carries an unexpected IV")
    try:
        return aead_decrypt(file_key, iv, ciphertext, _chunk_aad(index))
    except CryptoError as e:
        raise ChunkIntegrityError(f"Chunk {index} failed authentication: {e}")


def split_chunks(data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for offset in range(0, len(data), chunk_size):
        yield data[offset:offset + chunk_size]


def build_manifest(original_name: str, mime_type: str, data: bytes,
                   chunk_size: int = DEFAULT_CHUNK_SIZE) -> FileManifest:
    total_chunks = (len(data) + chunk_size - 1) // chunk_size
    return FileManifest(
        original_name=original_name,
        mime_type=mime_type or "application/octet-stream",
        total_size=len(data),
        total_chunks=total_chunks,
        chunk_size=chunk_size,
    )


def reassemble(total_chunks: int, total_size: int, chunks: Dict[int, bytes]) -> bytes:
    """
    Join decrypted chunks strictly by index using the declared totals.

    Raises:
        ChunkIntegrityError: On a missing or unexpected chunk or a size mismatch
    """
    unexpected = [i for i in chunks if i < 0 or i >= total_chunks]
    if unexpected:
        raise ChunkIntegrityError(f"Unexpected chunk indexes: {sorted(unexpected)}")
    parts = []
    for index in range(total_chunks):
        if index not in chunks:
            raise ChunkIntegrityError(f"Missing chunk {index}")
        parts.append(chunks[index])
    data = b"".join(parts)
    if len(data) != total_size:
        raise ChunkIntegrityError(
            f"Reassembled {len(data)} bytes, manifest declares {total_size}"
        )
    return data
