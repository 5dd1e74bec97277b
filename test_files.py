"""
File encryption tests: chunk cipher, manifests and reassembly.
"""

import pytest

from e2ee.exceptions import ChunkIntegrityError
from e2ee.files import (
    build_manifest,
    chunk_iv,
    decrypt_chunk,
    encrypt_chunk,
    export_file_key,
    generate_file_key,
    import_file_key,
    reassemble,
    split_chunks,
)


def test_chunk_round_trip():
    key = generate_file_key()
    chunk = encrypt_chunk(key, 3, b"chunk payload")

    assert chunk.size == len(b"chunk payload")
    assert chunk.iv == chunk_iv(3)
    assert decrypt_chunk(key, 3, chunk.iv, chunk.ciphertext) == b"chunk payload"


def test_wrong_key_fails():
    chunk = encrypt_chunk(generate_file_key(), 0, b"secret")

    with pytest.raises(ChunkIntegrityError):
        decrypt_chunk(generate_file_key(), 0, chunk.iv, chunk.ciphertext)


def test_chunk_cannot_be_moved_to_another_index():
    key = generate_file_key()
    chunk = encrypt_chunk(key, 1, b"second")

    with pytest.raises(ChunkIntegrityError):
        decrypt_chunk(key, 2, chunk.iv, chunk.ciphertext)
    with pytest.raises(ChunkIntegrityError):
        decrypt_chunk(key, 2, chunk_iv(2), chunk.ciphertext)


def test_tampered_chunk_fails():
    key = generate_file_key()
    chunk = encrypt_chunk(key, 0, b"payload")
    tampered = bytes([chunk.ciphertext[0] ^ 0x80]) + chunk.ciphertext[1:]

    with pytest.raises(ChunkIntegrityError):
        decrypt_chunk(key, 0, chunk.iv, tampered)


def test_counter_ivs_are_unique():
    ivs = {chunk_iv(i) for i in range(1000)}
    assert len(ivs) == 1000
    assert chunk_iv(1) == b"\x00" * 11 + b"\x01"
    with pytest.raises(ValueError):
        chunk_iv(-1)


def test_file_key_export_import():
    key = generate_file_key()
    assert import_file_key(export_file_key(key)) == key

    with pytest.raises(ChunkIntegrityError):
        import_file_key("not base64!")
    with pytest.raises(ChunkIntegrityError):
        import_file_key(export_file_key(b"short"))


def test_split_and_reassemble():
    data = bytes(range(256)) * 10
    key = generate_file_key()
    manifest = build_manifest("data.bin", "application/octet-stream", data, chunk_size=1000)

    assert manifest.total_chunks == 3
    assert manifest.total_size == len(data)

    decrypted = {}
    for index, part in enumerate(split_chunks(data, 1000)):
        chunk = encrypt_chunk(key, index, part)
        manifest.record_chunk(index, chunk.size, chunk.iv)
        decrypted[index] = decrypt_chunk(key, index, chunk.iv, chunk.ciphertext)
    manifest.mark_complete()

    assert reassemble(manifest.total_chunks, manifest.total_size, decrypted) == data


def test_reassemble_detects_missing_chunk():
    with pytest.raises(ChunkIntegrityError):
        reassemble(3, 9, {0: b"abc", 2: b"ghi"})


def test_reassemble_detects_size_mismatch():
    with pytest.raises(ChunkIntegrityError):
        reassemble(2, 10, {0: b"abc", 1: b"def"})


def test_reassemble_rejects_extra_chunks():
    with pytest.raises(ChunkIntegrityError):
        reassemble(1, 3, {0: b"abc", 1: b"def"})


def test_empty_file():
    manifest = build_manifest("empty.txt", "text/plain", b"")

    assert manifest.total_chunks == 0
    assert list(split_chunks(b"")) == []
    assert reassemble(0, 0, {}) == b""


def test_manifest_requires_ordered_chunks():
    manifest = build_manifest("a.bin", "", b"x" * 10, chunk_size=4)
    assert manifest.mime_type == "application/octet-stream"

    with pytest.raises(ValueError):
        manifest.record_chunk(1, 4, chunk_iv(1))
    manifest.record_chunk(0, 4, chunk_iv(0))
    with pytest.raises(ValueError):
        manifest.mark_complete()
    assert manifest.to_dict() == {
        "originalName": "a.bin",
        "mimeType": "application/octet-stream",
        "totalSize": 10,
        "totalChunks": 3,
    }
