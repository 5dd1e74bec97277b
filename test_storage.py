"""
Local state storage tests for the in-memory and SQLite stores.
"""

import pytest

from client.storage import SqliteStateStore
from e2ee.exceptions import KeyStorageError
from e2ee.identity import IdentityKeyManager
from e2ee.session import NonceWindow, SessionState
from e2ee.store import MemoryStateStore, StateStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield MemoryStateStore("alice")
    else:
        sqlite_store = SqliteStateStore("alice", str(tmp_path))
        yield sqlite_store
        sqlite_store.close()


def test_store_protocol(store):
    assert isinstance(store, StateStore)


def test_key_value_operations(store):
    store.put("exchange/s1", {"status": "initiated"})
    store.put("exchange/s2", {"status": "responded"})
    store.put("identity", {"public": "abc"})

    assert store.get("exchange/s1") == {"status": "initiated"}
    assert store.keys("exchange/") == ["exchange/s1", "exchange/s2"]

    store.delete("exchange/s1")
    assert store.get("exchange/s1") is None
    assert store.get("missing") is None


def test_values_are_copied(store):
    value = {"nonces": {"a": 1}}
    store.put("log", value)
    value["nonces"]["b"] = 2

    loaded = store.get("log")
    loaded["nonces"]["c"] = 3
    assert store.get("log") == {"nonces": {"a": 1}}


def test_session_round_trip(store):
    state = SessionState("s1", b"k" * 32, "bob", send_sequence=4, last_recv_sequence=2,
                         seen_nonces=NonceWindow({"n1": 1000}))
    store.save_session(state)

    loaded = store.load_session("s1")
    assert loaded.symmetric_key == b"k" * 32
    assert loaded.peer_principal == "bob"
    assert loaded.send_sequence == 4
    assert loaded.last_recv_sequence == 2
    assert "n1" in loaded.seen_nonces
    assert store.list_session_ids() == ["s1"]

    store.delete_session("s1")
    assert store.load_session("s1") is None


def test_identity_keys_survive_reopen(tmp_path):
    first = SqliteStateStore("alice", str(tmp_path), passphrase="pw")
    public_key = IdentityKeyManager(first).ensure_identity_keys("alice")
    first.close()

    second = SqliteStateStore("alice", str(tmp_path), passphrase="pw")
    assert IdentityKeyManager(second).ensure_identity_keys("alice") == public_key
    second.close()


def test_encrypted_at_rest(tmp_path):
    store = SqliteStateStore("alice", str(tmp_path), passphrase="correct horse")
    store.put("secret", {"value": "plaintext-marker"})
    store.close()

    raw = (tmp_path / "alice.db").read_bytes()
    assert b"plaintext-marker" not in raw


def test_wrong_passphrase_fails(tmp_path):
    store = SqliteStateStore("alice", str(tmp_path), passphrase="right")
    store.put("secret", {"value": 1})
    store.close()

    reopened = SqliteStateStore("alice", str(tmp_path), passphrase="wrong")
    with pytest.raises(KeyStorageError):
        reopened.get("secret")
    reopened.close()


def test_closed_store_raises(tmp_path):
    store = SqliteStateStore("alice", str(tmp_path))
    store.close()

    with pytest.raises(KeyStorageError):
        store.get("identity")


def test_principal_mismatch_rejected(store):
    with pytest.raises(KeyStorageError):
        IdentityKeyManager(store).ensure_identity_keys("mallory")


def test_reset_identity(store):
    identity = IdentityKeyManager(store)
    first = identity.ensure_identity_keys("alice")
    identity.reset_identity()

    with pytest.raises(KeyStorageError):
        identity.signing_key()
    assert identity.ensure_identity_keys("alice") != first


def test_reset_identity_drops_derived_state(store):
    identity = IdentityKeyManager(store)
    identity.ensure_identity_keys("alice")
    store.save_session(SessionState("s1", b"\x01" * 32, "bob"))
    store.put("exchange/s1", {"status": "completed", "peer": "bob"})
    store.put("exchange/s2", {"status": "initiated", "peer": "carol"})
    store.put("ephemeral/s2", {"private": "cHJpdg==", "role": "initiator"})

    identity.reset_identity()

    assert store.list_session_ids() == []
    assert store.load_session("s1") is None
    assert store.keys("ephemeral/") == []
    assert store.get("exchange/s1")["status"] == "abandoned"
    assert store.get("exchange/s2")["status"] == "abandoned"
    assert store.get("exchange/s1")["peer"] == "bob"
