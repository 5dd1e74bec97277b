"""
Key exchange engine tests: handshake flow, rejection paths and idempotent polling.
"""

import asyncio

import pytest

from e2ee.exceptions import (
    DecryptError,
    DerivationError,
    InvalidTransitionError,
    NetworkError,
    ReplayError,
    SignatureVerificationError,
)
from e2ee.primitives import b64encode, now_ms
from e2ee.records import parse_session


def relay_calls(relay, principal, name):
    return relay.calls[(principal, name)]


class GatedDirectory:
    """Directory whose lookups block until released"""

    def __init__(self, inner, on_lookup=None):
        self.inner = inner
        self.on_lookup = on_lookup
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.lookups = 0

    async def lookup_public_key(self, principal):
        self.lookups += 1
        if self.on_lookup is not None:
            self.on_lookup()
        self.entered.set()
        await self.release.wait()
        return await self.inner.lookup_public_key(principal)


@pytest.mark.asyncio
async def test_both_sides_derive_identical_keys(alice, bob, exchange):
    """Both principals end up with the same 256-bit session key"""
    session_id = await exchange(alice, bob)

    alice_state = alice.store.load_session(session_id)
    bob_state = bob.store.load_session(session_id)
    assert alice_state is not None and bob_state is not None
    assert len(alice_state.symmetric_key) == 32
    assert alice_state.symmetric_key == bob_state.symmetric_key
    assert alice_state.peer_principal == "bob"
    assert bob_state.peer_principal == "alice"


@pytest.mark.asyncio
async def test_exchange_completes_on_both_sides(alice, bob, relay, exchange):
    session_id = await exchange(alice, bob)

    assert relay.sessions[session_id]["status"] == "completed"
    assert alice.engine.local_status(session_id) == "completed"
    assert bob.engine.local_status(session_id) == "completed"


@pytest.mark.asyncio
async def test_ephemeral_keys_erased_after_derivation(alice, bob, exchange):
    session_id = await exchange(alice, bob)

    assert alice.store.get("ephemeral/" + session_id) is None
    assert bob.store.get("ephemeral/" + session_id) is None


@pytest.mark.asyncio
async def test_hello_scenario_with_replay(alice, bob, relay, exchange):
    """A sends "hello"; B receives it once; the verbatim replay is rejected"""
    session_id = await exchange(alice, bob)

    state = alice.store.load_session(session_id)
    sealed = alice.channel.encode(state, b"hello")
    envelope = sealed.envelope
    await alice.view.send_message("bob", session_id, b64encode(sealed.iv),
                                  b64encode(sealed.ciphertext), envelope.nonce,
                                  envelope.sequence, envelope.timestamp)

    pending = await bob.view.fetch_pending_messages()
    assert len(pending) == 1

    bob_state = bob.store.load_session(session_id)
    received = bob.channel.decode(bob_state, sealed.iv, sealed.ciphertext)
    assert received.payload == b"hello"
    assert received.sequence == 1
    assert received.sender == "alice"

    with pytest.raises(ReplayError) as exc_info:
        bob.channel.decode(bob.store.load_session(session_id), sealed.iv, sealed.ciphertext)
    assert exc_info.value.reason == "sequence"


@pytest.mark.asyncio
async def test_repolling_is_idempotent(alice, bob, relay, exchange):
    """Observing the same records again never re-derives or resends"""
    session_id = await exchange(alice, bob)
    key = alice.store.load_session(session_id).symmetric_key
    responds = relay_calls(relay, "bob", "respond_exchange")
    confirms = (relay_calls(relay, "alice", "confirm_exchange"),
                relay_calls(relay, "bob", "confirm_exchange"))

    for _ in range(3):
        await bob.engine.tick()
        await alice.engine.tick()

    assert alice.store.load_session(session_id).symmetric_key == key
    assert bob.store.load_session(session_id).symmetric_key == key
    assert relay_calls(relay, "bob", "respond_exchange") == responds == 1
    assert (relay_calls(relay, "alice", "confirm_exchange"),
            relay_calls(relay, "bob", "confirm_exchange")) == confirms == (1, 1)


@pytest.mark.asyncio
async def test_respond_twice_is_a_noop(alice, bob, relay):
    session_id = await alice.engine.initiate("bob")
    session = parse_session(relay.sessions[session_id])

    assert await bob.engine.respond(session) is True
    assert await bob.engine.respond(session) is False
    assert relay_calls(relay, "bob", "respond_exchange") == 1


@pytest.mark.asyncio
async def test_invalid_signature_abandons_exchange(alice, bob, relay):
    session_id = await alice.engine.initiate("bob")
    relay.sessions[session_id]["initMsg"]["signatureB64"] = b64encode(b"\x00" * 64)

    await bob.engine.tick()

    assert bob.engine.local_status(session_id) == "abandoned"
    assert relay.sessions[session_id]["status"] == "initiated"
    assert bob.store.load_session(session_id) is None
    assert [e[1] for e in relay.events] == ["invalid_signature"]
    assert relay.events[0][2]["reason"] == "signature"


@pytest.mark.asyncio
async def test_respond_raises_on_forged_bundle(alice, bob, relay, make_party):
    """A bundle signed by someone else's identity key is rejected"""
    mallory = make_party("mallory")
    session_id = await alice.engine.initiate("bob")
    relay.users["alice"] = relay.users["mallory"]

    with pytest.raises(SignatureVerificationError):
        await bob.engine.respond(parse_session(relay.sessions[session_id]))
    assert bob.engine.local_status(session_id) == "abandoned"
    assert mallory.engine.local_status(session_id) is None


@pytest.mark.asyncio
async def test_stale_init_bundle_rejected(relay, make_party):
    alice = make_party("alice", clock=lambda: now_ms() - 10 * 60 * 1000)
    bob = make_party("bob")
    session_id = await alice.engine.initiate("bob")

    await bob.engine.tick()

    assert bob.engine.local_status(session_id) == "abandoned"
    assert relay.events[0][1] == "invalid_signature"
    assert relay.events[0][2]["reason"] == "stale"


@pytest.mark.asyncio
async def test_reused_init_nonce_rejected(alice, bob, relay):
    session_id = await alice.engine.initiate("bob")
    duplicate_id = relay.duplicate_session(session_id)

    await bob.engine.tick()

    assert bob.engine.local_status(session_id) == "responded"
    assert bob.engine.local_status(duplicate_id) == "abandoned"
    assert relay.events[0][2]["reason"] == "nonce"


@pytest.mark.asyncio
async def test_initiator_rejects_tampered_response(alice, bob, relay):
    session_id = await alice.engine.initiate("bob")
    await bob.engine.tick()
    relay.sessions[session_id]["respMsg"]["timestampMs"] += 1

    await alice.engine.tick()

    assert alice.engine.local_status(session_id) == "abandoned"
    assert alice.store.load_session(session_id) is None
    assert relay_calls(relay, "alice", "confirm_exchange") == 0


@pytest.mark.asyncio
async def test_tampered_confirmation_abandons(alice, bob, relay):
    session_id = await alice.engine.initiate("bob")
    await bob.engine.tick()
    await alice.engine.tick()
    confirmation = relay.sessions[session_id]["confirmations"]["initiator"]
    confirmation["ciphertextB64"] = b64encode(b"\x01" * 48)

    await bob.engine.tick()

    assert bob.engine.local_status(session_id) == "abandoned"
    assert bob.store.load_session(session_id) is None
    assert "decrypt_failed" in [e[1] for e in relay.events]


@pytest.mark.asyncio
async def test_respond_rejects_wrong_status(alice, bob, relay, exchange):
    session_id = await exchange(alice, bob)
    completed = parse_session(relay.sessions[session_id])

    with pytest.raises(InvalidTransitionError):
        await bob.engine.respond(completed)


@pytest.mark.asyncio
async def test_respond_rejects_session_for_someone_else(alice, bob, relay, make_party):
    carol = make_party("carol")
    session_id = await alice.engine.initiate("bob")

    with pytest.raises(InvalidTransitionError):
        await carol.engine.respond(parse_session(relay.sessions[session_id]))


@pytest.mark.asyncio
async def test_abandoned_session_never_gets_a_key(alice, bob, relay):
    session_id = await alice.engine.initiate("bob")
    await bob.engine.tick()
    alice.engine.abandon(session_id)

    await alice.engine.tick()

    assert alice.store.load_session(session_id) is None
    assert alice.engine.local_status(session_id) == "abandoned"


@pytest.mark.asyncio
async def test_relay_abandoned_status_is_applied(alice, bob, relay):
    session_id = await alice.engine.initiate("bob")
    relay.sessions[session_id]["status"] = "abandoned"

    await alice.engine.tick()

    assert alice.engine.local_status(session_id) == "abandoned"
    assert alice.store.get("ephemeral/" + session_id) is None


@pytest.mark.asyncio
async def test_derivation_waits_for_material(alice, bob, relay):
    """Without the cached ephemeral key nothing is derived and nothing is written"""
    session_id = await alice.engine.initiate("bob")
    await bob.engine.tick()
    alice.store.delete("ephemeral/" + session_id)

    with pytest.raises(DerivationError):
        await alice.engine.deriver.derive_session_if_possible(
            parse_session(relay.sessions[session_id]))
    assert alice.store.load_session(session_id) is None


@pytest.mark.asyncio
async def test_network_error_propagates_from_tick(alice, relay):
    relay.offline = True

    with pytest.raises(NetworkError):
        await alice.engine.tick()


@pytest.mark.asyncio
async def test_status_never_regresses(alice, bob, exchange):
    session_id = await exchange(alice, bob)

    with pytest.raises(InvalidTransitionError):
        alice.engine._set_local(session_id, "responded")
    assert alice.engine.local_status(session_id) == "completed"


@pytest.mark.asyncio
async def test_cannot_exchange_with_self(alice):
    with pytest.raises(ValueError):
        await alice.engine.initiate("alice")


@pytest.mark.asyncio
async def test_concurrent_processing_is_single_flight(alice, bob, relay):
    session_id = await alice.engine.initiate("bob")
    await bob.engine.tick()
    gate = GatedDirectory(alice.view)
    alice.engine.deriver.directory = gate

    saved = []
    save_session = alice.store.save_session

    def counting_save(state):
        saved.append(state.session_id)
        save_session(state)

    alice.store.save_session = counting_save
    record = parse_session(relay.sessions[session_id])

    first = asyncio.ensure_future(alice.engine.process(record))
    await gate.entered.wait()
    assert await alice.engine.process(record) is None

    gate.release.set()
    assert await first == "confirmed"

    assert gate.lookups == 1
    assert saved == [session_id]
    assert relay_calls(relay, "alice", "confirm_exchange") == 1


@pytest.mark.asyncio
async def test_abandon_during_derivation_discards_key(alice, bob, relay):
    session_id = await alice.engine.initiate("bob")
    await bob.engine.tick()
    gate = GatedDirectory(alice.view, on_lookup=lambda: alice.engine.abandon(session_id))
    gate.release.set()
    alice.engine.deriver.directory = gate

    assert await alice.engine.tick() == []

    assert gate.lookups == 1
    assert alice.store.load_session(session_id) is None
    assert alice.engine.local_status(session_id) == "abandoned"
    assert relay_calls(relay, "alice", "confirm_exchange") == 0


@pytest.mark.asyncio
async def test_identity_reset_ends_existing_sessions(alice, bob, relay, exchange):
    session_id = await exchange(alice, bob)

    alice.identity.reset_identity()
    assert await alice.engine.tick() == []

    assert alice.store.load_session(session_id) is None
    assert alice.engine.local_status(session_id) == "abandoned"


@pytest.mark.asyncio
async def test_tick_without_sink_keeps_channel_events(alice, bob, exchange):
    session_id = await exchange(alice, bob)
    sealed = bob.channel.encode(bob.store.load_session(session_id), b"hello")
    tampered = sealed.ciphertext[:-1] + bytes([sealed.ciphertext[-1] ^ 0x01])

    with pytest.raises(DecryptError):
        alice.channel.decode(alice.store.load_session(session_id), sealed.iv, tampered)
    alice.engine.event_sink = None
    await alice.engine.tick()

    assert [e[0] for e in alice.events.pending] == ["decrypt_failed"]
