"""
Shared test fixtures: an in-memory relay and fully wired test principals.
"""

import itertools
from collections import Counter
from typing import Dict, List, Tuple

import pytest

from e2ee.channel import DEFAULT_FRESHNESS_MS, SecureChannel
from e2ee.events import SecurityEvents
from e2ee.exceptions import NetworkError
from e2ee.exchange import KeyExchangeEngine
from e2ee.identity import IdentityKeyManager
from e2ee.primitives import now_ms
from e2ee.records import (
    DirectoryEntry,
    FileTransfer,
    RelayMessage,
    SignedBundle,
    parse_session,
)
from e2ee.store import MemoryStateStore


class InMemoryRelay:
    """Relay that stores everything in dicts; one instance serves all principals"""

    def __init__(self):
        self.users: Dict[str, str] = {}
        self.sessions: Dict[str, dict] = {}
        self.messages: List[dict] = []
        self.files: Dict[str, dict] = {}
        self.events: List[Tuple[str, str, dict]] = []
        self.calls = Counter()
        self.offline = False
        self._ids = itertools.count(1)

    def register(self, principal: str, signing_public_key_b64: str):
        self.users[principal] = signing_public_key_b64

    def view(self, principal: str) -> 'RelayView':
        return RelayView(self, principal)

    def next_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    def duplicate_session(self, session_id: str) -> str:
        """Store a second session carrying the same init bundle"""
        copy_id = self.next_id("sess-dup-")
        self.sessions[copy_id] = dict(self.sessions[session_id], sessionId=copy_id)
        return copy_id


class RelayView:
    """The relay as seen by one authenticated principal"""

    def __init__(self, relay: InMemoryRelay, principal: str):
        self.relay = relay
        self.principal = principal

    def _call(self, name: str):
        if self.relay.offline:
            raise NetworkError("relay offline")
        self.relay.calls[(self.principal, name)] += 1

    async def lookup_public_key(self, principal: str) -> DirectoryEntry:
        self._call("lookup_public_key")
        if principal not in self.relay.users:
            raise NetworkError(f"unknown user {principal}")
        return DirectoryEntry(principal=principal, signing_public_key=self.relay.users[principal])

    async def initiate_exchange(self, peer: str, bundle: SignedBundle) -> str:
        self._call("initiate_exchange")
        session_id = self.relay.next_id("sess-")
        self.relay.sessions[session_id] = {
            "sessionId": session_id,
            "initiatorUsername": self.principal,
            "responderUsername": peer,
            "status": "initiated",
            "initMsg": bundle.to_wire(),
            "respMsg": None,
            "confirmations": {},
        }
        return session_id

    async def list_pending_exchanges(self):
        self._call("list_pending_exchanges")
        return [parse_session(s) for s in self.relay.sessions.values()
                if s["responderUsername"] == self.principal and s["status"] == "initiated"]

    async def respond_exchange(self, session_id: str, bundle: SignedBundle):
        self._call("respond_exchange")
        session = self.relay.sessions[session_id]
        if session["responderUsername"] != self.principal or session["status"] != "initiated":
            raise NetworkError("cannot respond to this session")
        session["respMsg"] = bundle.to_wire()
        session["status"] = "responded"

    async def confirm_exchange(self, session_id: str, role: str, iv_b64: str,
                               ciphertext_b64: str, timestamp: int):
        self._call("confirm_exchange")
        session = self.relay.sessions[session_id]
        confirmations = dict(session["confirmations"])
        confirmations[role] = {"ivB64": iv_b64, "ciphertextB64": ciphertext_b64,
                               "timestampMs": timestamp}
        session["confirmations"] = confirmations
        both = "initiator" in confirmations and "responder" in confirmations
        session["status"] = "completed" if both else "confirmed"

    async def list_sessions(self):
        self._call("list_sessions")
        return [parse_session(s) for s in self.relay.sessions.values()
                if self.principal in (s["initiatorUsername"], s["responderUsername"])]

    async def send_message(self, receiver, session_id, iv_b64, ciphertext_b64,
                           nonce_b64, sequence, timestamp):
        self._call("send_message")
        message_id = self.relay.next_id("msg-")
        self.relay.messages.append({
            "_id": message_id,
            "receiver": receiver,
            "sessionId": session_id,
            "ivB64": iv_b64,
            "ciphertextB64": ciphertext_b64,
            "nonceB64": nonce_b64,
            "sequence": sequence,
            "timestampMs": timestamp,
            "delivered": False,
        })
        return message_id

    async def fetch_pending_messages(self):
        self._call("fetch_pending_messages")
        pending = []
        for message in self.relay.messages:
            if message["receiver"] == self.principal and not message["delivered"]:
                message["delivered"] = True
                pending.append(RelayMessage.model_validate(message))
        return pending

    async def initiate_file(self, receiver, session_id, manifest):
        self._call("initiate_file")
        file_id = self.relay.next_id("file-")
        self.relay.files[file_id] = {
            "fileId": file_id,
            "owner": self.principal,
            "receiver": receiver,
            "sessionId": session_id,
            "chunks": {},
            "complete": False,
            **manifest,
        }
        return file_id

    async def upload_chunk(self, file_id, index, iv_b64, size, ciphertext):
        self._call("upload_chunk")
        self.relay.files[file_id]["chunks"][index] = (iv_b64, bytes(ciphertext), size)

    async def complete_file(self, file_id):
        self._call("complete_file")
        self.relay.files[file_id]["complete"] = True

    async def list_files(self):
        self._call("list_files")
        return [FileTransfer.model_validate({k: v for k, v in f.items() if k != "chunks"})
                for f in self.relay.files.values()
                if self.principal in (f["receiver"], f["owner"])]

    async def download_chunk(self, file_id, index):
        self._call("download_chunk")
        try:
            iv_b64, ciphertext, _ = self.relay.files[file_id]["chunks"][index]
        except KeyError:
            raise NetworkError("chunk not found")
        return iv_b64, ciphertext

    async def report_event(self, event_type, details):
        self._call("report_event")
        self.relay.events.append((self.principal, event_type, dict(details)))


class Party:
    """One principal with its own store, identity, engine and channel"""

    def __init__(self, name: str, relay: InMemoryRelay, freshness_ms: int = DEFAULT_FRESHNESS_MS,
                 clock=now_ms):
        self.name = name
        self.relay = relay
        self.store = MemoryStateStore(name)
        self.identity = IdentityKeyManager(self.store)
        relay.register(name, self.identity.ensure_identity_keys(name))
        self.view = relay.view(name)
        self.events = SecurityEvents()
        self.engine = KeyExchangeEngine(
            name, self.store, self.identity, self.view, self.view,
            events=self.events, event_sink=self.view, freshness_ms=freshness_ms, clock=clock,
        )
        self.channel = SecureChannel(name, self.store, events=self.events,
                                     freshness_ms=freshness_ms, clock=clock)


async def establish(initiator: Party, responder: Party) -> str:
    """Run the exchange to completion on both sides"""
    session_id = await initiator.engine.initiate(responder.name)
    await responder.engine.tick()
    await initiator.engine.tick()
    await responder.engine.tick()
    await initiator.engine.tick()
    return session_id


@pytest.fixture
def relay():
    return InMemoryRelay()


@pytest.fixture
def alice(relay):
    return Party("alice", relay)


@pytest.fixture
def bob(relay):
    return Party("bob", relay)


@pytest.fixture
def make_party(relay):
    def factory(name: str, **kwargs) -> Party:
        return Party(name, relay, **kwargs)
    return factory


@pytest.fixture
def exchange():
    return establish
