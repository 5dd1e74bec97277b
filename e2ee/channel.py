"""
Secure message channel.

Messages are MessageEnvelopes serialized to canonical JSON and sealed with
AES-256-GCM under the session key. A fresh random IV is drawn per message,
the session id is bound as associated data, and every accepted message must
pass three independent replay checks: timestamp freshness, strictly
increasing sequence and an unseen nonce.
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, NamedTuple, Optional

from .events import SecurityEvents, DECRYPT_FAILED, REPLAY_DETECTED
from .exceptions import CryptoError, DecryptError, KeyStorageError, ReplayError
from .primitives import (
    IV_SIZE,
    NONCE_SIZE,
    aead_encrypt,
    aead_decrypt,
    random_bytes,
    canonical_json,
    b64encode,
    b64decode,
    now_ms,
)
from .session import SessionState
from .store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_MS = 5 * 60 * 1000
MAX_PAYLOAD_BYTES = 1024 * 1024


@dataclass
class MessageEnvelope:
    """
    Plaintext message envelope. Only ever exists in memory or inside a ciphertext.
    """
    sender: str
    receiver: str
    nonce: str
    sequence: int
    timestamp: int
    payload: bytes

    def to_dict(self) -> Dict:
        return {
            'from': self.sender,
            'to': self.receiver,
            'nonceB64': self.nonce,
            'sequence': self.sequence,
            'timestampMs': self.timestamp,
            'payloadB64': b64encode(self.payload),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'MessageEnvelope':
        sequence = data['sequence']
        timestamp = data['timestampMs']
        if not isinstance(sequence, int) or not isinstance(timestamp, int):
            raise ValueError("sequence and timestamp must be integers")
        return cls(
            sender=str(data['from']),
            receiver=str(data['to']),
            nonce=str(data['nonceB64']),
            sequence=sequence,
            timestamp=timestamp,
            payload=b64decode(data['payloadB64']),
        )


class SealedMessage(NamedTuple):
    iv: bytes
    ciphertext: bytes
    envelope: MessageEnvelope


def _associated_data(session_id: str) -> bytes:
    return b"e2ee/msg/v1|" + session_id.encode("utf-8")


class SecureChannel:
    """
    Encodes and decodes envelopes for the sessions of one principal.

    Args:
        principal: Local username
        store: State store the updated SessionState is written to
        events: Security event buffer for rejections
        freshness_ms: Allowed |timestamp - now| for incoming messages
        clock: Millisecond clock
    """

    def __init__(self, principal: str, store: StateStore,
                 events: Optional[SecurityEvents] = None,
                 freshness_ms: int = DEFAULT_FRESHNESS_MS,
                 clock: Callable[[], int] = now_ms):
        self.principal = principal
        self.store = store
        self.events = events or SecurityEvents()
        self.freshness_ms = freshness_ms
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    def _persist(self, state: SessionState):
        try:
            self.store.save_session(state)
        except KeyStorageError:
            raise
        except Exception as e:
            raise KeyStorageError(f"Failed to persist session {state.session_id}: {e}")

    def _latest(self, state: SessionState) -> SessionState:
        """
        Working copy of the session that includes every persisted update.

        Callers hold their own snapshots, so counters and seen nonces are
        merged with the stored state; neither ever moves backwards.
        """
        try:
            stored = self.store.load_session(state.session_id)
        except KeyStorageError:
            raise
        except Exception as e:
            raise KeyStorageError(f"Failed to load session {state.session_id}: {e}")
        current = state.copy()
        if stored is not None:
            current.send_sequence = max(current.send_sequence, stored.send_sequence)
            current.last_recv_sequence = max(current.last_recv_sequence, stored.last_recv_sequence)
            current.seen_nonces.entries.update(stored.seen_nonces.entries)
        return current

    def encode(self, state: SessionState, plaintext: bytes) -> SealedMessage:
        """
        Seal a payload for the session peer.

        The incremented send sequence is persisted before the ciphertext is
        returned, so a crash can leave a gap in sequences but never reuse one.
        The caller's state is updated to match what was persisted.

        Raises:
            ValueError: If the payload exceeds MAX_PAYLOAD_BYTES
            KeyStorageError: If the new sequence cannot be persisted
        """
        if len(plaintext) > MAX_PAYLOAD_BYTES:
            raise ValueError(f"Payload exceeds {MAX_PAYLOAD_BYTES} bytes")

        with self._lock_for(state.session_id):
            updated = self._latest(state)
            updated.send_sequence += 1
            envelope = MessageEnvelope(
                sender=self.principal,
                receiver=updated.peer_principal,
                nonce=b64encode(random_bytes(NONCE_SIZE)),
                sequence=updated.send_sequence,
                timestamp=self.clock(),
                payload=bytes(plaintext),
            )
            iv = random_bytes(IV_SIZE)
            ciphertext = aead_encrypt(
                updated.symmetric_key, iv, canonical_json(envelope.to_dict()),
                _associated_data(updated.session_id),
            )

            self._persist(updated)
            self._adopt(state, updated)

        return SealedMessage(iv, ciphertext, envelope)

    def decode(self, state: SessionState, iv: bytes, ciphertext: bytes) -> MessageEnvelope:
        """
        Open a sealed message and run the replay checks.

        The checks run against the persisted session state, so two callers
        holding separate snapshots cannot both accept the same message.

        Raises:
            DecryptError: Authentication failed or the envelope is malformed
                or not addressed from the peer to us
            ReplayError: reason 'window', 'sequence' or 'nonce'
            KeyStorageError: If the accepted state cannot be persisted
        """
        session_id = state.session_id
        with self._lock_for(session_id):
            try:
                plaintext = aead_decrypt(state.symmetric_key, iv, ciphertext,
                                         _associated_data(session_id))
            except CryptoError as e:
                self.events.report(DECRYPT_FAILED, sessionId=session_id, stage="aead")
                raise DecryptError(f"Message authentication failed: {e}")

            try:
                envelope = MessageEnvelope.from_dict(json.loads(plaintext.decode("utf-8")))
            except (CryptoError, ValueError, KeyError, TypeError) as e:
                self.events.report(DECRYPT_FAILED, sessionId=session_id, stage="envelope")
                raise DecryptError(f"Malformed envelope: {e}")

            if envelope.sender != state.peer_principal or envelope.receiver != self.principal:
                self.events.report(DECRYPT_FAILED, sessionId=session_id, stage="addressing")
                raise DecryptError("Envelope is not addressed from the session peer to us")

            current = self._latest(state)
            now = self.clock()
            if abs(envelope.timestamp - now) > self.freshness_ms:
                self._reject(session_id, "window", envelope)
            if envelope.sequence <= current.last_recv_sequence:
                self._reject(session_id, "sequence", envelope)
            if envelope.nonce in current.seen_nonces:
                self._reject(session_id, "nonce", envelope)

            current.last_recv_sequence = envelope.sequence
            current.seen_nonces.add(envelope.nonce, envelope.timestamp)
            current.seen_nonces.prune(now, self.freshness_ms)
            self._persist(current)
            self._adopt(state, current)

        return envelope

    @staticmethod
    def _adopt(state: SessionState, updated: SessionState):
        state.send_sequence = updated.send_sequence
        state.last_recv_sequence = updated.last_recv_sequence
        state.seen_nonces = updated.seen_nonces.copy()

    def _reject(self, session_id: str, reason: str, envelope: MessageEnvelope):
        self.events.report(REPLAY_DETECTED, sessionId=session_id, reason=reason,
                           sequence=envelope.sequence)
        raise ReplayError(reason)
