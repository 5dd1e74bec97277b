"""
Per-session channel state.

A SessionState exists only after a successful derivation. It is owned by the
local principal; the peer holds an independent copy with the same key.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from .primitives import b64encode, b64decode


class NonceWindow:
    """
    Seen-nonce set bounded by message age.

    Nonces are kept together with the timestamp of the message that carried
    them. Entries older than the freshness window are evicted by prune();
    messages that old fail the window check before the nonce check runs.
    """

    def __init__(self, entries: Optional[Dict[str, int]] = None):
        self.entries: Dict[str, int] = dict(entries or {})

    def __contains__(self, nonce: str) -> bool:
        return nonce in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def add(self, nonce: str, timestamp: int):
        self.entries[nonce] = timestamp

    def prune(self, now: int, window_ms: int) -> int:
        """Drop nonces whose message timestamp is older than now - window_ms"""
        cutoff = now - window_ms
        stale = [n for n, ts in self.entries.items() if ts < cutoff]
        for nonce in stale:
            del self.entries[nonce]
        return len(stale)

    def copy(self) -> 'NonceWindow':
        return NonceWindow(self.entries)


@dataclass
class SessionState:
    """
    Symmetric channel state for one key exchange session.

    Attributes:
        session_id: Relay assigned exchange identifier
        symmetric_key: 32-byte AES-GCM key derived from the exchange
        peer_principal: Username on the other end of the session
        send_sequence: Last sequence number allocated for sending
        last_recv_sequence: Highest sequence number accepted from the peer
        seen_nonces: Replay window of accepted message nonces
    """
    session_id: str
    symmetric_key: bytes
    peer_principal: str
    send_sequence: int = 0
    last_recv_sequence: int = 0
    seen_nonces: NonceWindow = field(default_factory=NonceWindow)

    def to_dict(self) -> Dict:
        """Convert to dictionary for persistence"""
        return {
            'sessionId': self.session_id,
            'symmetricKey': b64encode(self.symmetric_key),
            'peerPrincipal': self.peer_principal,
            'sendSequence': self.send_sequence,
            'lastRecvSequence': self.last_recv_sequence,
            'seenNonces': dict(self.seen_nonces.entries),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SessionState':
        """Create from dictionary"""
        return cls(
            session_id=data['sessionId'],
            symmetric_key=b64decode(data['symmetricKey']),
            peer_principal=data['peerPrincipal'],
            send_sequence=int(data.get('sendSequence', 0)),
            last_recv_sequence=int(data.get('lastRecvSequence', 0)),
            seen_nonces=NonceWindow(data.get('seenNonces') or {}),
        )

    def copy(self) -> 'SessionState':
        return SessionState(
            session_id=self.session_id,
            symmetric_key=self.symmetric_key,
            peer_principal=self.peer_principal,
            send_sequence=self.send_sequence,
            last_recv_sequence=self.last_recv_sequence,
            seen_nonces=self.seen_nonces.copy(),
        )
