"""
Key Exchange Engine

Runs the authenticated ephemeral handshake over the relay:

  Initiator                         Relay                         Responder
  |-- signed init bundle ---------->|                                |
  |                                 |<------ poll pending -----------|
  |                                 |------- init bundle ----------->| verify, sign
  |                                 |<------ signed response --------|
  |<-- poll sessions ---------------|                                |
  | verify, derive K                |                                | derive K
  |-- confirmation under K -------->|<------ confirmation under K ---|

Relay records are polled repeatedly. The engine keeps a local record per
session id (status, role, whether it responded / confirmed) so re-observing
a record never regenerates keys or resends messages.
"""

import json
import logging
from typing import Callable, Dict, List, Optional, Set

from .deriver import SessionDeriver
from .events import SecurityEvents, DECRYPT_FAILED, INVALID_SIGNATURE
from .exceptions import (
    CryptoError,
    DecryptError,
    DerivationError,
    InvalidTransitionError,
    KeyStorageError,
    NetworkError,
    SignatureVerificationError,
)
from .handshake import (
    INIT,
    RESPONSE,
    HandshakeNonceLog,
    build_bundle,
    check_freshness,
    transcript_hash,
    verify_bundle,
)
from .identity import IdentityKeyManager
from .interfaces import Directory, ExchangeRelay, SecurityEventSink
from .primitives import (
    IV_SIZE,
    aead_encrypt,
    aead_decrypt,
    random_bytes,
    canonical_json,
    serialize_public_key,
    serialize_private_key,
    b64encode,
    b64decode,
    constant_time_compare,
    now_ms,
)
from .records import (
    AbandonedSession,
    CompletedSession,
    ConfirmedSession,
    InitiatedSession,
    KeyExchangeSession,
    RespondedSession,
    SessionRecord,
    check_transition,
)
from .session import SessionState
from .store import EPHEMERAL_PREFIX, EXCHANGE_PREFIX, StateStore
from .channel import DEFAULT_FRESHNESS_MS

logger = logging.getLogger(__name__)


def _confirmation_aad(session_id: str, role: str) -> bytes:
    return f"e2ee/confirm/v1|{session_id}|{role}".encode("utf-8")


class KeyExchangeEngine:
    """
    Drives initiate / respond / confirm for one local principal.

    Args:
        principal: Local username
        store: Local state store
        identity: Identity key manager for the principal
        relay: Exchange relay client
        directory: Directory used to look up peer signing keys
        events: Security event buffer (shared with the channel)
        event_sink: Where buffered events are flushed after each tick
        freshness_ms: Maximum bundle age accepted by respond()
        clock: Millisecond clock
        deriver: Session deriver (built from the other arguments by default)
    """

    def __init__(self, principal: str, store: StateStore, identity: IdentityKeyManager,
                 relay: ExchangeRelay, directory: Directory,
                 events: Optional[SecurityEvents] = None,
                 event_sink: Optional[SecurityEventSink] = None,
                 freshness_ms: int = DEFAULT_FRESHNESS_MS,
                 clock: Callable[[], int] = now_ms,
                 deriver: Optional[SessionDeriver] = None):
        self.principal = principal
        self.store = store
        self.identity = identity
        self.relay = relay
        self.directory = directory
        self.events = events or SecurityEvents()
        self.event_sink = event_sink
        self.freshness_ms = freshness_ms
        self.clock = clock
        self.deriver = deriver or SessionDeriver(principal, store, identity, directory)
        self.nonce_log = HandshakeNonceLog(store, freshness_ms)
        self._inflight: Set[str] = set()

    # ------------------------------------------------------------------
    # Local exchange records
    # ------------------------------------------------------------------

    def local_record(self, session_id: str) -> Optional[Dict]:
        return self.store.get(EXCHANGE_PREFIX + session_id)

    def local_status(self, session_id: str) -> Optional[str]:
        record = self.local_record(session_id)
        return record["status"] if record else None

    def _set_local(self, session_id: str, status: str, **fields):
        record = self.local_record(session_id) or {}
        if "status" in record:
            check_transition(record["status"], status)
        record.update(fields)
        record["status"] = status
        record["updatedAt"] = self.clock()
        self.store.put(EXCHANGE_PREFIX + session_id, record)

    def _cache_ephemeral(self, session_id: str, private_key, role: str, peer: str):
        self.store.put(EPHEMERAL_PREFIX + session_id, {
            "private": b64encode(serialize_private_key(private_key)),
            "public": b64encode(serialize_public_key(private_key.public_key())),
            "role": role,
            "peer": peer,
        })

    def abandon(self, session_id: str, **fields):
        """
        Mark an exchange abandoned locally and erase its ephemeral key.

        Derivations still in flight for the session are discarded.
        """
        self._set_local(session_id, "abandoned", **fields)
        self.store.delete(EPHEMERAL_PREFIX + session_id)
        logger.info("Abandoned key exchange session=%s", session_id)

    # ------------------------------------------------------------------
    # Protocol steps
    # ------------------------------------------------------------------

    async def initiate(self, peer: str) -> str:
        """
        Start an exchange with `peer`.

        Returns:
            Relay assigned session id

        Raises:
            NetworkError: If the relay rejects or cannot be reached
            KeyStorageError: If local state cannot be written
        """
        if peer == self.principal:
            raise ValueError("Cannot start a key exchange with yourself")

        self.identity.ensure_identity_keys(self.principal)
        nonce = self.nonce_log.fresh_nonce()
        ephemeral_private, bundle = build_bundle(
            INIT, self.identity.signing_key(), nonce, self.clock()
        )

        session_id = await self.relay.initiate_exchange(peer, bundle)

        self.nonce_log.add(bundle.nonce, bundle.timestamp, now=self.clock())
        self._cache_ephemeral(session_id, ephemeral_private, "initiator", peer)
        self._set_local(session_id, "initiated", role="initiator", peer=peer,
                        bundle=bundle.to_wire())
        logger.info("Initiated key exchange session=%s peer=%s", session_id, peer)
        return session_id

    async def respond(self, session: KeyExchangeSession) -> bool:
        """
        Answer an initiated exchange addressed to the local principal.

        Returns:
            True if a response was sent, False if this session was already handled

        Raises:
            InvalidTransitionError: The record is not an initiated session for us
            SignatureVerificationError: Signature, freshness or nonce check failed;
                the exchange has been abandoned
        """
        if not isinstance(session, InitiatedSession):
            raise InvalidTransitionError(f"Cannot respond to a {session.status} session")
        if session.responder != self.principal:
            raise InvalidTransitionError(
                f"Session {session.session_id} is not addressed to {self.principal}"
            )

        session_id = session.session_id
        if self.local_status(session_id) is not None:
            return False

        try:
            entry = await self.directory.lookup_public_key(session.initiator)
            verify_bundle(INIT, session.init_msg, entry.signing_public_key)
            check_freshness(session.init_msg, self.clock(), self.freshness_ms)
            if self.nonce_log.seen(session.init_msg.nonce):
                raise SignatureVerificationError("Init bundle nonce was already used", reason="nonce")
        except SignatureVerificationError as e:
            self.events.report(INVALID_SIGNATURE, sessionId=session_id, reason=e.reason,
                               peer=session.initiator)
            self.abandon(session_id, role="responder", peer=session.initiator, reason=e.reason)
            raise

        self.identity.ensure_identity_keys(self.principal)
        nonce = self.nonce_log.fresh_nonce()
        ephemeral_private, bundle = build_bundle(
            RESPONSE, self.identity.signing_key(), nonce, self.clock()
        )
        # Cached before sending: a crash after the relay accepted the bundle
        # must still leave us able to derive.
        self._cache_ephemeral(session_id, ephemeral_private, "responder", session.initiator)

        await self.relay.respond_exchange(session_id, bundle)

        now = self.clock()
        self.nonce_log.add(session.init_msg.nonce, session.init_msg.timestamp, now=now)
        self.nonce_log.add(bundle.nonce, bundle.timestamp, now=now)
        self._set_local(session_id, "responded", role="responder", peer=session.initiator,
                        bundle=bundle.to_wire())
        logger.info("Responded to key exchange session=%s peer=%s", session_id, session.initiator)
        return True

    async def confirm(self, session: SessionRecord, state: SessionState) -> bool:
        """
        Prove possession of the derived key and agreement on the transcript.

        Returns:
            True if a confirmation was sent, False if one was sent before
        """
        session_id = session.session_id
        local = self.local_record(session_id) or {}
        if local.get("confirmSent"):
            return False
        if local.get("status") == "abandoned":
            return False

        role = session.role_of(self.principal)
        if role is None:
            raise InvalidTransitionError(f"{self.principal} is not part of session {session_id}")

        body = canonical_json({
            "sessionId": session_id,
            "role": role,
            "transcript": b64encode(transcript_hash(session_id, session.init_msg, session.resp_msg)),
        })
        iv = random_bytes(IV_SIZE)
        ciphertext = aead_encrypt(state.symmetric_key, iv, body,
                                  _confirmation_aad(session_id, role))

        await self.relay.confirm_exchange(session_id, role, b64encode(iv),
                                          b64encode(ciphertext), self.clock())

        self._set_local(session_id, "confirmed", role=role, peer=session.peer_of(self.principal),
                        confirmSent=True)
        logger.info("Sent key confirmation session=%s role=%s", session_id, role)
        return True

    def observe_peer_confirmation(self, session: SessionRecord, state: SessionState) -> bool:
        """
        Verify the peer's confirmation if the relay has one.

        Returns:
            True once the exchange is completed locally

        Raises:
            DecryptError: The confirmation does not authenticate under our key
                or names a different transcript; the exchange is abandoned
        """
        session_id = session.session_id
        local = self.local_record(session_id) or {}
        if local.get("status") == "completed":
            return True

        role = session.role_of(self.principal)
        peer_role = "responder" if role == "initiator" else "initiator"
        confirmation = session.confirmations.for_role(peer_role)
        if confirmation is None:
            return False

        expected = transcript_hash(session_id, session.init_msg, session.resp_msg)
        try:
            plaintext = aead_decrypt(
                state.symmetric_key, b64decode(confirmation.iv), b64decode(confirmation.ciphertext),
                _confirmation_aad(session_id, peer_role),
            )
            body = json.loads(plaintext.decode("utf-8"))
            if not isinstance(body, dict):
                raise CryptoError("confirmation body is not an object")
            if body.get("sessionId") != session_id or body.get("role") != peer_role:
                raise CryptoError("confirmation bound to another session or role")
            if not constant_time_compare(b64decode(str(body.get("transcript", ""))), expected):
                raise CryptoError("transcript mismatch")
        except (CryptoError, ValueError) as e:
            self.events.report(DECRYPT_FAILED, sessionId=session_id, stage="confirmation")
            self.abandon(session_id, reason="confirmation")
            self.store.delete_session(session_id)
            raise DecryptError(f"Peer confirmation rejected for {session_id}: {e}")

        if local.get("confirmSent"):
            self._set_local(session_id, "completed", peerConfirmed=True)
            logger.info("Key exchange completed session=%s", session_id)
            return True
        self._set_local(session_id, local.get("status", "responded"), peerConfirmed=True)
        return False

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def process(self, session: KeyExchangeSession) -> Optional[str]:
        """
        Advance the local side of one relay record.

        Only one call per session id runs at a time; overlapping calls for a
        session already being processed return immediately.

        Returns:
            The local status after processing, or None if skipped
        """
        session_id = session.session_id
        role = session.role_of(self.principal)
        if role is None:
            return None
        if session_id in self._inflight:
            logger.debug("Session %s already being processed", session_id)
            return None
        self._inflight.add(session_id)
        try:
            await self._advance(session, role)
        finally:
            self._inflight.discard(session_id)
        return self.local_status(session_id)

    async def _advance(self, session: KeyExchangeSession, role: str):
        session_id = session.session_id
        local = self.local_status(session_id)
        if local == "abandoned":
            return

        if isinstance(session, AbandonedSession):
            if local != "completed":
                self.abandon(session_id, role=role, peer=session.peer_of(self.principal))
            return

        if isinstance(session, InitiatedSession):
            if role == "responder" and local is None:
                await self.respond(session)
            return

        if isinstance(session, (RespondedSession, ConfirmedSession, CompletedSession)):
            state = self.store.load_session(session_id)
            if state is None:
                try:
                    state = await self.deriver.derive_session_if_possible(
                        session,
                        still_wanted=lambda: self.local_status(session_id) != "abandoned",
                    )
                except SignatureVerificationError as e:
                    self.events.report(INVALID_SIGNATURE, sessionId=session_id, reason=e.reason,
                                       peer=session.peer_of(self.principal))
                    self.abandon(session_id, reason=e.reason)
                    raise
                if state is None:
                    return
                if self.local_status(session_id) in (None, "initiated"):
                    self._set_local(session_id, "responded", role=role,
                                    peer=session.peer_of(self.principal))
            await self.confirm(session, state)
            self.observe_peer_confirmation(session, state)
            return

        raise InvalidTransitionError(f"Unhandled session status {session.status!r}")

    async def tick(self) -> List[str]:
        """
        One polling unit: fetch pending and known sessions and advance each.

        A failure in one session is logged and does not affect the others.
        Listing failures propagate as NetworkError to the scheduler.

        Returns:
            Session ids that ended the tick with a derived session key
        """
        records: Dict[str, KeyExchangeSession] = {}
        for session in await self.relay.list_pending_exchanges():
            records[session.session_id] = session
        for session in await self.relay.list_sessions():
            records[session.session_id] = session

        ready = []
        for session_id, session in records.items():
            try:
                await self.process(session)
            except SignatureVerificationError as e:
                logger.warning("Exchange rejected session=%s reason=%s", session_id, e.reason)
            except DecryptError as e:
                logger.warning("Exchange confirmation failed session=%s: %s", session_id, e)
            except DerivationError as e:
                logger.info("Derivation pending session=%s: %s", session_id, e)
            except InvalidTransitionError as e:
                logger.warning("Invalid transition session=%s: %s", session_id, e)
            except NetworkError as e:
                logger.info("Relay unavailable for session=%s: %s", session_id, e)
            except KeyStorageError as e:
                logger.error("Local storage failure session=%s: %s", session_id, e)
            if self.store.load_session(session_id) is not None:
                ready.append(session_id)

        await self.events.flush(self.event_sink)
        return ready
