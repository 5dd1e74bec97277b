"""
Application layer for one logged-in principal.

Owns the identity keys, key exchange engine, secure channel and file cipher
and wires them to the relay. Application payloads travel inside channel
envelopes as JSON:

    {"type": "text", "text": "..."}
    {"type": "file_key", "fileId": "...", "key": "<base64 file key>"}
"""

import json
import logging
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from e2ee.channel import DEFAULT_FRESHNESS_MS, SecureChannel
from e2ee.directory import TofuDirectory
from e2ee.events import SecurityEvents
from e2ee.exceptions import (
    ChunkIntegrityError,
    CryptoError,
    DecryptError,
    DerivationError,
    KeyStorageError,
    ReplayError,
)
from e2ee.exchange import KeyExchangeEngine
from e2ee.files import (
    DEFAULT_CHUNK_SIZE,
    build_manifest,
    decrypt_chunk,
    encrypt_chunk,
    export_file_key,
    generate_file_key,
    import_file_key,
    reassemble,
    split_chunks,
)
from e2ee.identity import IdentityKeyManager
from e2ee.primitives import b64encode, b64decode, canonical_json, now_ms
from e2ee.records import FileTransfer, RelayMessage
from e2ee.session import SessionState
from e2ee.store import EXCHANGE_PREFIX, StateStore
from client.relay import RelayClient
from client.scheduler import CancellationToken, PeriodicTask

logger = logging.getLogger(__name__)

FILE_KEY_PREFIX = "filekey/"
MAX_DEFERRED = 500


class IncomingMessage(NamedTuple):
    session_id: str
    sender: str
    text: str
    timestamp: int


class SecureMessenger:
    """
    End-to-end encrypted messaging over an untrusted relay.

    Args:
        principal: Local username
        store: Local state store for this principal
        relay: Authenticated relay client
        freshness_ms: Freshness window for bundles and messages
        chunk_size: Plaintext bytes per file chunk
        on_message: Called with each decrypted IncomingMessage
        on_session: Called with (session_id, peer) when a session key becomes available
        clock: Millisecond clock
    """

    def __init__(self, principal: str, store: StateStore, relay: RelayClient,
                 freshness_ms: int = DEFAULT_FRESHNESS_MS,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 on_message: Optional[Callable[[IncomingMessage], None]] = None,
                 on_session: Optional[Callable[[str, str], None]] = None,
                 clock: Callable[[], int] = now_ms):
        self.principal = principal
        self.store = store
        self.relay = relay
        self.chunk_size = chunk_size
        self.on_message = on_message
        self.on_session = on_session
        self.identity = IdentityKeyManager(store)
        self.events = SecurityEvents()
        self.directory = TofuDirectory(relay, store)
        self.engine = KeyExchangeEngine(
            principal, store, self.identity, relay, self.directory,
            events=self.events, event_sink=relay, freshness_ms=freshness_ms, clock=clock,
        )
        self.channel = SecureChannel(principal, store, events=self.events,
                                     freshness_ms=freshness_ms, clock=clock)
        self._known_sessions = set(store.list_session_ids())
        self._deferred: List[RelayMessage] = []
        self._token: Optional[CancellationToken] = None
        self._tasks: List[PeriodicTask] = []

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_exchange(self, peer: str) -> str:
        """Begin a key exchange with `peer`; returns the session id"""
        return await self.engine.initiate(peer)

    def trust_new_key(self, peer: str):
        """
        Forget the pinned signing key for `peer`.

        The next lookup pins whatever key the relay publishes, so call this
        only after checking the new key with the peer out of band.
        """
        self.directory.forget(peer)

    def sessions(self) -> List[Dict]:
        """
        Known exchanges with their local status.

        Returns:
            List of dicts with sessionId, peer, status and ready (key derived)
        """
        ready = set(self.store.list_session_ids())
        result = []
        for key in self.store.keys(EXCHANGE_PREFIX):
            session_id = key[len(EXCHANGE_PREFIX):]
            record = self.store.get(key) or {}
            result.append({
                "sessionId": session_id,
                "peer": record.get("peer"),
                "status": record.get("status"),
                "ready": session_id in ready,
                "updatedAt": record.get("updatedAt", 0),
            })
        result.sort(key=lambda r: r["updatedAt"], reverse=True)
        return result

    def session_for_peer(self, peer: str) -> Optional[str]:
        """Most recently updated session with a derived key for `peer`"""
        for entry in self.sessions():
            if entry["peer"] == peer and entry["ready"] and entry["status"] != "abandoned":
                return entry["sessionId"]
        return None

    def _require_session(self, session_id: str) -> SessionState:
        state = self.store.load_session(session_id)
        if state is None:
            raise DerivationError(f"No session key for {session_id} yet")
        return state

    async def exchange_tick(self) -> List[str]:
        """One exchange polling step; reports sessions that just became ready"""
        ready = await self.engine.tick()
        for session_id in ready:
            if session_id in self._known_sessions:
                continue
            self._known_sessions.add(session_id)
            state = self.store.load_session(session_id)
            if state is None:
                continue
            logger.info("Secure session ready session=%s peer=%s", session_id, state.peer_principal)
            if self.on_session:
                self.on_session(session_id, state.peer_principal)
        return ready

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _send_payload(self, session_id: str, payload: Dict) -> Optional[str]:
        state = self._require_session(session_id)
        sealed = self.channel.encode(state, canonical_json(payload))
        envelope = sealed.envelope
        return await self.relay.send_message(
            state.peer_principal, session_id, b64encode(sealed.iv), b64encode(sealed.ciphertext),
            envelope.nonce, envelope.sequence, envelope.timestamp,
        )

    async def send_text(self, session_id: str, text: str) -> Optional[str]:
        """
        Encrypt and send a text message.

        Raises:
            DerivationError: If the session has no key yet
            NetworkError: If the relay rejects the message
        """
        return await self._send_payload(session_id, {"type": "text", "text": text})

    async def poll_messages(self) -> List[IncomingMessage]:
        """
        Fetch, decrypt and dispatch pending messages.

        Messages for sessions whose key is not derived yet are kept and
        retried on the next poll. Rejected messages are dropped and logged.
        """
        pending = self._deferred + await self.relay.fetch_pending_messages()
        self._deferred = []
        received = []
        for message in pending:
            state = self.store.load_session(message.session_id)
            if state is None:
                if len(self._deferred) < MAX_DEFERRED:
                    self._deferred.append(message)
                continue
            try:
                envelope = self.channel.decode(state, b64decode(message.iv),
                                               b64decode(message.ciphertext))
            except ReplayError as e:
                logger.warning("Dropped replayed message session=%s reason=%s",
                               message.session_id, e.reason)
                continue
            except DecryptError as e:
                logger.warning("Dropped undecryptable message session=%s: %s", message.session_id, e)
                continue
            except KeyStorageError as e:
                logger.error("Could not record message session=%s: %s", message.session_id, e)
                continue
            except CryptoError as e:
                logger.warning("Dropped malformed message session=%s: %s", message.session_id, e)
                continue

            incoming = self._dispatch(message.session_id, envelope.sender, envelope.payload,
                                      envelope.timestamp)
            if incoming is not None:
                received.append(incoming)

        await self.events.flush(self.relay)
        return received

    def _dispatch(self, session_id: str, sender: str, payload: bytes,
                  timestamp: int) -> Optional[IncomingMessage]:
        try:
            body = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.warning("Ignoring non-JSON payload session=%s", session_id)
            return None
        if not isinstance(body, dict):
            logger.warning("Ignoring unexpected payload session=%s", session_id)
            return None

        kind = body.get("type")
        if kind == "text":
            incoming = IncomingMessage(session_id, sender, str(body.get("text", "")), timestamp)
            if self.on_message:
                self.on_message(incoming)
            return incoming
        if kind == "file_key":
            file_id = body.get("fileId")
            try:
                import_file_key(str(body.get("key", "")))
            except ChunkIntegrityError as e:
                logger.warning("Ignoring invalid file key session=%s: %s", session_id, e)
                return None
            self.store.put(FILE_KEY_PREFIX + str(file_id), {
                "key": body["key"],
                "sessionId": session_id,
                "from": sender,
            })
            logger.info("Received key for file=%s from=%s", file_id, sender)
            return None
        logger.warning("Ignoring payload of unknown type=%s session=%s", kind, session_id)
        return None

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def share_file_key(self, session_id: str, file_id: str, file_key: bytes) -> Optional[str]:
        """Send a file key to the session peer over the secure channel"""
        return await self._send_payload(session_id, {
            "type": "file_key",
            "fileId": file_id,
            "key": export_file_key(file_key),
        })

    async def upload_file(self, session_id: str, original_name: str, data: bytes,
                          mime_type: str = "application/octet-stream") -> str:
        """
        Encrypt a file under a fresh key, upload it chunk by chunk and share
        the key with the session peer.

        Returns:
            Relay assigned file id
        """
        state = self._require_session(session_id)
        manifest = build_manifest(original_name, mime_type, data, self.chunk_size)
        file_key = generate_file_key()

        file_id = await self.relay.initiate_file(state.peer_principal, session_id, manifest.to_dict())
        manifest.file_id = file_id
        for index, chunk in enumerate(split_chunks(data, self.chunk_size)):
            encrypted = encrypt_chunk(file_key, index, chunk)
            await self.relay.upload_chunk(file_id, index, b64encode(encrypted.iv),
                                          encrypted.size, encrypted.ciphertext)
            manifest.record_chunk(index, encrypted.size, encrypted.iv)
        await self.relay.complete_file(file_id)
        manifest.mark_complete()

        self.store.put(FILE_KEY_PREFIX + file_id, {
            "key": export_file_key(file_key),
            "sessionId": session_id,
            "from": self.principal,
        })
        await self.share_file_key(session_id, file_id, file_key)
        logger.info("Uploaded file=%s chunks=%d to=%s", file_id, manifest.total_chunks,
                    state.peer_principal)
        return file_id

    async def list_files(self) -> List[FileTransfer]:
        return await self.relay.list_files()

    async def download_file(self, file_id: str) -> Tuple[FileTransfer, bytes]:
        """
        Download and decrypt a shared file.

        Raises:
            DerivationError: If no key has been shared for the file yet
            ChunkIntegrityError: If any chunk fails authentication or the
                file does not match its manifest
        """
        transfer = next((f for f in await self.relay.list_files() if f.file_id == file_id), None)
        if transfer is None:
            raise ValueError(f"Unknown file {file_id}")
        record = self.store.get(FILE_KEY_PREFIX + file_id)
        if record is None:
            raise DerivationError(f"No key has been shared for file {file_id}")
        file_key = import_file_key(record["key"])

        chunks = {}
        for index in range(transfer.total_chunks):
            iv_b64, ciphertext = await self.relay.download_chunk(file_id, index)
            try:
                iv = b64decode(iv_b64)
            except CryptoError as e:
                raise ChunkIntegrityError(f"Chunk {index} has a malformed IV: {e}")
            chunks[index] = decrypt_chunk(file_key, index, iv, ciphertext)
        return transfer, reassemble(transfer.total_chunks, transfer.total_size, chunks)

    # ------------------------------------------------------------------
    # Pollers
    # ------------------------------------------------------------------

    def start(self, exchange_interval: float = 2.0, message_interval: float = 1.5,
              initial_delay: float = 1.0):
        """Start the exchange and message pollers"""
        if self._tasks:
            return
        self.identity.ensure_identity_keys(self.principal)
        self._token = CancellationToken()
        self._tasks = [
            PeriodicTask("exchange-poller", exchange_interval, self.exchange_tick,
                         self._token, initial_delay),
            PeriodicTask("message-poller", message_interval, self.poll_messages,
                         self._token, initial_delay),
        ]
        for task in self._tasks:
            task.start()

    async def stop(self):
        for task in self._tasks:
            await task.stop()
        self._tasks = []
        self._token = None
