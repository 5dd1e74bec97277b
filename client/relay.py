"""
HTTP client for the relay server.

Implements the directory, exchange, message, file and security event
contracts of the core over the relay's REST API. The relay only ever sees
public keys, signatures, ciphertext and routing metadata. Public keys are
exchanged as OKP JWKs, the form the relay stores.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from e2ee.exceptions import NetworkError
from e2ee.primitives import public_key_to_jwk
from e2ee.records import (
    DirectoryEntry,
    FileTransfer,
    KeyExchangeSession,
    RelayMessage,
    SignedBundle,
    parse_session,
)

logger = logging.getLogger(__name__)


class RelayClient:
    """
    Relay API client for one authenticated principal.

    Args:
        base_url: Relay API root, e.g. http://localhost:4000/api
        token: Bearer token from login (may be set later)
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.username: Optional[str] = None
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def _get_headers(self) -> Dict[str, str]:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Send a request and raise NetworkError on transport or HTTP failure.
        """
        try:
            response = await self.client.request(method, path, headers=self._get_headers(), **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            try:
                body = e.response.json()
            except ValueError:
                body = None
            detail = body.get("error", "") if isinstance(body, dict) else e.response.text[:200]
            raise NetworkError(f"{method} {path} failed ({e.response.status_code}): {detail}")
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {path} failed: {e}")
        return response

    async def _json(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = await self._request(method, path, **kwargs)
        try:
            data = response.json()
        except ValueError:
            raise NetworkError(f"{method} {path} returned a non-JSON body")
        if not isinstance(data, dict):
            raise NetworkError(f"{method} {path} returned an unexpected body")
        return data

    async def close(self):
        await self.client.aclose()

    # Auth endpoints
    async def register(self, username: str, password: str, signing_public_key_b64: str):
        """Register a new principal together with its public signing key"""
        await self._json("POST", "/auth/register", json={
            "username": username,
            "password": password,
            "publicSigningKeyJwk": public_key_to_jwk(signing_public_key_b64, "Ed25519"),
        })
        logger.info("Registered principal=%s", username)

    async def login(self, username: str, password: str,
                    signing_public_key_b64: Optional[str] = None) -> str:
        """
        Log in and keep the bearer token for later requests.

        The relay replaces the published signing key when one is supplied.

        Returns:
            Bearer token
        """
        body = {"username": username, "password": password}
        if signing_public_key_b64:
            body["publicSigningKeyJwk"] = public_key_to_jwk(signing_public_key_b64, "Ed25519")
        data = await self._json("POST", "/auth/login", json=body)
        token = data.get("token")
        if not token:
            raise NetworkError("Login response did not include a token")
        self.token = token
        self.username = data.get("username", username)
        return token

    # Directory
    async def lookup_public_key(self, principal: str) -> DirectoryEntry:
        data = await self._json("GET", f"/keys/public/{principal}")
        try:
            return DirectoryEntry.model_validate(data)
        except ValidationError as e:
            raise NetworkError(f"Malformed directory entry for {principal}: {e.error_count()} errors")

    # Key exchange
    async def initiate_exchange(self, peer: str, bundle: SignedBundle) -> str:
        data = await self._json("POST", "/exchange/initiate",
                                json={"receiverUsername": peer, **bundle.to_wire()})
        session_id = data.get("sessionId")
        if not session_id:
            raise NetworkError("Relay did not assign a session id")
        return str(session_id)

    async def respond_exchange(self, session_id: str, bundle: SignedBundle):
        await self._json("POST", "/exchange/respond",
                         json={"sessionId": session_id, **bundle.to_wire()})

    async def confirm_exchange(self, session_id: str, role: str, iv_b64: str,
                               ciphertext_b64: str, timestamp: int):
        await self._json("POST", "/exchange/confirm", json={
            "sessionId": session_id,
            "role": role,
            "ivB64": iv_b64,
            "ciphertextB64": ciphertext_b64,
            "timestampMs": timestamp,
        })

    async def list_pending_exchanges(self) -> List[KeyExchangeSession]:
        data = await self._json("GET", "/exchange/pending")
        return self._parse_sessions(data.get("sessions") or [])

    async def list_sessions(self) -> List[KeyExchangeSession]:
        data = await self._json("GET", "/exchange/sessions")
        return self._parse_sessions(data.get("sessions") or [])

    @staticmethod
    def _parse_sessions(items: List[Dict]) -> List[KeyExchangeSession]:
        sessions = []
        for item in items:
            try:
                sessions.append(parse_session(item))
            except ValidationError as e:
                logger.warning("Dropping malformed session record id=%s errors=%d",
                               item.get("sessionId") if isinstance(item, dict) else None,
                               e.error_count())
        return sessions

    # Messages
    async def send_message(self, receiver: str, session_id: str, iv_b64: str, ciphertext_b64: str,
                           nonce_b64: str, sequence: int, timestamp: int) -> Optional[str]:
        data = await self._json("POST", "/messages/send", json={
            "receiverUsername": receiver,
            "sessionId": session_id,
            "ivB64": iv_b64,
            "ciphertextB64": ciphertext_b64,
            "nonceB64": nonce_b64,
            "sequence": sequence,
            "timestampMs": timestamp,
        })
        return data.get("id")

    async def fetch_pending_messages(self) -> List[RelayMessage]:
        data = await self._json("GET", "/messages/pending")
        messages = []
        for item in data.get("messages") or []:
            try:
                messages.append(RelayMessage.model_validate(item))
            except ValidationError as e:
                logger.warning("Dropping malformed relay message errors=%d", e.error_count())
        return messages

    # Files
    async def initiate_file(self, receiver: str, session_id: str, manifest: Dict) -> str:
        data = await self._json("POST", "/files/initiate", json={
            "receiverUsername": receiver,
            "sessionId": session_id,
            **manifest,
        })
        file_id = data.get("fileId")
        if not file_id:
            raise NetworkError("Relay did not assign a file id")
        return str(file_id)

    async def upload_chunk(self, file_id: str, index: int, iv_b64: str, size: int,
                           ciphertext: bytes):
        await self._json(
            "POST", "/files/upload-chunk",
            data={"fileId": file_id, "index": str(index), "ivB64": iv_b64, "size": str(size)},
            files={"chunk": (f"{file_id}.{index}", ciphertext, "application/octet-stream")},
        )

    async def complete_file(self, file_id: str):
        await self._json("POST", "/files/complete", json={"fileId": file_id})

    async def list_files(self) -> List[FileTransfer]:
        data = await self._json("GET", "/files/list")
        files = []
        for item in data.get("files") or []:
            try:
                files.append(FileTransfer.model_validate(item))
            except ValidationError as e:
                logger.warning("Dropping malformed file record errors=%d", e.error_count())
        return files

    async def download_chunk(self, file_id: str, index: int) -> Tuple[str, bytes]:
        response = await self._request("GET", "/files/download-chunk",
                                       params={"fileId": file_id, "index": index})
        iv_b64 = response.headers.get("x-chunk-ivb64")
        if not iv_b64:
            raise NetworkError(f"Chunk {index} of {file_id} arrived without an IV header")
        return iv_b64, response.content

    # Security events
    async def report_event(self, event_type: str, details: Dict):
        await self._json("POST", "/logs/client", json={"type": event_type, "details": details})
