"""
Contracts of the external collaborators used by the core.

The relay never sees plaintext or private keys: only signed public bundles,
ciphertext and routing metadata.
"""

from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .records import DirectoryEntry, FileTransfer, KeyExchangeSession, RelayMessage, SignedBundle


@runtime_checkable
class Directory(Protocol):
    async def lookup_public_key(self, principal: str) -> DirectoryEntry: ...


@runtime_checkable
class ExchangeRelay(Protocol):
    async def initiate_exchange(self, peer: str, bundle: SignedBundle) -> str: ...
    async def list_pending_exchanges(self) -> List[KeyExchangeSession]: ...
    async def respond_exchange(self, session_id: str, bundle: SignedBundle) -> None: ...
    async def confirm_exchange(self, session_id: str, role: str, iv_b64: str,
                               ciphertext_b64: str, timestamp: int) -> None: ...
    async def list_sessions(self) -> List[KeyExchangeSession]: ...


@runtime_checkable
class MessageRelay(Protocol):
    async def send_message(self, receiver: str, session_id: str, iv_b64: str, ciphertext_b64: str,
                           nonce_b64: str, sequence: int, timestamp: int) -> Optional[str]: ...
    async def fetch_pending_messages(self) -> List[RelayMessage]: ...


@runtime_checkable
class FileRelay(Protocol):
    async def initiate_file(self, receiver: str, session_id: str, manifest: Dict) -> str: ...
    async def upload_chunk(self, file_id: str, index: int, iv_b64: str, size: int,
                           ciphertext: bytes) -> None: ...
    async def complete_file(self, file_id: str) -> None: ...
    async def list_files(self) -> List[FileTransfer]: ...
    async def download_chunk(self, file_id: str, index: int) -> Tuple[str, bytes]: ...


@runtime_checkable
class SecurityEventSink(Protocol):
    async def report_event(self, event_type: str, details: Dict) -> None: ...
