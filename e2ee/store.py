"""
Principal-namespaced local state storage.

Components receive a StateStore explicitly; nothing in the core reaches for
a process-wide store. MemoryStateStore is the in-memory implementation used
by tests and short-lived tools; client.storage.SqliteStateStore is the
durable one.
"""

import copy
from typing import Dict, List, Optional, Protocol, runtime_checkable

from .session import SessionState

EXCHANGE_PREFIX = "exchange/"
EPHEMERAL_PREFIX = "ephemeral/"


@runtime_checkable
class StateStore(Protocol):
    """
    Key-value storage bound to one principal.

    `get/put/delete` hold small JSON-compatible dicts (identity keypair,
    cached ephemeral keys, exchange progress). Session states have their own
    table so they can be listed and replaced atomically.
    """
    principal: str

    def get(self, key: str) -> Optional[dict]: ...
    def put(self, key: str, value: dict) -> None: ...
    def delete(self, key: str) -> None: ...
    def keys(self, prefix: str = "") -> List[str]: ...
    def load_session(self, session_id: str) -> Optional[SessionState]: ...
    def save_session(self, state: SessionState) -> None: ...
    def delete_session(self, session_id: str) -> None: ...
    def list_session_ids(self) -> List[str]: ...


class MemoryStateStore:
    """In-memory StateStore; values are copied in and out like a real store"""

    def __init__(self, principal: str):
        self.principal = principal
        self._kv: Dict[str, dict] = {}
        self._sessions: Dict[str, dict] = {}

    def get(self, key: str) -> Optional[dict]:
        value = self._kv.get(key)
        return copy.deepcopy(value) if value is not None else None

    def put(self, key: str, value: dict):
        self._kv[key] = copy.deepcopy(value)

    def delete(self, key: str):
        self._kv.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._kv if k.startswith(prefix))

    def load_session(self, session_id: str) -> Optional[SessionState]:
        data = self._sessions.get(session_id)
        return SessionState.from_dict(data) if data is not None else None

    def save_session(self, state: SessionState):
        self._sessions[state.session_id] = state.to_dict()

    def delete_session(self, session_id: str):
        self._sessions.pop(session_id, None)

    def list_session_ids(self) -> List[str]:
        return sorted(self._sessions)
