"""
Durable local state for the relay client.

One SQLite file per principal holds the identity keypair, cached ephemeral
keys, exchange progress and session states. When a passphrase is given,
every stored value is encrypted at rest with AES-GCM under a PBKDF2 key.
"""

import os
import json
import sqlite3
import logging
from typing import Optional, List
from pathlib import Path
from datetime import datetime, timezone
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from e2ee.exceptions import CryptoError, KeyStorageError
from e2ee.session import SessionState

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200000


class SqliteStateStore:
    """
    StateStore backed by SQLite.

    Rows are keyed by (principal, key), so a file opened for one principal
    never returns another principal's state.
    """

    def __init__(self, principal: str, storage_dir: str = "client_data",
                 passphrase: Optional[str] = None):
        """
        Open (or create) the store.

        Args:
            principal: Username this store belongs to
            storage_dir: Directory holding the database and salt files
            passphrase: Optional passphrase for at-rest encryption

        Raises:
            KeyStorageError: If the database cannot be opened
        """
        self.principal = principal
        self.storage_dir = Path(storage_dir)
        self.db_path = self.storage_dir / f"{principal}.db"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None

        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            if passphrase is not None:
                self.encryption_key = self._derive_key(passphrase, self._load_salt())
            self.db = sqlite3.connect(str(self.db_path))
            self._init_database()
        except (OSError, sqlite3.Error) as e:
            raise KeyStorageError(f"Cannot open local store {self.db_path}: {e}")
        logger.debug("Opened local store %s encrypted=%s", self.db_path, bool(self.encryption_key))

    def _load_salt(self) -> bytes:
        salt_file = self.storage_dir / f"{self.principal}.salt"
        if salt_file.exists():
            return salt_file.read_bytes()
        salt = os.urandom(16)
        salt_file.write_bytes(salt)
        return salt

    @staticmethod
    def _derive_key(passphrase: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(passphrase.encode())

    def _init_database(self):
        cursor = self.db.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                principal TEXT NOT NULL,
                key TEXT NOT NULL,
                value BLOB NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (principal, key)
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                principal TEXT NOT NULL,
                session_id TEXT NOT NULL,
                state BLOB NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (principal, session_id)
            )
        """)
        self.db.commit()

    def _encode(self, obj: dict) -> bytes:
        data = json.dumps(obj).encode()
        if not self.encryption_key:
            return data
        nonce = os.urandom(12)
        return nonce + AESGCM(self.encryption_key).encrypt(nonce, data, self.principal.encode())

    def _decode(self, blob: bytes) -> dict:
        data = bytes(blob)
        if self.encryption_key:
            try:
                data = AESGCM(self.encryption_key).decrypt(data[:12], data[12:], self.principal.encode())
            except InvalidTag:
                raise KeyStorageError("Stored value cannot be decrypted (wrong passphrase?)")
        try:
            return json.loads(data.decode())
        except (UnicodeDecodeError, ValueError) as e:
            raise KeyStorageError(f"Corrupt stored value: {e}")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self.db is None:
            raise KeyStorageError("Store is closed")
        try:
            cursor = self.db.execute(sql, params)
            self.db.commit()
            return cursor
        except sqlite3.Error as e:
            raise KeyStorageError(f"Local store failure: {e}")

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def get(self, key: str) -> Optional[dict]:
        row = self._execute(
            "SELECT value FROM kv WHERE principal = ? AND key = ?", (self.principal, key)
        ).fetchone()
        return self._decode(row[0]) if row else None

    def put(self, key: str, value: dict):
        self._execute(
            "INSERT OR REPLACE INTO kv (principal, key, value, updated_at) VALUES (?, ?, ?, ?)",
            (self.principal, key, self._encode(value), self._now())
        )

    def delete(self, key: str):
        self._execute("DELETE FROM kv WHERE principal = ? AND key = ?", (self.principal, key))

    def keys(self, prefix: str = "") -> List[str]:
        rows = self._execute(
            "SELECT key FROM kv WHERE principal = ? ORDER BY key", (self.principal,)
        ).fetchall()
        return [row[0] for row in rows if row[0].startswith(prefix)]

    def load_session(self, session_id: str) -> Optional[SessionState]:
        row = self._execute(
            "SELECT state FROM sessions WHERE principal = ? AND session_id = ?",
            (self.principal, session_id)
        ).fetchone()
        if not row:
            return None
        try:
            return SessionState.from_dict(self._decode(row[0]))
        except (CryptoError, KeyError, ValueError) as e:
            raise KeyStorageError(f"Corrupt session {session_id}: {e}")

    def save_session(self, state: SessionState):
        self._execute(
            "INSERT OR REPLACE INTO sessions (principal, session_id, state, updated_at) VALUES (?, ?, ?, ?)",
            (self.principal, state.session_id, self._encode(state.to_dict()), self._now())
        )

    def delete_session(self, session_id: str):
        self._execute(
            "DELETE FROM sessions WHERE principal = ? AND session_id = ?",
            (self.principal, session_id)
        )

    def list_session_ids(self) -> List[str]:
        rows = self._execute(
            "SELECT session_id FROM sessions WHERE principal = ? ORDER BY session_id",
            (self.principal,)
        ).fetchall()
        return [row[0] for row in rows]

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
