"""
Local persistent storage for the chat client.

Holds the device's long-lived identity key pair in two string slots of a
small SQLite key/value database. Nothing else about a chat is persisted
locally: room keys live in links and conversation keys are re-derived.
"""

import hashlib
import logging
import re
import sqlite3
from typing import Optional, Dict
from pathlib import Path
from cryptography.hazmat.primitives.asymmetric import ec

from crypto.primitives import (
    IdentityCorruptError,
    generate_keypair,
    serialize_private_key,
    serialize_public_key,
    deserialize_private_key,
    deserialize_public_key,
)

logger = logging.getLogger(__name__)

PRIVATE_KEY_SLOT = "identity.privateKey"
PUBLIC_KEY_SLOT = "identity.publicKey"

SAFE_NAME = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9_.-]*")


class LocalStorage:
    """
    String key/value slots backed by SQLite.

    Use ":memory:" as the path for a throwaway store.
    """

    def __init__(self, path: str = ":memory:"):
        """
        Initialize local storage.

        Args:
            path: SQLite database file, or ":memory:"
        """
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.db: Optional[sqlite3.Connection] = sqlite3.connect(path)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS slots (
                name TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        self.db.commit()

    @classmethod
    def for_user(cls, username: str, storage_dir: str = "client_data") -> 'LocalStorage':
        """
        Open the per-user database under storage_dir.

        Usernames that are not plain file names are replaced by their hash,
        so the database always lands inside storage_dir.
        """
        if SAFE_NAME.fullmatch(username):
            filename = username
        else:
            filename = "user-" + hashlib.sha256(username.encode('utf-8')).hexdigest()[:32]
        return cls(str(Path(storage_dir) / f"{filename}.db"))

    def get(self, name: str) -> Optional[str]:
        cursor = self.db.execute("SELECT value FROM slots WHERE name = ?", (name,))
        row = cursor.fetchone()
        return row[0] if row else None

    def set_many(self, values: Dict[str, str]):
        """Write several slots in one transaction"""
        with self.db:
            self.db.executemany(
                "INSERT OR REPLACE INTO slots (name, value) VALUES (?, ?)",
                list(values.items())
            )

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None


class Identity:
    """
    The device's identity: a private key handle and its encoded public key.

    The private key is held as a handle only and is never exported.
    """

    def __init__(self, private_key: ec.EllipticCurvePrivateKey, encoded_public_key: str):
        self._private_key = private_key
        self.encoded_public_key = encoded_public_key

    @property
    def private_key(self) -> ec.EllipticCurvePrivateKey:
        return self._private_key

    def __repr__(self) -> str:
        return f"Identity(public_key={self.encoded_public_key[:16]}...)"


class IdentityKeyStore:
    """
    Loads the device identity, creating it on first use.
    """

    def __init__(self, storage: LocalStorage):
        self.storage = storage

    def load_or_create(self) -> Identity:
        """
        Return the persisted identity, or create and persist a new one.

        Returns:
            The device Identity

        Raises:
            IdentityCorruptError: If stored key material is present but unusable
        """
        private_blob = self.storage.get(PRIVATE_KEY_SLOT)
        public_blob = self.storage.get(PUBLIC_KEY_SLOT)

        if private_blob is None and public_blob is None:
            return self._create()

        if private_blob is None or public_blob is None:
            raise IdentityCorruptError("Stored identity is incomplete")

        try:
            private_key = deserialize_private_key(private_blob)
            public_key = deserialize_public_key(public_blob)
        except (ValueError, TypeError) as e:
            raise IdentityCorruptError(f"Stored identity is unreadable: {e}") from e

        if serialize_public_key(private_key.public_key()) != serialize_public_key(public_key):
            raise IdentityCorruptError("Stored public key does not match private key")

        logger.debug("Loaded existing identity")
        return Identity(private_key, public_blob)

    def _create(self) -> Identity:
        private_key, public_key = generate_keypair()
        encoded_public = serialize_public_key(public_key)
        self.storage.set_many({
            PRIVATE_KEY_SLOT: serialize_private_key(private_key),
            PUBLIC_KEY_SLOT: encoded_public,
        })
        logger.info("Created new device identity")
        return Identity(private_key, encoded_public)
