"""Per-owner portal credentials, Fernet-encrypted under a master key."""

import base64
import datetime as dt
import hashlib
import logging

import aiosqlite
from cryptography.fernet import Fernet, InvalidToken

from courtbook.models.portal import PortalCredentials

logger = logging.getLogger(__name__)

_PBKDF2_SALT = b"courtbook-v1"
_PBKDF2_ITERATIONS = 100_000


def derive_fernet_key(master_key: str) -> bytes:
    """Derive a Fernet-compatible key from a master key string via PBKDF2."""
    dk = hashlib.pbkdf2_hmac(
        "sha256", master_key.encode(), _PBKDF2_SALT, _PBKDF2_ITERATIONS,
    )
    return base64.urlsafe_b64encode(dk)


class CredentialStore:
    """Read/write encrypted portal logins in the ``portal_credentials`` table.

    Passwords are decrypted only on ``get`` and handed straight to the
    execution that asked for them; nothing is cached here.

    Args:
        connection: An open aiosqlite connection (shared with DatabaseManager).
        master_key: The plaintext master key used to derive the Fernet key.
    """

    def __init__(self, connection: aiosqlite.Connection, master_key: str) -> None:
        self.connection = connection
        self._fernet = Fernet(derive_fernet_key(master_key))

    async def get(self, owner_id: str) -> PortalCredentials | None:
        """Return decrypted credentials for *owner_id*, or ``None`` if missing."""
        cursor = await self.connection.execute(
            "SELECT username, encrypted_password FROM portal_credentials WHERE owner_id = ?",
            (owner_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        try:
            password = self._fernet.decrypt(row[1]).decode()
        except InvalidToken:
            logger.warning("Failed to decrypt portal credentials for owner %s", owner_id)
            return None
        return PortalCredentials(username=row[0], password=password)

    async def save(self, owner_id: str, credentials: PortalCredentials) -> None:
        """Encrypt and store credentials for *owner_id* (upsert)."""
        encrypted = self._fernet.encrypt(credentials.password.encode())
        await self.connection.execute(
            """INSERT INTO portal_credentials (owner_id, username, encrypted_password, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(owner_id) DO UPDATE SET
                   username = excluded.username,
                   encrypted_password = excluded.encrypted_password,
                   updated_at = excluded.updated_at""",
            (owner_id, credentials.username, encrypted, dt.datetime.now(dt.UTC).isoformat()),
        )
        await self.connection.commit()
        logger.info("Portal credentials saved for owner %s", owner_id)

    async def delete(self, owner_id: str) -> bool:
        cursor = await self.connection.execute(
            "DELETE FROM portal_credentials WHERE owner_id = ?", (owner_id,)
        )
        await self.connection.commit()
        if cursor.rowcount:
            logger.info("Portal credentials deleted for owner %s", owner_id)
        return cursor.rowcount > 0
