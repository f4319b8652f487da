"""Credential persistence: the engine's only view of stored tokens."""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol

from oauth_lifecycle.core.errors import CredentialNotFoundError
from oauth_lifecycle.models.oauth import (
    OAuthStatus,
    OAuthStatusUpdate,
    StoredCredential,
    TokenRecord,
    utc_now,
)

if TYPE_CHECKING:  # pragma: no cover
    from oauth_lifecycle.services.token_cipher import TokenCipherService

_TOKEN_FIELDS = {
    "access_token": "access_token",
    "refresh_token": "refresh_token",
    "token_expires_at": "expires_at",
    "token_type": "token_type",
    "scope": "scope",
}


class CredentialStore(Protocol):
    def get(self, instance_id: str) -> Optional[StoredCredential]:
        ...

    def put(self, credential: StoredCredential) -> None:
        ...

    def update(self, instance_id: str, update: OAuthStatusUpdate) -> StoredCredential:
        ...

    def delete(self, instance_id: str) -> None:
        ...

    def list_instance_ids(self) -> list[str]:
        ...


def apply_update(credential: StoredCredential, update: OAuthStatusUpdate) -> StoredCredential:
    """Return a copy of ``credential`` with only the fields set on ``update`` changed."""
    changes = update.changes()
    token_changes = {
        _TOKEN_FIELDS[name]: value for name, value in changes.items() if name in _TOKEN_FIELDS
    }
    if token_changes.get("token_type", "") is None:
        token_changes.pop("token_type")
    token = credential.token.model_copy(update=token_changes)

    fields: Dict[str, Any] = {"token": token, "updated_at": utc_now()}
    if "status" in changes:
        fields["status"] = OAuthStatus(changes["status"])
    if "error" in changes:
        fields["error"] = changes["error"]
    return credential.model_copy(update=fields)


class InMemoryCredentialStore:
    """Process-local store for development and tests."""

    def __init__(self) -> None:
        self._records: dict[str, StoredCredential] = {}
        self._lock = threading.Lock()

    def get(self, instance_id: str) -> Optional[StoredCredential]:
        with self._lock:
            record = self._records.get(instance_id)
            return record.model_copy(deep=True) if record else None

    def put(self, credential: StoredCredential) -> None:
        with self._lock:
            self._records[credential.instance_id] = credential.model_copy(deep=True)

    def update(self, instance_id: str, update: OAuthStatusUpdate) -> StoredCredential:
        with self._lock:
            current = self._records.get(instance_id)
            if current is None:
                raise CredentialNotFoundError(instance_id)
            updated = apply_update(current, update)
            self._records[instance_id] = updated
            return updated.model_copy(deep=True)

    def delete(self, instance_id: str) -> None:
        with self._lock:
            self._records.pop(instance_id, None)

    def list_instance_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._records)


class SQLiteCredentialStore:
    """
    SQLite-backed credential store.

    Client secrets and tokens are encrypted with ``TokenCipherService`` before
    they are written; updates run as read-modify-write inside one transaction.
    """

    def __init__(self, db_path: str, *, cipher: TokenCipherService) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._cipher = cipher
        self._lock = threading.Lock()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS oauth_credentials (
                    instance_id TEXT PRIMARY KEY,
                    provider TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def _serialize(self, credential: StoredCredential) -> str:
        token = credential.token
        return json.dumps(
            {
                "client_id": credential.client_id,
                "client_secret": self._cipher.encrypt(credential.client_secret),
                "access_token": self._cipher.encrypt_optional(token.access_token),
                "refresh_token": self._cipher.encrypt_optional(token.refresh_token),
                "expires_at": token.expires_at,
                "token_type": token.token_type,
                "scope": token.scope,
                "status": credential.status.value,
                "error": credential.error,
            }
        )

    def _deserialize(self, row: sqlite3.Row) -> StoredCredential:
        data = json.loads(row["data"])
        return StoredCredential(
            instance_id=row["instance_id"],
            provider=row["provider"],
            client_id=data["client_id"],
            client_secret=self._cipher.decrypt(data["client_secret"]),
            token=TokenRecord(
                access_token=self._cipher.decrypt_optional(data.get("access_token")),
                refresh_token=self._cipher.decrypt_optional(data.get("refresh_token")),
                expires_at=data.get("expires_at"),
                token_type=data.get("token_type") or "Bearer",
                scope=data.get("scope"),
            ),
            status=OAuthStatus(data.get("status", OAuthStatus.PENDING.value)),
            error=data.get("error"),
            updated_at=row["updated_at"],
        )

    def _write(self, conn: sqlite3.Connection, credential: StoredCredential) -> None:
        conn.execute(
            """
            INSERT INTO oauth_credentials (instance_id, provider, data, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(instance_id) DO UPDATE SET
                provider = excluded.provider,
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (
                credential.instance_id,
                credential.provider,
                self._serialize(credential),
                credential.updated_at.isoformat(),
            ),
        )

    def get(self, instance_id: str) -> Optional[StoredCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_credentials WHERE instance_id = ?",
                (instance_id,),
            ).fetchone()
        return self._deserialize(row) if row else None

    def put(self, credential: StoredCredential) -> None:
        with self._lock, self._connect() as conn:
            self._write(conn, credential)

    def update(self, instance_id: str, update: OAuthStatusUpdate) -> StoredCredential:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_credentials WHERE instance_id = ?",
                (instance_id,),
            ).fetchone()
            if row is None:
                raise CredentialNotFoundError(instance_id)
            updated = apply_update(self._deserialize(row), update)
            self._write(conn, updated)
        return updated

    def delete(self, instance_id: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM oauth_credentials WHERE instance_id = ?", (instance_id,))

    def list_instance_ids(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT instance_id FROM oauth_credentials ORDER BY instance_id"
            ).fetchall()
        return [row["instance_id"] for row in rows]

    def rotate_encryption(self) -> int:
        """Re-encrypt every row under the current secret. Returns the row count."""
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT * FROM oauth_credentials").fetchall()
            for row in rows:
                self._write(conn, self._deserialize(row))
        return len(rows)


__all__ = [
    "CredentialStore",
    "InMemoryCredentialStore",
    "SQLiteCredentialStore",
    "apply_update",
]
