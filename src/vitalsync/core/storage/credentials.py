"""Credential store — encrypted per-(user, source) OAuth credentials.

Access and refresh tokens are Fernet-encrypted before they are written and
decrypted only when a credential is loaded for a request. Credentials that a
provider rejects are invalidated (kept, flagged) so the user can be asked to
re-authorize out-of-band.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from vitalsync.core.storage.database import HealthDatabase
from vitalsync.core.storage.encryption import EncryptionError, FieldEncryptor
from vitalsync.core.storage.repository import to_iso
from vitalsync.domains.health.domain_logic.metric_models import (
    DataSource,
    DeviceCredential,
)

logger = logging.getLogger(__name__)


class CredentialNotFoundError(Exception):
    """No usable credential exists for the (user, source) pair."""


class RefreshFailedError(Exception):
    """The provider refused to issue a new access token."""


@runtime_checkable
class TokenRefresher(Protocol):
    """Anything that can exchange a refresh token for a new credential."""

    async def refresh_token(self, credential: DeviceCredential) -> DeviceCredential: ...


class CredentialStore:
    """SQLite-backed, encrypted credential store.

    Created once per process and shared by every sync. All reads and writes
    go through the database lock so concurrent syncs see a consistent
    credential.

    Usage::

        store = CredentialStore(db, encryptor)
        store.put(DeviceCredential(user_id="u1", source=DataSource.FITBIT, access_token="..."))
        credential = store.get("u1", DataSource.FITBIT)
        credential = await store.refresh(credential, fitbit_adapter)
    """

    def __init__(self, database: HealthDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    def get(self, user_id: str, source: DataSource) -> DeviceCredential:
        """Load and decrypt the valid credential for a (user, source) pair.

        Raises:
            CredentialNotFoundError: If none is stored, it was invalidated,
                or it cannot be decrypted.
        """
        credential = self._load(user_id, source)
        if credential is None or not credential.is_valid:
            raise CredentialNotFoundError(f"No credentials found for {source.value}")
        return credential

    def put(self, credential: DeviceCredential) -> None:
        """Encrypt token material and upsert the credential (marks it valid)."""
        with self._db.lock:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO device_credentials
                       (user_id, source, access_token_enc, refresh_token_enc,
                        expires_at, scope_json, is_valid, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                   ON CONFLICT(user_id, source) DO UPDATE SET
                       access_token_enc = excluded.access_token_enc,
                       refresh_token_enc = excluded.refresh_token_enc,
                       expires_at = excluded.expires_at,
                       scope_json = excluded.scope_json,
                       is_valid = 1,
                       updated_at = excluded.updated_at""",
                (
                    credential.user_id,
                    credential.source.value,
                    self._enc.encrypt(credential.access_token),
                    self._enc.encrypt(credential.refresh_token),
                    to_iso(credential.expires_at) if credential.expires_at else None,
                    json.dumps(list(credential.scope)),
                    to_iso(datetime.now(timezone.utc)),
                ),
            )
            conn.commit()
        logger.info("Stored %s credential", credential.source.value)

    async def refresh(
        self, credential: DeviceCredential, refresher: TokenRefresher
    ) -> DeviceCredential:
        """Refresh a rejected credential and persist the result before returning.

        If another sync already replaced the stored token, that newer
        credential is returned without contacting the provider again.

        Raises:
            RefreshFailedError: If the provider rejects the refresh. The stored
                credential is invalidated in that case.
        """
        stored = self._load(credential.user_id, credential.source)
        if (
            stored is not None
            and stored.is_valid
            and stored.access_token != credential.access_token
        ):
            logger.info("%s credential already refreshed by a concurrent sync", credential.source.value)
            return stored

        if not credential.refresh_token:
            self.invalidate(credential.user_id, credential.source)
            raise RefreshFailedError(f"No refresh token available for {credential.source.value}")

        try:
            refreshed = await refresher.refresh_token(credential)
        except RefreshFailedError:
            self.invalidate(credential.user_id, credential.source)
            raise

        self.put(refreshed)
        logger.info("Refreshed %s access token", credential.source.value)
        return refreshed

    def invalidate(self, user_id: str, source: DataSource) -> bool:
        """Flag a credential as rejected; returns False if none was stored."""
        with self._db.lock:
            conn = self._db.connection
            cursor = conn.execute(
                """UPDATE device_credentials SET is_valid = 0, updated_at = ?
                   WHERE user_id = ? AND source = ?""",
                (to_iso(datetime.now(timezone.utc)), user_id, source.value),
            )
            conn.commit()
        if cursor.rowcount:
            logger.warning("Invalidated %s credential; re-authorization required", source.value)
        return cursor.rowcount > 0

    def connected_sources(self, user_id: str) -> list[DataSource]:
        """Sources with a currently valid credential for the user."""
        rows = self._db.connection.execute(
            """SELECT source FROM device_credentials
               WHERE user_id = ? AND is_valid = 1 ORDER BY source""",
            (user_id,),
        ).fetchall()
        sources: list[DataSource] = []
        for row in rows:
            try:
                sources.append(DataSource(row["source"]))
            except ValueError:
                logger.warning("Ignoring credential for unknown source %r", row["source"])
        return sources

    def _load(self, user_id: str, source: DataSource) -> DeviceCredential | None:
        try:
            with self._db.lock:
                row = self._db.connection.execute(
                    "SELECT * FROM device_credentials WHERE user_id = ? AND source = ?",
                    (user_id, source.value),
                ).fetchone()
        except sqlite3.Error as exc:
            raise CredentialNotFoundError(f"Credential lookup failed: {exc}") from exc
        if row is None:
            return None
        return self._row_to_credential(row)

    def _row_to_credential(self, row: Any) -> DeviceCredential | None:
        try:
            access_token = self._enc.decrypt(row["access_token_enc"])
            refresh_token = self._enc.decrypt(row["refresh_token_enc"])
        except EncryptionError:
            logger.error("Cannot decrypt %s credential (wrong key?)", row["source"])
            return None
        return DeviceCredential(
            user_id=row["user_id"],
            source=DataSource(row["source"]),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
            scope=json.loads(row["scope_json"] or "[]"),
            is_valid=bool(row["is_valid"]),
        )
