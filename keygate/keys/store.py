"""KeyStore — CRUD over API key records (aiosqlite).

Implements:
  - generate()                          — issue a key for an owner (upsert by owner)
  - revoke()                            — delete an owner's key (idempotent)
  - regenerate()                        — replace an owner's key, keeping its expiry
  - lookup_by_raw_secret()              — indexed lookup by SHA-256 lookup digest
  - get_status() / set_blocked() / toggle_block()
  - has_key()                           — owner → key id
  - regenerate_all_preserving_expiry()  — reissue every key (after rotation)
  - rotate_and_regenerate_all()         — detect mode/key change, then reissue
  - generate_for_owners()               — bulk issue, skipping existing holders
  - reveal() / list_records()           — admin views

Non-negotiables:
  - The raw secret is returned exactly once by generate()/regenerate() and is
    never written to the database (hashed mode) or written only as ciphertext
    (encrypted mode).
  - One record per owner: owner_id is UNIQUE and generate() upserts on it.
  - Key material (random + encryption) is produced BEFORE any write; a
    CryptoFailure aborts with no partial record.
  - Every mutation runs under a single asyncio write lock. Batch operations
    hold it for their whole duration.
"""

from __future__ import annotations

import asyncio
import os
import secrets
from datetime import datetime
from typing import Iterable, Optional

import aiosqlite

from keygate.constants import SAMPLE_LENGTH, SECRET_BYTES
from keygate.crypto import CryptoFailure
from keygate.errors import BackendUnavailableError
from keygate.keys.models import ApiKeyRecord
from keygate.keys.modes import DigestMode, lookup_digest
from keygate.timeframe import Clock, to_utc_iso, utcnow
from keygate.utils.logger import get_logger
from keygate.utils.ulid import generate_ulid

logger = get_logger(__name__)


# ─── Exceptions ───────────────────────────────────────────────────────────────


class UnknownKeyError(Exception):
    """Raised when an admin operation references a key id that does not exist.

    HTTP mapping: 404 Not Found
    """

    code: str = "unknown_key"

    def __init__(self, key_id: str) -> None:
        super().__init__(f"API key {key_id!r} not found")
        self.key_id = key_id


# ─── Schema ───────────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS api_keys (
    id              TEXT PRIMARY KEY,
    owner_id        TEXT NOT NULL UNIQUE,
    secret_digest   TEXT NOT NULL,
    lookup_digest   TEXT NOT NULL UNIQUE,
    sample          TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    expires_at      TEXT,
    blocked         INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS keystore_meta (
    name    TEXT PRIMARY KEY,
    value   TEXT NOT NULL
);
"""

_SCHEMA_VERSION = 1

_UPSERT_SQL = """
INSERT INTO api_keys
    (id, owner_id, secret_digest, lookup_digest, sample, created_at, expires_at, blocked)
VALUES (?, ?, ?, ?, ?, ?, ?, 0)
ON CONFLICT(owner_id) DO UPDATE SET
    secret_digest = excluded.secret_digest,
    lookup_digest = excluded.lookup_digest,
    sample        = excluded.sample,
    created_at    = excluded.created_at,
    expires_at    = excluded.expires_at
"""

_FINGERPRINT_META = "encryption_fingerprint"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return to_utc_iso(value) if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_record(row: aiosqlite.Row) -> ApiKeyRecord:
    return ApiKeyRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        secret_digest=row["secret_digest"],
        lookup_digest=row["lookup_digest"],
        sample=row["sample"],
        created_at=datetime.fromisoformat(row["created_at"]),
        expires_at=_parse(row["expires_at"]),
        blocked=bool(row["blocked"]),
    )


class _Material:
    """Fresh key material for one owner, computed before any write."""

    __slots__ = ("raw", "secret_digest", "lookup_digest", "sample")

    def __init__(self, raw: str, secret_digest: str) -> None:
        self.raw = raw
        self.secret_digest = secret_digest
        self.lookup_digest = lookup_digest(raw)
        self.sample = raw[-SAMPLE_LENGTH:]


# ─── KeyStore ─────────────────────────────────────────────────────────────────


class KeyStore:
    """Owner-keyed API key store over a long-lived aiosqlite connection.

    Usage:
        store = KeyStore("~/.keygate/keys.db", mode=HashedMode())
        await store.initialize()
        raw = await store.generate("42")
        record = await store.lookup_by_raw_secret(raw)
        await store.close()
    """

    def __init__(
        self,
        db_path: str,
        mode: DigestMode,
        clock: Clock = utcnow,
    ) -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._mode = mode
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL mode, create/verify the schema.

        On a fresh store the current mode fingerprint is recorded, so the first
        rotation check after startup is a no-op.

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.execute(
                "INSERT OR IGNORE INTO keystore_meta (name, value) VALUES (?, ?)",
                (_FINGERPRINT_META, self._mode.fingerprint()),
            )
            await self._db.commit()
            logger.info("keystore_schema_created", db_path=self._db_path)
        elif current_version != _SCHEMA_VERSION:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported key store schema version: {current_version}. "
                f"Delete {self._db_path} to reset."
            )

        # Owner read/write only: the table holds digests and possibly ciphertexts.
        os.chmod(self._db_path, 0o600)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("keystore_closed", db_path=self._db_path)

    async def health_check(self) -> bool:
        try:
            assert self._db is not None
            await self._db.execute("SELECT 1")
            return True
        except Exception:
            return False

    @property
    def mode(self) -> DigestMode:
        return self._mode

    def set_mode(self, mode: DigestMode) -> None:
        """Switch the digest strategy for subsequent writes.

        Existing records keep their old representation until
        rotate_and_regenerate_all() reissues them.
        """
        self._mode = mode

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise BackendUnavailableError("Key store not initialized", backend="keystore")
        return self._db

    # ── Material ──────────────────────────────────────────────────────────────

    def _new_material(self) -> _Material:
        """Draw 32 CSPRNG bytes and compute the storable digest.

        Raises:
            CryptoFailure: If random generation or encryption fails.
        """
        try:
            raw = secrets.token_urlsafe(SECRET_BYTES)
        except (NotImplementedError, OSError) as exc:
            raise CryptoFailure("Secure random generation failed") from exc
        return _Material(raw, self._mode.storable(raw))

    async def _upsert(
        self, owner_id: str, material: _Material, expires_at: Optional[datetime]
    ) -> None:
        await self._conn().execute(
            _UPSERT_SQL,
            (
                generate_ulid(),
                owner_id,
                material.secret_digest,
                material.lookup_digest,
                material.sample,
                _iso(self._clock()),
                _iso(expires_at),
            ),
        )

    # ── Key lifecycle ─────────────────────────────────────────────────────────

    async def generate(self, owner_id: str, expires_at: Optional[datetime] = None) -> str:
        """Issue a key for ``owner_id`` and return the raw secret (shown once).

        An owner that already holds a key has it overwritten in place: the
        record keeps its id and blocked flag, everything else is replaced.

        Raises:
            CryptoFailure: Random generation or encryption failed (nothing written).
            BackendUnavailableError: The store could not be written.
        """
        material = self._new_material()
        async with self._write_lock:
            try:
                await self._upsert(owner_id, material, expires_at)
                await self._conn().commit()
            except aiosqlite.Error as exc:
                await self._rollback()
                raise BackendUnavailableError(str(exc), backend="keystore") from exc

        logger.info("api_key_generated", owner_id=owner_id, mode=self._mode.name)
        return material.raw

    async def revoke(self, owner_id: str) -> bool:
        """Delete the owner's key. Returns False (not an error) if none existed."""
        async with self._write_lock:
            try:
                cursor = await self._conn().execute(
                    "DELETE FROM api_keys WHERE owner_id = ?", (owner_id,)
                )
                await self._conn().commit()
            except aiosqlite.Error as exc:
                await self._rollback()
                raise BackendUnavailableError(str(exc), backend="keystore") from exc

        if cursor.rowcount:
            logger.info("api_key_revoked", owner_id=owner_id)
            return True
        logger.debug("revoke: no key for owner", owner_id=owner_id)
        return False

    async def regenerate(self, owner_id: str) -> str:
        """Replace the owner's key with a fresh one, preserving ``expires_at``.

        Delete and insert run in one transaction, so the owner is never left
        without a key. The new record has a new id and starts unblocked.
        """
        material = self._new_material()
        async with self._write_lock:
            conn = self._conn()
            try:
                async with conn.execute(
                    "SELECT expires_at FROM api_keys WHERE owner_id = ?", (owner_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                expires_at = _parse(row["expires_at"]) if row else None

                await conn.execute("DELETE FROM api_keys WHERE owner_id = ?", (owner_id,))
                await self._upsert(owner_id, material, expires_at)
                await conn.commit()
            except aiosqlite.Error as exc:
                await self._rollback()
                raise BackendUnavailableError(str(exc), backend="keystore") from exc

        logger.info("api_key_regenerated", owner_id=owner_id)
        return material.raw

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def _fetch_one(self, sql: str, params: tuple) -> Optional[aiosqlite.Row]:
        try:
            async with self._conn().execute(sql, params) as cursor:
                return await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise BackendUnavailableError(str(exc), backend="keystore") from exc

    async def lookup_by_raw_secret(self, raw_secret: str) -> Optional[ApiKeyRecord]:
        """Find the record for a presented secret via the indexed lookup digest."""
        if not raw_secret:
            return None
        row = await self._fetch_one(
            "SELECT * FROM api_keys WHERE lookup_digest = ?", (lookup_digest(raw_secret),)
        )
        return _row_to_record(row) if row else None

    async def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        row = await self._fetch_one("SELECT * FROM api_keys WHERE id = ?", (key_id,))
        return _row_to_record(row) if row else None

    async def get_by_owner(self, owner_id: str) -> Optional[ApiKeyRecord]:
        row = await self._fetch_one("SELECT * FROM api_keys WHERE owner_id = ?", (owner_id,))
        return _row_to_record(row) if row else None

    async def get_status(self, key_id: str) -> Optional[bool]:
        """Blocked flag for ``key_id``, or None if the key does not exist."""
        row = await self._fetch_one("SELECT blocked FROM api_keys WHERE id = ?", (key_id,))
        return bool(row["blocked"]) if row else None

    async def has_key(self, owner_id: str) -> Optional[str]:
        """Key id held by ``owner_id``, or None."""
        row = await self._fetch_one("SELECT id FROM api_keys WHERE owner_id = ?", (owner_id,))
        return row["id"] if row else None

    async def list_records(self) -> list[ApiKeyRecord]:
        try:
            async with self._conn().execute("SELECT * FROM api_keys ORDER BY id") as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise BackendUnavailableError(str(exc), backend="keystore") from exc
        return [_row_to_record(row) for row in rows]

    async def reveal(self, owner_id: str) -> Optional[str]:
        """Decrypt the owner's raw secret (encrypted mode only).

        Returns None in hashed mode, when the owner has no key, or when the
        record was written in hashed mode and never reissued.

        Raises:
            CryptoFailure: The stored blob does not decrypt under the current key.
        """
        record = await self.get_by_owner(owner_id)
        if record is None or record.secret_digest == record.lookup_digest:
            return None
        return self._mode.reveal(record.secret_digest)

    # ── Block flag ────────────────────────────────────────────────────────────

    async def set_blocked(self, key_id: str, value: bool) -> bool:
        """Set the blocked flag. Idempotent — returns True if the flag changed."""
        async with self._write_lock:
            try:
                cursor = await self._conn().execute(
                    "UPDATE api_keys SET blocked = ? WHERE id = ? AND blocked != ?",
                    (int(value), key_id, int(value)),
                )
                await self._conn().commit()
            except aiosqlite.Error as exc:
                await self._rollback()
                raise BackendUnavailableError(str(exc), backend="keystore") from exc

        changed = bool(cursor.rowcount)
        if changed:
            logger.info("api_key_block_changed", key_id=key_id, blocked=value)
        return changed

    async def toggle_block(self, key_id: str) -> bool:
        """Flip the blocked flag and return its new value.

        Raises:
            UnknownKeyError: If ``key_id`` does not exist.
        """
        async with self._write_lock:
            conn = self._conn()
            try:
                async with conn.execute(
                    "SELECT blocked FROM api_keys WHERE id = ?", (key_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    raise UnknownKeyError(key_id)
                new_value = not bool(row["blocked"])
                await conn.execute(
                    "UPDATE api_keys SET blocked = ? WHERE id = ?", (int(new_value), key_id)
                )
                await conn.commit()
            except aiosqlite.Error as exc:
                await self._rollback()
                raise BackendUnavailableError(str(exc), backend="keystore") from exc

        logger.info("api_key_block_changed", key_id=key_id, blocked=new_value)
        return new_value

    # ── Batch operations ──────────────────────────────────────────────────────

    async def regenerate_all_preserving_expiry(self) -> dict[str, str]:
        """Reissue every key under the current mode, keeping each expiry.

        All material is computed before the first write; the rewrite is one
        transaction under the write lock.

        Returns:
            owner_id → new raw secret, for delivery to the owners.
        """
        async with self._write_lock:
            return await self._regenerate_all_locked()

    async def _regenerate_all_locked(self, fingerprint: Optional[str] = None) -> dict[str, str]:
        conn = self._conn()
        try:
            async with conn.execute("SELECT owner_id, expires_at FROM api_keys") as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise BackendUnavailableError(str(exc), backend="keystore") from exc

        planned = [
            (row["owner_id"], _parse(row["expires_at"]), self._new_material())
            for row in rows
        ]
        try:
            for owner_id, expires_at, material in planned:
                await self._upsert(owner_id, material, expires_at)
            if fingerprint is not None:
                await conn.execute(
                    "INSERT INTO keystore_meta (name, value) VALUES (?, ?) "
                    "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
                    (_FINGERPRINT_META, fingerprint),
                )
            await conn.commit()
        except aiosqlite.Error as exc:
            await self._rollback()
            raise BackendUnavailableError(str(exc), backend="keystore") from exc

        logger.warning(
            "api_keys_regenerated_all", count=len(planned), mode=self._mode.name
        )
        return {owner_id: material.raw for owner_id, _, material in planned}

    async def stored_fingerprint(self) -> Optional[str]:
        row = await self._fetch_one(
            "SELECT value FROM keystore_meta WHERE name = ?", (_FINGERPRINT_META,)
        )
        return row["value"] if row else None

    async def rotate_and_regenerate_all(self, force: bool = False) -> dict[str, str]:
        """Reissue every key if the encryption mode or key changed.

        Compares the stored fingerprint with the active mode's fingerprint.
        On mismatch (or ``force``) every record is regenerated — ciphertexts
        made under the old key are unrecoverable — and the new fingerprint is
        stored in the same transaction as the rewritten records. Returns
        owner_id → new raw secret (empty when nothing changed).
        """
        current = self._mode.fingerprint()
        async with self._write_lock:
            stored = await self.stored_fingerprint()
            if stored == current and not force:
                return {}

            regenerated = await self._regenerate_all_locked(fingerprint=current)

        logger.warning(
            "encryption_key_rotated",
            mode=self._mode.name,
            regenerated=len(regenerated),
            forced=force,
        )
        return regenerated

    async def generate_for_owners(
        self, owner_ids: Iterable[str], expires_at: Optional[datetime] = None
    ) -> int:
        """Issue keys for every owner that does not hold one. Returns the count created."""
        created = 0
        for owner_id in owner_ids:
            if await self.has_key(owner_id) is not None:
                continue
            await self.generate(owner_id, expires_at)
            created += 1
        if created:
            logger.info("api_keys_bulk_generated", count=created)
        return created

    async def _rollback(self) -> None:
        if self._db is None:
            return
        try:
            await self._db.rollback()
        except aiosqlite.Error as exc:
            logger.error("keystore_rollback_failed", error=str(exc))
