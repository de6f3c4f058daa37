from __future__ import annotations

import hmac
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, TypeVar

from fineguard.storage.errors import ConstraintViolation, IdentityNotFound
from fineguard.storage.models import IdentityRecord, TokenKind

T = TypeVar("T")

_UNIQUE_FIELDS = ("email", "phone_number", "driver_license_number")


def _unique_key(field: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if field == "email":
        return value.strip().lower()
    return value.strip()


class MemoryIdentityStore:
    """In-process identity store for tests and single-node development.

    Index and map access is guarded by ``_data_lock``. ``update_identity``
    additionally serializes read-modify-write cycles per identity so that
    concurrent counter increments are never lost.
    """

    def __init__(self) -> None:
        # RLock so helpers can be called while holding the lock
        self._data_lock = threading.RLock()
        self._identities: Dict[str, IdentityRecord] = {}
        self._indexes: Dict[str, Dict[str, str]] = {field: {} for field in _UNIQUE_FIELDS}
        self._record_locks: Dict[str, threading.Lock] = {}

    def _record_lock(self, identity_id: str) -> threading.Lock:
        with self._data_lock:
            lock = self._record_locks.get(identity_id)
            if lock is None:
                lock = threading.Lock()
                self._record_locks[identity_id] = lock
            return lock

    def _check_unique(self, record: IdentityRecord) -> None:
        for field in _UNIQUE_FIELDS:
            key = _unique_key(field, getattr(record, field))
            if key is None:
                continue
            owner = self._indexes[field].get(key)
            if owner is not None and owner != record.id:
                raise ConstraintViolation(f"{field} already exists", {"field": field})

    def _reindex(self, previous: Optional[IdentityRecord], record: IdentityRecord) -> None:
        for field in _UNIQUE_FIELDS:
            if previous is not None:
                old_key = _unique_key(field, getattr(previous, field))
                if old_key is not None:
                    self._indexes[field].pop(old_key, None)
            new_key = _unique_key(field, getattr(record, field))
            if new_key is not None:
                self._indexes[field][new_key] = record.id

    def create_identity(self, record: IdentityRecord) -> IdentityRecord:
        stored = replace(record)
        with self._data_lock:
            if stored.id in self._identities:
                raise ConstraintViolation("identity already exists", {"field": "id"})
            self._check_unique(stored)
            self._identities[stored.id] = stored
            self._reindex(None, stored)
        return replace(stored)

    def get_identity(self, identity_id: str) -> Optional[IdentityRecord]:
        with self._data_lock:
            record = self._identities.get(identity_id)
            return replace(record) if record else None

    def _get_by_index(self, field: str, value: Optional[str]) -> Optional[IdentityRecord]:
        key = _unique_key(field, value)
        if key is None:
            return None
        with self._data_lock:
            identity_id = self._indexes[field].get(key)
            if identity_id is None:
                return None
            return replace(self._identities[identity_id])

    def get_identity_by_email(self, email: str) -> Optional[IdentityRecord]:
        return self._get_by_index("email", email)

    def get_identity_by_phone(self, phone_number: str) -> Optional[IdentityRecord]:
        return self._get_by_index("phone_number", phone_number)

    def get_identity_by_license(self, license_number: str) -> Optional[IdentityRecord]:
        return self._get_by_index("driver_license_number", license_number)

    def find_identity_by_token(
        self, kind: TokenKind, token_hash: str
    ) -> Optional[IdentityRecord]:
        """Scan for the identity holding ``token_hash`` for ``kind``.

        Every candidate is compared with ``hmac.compare_digest`` over the full
        digest and the scan does not stop at the first match.
        """
        match: Optional[IdentityRecord] = None
        with self._data_lock:
            for record in self._identities.values():
                stored = record.token_hash(kind)
                if stored is not None and hmac.compare_digest(stored, token_hash):
                    match = record
            return replace(match) if match else None

    def update_identity(
        self, identity_id: str, mutate: Callable[[IdentityRecord], T]
    ) -> T:
        """Atomically apply ``mutate`` to a working copy and persist it.

        If ``mutate`` raises, nothing is written.
        """
        with self._record_lock(identity_id):
            with self._data_lock:
                current = self._identities.get(identity_id)
                if current is None:
                    raise IdentityNotFound(identity_id)
                working = replace(current)
            result = mutate(working)
            working.id = identity_id
            working.updated_at = datetime.now(timezone.utc)
            with self._data_lock:
                self._check_unique(working)
                self._reindex(current, working)
                self._identities[identity_id] = replace(working)
            return result

    def list_identities(self) -> list[IdentityRecord]:
        with self._data_lock:
            return [replace(record) for record in self._identities.values()]


class MemoryRevocationList:
    """Process-local revocation list with lazy TTL expiry.

    Keys expire on ``time.monotonic`` so the list needs no sweeper.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._consumed: Dict[str, float] = {}
        self._revoked_families: Dict[str, float] = {}
        self._families_by_identity: Dict[str, Dict[str, float]] = {}

    @staticmethod
    def _expiry(ttl_seconds: int) -> float:
        return time.monotonic() + max(1, int(ttl_seconds))

    @staticmethod
    def _live(table: Dict[str, float], key: str) -> bool:
        expires = table.get(key)
        if expires is None:
            return False
        if expires <= time.monotonic():
            table.pop(key, None)
            return False
        return True

    async def consume_refresh(self, jti: str, ttl_seconds: int) -> bool:
        """Mark ``jti`` consumed; True only for the first caller."""
        with self._lock:
            if self._live(self._consumed, jti):
                return False
            self._consumed[jti] = self._expiry(ttl_seconds)
            return True

    async def register_family(self, identity_id: str, session_id: str, ttl_seconds: int) -> None:
        with self._lock:
            families = self._families_by_identity.setdefault(identity_id, {})
            families[session_id] = self._expiry(ttl_seconds)

    async def families_for(self, identity_id: str) -> list[str]:
        with self._lock:
            families = self._families_by_identity.get(identity_id, {})
            return [sid for sid in list(families) if self._live(families, sid)]

    async def revoke_family(self, session_id: str, ttl_seconds: int) -> None:
        with self._lock:
            self._revoked_families[session_id] = self._expiry(ttl_seconds)

    async def is_family_revoked(self, session_id: str) -> bool:
        with self._lock:
            return self._live(self._revoked_families, session_id)

    async def is_refresh_consumed(self, jti: str) -> bool:
        with self._lock:
            return self._live(self._consumed, jti)
