from __future__ import annotations

import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from fineguard.config import Settings
from fineguard.logging import get_logger
from fineguard.service.clock import Clock, SystemClock
from fineguard.service.credentials import IdentityStore
from fineguard.service.errors import AccountLockedError, NotFoundError
from fineguard.storage.errors import IdentityNotFound
from fineguard.storage.models import IdentityRecord

logger = get_logger(__name__)


class LockState(str, Enum):
    OPEN = "open"
    WARNED = "warned"
    LOCKED = "locked"


class LockoutGuard:
    """Failed-login counting and temporary account freezes.

    Counter transitions run inside the store's per-identity read-modify-write
    and are committed before the caller sees the outcome, so a later error in
    the same request never rolls an attempt back.
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.threshold = settings.lockout_threshold
        self.lock_duration = timedelta(minutes=settings.lockout_minutes)
        self.clock = clock or SystemClock()
        self.logger = logger

    @staticmethod
    def _remaining_seconds(locked_until: datetime, now: datetime) -> int:
        return max(1, math.ceil((locked_until - now).total_seconds()))

    def _is_locked(self, record: IdentityRecord, now: datetime) -> bool:
        return record.locked_until is not None and record.locked_until > now

    def state(self, identity: IdentityRecord) -> LockState:
        now = self.clock.now()
        if self._is_locked(identity, now):
            return LockState.LOCKED
        if identity.locked_until is not None or identity.failed_attempts <= 0:
            # An expired lock counts as a clean slate
            return LockState.OPEN
        return LockState.WARNED

    def ensure_not_locked(self, identity: IdentityRecord) -> None:
        """Raise AccountLockedError without touching the counter."""
        now = self.clock.now()
        if self._is_locked(identity, now):
            raise AccountLockedError(self._remaining_seconds(identity.locked_until, now))

    def record_failure(self, identity: IdentityRecord) -> int:
        """Count a failed attempt; raises AccountLockedError once the threshold is hit.

        Returns the new failure count while the account stays unlocked.
        """

        def _apply(record: IdentityRecord) -> tuple[int, Optional[datetime], bool]:
            now = self.clock.now()
            if record.locked_until is not None and record.locked_until <= now:
                record.failed_attempts = 0
                record.locked_until = None
            record.failed_attempts += 1
            newly_locked = False
            if record.failed_attempts >= self.threshold and not self._is_locked(record, now):
                record.locked_until = now + self.lock_duration
                newly_locked = True
            return record.failed_attempts, record.locked_until, newly_locked

        try:
            attempts, locked_until, newly_locked = self.store.update_identity(identity.id, _apply)
        except IdentityNotFound as exc:
            raise NotFoundError("identity not found") from exc

        if newly_locked:
            self.logger.warning(
                "account_locked", identity_id=identity.id, attempts=attempts
            )
        else:
            self.logger.info("login_failure_recorded", identity_id=identity.id, attempts=attempts)
        if locked_until is not None:
            raise AccountLockedError(self._remaining_seconds(locked_until, self.clock.now()))
        return attempts

    def record_success(self, identity: IdentityRecord) -> IdentityRecord:
        """Reset the counter and stamp the login, unless a lock landed meanwhile."""

        def _apply(record: IdentityRecord) -> IdentityRecord:
            now = self.clock.now()
            if self._is_locked(record, now):
                raise AccountLockedError(self._remaining_seconds(record.locked_until, now))
            record.failed_attempts = 0
            record.locked_until = None
            record.last_login_at = now
            return record

        try:
            return self.store.update_identity(identity.id, _apply)
        except IdentityNotFound as exc:
            raise NotFoundError("identity not found") from exc

    def unlock(self, identity: IdentityRecord) -> IdentityRecord:
        """Administrative reset of the counter and any active lock."""

        def _apply(record: IdentityRecord) -> IdentityRecord:
            record.failed_attempts = 0
            record.locked_until = None
            return record

        try:
            updated = self.store.update_identity(identity.id, _apply)
        except IdentityNotFound as exc:
            raise NotFoundError("identity not found") from exc
        self.logger.info("account_unlocked", identity_id=identity.id)
        return updated
