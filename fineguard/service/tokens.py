from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import timedelta
from typing import Optional

from fineguard.config import Settings
from fineguard.logging import get_logger
from fineguard.service.clock import Clock, SystemClock
from fineguard.service.credentials import IdentityStore
from fineguard.service.errors import NotFoundError, TokenExpiredError, TokenNotFoundError
from fineguard.storage.errors import IdentityNotFound
from fineguard.storage.models import IdentityRecord, TokenKind

logger = get_logger(__name__)

TOKEN_BYTES = 32


def digest_token(token: str) -> str:
    """SHA-256 hex digest stored in place of the raw token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class EphemeralTokenIssuer:
    """Single-use, time-boxed tokens for password reset and email verification.

    Only the digest of a token is persisted; the raw value is handed out once
    by ``issue``.
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ttls = {
            TokenKind.RESET: timedelta(minutes=settings.reset_token_ttl_minutes),
            TokenKind.VERIFICATION: timedelta(minutes=settings.verification_token_ttl_minutes),
        }
        self.logger = logger

    def ttl(self, kind: TokenKind) -> timedelta:
        return self.ttls[kind]

    def issue(self, identity: IdentityRecord, kind: TokenKind) -> str:
        """Mint a token of ``kind`` for ``identity``, replacing any earlier one."""
        token = secrets.token_hex(TOKEN_BYTES)
        expires_at = self.clock.now() + self.ttl(kind)
        digest = digest_token(token)

        def _apply(record: IdentityRecord) -> None:
            record.set_token(kind, digest, expires_at)

        try:
            self.store.update_identity(identity.id, _apply)
        except IdentityNotFound as exc:
            raise NotFoundError("identity not found") from exc
        self.logger.info(
            "ephemeral_token_issued",
            identity_id=identity.id,
            token_kind=kind.value,
            expires_at=expires_at.isoformat(),
        )
        return token

    def _lookup(self, token: str, kind: TokenKind) -> tuple[IdentityRecord, str]:
        if not isinstance(token, str) or not token:
            raise TokenNotFoundError()
        try:
            digest = digest_token(token)
        except UnicodeEncodeError:
            raise TokenNotFoundError() from None
        identity = self.store.find_identity_by_token(kind, digest)
        if identity is None:
            raise TokenNotFoundError()
        return identity, digest

    def _check_digest(self, record: IdentityRecord, kind: TokenKind, digest: str) -> None:
        stored = record.token_hash(kind)
        if stored is None or not hmac.compare_digest(stored, digest):
            raise TokenNotFoundError()

    def _expired(self, record: IdentityRecord, kind: TokenKind) -> bool:
        expires_at = record.token_expires_at(kind)
        return expires_at is None or expires_at <= self.clock.now()

    def _check_live(self, record: IdentityRecord, kind: TokenKind, digest: str) -> None:
        self._check_digest(record, kind, digest)
        if self._expired(record, kind):
            raise TokenExpiredError()

    def peek(self, token: str, kind: TokenKind) -> IdentityRecord:
        """Validate a token without consuming it."""
        identity, digest = self._lookup(token, kind)
        self._check_live(identity, kind, digest)
        return identity

    def consume(self, token: str, kind: TokenKind) -> IdentityRecord:
        """Validate and clear a token; a second use raises TokenNotFoundError.

        An expired token is cleared as well before TokenExpiredError is raised.
        """
        identity, digest = self._lookup(token, kind)

        def _apply(record: IdentityRecord) -> tuple[bool, IdentityRecord]:
            # Re-check under the record lock; a concurrent consumer may have won
            self._check_digest(record, kind, digest)
            expired = self._expired(record, kind)
            record.clear_token(kind)
            return expired, record

        try:
            expired, consumed = self.store.update_identity(identity.id, _apply)
        except IdentityNotFound as exc:
            raise TokenNotFoundError() from exc
        if expired:
            self.logger.info(
                "ephemeral_token_expired", identity_id=identity.id, token_kind=kind.value
            )
            raise TokenExpiredError()
        self.logger.info("ephemeral_token_consumed", identity_id=identity.id, token_kind=kind.value)
        return consumed
