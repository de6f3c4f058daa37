from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Optional
from urllib.parse import quote, urlencode

from cryptography.fernet import Fernet, InvalidToken

from fineguard.config import Settings
from fineguard.logging import get_logger
from fineguard.service.clock import Clock, SystemClock
from fineguard.service.credentials import IdentityStore
from fineguard.service.errors import InvalidCodeError, NotFoundError, ValidationError
from fineguard.storage.errors import IdentityNotFound
from fineguard.storage.models import IdentityRecord, SecondFactorEnrollment

logger = get_logger(__name__)

SECRET_BYTES = 20


def generate_totp(
    secret: str, timestamp: float, *, interval: int = 30, digits: int = 6
) -> str:
    """RFC 6238 code (HMAC-SHA1) for the step containing ``timestamp``."""
    return totp_for_step(secret, int(timestamp // interval), digits=digits)


def totp_for_step(secret: str, step: int, *, digits: int = 6) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = step.to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecondFactorManager:
    """TOTP enrollment and verification.

    The active secret lives in ``mfa_secret`` only while ``mfa_enabled`` is
    true; an unconfirmed enrollment sits in ``mfa_pending_secret``. Both are
    Fernet-encrypted at rest.
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
        self.issuer = settings.totp_issuer
        self.interval = settings.totp_interval_seconds
        self.digits = settings.totp_digits
        self.skew_steps = settings.totp_skew_steps
        material = settings.mfa_secret_key or settings.jwt_secret
        if not material:
            raise RuntimeError("MFA_SECRET_KEY or JWT_SECRET is required to protect TOTP secrets")
        self._cipher = Fernet(_derive_cipher_key(material))
        self.logger = logger

    # -- secret handling --------------------------------------------------

    def _encrypt(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt(self, stored: str) -> str:
        try:
            return self._cipher.decrypt(stored.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return stored

    def _update(self, identity: IdentityRecord, mutate):
        try:
            return self.store.update_identity(identity.id, mutate)
        except IdentityNotFound as exc:
            raise NotFoundError("identity not found") from exc

    def provisioning_uri(self, identity: IdentityRecord, secret: str) -> str:
        label = f"{quote(self.issuer)}:{quote(identity.email)}"
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{query}"

    def _current_step(self) -> int:
        return int(self.clock.now().timestamp() // self.interval)

    def _matching_step(self, secret: str, code: str, last_step: Optional[int]) -> Optional[int]:
        """Return the accepted time step for ``code``, or None."""
        candidate = (code or "").strip()
        if len(candidate) != self.digits or not (candidate.isascii() and candidate.isdigit()):
            return None
        current = self._current_step()
        matched: Optional[int] = None
        for offset in range(-self.skew_steps, self.skew_steps + 1):
            step = current + offset
            expected = totp_for_step(secret, step, digits=self.digits)
            # Constant-time comparison; keep scanning to avoid early exit
            if expected and hmac.compare_digest(expected, candidate) and matched is None:
                matched = step
        if matched is None:
            return None
        if last_step is not None and matched <= last_step:
            return None
        return matched

    # -- operations -------------------------------------------------------

    def enroll(self, identity: IdentityRecord) -> SecondFactorEnrollment:
        secret = base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")
        encrypted = self._encrypt(secret)

        def _apply(record: IdentityRecord) -> IdentityRecord:
            if record.mfa_enabled:
                raise ValidationError("second factor already enabled")
            record.mfa_pending_secret = encrypted
            return record

        record = self._update(identity, _apply)
        self.logger.info("mfa_enrollment_started", identity_id=identity.id)
        return SecondFactorEnrollment(
            secret=secret, provisioning_uri=self.provisioning_uri(record, secret)
        )

    def confirm(self, identity: IdentityRecord, code: str) -> None:
        def _apply(record: IdentityRecord) -> None:
            if record.mfa_enabled:
                raise ValidationError("second factor already enabled")
            if not record.mfa_pending_secret:
                raise ValidationError("no second factor enrollment in progress")
            step = self._matching_step(
                self._decrypt(record.mfa_pending_secret), code, record.mfa_last_step
            )
            if step is None:
                raise InvalidCodeError()
            record.mfa_secret = record.mfa_pending_secret
            record.mfa_pending_secret = None
            record.mfa_enabled = True
            record.mfa_last_step = step

        try:
            self._update(identity, _apply)
        except InvalidCodeError:
            self.logger.info("mfa_confirmation_failed", identity_id=identity.id)
            raise
        self.logger.info("mfa_enabled", identity_id=identity.id)

    def verify(self, identity: IdentityRecord, code: str) -> bool:
        """Check a login code; a code is accepted at most once."""

        def _apply(record: IdentityRecord) -> bool:
            if not record.mfa_enabled or not record.mfa_secret:
                return False
            step = self._matching_step(
                self._decrypt(record.mfa_secret), code, record.mfa_last_step
            )
            if step is None:
                return False
            record.mfa_last_step = step
            return True

        accepted = self._update(identity, _apply)
        if not accepted:
            self.logger.info("mfa_verification_failed", identity_id=identity.id)
        return accepted

    def disable(self, identity: IdentityRecord) -> None:
        def _apply(record: IdentityRecord) -> None:
            record.mfa_enabled = False
            record.mfa_secret = None
            record.mfa_pending_secret = None
            record.mfa_last_step = None

        self._update(identity, _apply)
        self.logger.info("mfa_disabled", identity_id=identity.id)
