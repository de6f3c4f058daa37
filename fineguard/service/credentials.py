from __future__ import annotations

import re
from typing import Callable, Optional, Protocol, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from fineguard.config import Settings
from fineguard.logging import get_logger, hash_email
from fineguard.service.clock import Clock, SystemClock
from fineguard.service.errors import ConflictError, NotFoundError, ValidationError
from fineguard.storage.errors import ConstraintViolation, IdentityNotFound
from fineguard.storage.models import IdentityRecord, Role, TokenKind, parse_role

T = TypeVar("T")

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$", re.ASCII)
_PASSWORD_CLASSES = (
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(r"[@$!%*?&]"), "a special character (@$!%*?&)"),
)
LICENSE_MIN_LENGTH = 5
LICENSE_MAX_LENGTH = 20


def _password_bytes(candidate: str) -> bytes:
    # Every str encodes, lone surrogates included
    return candidate.encode("utf-8", "surrogatepass")


class IdentityStore(Protocol):
    def create_identity(self, record: IdentityRecord) -> IdentityRecord: ...

    def get_identity(self, identity_id: str) -> Optional[IdentityRecord]: ...

    def get_identity_by_email(self, email: str) -> Optional[IdentityRecord]: ...

    def get_identity_by_phone(self, phone_number: str) -> Optional[IdentityRecord]: ...

    def get_identity_by_license(self, license_number: str) -> Optional[IdentityRecord]: ...

    def find_identity_by_token(
        self, kind: TokenKind, token_hash: str
    ) -> Optional[IdentityRecord]: ...

    def update_identity(
        self, identity_id: str, mutate: Callable[[IdentityRecord], T]
    ) -> T: ...

    def list_identities(self) -> list[IdentityRecord]: ...


class CredentialStore:
    """Owns identity records and the password lifecycle.

    Hashing always happens before any store mutation and never while a
    record lock is held.
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost_kib,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    # -- validation -------------------------------------------------------

    def validate_password(self, password: str) -> None:
        if not isinstance(password, str) or len(password) < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters",
                detail={"field": "password"},
            )
        try:
            password.encode("utf-8")
        except UnicodeEncodeError:
            raise ValidationError(
                "password contains invalid characters", detail={"field": "password"}
            ) from None
        if self.settings.password_require_complexity:
            missing = [label for pattern, label in _PASSWORD_CLASSES if not pattern.search(password)]
            if missing:
                raise ValidationError(
                    "password must contain " + ", ".join(missing),
                    detail={"field": "password"},
                )

    def _normalize_email(self, email: str) -> str:
        normalized = (email or "").strip().lower()
        if len(normalized) > 254 or not EMAIL_PATTERN.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        return normalized

    def _normalize_phone(self, phone_number: str) -> str:
        normalized = (phone_number or "").strip()
        if not PHONE_PATTERN.match(normalized):
            raise ValidationError(
                "phone number must be in international format",
                detail={"field": "phone_number"},
            )
        return normalized

    def _normalize_license(self, license_number: Optional[str]) -> Optional[str]:
        if license_number is None:
            return None
        normalized = license_number.strip().upper()
        if not LICENSE_MIN_LENGTH <= len(normalized) <= LICENSE_MAX_LENGTH:
            raise ValidationError(
                f"driver license number must be {LICENSE_MIN_LENGTH}-{LICENSE_MAX_LENGTH} characters",
                detail={"field": "driver_license_number"},
            )
        return normalized

    # -- hashing ----------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, identity: IdentityRecord, candidate: str) -> bool:
        """Check ``candidate`` against the stored hash; False on any mismatch."""
        if not identity.password_hash or not isinstance(candidate, str):
            return False
        try:
            return self._pwd_hasher.verify(identity.password_hash, _password_bytes(candidate))
        except (InvalidHash, VerificationError):
            return False

    def verify_dummy(self, candidate: str) -> None:
        """Spend one verification on a throwaway hash for unknown identifiers."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("fineguard-dummy-password")
        try:
            self._pwd_hasher.verify(self._dummy_hash, _password_bytes(candidate or ""))
        except (InvalidHash, VerificationError):
            pass

    def needs_rehash(self, identity: IdentityRecord) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(identity.password_hash)
        except InvalidHash:
            return True

    # -- lifecycle --------------------------------------------------------

    def create_identity(
        self,
        *,
        email: str,
        phone_number: str,
        password: str,
        role: Role | str = Role.CITIZEN,
        driver_license_number: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> IdentityRecord:
        normalized_email = self._normalize_email(email)
        normalized_phone = self._normalize_phone(phone_number)
        normalized_license = self._normalize_license(driver_license_number)
        try:
            parsed_role = parse_role(role)
        except ValueError:
            raise ValidationError("unknown role", detail={"field": "role"}) from None
        self.validate_password(password)

        # Cheap pre-check so duplicates fail before paying for a hash
        for field, existing in (
            ("email", self.store.get_identity_by_email(normalized_email)),
            ("phone_number", self.store.get_identity_by_phone(normalized_phone)),
            (
                "driver_license_number",
                self.store.get_identity_by_license(normalized_license)
                if normalized_license
                else None,
            ),
        ):
            if existing is not None:
                raise ConflictError(f"{field} already registered", detail={"field": field})

        record = IdentityRecord.new(
            normalized_email,
            normalized_phone,
            self.hash_password(password),
            role=parsed_role,
            driver_license_number=normalized_license,
            first_name=first_name,
            last_name=last_name,
        )
        record.created_at = self.clock.now()
        try:
            created = self.store.create_identity(record)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.logger.info(
            "identity_created",
            identity_id=created.id,
            role=created.role.value,
            email_hash=hash_email(created.email),
        )
        return created

    def _update(self, identity_id: str, mutate: Callable[[IdentityRecord], T]) -> T:
        try:
            return self.store.update_identity(identity_id, mutate)
        except IdentityNotFound as exc:
            raise NotFoundError("identity not found", detail={"identity_id": identity_id}) from exc
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

    def rotate_password(self, identity: IdentityRecord, new_plaintext: str) -> IdentityRecord:
        """Replace the password hash and burn any outstanding reset token."""
        self.validate_password(new_plaintext)
        new_hash = self.hash_password(new_plaintext)

        def _apply(record: IdentityRecord) -> IdentityRecord:
            record.password_hash = new_hash
            record.clear_token(TokenKind.RESET)
            return record

        updated = self._update(identity.id, _apply)
        self.logger.info("password_rotated", identity_id=identity.id)
        return updated

    def rehash(self, identity: IdentityRecord, password: str) -> None:
        """Upgrade a hash produced with older argon2 parameters."""
        new_hash = self.hash_password(password)
        old_hash = identity.password_hash

        def _apply(record: IdentityRecord) -> None:
            # Skip if the password changed concurrently
            if record.password_hash == old_hash:
                record.password_hash = new_hash

        self._update(identity.id, _apply)
        self.logger.info("password_rehashed", identity_id=identity.id)

    def set_active(self, identity: IdentityRecord, active: bool) -> IdentityRecord:
        def _apply(record: IdentityRecord) -> IdentityRecord:
            record.is_active = active
            return record

        updated = self._update(identity.id, _apply)
        self.logger.info("identity_active_changed", identity_id=identity.id, active=active)
        return updated

    def set_role(self, identity: IdentityRecord, role: Role | str) -> IdentityRecord:
        try:
            parsed_role = parse_role(role)
        except ValueError:
            raise ValidationError("unknown role", detail={"field": "role"}) from None

        def _apply(record: IdentityRecord) -> IdentityRecord:
            record.role = parsed_role
            return record

        updated = self._update(identity.id, _apply)
        self.logger.info("identity_role_changed", identity_id=identity.id, role=parsed_role.value)
        return updated

    def mark_email_verified(self, identity: IdentityRecord) -> IdentityRecord:
        def _apply(record: IdentityRecord) -> IdentityRecord:
            record.email_verified = True
            return record

        return self._update(identity.id, _apply)

    # -- lookups ----------------------------------------------------------

    def find_by_id(self, identity_id: str) -> Optional[IdentityRecord]:
        return self.store.get_identity(identity_id)

    def find_by_email(self, email: str) -> Optional[IdentityRecord]:
        if not email:
            return None
        return self.store.get_identity_by_email(email.strip().lower())

    def find_by_phone(self, phone_number: str) -> Optional[IdentityRecord]:
        if not phone_number:
            return None
        return self.store.get_identity_by_phone(phone_number.strip())

    def find_by_license(self, license_number: str) -> Optional[IdentityRecord]:
        if not license_number:
            return None
        return self.store.get_identity_by_license(license_number.strip().upper())

    def find_by_identifier(self, identifier: str) -> Optional[IdentityRecord]:
        """Resolve a login identifier: email, then phone, then license number."""
        value = (identifier or "").strip()
        if not value:
            return None
        if "@" in value:
            return self.find_by_email(value)
        if PHONE_PATTERN.match(value):
            found = self.find_by_phone(value)
            if found is not None:
                return found
        return self.find_by_license(value)
