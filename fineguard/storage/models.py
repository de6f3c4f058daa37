from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of portal roles."""

    CITIZEN = "citizen"
    ENFORCER = "enforcer"
    ADMIN = "admin"


# Roles whose holders satisfy a requirement for the key role.
# Every Role member must appear here; role_allows raises on a missing entry.
_ROLE_SATISFIED_BY: dict[Role, frozenset[Role]] = {
    Role.CITIZEN: frozenset({Role.CITIZEN, Role.ENFORCER, Role.ADMIN}),
    Role.ENFORCER: frozenset({Role.ENFORCER, Role.ADMIN}),
    Role.ADMIN: frozenset({Role.ADMIN}),
}


def parse_role(value: "Role | str") -> Role:
    """Coerce a stored or claimed role string, raising ValueError on unknown roles."""
    if isinstance(value, Role):
        return value
    return Role(str(value).lower())


def role_allows(role: "Role | str", required: "Role | str") -> bool:
    holder = parse_role(role)
    needed = parse_role(required)
    try:
        return holder in _ROLE_SATISFIED_BY[needed]
    except KeyError:
        raise ValueError(f"no grant rule for role {needed.value}") from None


class TokenKind(str, Enum):
    """Kinds of single-use ephemeral tokens stored on an identity."""

    RESET = "reset"
    VERIFICATION = "verification"

    @property
    def hash_field(self) -> str:
        return f"{self.value}_token_hash"

    @property
    def expiry_field(self) -> str:
        return f"{self.value}_token_expires_at"


@dataclass
class IdentityRecord:
    id: str
    email: str
    phone_number: str
    password_hash: str
    role: Role = Role.CITIZEN
    driver_license_number: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False
    phone_verified: bool = False
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    mfa_pending_secret: Optional[str] = None
    mfa_last_step: Optional[int] = None
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    verification_token_hash: Optional[str] = None
    verification_token_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        phone_number: str,
        password_hash: str,
        *,
        role: Role = Role.CITIZEN,
        driver_license_number: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> "IdentityRecord":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            phone_number=phone_number,
            password_hash=password_hash,
            role=role,
            driver_license_number=driver_license_number,
            first_name=first_name,
            last_name=last_name,
        )

    def token_hash(self, kind: TokenKind) -> Optional[str]:
        return getattr(self, kind.hash_field)

    def token_expires_at(self, kind: TokenKind) -> Optional[datetime]:
        return getattr(self, kind.expiry_field)

    def set_token(
        self, kind: TokenKind, digest: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        setattr(self, kind.hash_field, digest)
        setattr(self, kind.expiry_field, expires_at)

    def clear_token(self, kind: TokenKind) -> None:
        self.set_token(kind, None, None)


def can_perform_admin_action(identity: IdentityRecord) -> bool:
    return identity.is_active and role_allows(identity.role, Role.ADMIN)


def can_perform_enforcer_action(identity: IdentityRecord) -> bool:
    return identity.is_active and role_allows(identity.role, Role.ENFORCER)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    token_type: str = "bearer"


@dataclass
class SecondFactorEnrollment:
    secret: str
    provisioning_uri: str


@dataclass
class AuthContext:
    identity_id: str
    role: Role
    session_id: str
