from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from fineguard.storage.models import (
    IdentityRecord,
    Role,
    SecondFactorEnrollment,
    TokenPair,
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    """API envelope format shared by success and error responses."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class IdentityView(BaseModel):
    """Public projection of an identity.

    Password hash, second-factor secrets and ephemeral token fields are not
    part of this model and therefore never serialized.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    email: str
    phone_number: str
    driver_license_number: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role
    is_active: bool
    email_verified: bool
    phone_verified: bool
    mfa_enabled: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_record(cls, record: IdentityRecord) -> "IdentityView":
        return cls(
            id=record.id,
            email=record.email,
            phone_number=record.phone_number,
            driver_license_number=record.driver_license_number,
            first_name=record.first_name,
            last_name=record.last_name,
            role=record.role,
            is_active=record.is_active,
            email_verified=record.email_verified,
            phone_verified=record.phone_verified,
            mfa_enabled=record.mfa_enabled,
            last_login_at=record.last_login_at,
            created_at=record.created_at,
        )


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: Optional[datetime] = None

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )


class SecondFactorEnrollmentResponse(BaseModel):
    """Returned exactly once, when enrollment starts."""

    secret: str
    provisioning_uri: str

    @classmethod
    def from_enrollment(cls, enrollment: SecondFactorEnrollment) -> "SecondFactorEnrollmentResponse":
        return cls(secret=enrollment.secret, provisioning_uri=enrollment.provisioning_uri)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)
