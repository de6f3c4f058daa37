from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from fineguard.config import Settings
from fineguard.logging import get_logger
from fineguard.service.clock import Clock, SystemClock
from fineguard.service.errors import ExpiredTokenError, InvalidTokenError, ServerError
from fineguard.storage.models import AuthContext, IdentityRecord, TokenPair, parse_role

logger = get_logger(__name__)


class RevocationList(Protocol):
    async def consume_refresh(self, jti: str, ttl_seconds: int) -> bool: ...

    async def is_refresh_consumed(self, jti: str) -> bool: ...

    async def register_family(
        self, identity_id: str, session_id: str, ttl_seconds: int
    ) -> None: ...

    async def families_for(self, identity_id: str) -> list[str]: ...

    async def revoke_family(self, session_id: str, ttl_seconds: int) -> None: ...

    async def is_family_revoked(self, session_id: str) -> bool: ...


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ROTATED = "rotated"
    REVOKED = "revoked"


class SessionCoordinator:
    """Issues, validates and rotates HS256 access/refresh token pairs.

    Access tokens are verified from their signature alone. Refresh tokens are
    single-use: rotation consumes the ``jti`` in the revocation list, and a
    second presentation revokes the whole session family (``sid``).
    """

    def __init__(
        self,
        revocations: RevocationList,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.revocations = revocations
        self.settings = settings
        self.clock = clock or SystemClock()
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self.logger = logger

    # -- JWT codec --------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(
        self, token: str, *, token_type: str, allow_expired: bool = False
    ) -> dict[str, Any]:
        """Verify and decode ``token``.

        Raises InvalidTokenError for anything malformed, forged or of the wrong
        type, and ExpiredTokenError when only the expiry check fails.
        """
        if not isinstance(token, str) or not token.isascii():
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError() from None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError()

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError() from None
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError()
        if payload.get("aud") != self.settings.jwt_audience:
            raise InvalidTokenError()
        if payload.get("token_type") != token_type:
            raise InvalidTokenError()
        for claim in ("sub", "sid", "jti", "role"):
            if not isinstance(payload.get(claim), str) or not payload.get(claim):
                raise InvalidTokenError()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError() from None
        if not allow_expired and exp_ts <= self.clock.now().timestamp():
            raise ExpiredTokenError()
        return payload

    # -- issuance ---------------------------------------------------------

    def _claims(
        self, identity: IdentityRecord, session_id: str, token_type: str, now: datetime, ttl: timedelta
    ) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity.id,
            "sid": session_id,
            "role": identity.role.value,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    async def issue(
        self, identity: IdentityRecord, *, session_id: Optional[str] = None
    ) -> TokenPair:
        """Mint a token pair; ``session_id`` continues an existing family."""
        sid = session_id or str(uuid.uuid4())
        now = self.clock.now()
        access_claims = self._claims(identity, sid, "access", now, self.access_ttl)
        refresh_claims = self._claims(identity, sid, "refresh", now, self.refresh_ttl)
        try:
            await self.revocations.register_family(
                identity.id, sid, int(self.refresh_ttl.total_seconds())
            )
        except Exception as exc:
            self.logger.error("session_family_register_failed", identity_id=identity.id, error=str(exc))
            raise ServerError("session store unavailable") from exc
        return TokenPair(
            access_token=self._encode_jwt(access_claims),
            refresh_token=self._encode_jwt(refresh_claims),
            access_expires_at=datetime.fromtimestamp(access_claims["exp"], tz=timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(refresh_claims["exp"], tz=timezone.utc),
            session_id=sid,
        )

    # -- validation -------------------------------------------------------

    def _context(self, payload: dict[str, Any]) -> AuthContext:
        try:
            role = parse_role(payload["role"])
        except ValueError:
            raise InvalidTokenError() from None
        return AuthContext(identity_id=payload["sub"], role=role, session_id=payload["sid"])

    async def _family_revoked(self, session_id: str) -> bool:
        try:
            return await self.revocations.is_family_revoked(session_id)
        except Exception as exc:
            # Fail closed when the revocation list is unreachable
            self.logger.warning(
                "revocation_check_failed_defaulting_to_revoked",
                session_id=session_id,
                error=str(exc),
            )
            return True

    async def validate_access(
        self, token: str, *, check_revocation: bool = False
    ) -> AuthContext:
        """Verify an access token from its signature and expiry.

        ``check_revocation`` additionally refuses tokens whose session was
        logged out, at the cost of a revocation-list lookup.
        """
        payload = self._decode_jwt(token, token_type="access")
        context = self._context(payload)
        if check_revocation and await self._family_revoked(context.session_id):
            raise InvalidTokenError("session revoked")
        return context

    # -- rotation and revocation -------------------------------------------

    def _remaining_seconds(self, payload: dict[str, Any]) -> int:
        return max(1, int(float(payload["exp"]) - self.clock.now().timestamp()))

    async def rotate(
        self,
        refresh_token: str,
        load_identity: Callable[[str], Optional[IdentityRecord]],
    ) -> TokenPair:
        """Exchange a refresh token for a new pair; each refresh token works once."""
        try:
            payload = self._decode_jwt(refresh_token, token_type="refresh")
        except ExpiredTokenError:
            raise InvalidTokenError("refresh token expired") from None
        session_id = payload["sid"]
        identity_id = payload["sub"]

        if await self._family_revoked(session_id):
            self.logger.warning(
                "refresh_token_family_revoked", identity_id=identity_id, session_id=session_id
            )
            raise InvalidTokenError()

        ttl = self._remaining_seconds(payload)
        try:
            first_use = await self.revocations.consume_refresh(payload["jti"], ttl)
        except Exception as exc:
            self.logger.warning(
                "refresh_consume_failed_defaulting_to_revoked",
                identity_id=identity_id,
                error=str(exc),
            )
            raise InvalidTokenError() from exc
        if not first_use:
            self.logger.warning(
                "refresh_token_reuse_detected",
                identity_id=identity_id,
                session_id=session_id,
            )
            await self._revoke_family(session_id)
            raise InvalidTokenError()

        identity = load_identity(identity_id)
        if identity is None or not identity.is_active:
            self.logger.warning("refresh_identity_unavailable", identity_id=identity_id)
            await self._revoke_family(session_id)
            raise InvalidTokenError()
        pair = await self.issue(identity, session_id=session_id)
        self.logger.info("session_rotated", identity_id=identity_id, session_id=session_id)
        return pair

    async def _revoke_family(self, session_id: str) -> None:
        try:
            await self.revocations.revoke_family(
                session_id, int(self.refresh_ttl.total_seconds())
            )
        except Exception as exc:
            self.logger.error("session_family_revoke_failed", session_id=session_id, error=str(exc))
            raise ServerError("session store unavailable") from exc

    async def revoke(self, refresh_token: str) -> None:
        """Logout: kill the session family the refresh token belongs to."""
        payload = self._decode_jwt(refresh_token, token_type="refresh", allow_expired=True)
        await self._revoke_family(payload["sid"])
        self.logger.info("session_revoked", identity_id=payload["sub"], session_id=payload["sid"])

    async def revoke_all(self, identity_id: str) -> int:
        """Revoke every session family minted for ``identity_id``."""
        try:
            families = await self.revocations.families_for(identity_id)
        except Exception as exc:
            self.logger.error("session_family_list_failed", identity_id=identity_id, error=str(exc))
            raise ServerError("session store unavailable") from exc
        for session_id in families:
            await self._revoke_family(session_id)
        self.logger.info("sessions_revoked_for_identity", identity_id=identity_id, count=len(families))
        return len(families)

    async def state(self, pair: TokenPair) -> SessionState:
        refresh = self._decode_jwt(pair.refresh_token, token_type="refresh", allow_expired=True)
        if await self._family_revoked(refresh["sid"]):
            return SessionState.REVOKED
        try:
            consumed = await self.revocations.is_refresh_consumed(refresh["jti"])
        except Exception as exc:
            self.logger.warning(
                "revocation_check_failed_defaulting_to_revoked",
                session_id=refresh["sid"],
                error=str(exc),
            )
            return SessionState.REVOKED
        if consumed:
            return SessionState.ROTATED
        try:
            self._decode_jwt(pair.access_token, token_type="access")
        except ExpiredTokenError:
            if float(refresh["exp"]) <= self.clock.now().timestamp():
                return SessionState.REVOKED
            return SessionState.EXPIRED
        return SessionState.ACTIVE
