from __future__ import annotations

import asyncio
from typing import Optional

from fineguard.api.schemas import IdentityView
from fineguard.config import Settings
from fineguard.logging import get_logger, hash_email
from fineguard.service.clock import Clock, SystemClock
from fineguard.service.credentials import CredentialStore, IdentityStore
from fineguard.service.email import EmailService
from fineguard.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    SecondFactorRequiredError,
    ValidationError,
)
from fineguard.service.lockout import LockoutGuard
from fineguard.service.mfa import SecondFactorManager
from fineguard.service.sessions import RevocationList, SessionCoordinator
from fineguard.service.tokens import EphemeralTokenIssuer
from fineguard.storage.models import (
    AuthContext,
    IdentityRecord,
    Role,
    SecondFactorEnrollment,
    TokenKind,
    TokenPair,
    role_allows,
)

logger = get_logger(__name__)


class AuthService:
    """Entry point for login, recovery, second factor and session flows.

    Login runs the lockout check, then the password check, then the second
    factor, then the success stamp, and only then issues tokens. Password
    hashing is pushed to a worker thread so the event loop and record locks
    are never held across it.
    """

    def __init__(
        self,
        store: IdentityStore,
        revocations: RevocationList,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()
        self.credentials = CredentialStore(store, settings, clock=self.clock)
        self.lockout = LockoutGuard(store, settings, clock=self.clock)
        self.tokens = EphemeralTokenIssuer(store, settings, clock=self.clock)
        self.mfa = SecondFactorManager(store, settings, clock=self.clock)
        self.sessions = SessionCoordinator(revocations, settings, clock=self.clock)
        self.email = email or EmailService.from_settings(settings)
        self.logger = logger

    def _require_identity(self, principal: AuthContext) -> IdentityRecord:
        identity = self.credentials.find_by_id(principal.identity_id)
        if identity is None:
            raise InvalidTokenError("identity no longer exists")
        return identity

    def _record_failed_login(self, identity: IdentityRecord, reason: str) -> None:
        # Raises AccountLockedError when this failure reaches the threshold
        try:
            attempts = self.lockout.record_failure(identity)
        except AccountLockedError:
            self.logger.warning("login_failed", identity_id=identity.id, reason=reason, locked=True)
            raise
        self.logger.info("login_failed", identity_id=identity.id, reason=reason, attempts=attempts)

    async def _send_email(self, send, *args, **kwargs) -> None:
        delivered = await asyncio.to_thread(send, *args, **kwargs)
        if not delivered:
            self.logger.warning("security_email_not_delivered", mailer=send.__name__)

    # -- registration and login ---------------------------------------------

    async def register(
        self,
        *,
        email: str,
        phone_number: str,
        password: str,
        driver_license_number: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: Role | str = Role.CITIZEN,
        send_verification: bool = True,
    ) -> IdentityView:
        identity = await asyncio.to_thread(
            self.credentials.create_identity,
            email=email,
            phone_number=phone_number,
            password=password,
            role=role,
            driver_license_number=driver_license_number,
            first_name=first_name,
            last_name=last_name,
        )
        if send_verification:
            await self._send_verification(identity)
        return IdentityView.from_record(identity)

    async def login(
        self,
        identifier: str,
        password: str,
        second_factor_code: Optional[str] = None,
    ) -> TokenPair:
        identity = self.credentials.find_by_identifier(identifier)
        if identity is None:
            # Spend the same hashing cost as a real check
            await asyncio.to_thread(self.credentials.verify_dummy, password)
            self.logger.info("login_failed", reason="unknown_identifier")
            raise InvalidCredentialsError()

        try:
            self.lockout.ensure_not_locked(identity)
        except AccountLockedError:
            self.logger.info("login_rejected_locked", identity_id=identity.id)
            raise

        password_ok = await asyncio.to_thread(
            self.credentials.verify_password, identity, password
        )
        if not password_ok:
            self._record_failed_login(identity, "password")
            raise InvalidCredentialsError()

        if identity.mfa_enabled:
            if not second_factor_code:
                self.logger.info("login_second_factor_required", identity_id=identity.id)
                raise SecondFactorRequiredError()
            if not self.mfa.verify(identity, second_factor_code):
                self._record_failed_login(identity, "second_factor")
                raise InvalidCredentialsError()

        if not identity.is_active:
            self.logger.info("login_rejected_inactive", identity_id=identity.id)
            raise AccountInactiveError()

        current = self.lockout.record_success(identity)
        if self.credentials.needs_rehash(current):
            await asyncio.to_thread(self.credentials.rehash, current, password)
        pair = await self.sessions.issue(current)
        self.logger.info("login_succeeded", identity_id=current.id, session_id=pair.session_id)
        return pair

    # -- password recovery --------------------------------------------------

    async def request_password_reset(self, email: str) -> None:
        """Email a reset link; silent for unknown addresses."""
        identity = self.credentials.find_by_email(email)
        if identity is None:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email or ""))
            return
        token = self.tokens.issue(identity, TokenKind.RESET)
        await self._send_email(
            self.email.send_password_reset,
            identity.email,
            token,
            expires_minutes=self.settings.reset_token_ttl_minutes,
        )
        self.logger.info("password_reset_requested", identity_id=identity.id)

    async def validate_reset_token(self, token: str) -> None:
        """Check a reset link before showing the new-password form."""
        self.tokens.peek(token, TokenKind.RESET)

    async def reset_password(self, token: str, new_password: str) -> None:
        # Reject weak passwords before burning the token
        self.credentials.validate_password(new_password)
        identity = self.tokens.consume(token, TokenKind.RESET)
        await asyncio.to_thread(self.credentials.rotate_password, identity, new_password)
        self.lockout.unlock(identity)
        await self.sessions.revoke_all(identity.id)
        self.logger.info("password_reset_completed", identity_id=identity.id)

    async def change_password(
        self, principal: AuthContext, current_password: str, new_password: str
    ) -> TokenPair:
        """Rotate the password of a signed-in identity and start a fresh session."""
        identity = self._require_identity(principal)
        self.lockout.ensure_not_locked(identity)
        self.credentials.validate_password(new_password)
        ok = await asyncio.to_thread(
            self.credentials.verify_password, identity, current_password
        )
        if not ok:
            self._record_failed_login(identity, "password_change")
            raise InvalidCredentialsError()
        updated = await asyncio.to_thread(
            self.credentials.rotate_password, identity, new_password
        )
        await self.sessions.revoke_all(identity.id)
        self.logger.info("password_changed", identity_id=identity.id)
        return await self.sessions.issue(updated)

    # -- email verification -------------------------------------------------

    async def _send_verification(self, identity: IdentityRecord) -> None:
        token = self.tokens.issue(identity, TokenKind.VERIFICATION)
        await self._send_email(
            self.email.send_email_verification,
            identity.email,
            token,
            expires_minutes=self.settings.verification_token_ttl_minutes,
        )

    async def request_email_verification(self, principal: AuthContext) -> None:
        identity = self._require_identity(principal)
        if identity.email_verified:
            raise ValidationError("email already verified")
        await self._send_verification(identity)
        self.logger.info("email_verification_requested", identity_id=identity.id)

    async def verify_email(self, token: str) -> None:
        identity = self.tokens.consume(token, TokenKind.VERIFICATION)
        self.credentials.mark_email_verified(identity)
        self.logger.info("email_verified", identity_id=identity.id)

    # -- second factor ------------------------------------------------------

    async def enable_second_factor(self, principal: AuthContext) -> SecondFactorEnrollment:
        identity = self._require_identity(principal)
        return self.mfa.enroll(identity)

    async def confirm_second_factor(self, principal: AuthContext, code: str) -> None:
        identity = self._require_identity(principal)
        self.mfa.confirm(identity, code)
        await self._send_email(self.email.send_second_factor_changed, identity.email, enabled=True)

    async def disable_second_factor(self, principal: AuthContext, password: str) -> None:
        """Turn off the second factor after re-checking the password."""
        identity = self._require_identity(principal)
        if not identity.mfa_enabled:
            raise ValidationError("second factor not enabled")
        self.lockout.ensure_not_locked(identity)
        ok = await asyncio.to_thread(self.credentials.verify_password, identity, password)
        if not ok:
            self._record_failed_login(identity, "second_factor_disable")
            raise InvalidCredentialsError()
        self.mfa.disable(identity)
        await self._send_email(self.email.send_second_factor_changed, identity.email, enabled=False)

    # -- sessions -----------------------------------------------------------

    async def refresh_session(self, refresh_token: str) -> TokenPair:
        return await self.sessions.rotate(refresh_token, self.credentials.find_by_id)

    async def logout(self, refresh_token: str) -> None:
        await self.sessions.revoke(refresh_token)

    async def authenticate(
        self, access_token: str, *, check_revocation: bool = False
    ) -> AuthContext:
        return await self.sessions.validate_access(
            access_token, check_revocation=check_revocation
        )

    async def authorize(
        self,
        access_token: str,
        required_role: Role | str,
        *,
        check_revocation: bool = False,
    ) -> AuthContext:
        context = await self.authenticate(access_token, check_revocation=check_revocation)
        if not role_allows(context.role, required_role):
            self.logger.warning(
                "authorization_denied",
                identity_id=context.identity_id,
                role=context.role.value,
                required=str(getattr(required_role, "value", required_role)),
            )
            raise ForbiddenError("insufficient role")
        return context

    # -- administration -----------------------------------------------------

    async def unlock_account(self, identity_id: str) -> None:
        identity = self.credentials.find_by_id(identity_id)
        if identity is None:
            raise NotFoundError("identity not found")
        self.lockout.unlock(identity)

    async def set_account_active(self, identity_id: str, active: bool) -> IdentityView:
        identity = self.credentials.find_by_id(identity_id)
        if identity is None:
            raise NotFoundError("identity not found")
        updated = self.credentials.set_active(identity, active)
        if not active:
            await self.sessions.revoke_all(identity_id)
        return IdentityView.from_record(updated)

    async def set_role(self, identity_id: str, role: Role | str) -> IdentityView:
        identity = self.credentials.find_by_id(identity_id)
        if identity is None:
            raise NotFoundError("identity not found")
        updated = self.credentials.set_role(identity, role)
        # Outstanding tokens carry the old role claim
        await self.sessions.revoke_all(identity_id)
        return IdentityView.from_record(updated)
