"""Tests for access/refresh token issuance, validation, rotation and revocation."""

import asyncio
import base64
import json

import pytest

from fineguard.service.errors import ExpiredTokenError, InvalidTokenError, ServerError
from fineguard.service.sessions import SessionCoordinator, SessionState
from fineguard.storage.memory import MemoryRevocationList
from fineguard.storage.models import IdentityRecord, Role


class BrokenRevocationList:
    """Revocation list whose backing cache is unreachable."""

    async def consume_refresh(self, jti, ttl_seconds):
        raise ConnectionError("cache down")

    async def is_refresh_consumed(self, jti):
        raise ConnectionError("cache down")

    async def register_family(self, identity_id, session_id, ttl_seconds):
        return None

    async def families_for(self, identity_id):
        raise ConnectionError("cache down")

    async def revoke_family(self, session_id, ttl_seconds):
        raise ConnectionError("cache down")

    async def is_family_revoked(self, session_id):
        raise ConnectionError("cache down")


@pytest.fixture
def coordinator(revocations, settings, clock):
    return SessionCoordinator(revocations, settings, clock=clock)


@pytest.fixture
def identity():
    return IdentityRecord.new("rosa@example.ph", "+639221234567", "hash", role=Role.ENFORCER)


def _loader(*records):
    by_id = {record.id: record for record in records}
    return by_id.get


def _segment(data):
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _claims(token):
    payload = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))


class TestIssueAndValidate:
    async def test_issue_and_validate_access(self, coordinator, identity, clock):
        pair = await coordinator.issue(identity)

        context = await coordinator.validate_access(pair.access_token)

        assert context.identity_id == identity.id
        assert context.role == Role.ENFORCER
        assert context.session_id == pair.session_id
        assert pair.token_type == "bearer"
        assert (pair.access_expires_at - clock.now()).total_seconds() == 15 * 60
        assert (pair.refresh_expires_at - clock.now()).total_seconds() == 7 * 24 * 3600

    async def test_claims_shape(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        claims = _claims(pair.access_token)
        assert claims["iss"] == "fineguard"
        assert claims["aud"] == "fine-portal-clients"
        assert claims["token_type"] == "access"
        assert claims["sub"] == identity.id
        assert claims["sid"] == pair.session_id
        assert _claims(pair.refresh_token)["jti"] != claims["jti"]

    async def test_expired_access_token_is_distinct(self, coordinator, identity, clock):
        pair = await coordinator.issue(identity)
        clock.advance(minutes=15)
        with pytest.raises(ExpiredTokenError):
            await coordinator.validate_access(pair.access_token)

    async def test_tampered_signature_rejected(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        header, payload, signature = pair.access_token.split(".")
        forged_claims = _claims(pair.access_token)
        forged_claims["role"] = "admin"
        forged = f"{header}.{_segment(forged_claims)}.{signature}"
        with pytest.raises(InvalidTokenError):
            await coordinator.validate_access(forged)

    async def test_alg_none_rejected(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        _, payload, _ = pair.access_token.split(".")
        unsigned = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{payload}."
        with pytest.raises(InvalidTokenError):
            await coordinator.validate_access(unsigned)

    async def test_token_from_other_secret_rejected(self, revocations, settings, clock, identity):
        other = SessionCoordinator(
            revocations,
            settings.model_copy(update={"jwt_secret": "another-secret-of-sufficient-length-000"}),
            clock=clock,
        )
        pair = await other.issue(identity)
        coordinator = SessionCoordinator(revocations, settings, clock=clock)
        with pytest.raises(InvalidTokenError):
            await coordinator.validate_access(pair.access_token)

    async def test_refresh_token_is_not_an_access_token(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        with pytest.raises(InvalidTokenError):
            await coordinator.validate_access(pair.refresh_token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b.c", None])
    async def test_garbage_rejected(self, coordinator, token):
        with pytest.raises(InvalidTokenError):
            await coordinator.validate_access(token)

    async def test_non_ascii_signature_rejected(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        header, payload, _ = pair.access_token.split(".")
        with pytest.raises(InvalidTokenError):
            await coordinator.validate_access(f"{header}.{payload}.\u00e9\u00e9")

        header, payload, _ = pair.refresh_token.split(".")
        with pytest.raises(InvalidTokenError):
            await coordinator.rotate(f"{header}.{payload}.\u00e9", _loader(identity))

    async def test_lone_surrogate_rejected(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        with pytest.raises(InvalidTokenError):
            await coordinator.validate_access(pair.access_token + "\ud800")


class TestRotate:
    async def test_rotate_issues_new_pair_in_same_family(self, coordinator, identity):
        pair = await coordinator.issue(identity)

        rotated = await coordinator.rotate(pair.refresh_token, _loader(identity))

        assert rotated.session_id == pair.session_id
        assert rotated.refresh_token != pair.refresh_token
        assert (await coordinator.validate_access(rotated.access_token)).identity_id == identity.id

    async def test_rotated_refresh_token_cannot_be_replayed(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        rotated = await coordinator.rotate(pair.refresh_token, _loader(identity))

        with pytest.raises(InvalidTokenError):
            await coordinator.rotate(pair.refresh_token, _loader(identity))
        # Reuse is a theft signal: the whole family is gone
        with pytest.raises(InvalidTokenError):
            await coordinator.rotate(rotated.refresh_token, _loader(identity))

    async def test_reuse_leaves_other_sessions_alone(self, coordinator, identity):
        phone = await coordinator.issue(identity)
        laptop = await coordinator.issue(identity)
        await coordinator.rotate(phone.refresh_token, _loader(identity))
        with pytest.raises(InvalidTokenError):
            await coordinator.rotate(phone.refresh_token, _loader(identity))

        await coordinator.rotate(laptop.refresh_token, _loader(identity))

    async def test_concurrent_rotation_exactly_one_wins(self, coordinator, identity):
        pair = await coordinator.issue(identity)

        results = await asyncio.gather(
            coordinator.rotate(pair.refresh_token, _loader(identity)),
            coordinator.rotate(pair.refresh_token, _loader(identity)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidTokenError)

    async def test_expired_refresh_token(self, coordinator, identity, clock):
        pair = await coordinator.issue(identity)
        clock.advance(days=7)
        with pytest.raises(InvalidTokenError):
            await coordinator.rotate(pair.refresh_token, _loader(identity))

    async def test_access_token_cannot_rotate(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        with pytest.raises(InvalidTokenError):
            await coordinator.rotate(pair.access_token, _loader(identity))

    async def test_inactive_identity_cannot_rotate(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        identity.is_active = False
        with pytest.raises(InvalidTokenError):
            await coordinator.rotate(pair.refresh_token, _loader(identity))

    async def test_deleted_identity_cannot_rotate(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        with pytest.raises(InvalidTokenError):
            await coordinator.rotate(pair.refresh_token, _loader())

    async def test_rotation_picks_up_role_change(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        identity.role = Role.ADMIN
        rotated = await coordinator.rotate(pair.refresh_token, _loader(identity))
        assert (await coordinator.validate_access(rotated.access_token)).role == Role.ADMIN


class TestRevoke:
    async def test_logout_revokes_refresh_token(self, coordinator, identity):
        pair = await coordinator.issue(identity)
        await coordinator.revoke(pair.refresh_token)
        with pytest.raises(InvalidTokenError):
            await coordinator.rotate(pair.refresh_token, _loader(identity))

    async def test_access_token_stays_stateless_unless_revocation_checked(
        self, coordinator, identity
    ):
        pair = await coordinator.issue(identity)
        await coordinator.revoke(pair.refresh_token)

        await coordinator.validate_access(pair.access_token)
        with pytest.raises(InvalidTokenError):
            await coordinator.validate_access(pair.access_token, check_revocation=True)

    async def test_logout_with_expired_refresh_token(self, coordinator, identity, clock):
        pair = await coordinator.issue(identity)
        clock.advance(days=8)
        await coordinator.revoke(pair.refresh_token)

    async def test_revoke_all_kills_every_family(self, coordinator, identity):
        first = await coordinator.issue(identity)
        second = await coordinator.issue(identity)

        assert await coordinator.revoke_all(identity.id) == 2

        for pair in (first, second):
            with pytest.raises(InvalidTokenError):
                await coordinator.rotate(pair.refresh_token, _loader(identity))

    async def test_revoke_all_without_sessions(self, coordinator):
        assert await coordinator.revoke_all("nobody") == 0


class TestSessionState:
    async def test_state_transitions(self, coordinator, identity, clock):
        pair = await coordinator.issue(identity)
        assert await coordinator.state(pair) == SessionState.ACTIVE

        clock.advance(minutes=16)
        assert await coordinator.state(pair) == SessionState.EXPIRED

        await coordinator.rotate(pair.refresh_token, _loader(identity))
        assert await coordinator.state(pair) == SessionState.ROTATED

        await coordinator.revoke(pair.refresh_token)
        assert await coordinator.state(pair) == SessionState.REVOKED

    async def test_state_is_revoked_when_consumption_lookup_fails(self, settings, clock, identity):
        class ConsumedLookupDown(MemoryRevocationList):
            async def is_refresh_consumed(self, jti):
                raise ConnectionError("cache down")

        coordinator = SessionCoordinator(ConsumedLookupDown(), settings, clock=clock)
        pair = await coordinator.issue(identity)
        assert await coordinator.state(pair) == SessionState.REVOKED


class TestRevocationListOutage:
    """Cache outages fail closed."""

    async def test_rotation_refused_when_cache_down(self, settings, clock, identity):
        coordinator = SessionCoordinator(BrokenRevocationList(), settings, clock=clock)
        pair = await coordinator.issue(identity)
        with pytest.raises(InvalidTokenError):
            await coordinator.rotate(pair.refresh_token, _loader(identity))

    async def test_revocation_check_refuses_when_cache_down(self, settings, clock, identity):
        coordinator = SessionCoordinator(BrokenRevocationList(), settings, clock=clock)
        pair = await coordinator.issue(identity)
        with pytest.raises(InvalidTokenError):
            await coordinator.validate_access(pair.access_token, check_revocation=True)

    async def test_logout_surfaces_server_error(self, settings, clock, identity):
        coordinator = SessionCoordinator(BrokenRevocationList(), settings, clock=clock)
        pair = await coordinator.issue(identity)
        with pytest.raises(ServerError):
            await coordinator.revoke(pair.refresh_token)


class TestMemoryRevocationList:
    async def test_consume_is_first_caller_only(self):
        revocations = MemoryRevocationList()
        assert await revocations.consume_refresh("jti-1", 60) is True
        assert await revocations.consume_refresh("jti-1", 60) is False
        assert await revocations.is_refresh_consumed("jti-1") is True
        assert await revocations.is_refresh_consumed("jti-2") is False
