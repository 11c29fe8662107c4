"""Tests for server-held sessions: timeout, reconciliation and fixation."""

from unittest.mock import patch

import pytest

from intranet_auth.config import Settings
from intranet_auth.service.errors import AuthenticationError, SessionExpiredError
from intranet_auth.service.roles import Role
from intranet_auth.service.sessions import SessionManager
from intranet_auth.storage.memory import MemoryIdentityStore, MemorySessionStore
from intranet_auth.storage.models import Session


@pytest.fixture
def identity():
    return MemoryIdentityStore(totp_encryption_key="test-key")


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def manager(session_store, identity, clock):
    settings = Settings(session_lifetime_seconds=86400)
    return SessionManager(session_store, identity, settings, clock=clock)


@pytest.fixture
def member(identity):
    return identity.create_user("ana@x.test", role="mitglied", firstname="Ana", lastname="Berg")


class TestSessionLifecycle:
    async def test_create_and_validate(self, manager, member):
        session = await manager.create(member, ip_address="10.0.0.1", user_agent="pytest")

        validated = await manager.validate(session.id)

        assert validated.id == session.id
        assert validated.user_id == member.id
        assert validated.role == "mitglied"
        assert validated.display_name == "Ana Berg"
        assert validated.state == Session.AUTHENTICATED
        assert len(validated.csrf_token) == 64

    async def test_missing_or_unknown_session_rejected(self, manager):
        with pytest.raises(SessionExpiredError):
            await manager.validate(None)
        with pytest.raises(SessionExpiredError):
            await manager.validate("does-not-exist")

    async def test_idle_timeout_destroys_session(self, manager, session_store, member, clock):
        session = await manager.create(member)
        clock.advance(hours=24, seconds=1)

        with patch("intranet_auth.service.sessions.logger") as mock_logger:
            with pytest.raises(SessionExpiredError):
                await manager.validate(session.id)

        assert mock_logger.info.call_args[0][0] == "session_timed_out"
        assert await session_store.get(session.id) is None

    async def test_activity_slides_the_timeout(self, manager, member, clock):
        """Each validated request restarts the idle window."""
        session = await manager.create(member)

        clock.advance(hours=20)
        await manager.validate(session.id)
        clock.advance(hours=20)
        validated = await manager.validate(session.id)

        assert validated.last_activity == clock()

    async def test_destroy(self, manager, member):
        session = await manager.create(member)

        await manager.destroy(session.id)
        await manager.destroy(None)

        with pytest.raises(SessionExpiredError):
            await manager.validate(session.id)

    async def test_destroy_user_sessions_keeps_current(self, manager, member, identity):
        other = identity.create_user("ben@x.test", role="mitglied")
        current = await manager.create(member)
        stale = await manager.create(member)
        unrelated = await manager.create(other)

        revoked = await manager.destroy_user_sessions(member.id, except_session_id=current.id)

        assert revoked == 1
        await manager.validate(current.id)
        await manager.validate(unrelated.id)
        with pytest.raises(SessionExpiredError):
            await manager.validate(stale.id)


class TestReconciliation:
    async def test_role_change_visible_on_next_request(self, manager, member, identity):
        session = await manager.create(member)
        identity.update_user_role(member.id, "ressortleiter")

        refreshed, principal = await manager.resolve(session.id)

        assert refreshed.role == "ressortleiter"
        assert principal.role is Role.RESSORTLEITER

    async def test_demotion_takes_effect_immediately(self, manager, identity):
        board = identity.create_user("vor@x.test", role="vorstand")
        session = await manager.create(board)
        identity.update_user_role(board.id, "alumni", is_alumni_validated=False)

        _, principal = await manager.resolve(session.id)

        assert principal.effective_role is Role.NONE
        assert not principal.is_super_admin

    async def test_deleted_user_invalidates_session(self, manager, session_store, member, identity):
        session = await manager.create(member)
        identity.users.pop(member.id)

        with pytest.raises(SessionExpiredError):
            await manager.validate(session.id)
        assert await session_store.get(session.id) is None


class TestPendingSecondFactor:
    async def test_pending_session_not_usable_for_requests(self, manager, member):
        session = await manager.create(member, pending_mfa=True)

        with pytest.raises(AuthenticationError) as exc_info:
            await manager.validate(session.id)

        assert not isinstance(exc_info.value, SessionExpiredError)
        assert (await manager.validate(session.id, allow_pending_mfa=True)).pending_mfa

    async def test_mark_authenticated_rotates_id(self, manager, session_store, member):
        pending = await manager.create(member, pending_mfa=True, ip_address="10.0.0.1")
        pending.auth_method = "password+totp"

        promoted = await manager.mark_authenticated(pending)

        assert promoted.id != pending.id
        assert promoted.state == Session.AUTHENTICATED
        assert promoted.auth_method == "password+totp"
        assert promoted.ip_address == "10.0.0.1"
        assert await session_store.get(pending.id) is None


class TestFixationAndCsrf:
    async def test_previous_session_discarded_on_create(self, manager, session_store, member):
        """A session id presented before login never survives it."""
        before = await manager.create(member)

        after = await manager.create(member, previous_session_id=before.id)

        assert after.id != before.id
        assert await session_store.get(before.id) is None

    async def test_verify_csrf(self, manager, member):
        session = await manager.create(member)

        assert SessionManager.verify_csrf(session, session.csrf_token)
        assert not SessionManager.verify_csrf(session, "wrong")
        assert not SessionManager.verify_csrf(session, None)
        assert not SessionManager.verify_csrf(session, "")


class TestSessionSerialization:
    def test_round_trip_through_dict(self, member):
        session = Session.new(member, auth_method="password+totp", ip_address="10.0.0.1")

        restored = Session.from_dict(session.to_dict())

        assert restored == session
