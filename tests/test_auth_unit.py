"""Unit tests for the authentication service."""

import time
from unittest.mock import patch

import pytest
from argon2 import PasswordHasher

from intranet_auth.config import Settings
from intranet_auth.service import credentials
from intranet_auth.service.audit import AuditLog
from intranet_auth.service.auth import AUTH_METHOD_PASSWORD, AUTH_METHOD_TOTP, AuthService
from intranet_auth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentials,
    NotFoundError,
    PermissionDenied,
    RateLimited,
    SessionExpiredError,
    ValidationError,
)
from intranet_auth.service.rate_limit import RateLimiter
from intranet_auth.service.roles import Principal
from intranet_auth.service.sessions import SessionManager
from intranet_auth.storage.memory import (
    MemoryContentStore,
    MemoryIdentityStore,
    MemorySessionStore,
)

PASSWORD = "correct horse battery"


def wrong_code_for(secret):
    """A six-digit code that matches none of the currently accepted steps."""
    now = time.time()
    accepted = {credentials.generate_totp_code(secret, now + d) for d in (-60, -30, 0, 30, 60)}
    for candidate in range(1_000_000):
        code = str(candidate).zfill(6)
        if code not in accepted:
            return code
    raise AssertionError("unreachable")


@pytest.fixture
def settings():
    return Settings(
        login_max_attempts=5,
        login_window_seconds=900,
        session_lifetime_seconds=86400,
        totp_issuer="Intranet",
    )


@pytest.fixture
def identity():
    return MemoryIdentityStore(totp_encryption_key="test-key")


@pytest.fixture
def content():
    return MemoryContentStore()


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def sessions(session_store, identity, settings, clock):
    return SessionManager(session_store, identity, settings, clock=clock)


@pytest.fixture
def auth(identity, content, sessions, settings, clock):
    limiter = RateLimiter(identity, settings, clock=clock, rng=lambda: 1.0)
    return AuthService(
        identity, sessions, limiter, AuditLog(content, identity), settings, clock=clock
    )


def make_user(identity, email, role, **fields):
    return identity.create_user(
        email, role=role, password_hash=credentials.hash_password(PASSWORD), **fields
    )


def principal_for(user):
    return Principal.of(user.id, user.role, user.is_alumni_validated)


async def enable_totp_for(auth, user):
    enrollment = auth.begin_totp_enrollment(user.id)
    await auth.enable_totp(user.id, credentials.generate_totp_code(enrollment.secret))
    return enrollment.secret


class TestPasswordLogin:
    async def test_successful_login(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")

        result = await auth.login("Ana@X.test", PASSWORD, ip="10.0.0.1", user_agent="pytest")

        assert result.user.id == user.id
        assert not result.requires_totp
        assert result.session.user_id == user.id
        assert result.session.auth_method == AUTH_METHOD_PASSWORD
        assert identity.login_attempts[-1].success

    async def test_wrong_password(self, auth, identity):
        make_user(identity, "ana@x.test", "mitglied")

        with pytest.raises(InvalidCredentials):
            await auth.login("ana@x.test", "wrong password", ip="10.0.0.1")

        attempt = identity.login_attempts[-1]
        assert not attempt.success
        assert attempt.email == "ana@x.test"

    async def test_unknown_account_same_error(self, auth, identity):
        """Unknown accounts are indistinguishable from wrong passwords."""
        make_user(identity, "ana@x.test", "mitglied")

        with pytest.raises(InvalidCredentials) as unknown:
            await auth.login("nobody@x.test", PASSWORD, ip="10.0.0.1")
        with pytest.raises(InvalidCredentials) as wrong:
            await auth.login("ana@x.test", "wrong password", ip="10.0.0.1")

        assert unknown.value.message == wrong.value.message
        assert len(identity.login_attempts) == 2

    async def test_account_without_password(self, auth, identity):
        identity.create_user("nopw@x.test", role="mitglied")

        with pytest.raises(InvalidCredentials):
            await auth.login("nopw@x.test", "anything at all", ip="10.0.0.1")

    async def test_missing_fields_recorded_as_failure(self, auth, identity):
        with pytest.raises(InvalidCredentials):
            await auth.login("", "", ip="10.0.0.1")

        attempt = identity.login_attempts[-1]
        assert not attempt.success
        assert attempt.email is None
        assert attempt.ip_address == "10.0.0.1"

    async def test_previous_session_discarded(self, auth, identity, session_store):
        make_user(identity, "ana@x.test", "mitglied")
        first = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.1")

        second = await auth.login(
            "ana@x.test", PASSWORD, ip="10.0.0.1", previous_session_id=first.session.id
        )

        assert second.session.id != first.session.id
        assert await session_store.get(first.session.id) is None

    async def test_outdated_hash_upgraded_on_login(self, auth, identity):
        weak = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1).hash(PASSWORD)
        user = identity.create_user("old@x.test", role="mitglied", password_hash=weak)

        await auth.login("old@x.test", PASSWORD, ip="10.0.0.1")

        upgraded = identity.get_user(user.id).password_hash
        assert upgraded != weak
        assert not credentials.password_needs_rehash(upgraded)

    async def test_logout(self, auth, identity, sessions):
        make_user(identity, "ana@x.test", "mitglied")
        result = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.1")

        await auth.logout(result.session.id)

        with pytest.raises(SessionExpiredError):
            await sessions.validate(result.session.id)


class TestLoginRateLimiting:
    async def test_sixth_attempt_blocked_even_with_correct_password(self, auth, identity):
        make_user(identity, "ana@x.test", "mitglied")
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth.login("ana@x.test", "wrong password", ip="10.0.0.1")

        with patch("intranet_auth.service.auth.logger") as mock_logger:
            with pytest.raises(RateLimited) as exc_info:
                await auth.login("ana@x.test", PASSWORD, ip="10.0.0.1")

        assert exc_info.value.status_code == 429
        mock_logger.info.assert_not_called()
        # the blocked attempt itself is not recorded
        assert len(identity.login_attempts) == 5

    async def test_block_lifts_after_window(self, auth, identity, clock):
        make_user(identity, "ana@x.test", "mitglied")
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth.login("ana@x.test", "wrong password", ip="10.0.0.1")

        clock.advance(seconds=901)

        result = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.1")
        assert result.session

    async def test_email_limit_applies_across_ips(self, auth, identity):
        make_user(identity, "ana@x.test", "mitglied")
        for i in range(5):
            with pytest.raises(InvalidCredentials):
                await auth.login("ana@x.test", "wrong password", ip=f"10.0.1.{i}")

        with pytest.raises(RateLimited):
            await auth.login("ana@x.test", PASSWORD, ip="10.0.2.1")


class TestTotpLogin:
    async def test_password_only_yields_pending_session(self, auth, identity, sessions):
        user = make_user(identity, "ana@x.test", "mitglied")
        await enable_totp_for(auth, user)

        result = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.1")

        assert result.requires_totp
        assert result.session.pending_mfa
        assert identity.login_attempts == []
        with pytest.raises(AuthenticationError):
            await sessions.validate(result.session.id)

    async def test_repeated_two_step_logins_never_rate_limited(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")
        secret = await enable_totp_for(auth, user)
        previous = None

        for _ in range(7):
            pending = await auth.login(
                "ana@x.test", PASSWORD, ip="10.0.0.1", previous_session_id=previous
            )
            result = await auth.complete_totp(
                pending.session.id, credentials.generate_totp_code(secret), ip="10.0.0.1"
            )
            previous = result.session.id

        assert all(attempt.success for attempt in identity.login_attempts)
        assert len(identity.login_attempts) == 7

    async def test_abandoned_second_step_counts_as_failure(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")
        await enable_totp_for(auth, user)
        pending = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.1")

        with patch("intranet_auth.service.auth.logger") as mock_logger:
            await auth.login(
                "ana@x.test", PASSWORD, ip="10.0.0.1", previous_session_id=pending.session.id
            )

        assert [attempt.success for attempt in identity.login_attempts] == [False]
        assert mock_logger.info.call_args_list[0][1]["reason"] == "totp_abandoned"

    async def test_complete_totp_promotes_session(self, auth, identity, sessions):
        user = make_user(identity, "ana@x.test", "mitglied")
        secret = await enable_totp_for(auth, user)
        pending = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.1")

        result = await auth.complete_totp(
            pending.session.id, credentials.generate_totp_code(secret), ip="10.0.0.1"
        )

        assert result.session.id != pending.session.id
        assert result.session.auth_method == AUTH_METHOD_TOTP
        assert (await sessions.validate(result.session.id)).user_id == user.id
        with pytest.raises(SessionExpiredError):
            await sessions.validate(pending.session.id, allow_pending_mfa=True)

    async def test_complete_totp_wrong_code(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")
        secret = await enable_totp_for(auth, user)
        pending = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.1")

        with pytest.raises(InvalidCredentials):
            await auth.complete_totp(pending.session.id, wrong_code_for(secret), ip="10.0.0.1")

        assert not identity.login_attempts[-1].success

    async def test_complete_totp_requires_pending_session(self, auth, identity):
        make_user(identity, "ana@x.test", "mitglied")
        result = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.1")

        with pytest.raises(ValidationError):
            await auth.complete_totp(result.session.id, "123456", ip="10.0.0.1")

    async def test_code_in_single_request(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")
        secret = await enable_totp_for(auth, user)

        result = await auth.login(
            "ana@x.test", PASSWORD, credentials.generate_totp_code(secret), ip="10.0.0.1"
        )

        assert not result.requires_totp
        assert result.session.auth_method == AUTH_METHOD_TOTP

    async def test_wrong_code_in_single_request(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")
        secret = await enable_totp_for(auth, user)

        with pytest.raises(InvalidCredentials):
            await auth.login("ana@x.test", PASSWORD, wrong_code_for(secret), ip="10.0.0.1")


class TestTotpEnrollment:
    async def test_enrollment_flow(self, auth, identity, content):
        user = make_user(identity, "ana@x.test", "mitglied")

        enrollment = auth.begin_totp_enrollment(user.id)

        assert not auth.is_totp_enabled(user.id)
        assert enrollment.provisioning_uri.startswith("otpauth://totp/Intranet:ana@x.test?")
        # stored encrypted, returned decrypted
        assert identity.users[user.id].totp_secret != enrollment.secret
        assert identity.get_user(user.id).totp_secret == enrollment.secret

        await auth.enable_totp(user.id, credentials.generate_totp_code(enrollment.secret))

        assert auth.is_totp_enabled(user.id)
        assert identity.get_user(user.id).totp_verified_at is not None
        assert content.audit_entries[-1].action == "enable_totp"

    async def test_enable_with_wrong_code(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")
        enrollment = auth.begin_totp_enrollment(user.id)

        with pytest.raises(ValidationError):
            await auth.enable_totp(user.id, wrong_code_for(enrollment.secret))

        assert not auth.is_totp_enabled(user.id)

    async def test_enable_without_enrollment(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")

        with pytest.raises(ValidationError):
            await auth.enable_totp(user.id, "123456")

    async def test_cannot_enroll_twice(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")
        await enable_totp_for(auth, user)

        with pytest.raises(ConflictError):
            auth.begin_totp_enrollment(user.id)

    async def test_enable_revokes_other_sessions(self, auth, identity, sessions):
        user = make_user(identity, "ana@x.test", "mitglied")
        current = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.1")
        other = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.2")
        enrollment = auth.begin_totp_enrollment(user.id)

        await auth.enable_totp(
            user.id,
            credentials.generate_totp_code(enrollment.secret),
            current_session_id=current.session.id,
        )

        await sessions.validate(current.session.id)
        with pytest.raises(SessionExpiredError):
            await sessions.validate(other.session.id)

    async def test_disable_requires_valid_code(self, auth, identity, content):
        user = make_user(identity, "ana@x.test", "mitglied")
        secret = await enable_totp_for(auth, user)

        with pytest.raises(ValidationError):
            await auth.disable_totp(user.id, wrong_code_for(secret))
        await auth.disable_totp(user.id, credentials.generate_totp_code(secret))

        stored = identity.get_user(user.id)
        assert not stored.totp_enabled
        assert stored.totp_secret is None
        assert content.audit_entries[-1].action == "disable_totp"

    async def test_disable_when_not_enabled(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")

        with pytest.raises(ValidationError):
            await auth.disable_totp(user.id, "123456")


class TestUpdateUserRole:
    async def test_member_cannot_promote_to_admin(self, auth, identity):
        member = make_user(identity, "m@x.test", "mitglied")
        target = make_user(identity, "t@x.test", "mitglied")

        with pytest.raises(PermissionDenied):
            await auth.update_user_role(principal_for(member), target.id, "admin")

        assert identity.get_user(target.id).role == "mitglied"

    async def test_admin_promotes_and_sessions_are_revoked(self, auth, identity, content, sessions):
        admin = make_user(identity, "admin@x.test", "admin")
        target = make_user(identity, "t@x.test", "mitglied")
        target_session = await auth.login("t@x.test", PASSWORD, ip="10.0.0.1")

        updated = await auth.update_user_role(
            principal_for(admin), target.id, "vorstand", ip_address="10.0.0.5"
        )

        assert updated.role == "vorstand"
        with pytest.raises(SessionExpiredError):
            await sessions.validate(target_session.session.id)
        entry = content.audit_entries[-1]
        assert entry.action == "update_role"
        assert entry.details == {"old_role": "mitglied", "new_role": "vorstand"}
        assert entry.ip_address == "10.0.0.5"

    async def test_lower_role_cannot_demote_superior(self, auth, identity):
        lead = make_user(identity, "lead@x.test", "ressortleiter")
        board = make_user(identity, "board@x.test", "vorstand")

        with patch("intranet_auth.service.auth.logger") as mock_logger:
            with pytest.raises(PermissionDenied):
                await auth.update_user_role(principal_for(lead), board.id, "mitglied")

        assert mock_logger.warning.call_args[0][0] == "role_escalation_denied"
        assert identity.get_user(board.id).role == "vorstand"

    async def test_self_modification_denied(self, auth, identity):
        lead = make_user(identity, "lead@x.test", "ressortleiter")

        with patch("intranet_auth.service.auth.logger") as mock_logger:
            with pytest.raises(PermissionDenied):
                await auth.update_user_role(principal_for(lead), lead.id, "mitglied")

        assert mock_logger.warning.call_args[0][0] == "role_self_update_denied"

    async def test_lead_moves_member_to_unvalidated_alumni(self, auth, identity):
        lead = make_user(identity, "lead@x.test", "ressortleiter")
        member = make_user(identity, "m@x.test", "mitglied")

        updated = await auth.update_user_role(principal_for(lead), member.id, "alumni")

        assert updated.role == "alumni"
        assert not updated.is_alumni_validated

    async def test_board_assigning_alumni_validates(self, auth, identity):
        admin = make_user(identity, "admin@x.test", "admin")
        member = make_user(identity, "m@x.test", "mitglied")

        updated = await auth.update_user_role(principal_for(admin), member.id, "alumni")

        assert updated.is_alumni_validated

    async def test_unknown_role(self, auth, identity):
        admin = make_user(identity, "admin@x.test", "admin")
        member = make_user(identity, "m@x.test", "mitglied")

        with pytest.raises(ValidationError):
            await auth.update_user_role(principal_for(admin), member.id, "root")
        with pytest.raises(ValidationError):
            await auth.update_user_role(principal_for(admin), member.id, " ADMIN ")
        assert identity.get_user(member.id).role == "mitglied"

    async def test_unknown_user(self, auth, identity):
        admin = make_user(identity, "admin@x.test", "admin")

        with pytest.raises(NotFoundError):
            await auth.update_user_role(principal_for(admin), "missing", "mitglied")


class TestAlumniWorkflow:
    def test_request_alumni_status(self, auth, identity, content, clock):
        member = make_user(identity, "m@x.test", "mitglied")

        updated = auth.request_alumni_status(member.id)

        assert updated.role == "alumni"
        assert not updated.is_alumni_validated
        assert updated.alumni_status_requested_at == clock()
        assert principal_for(updated).effective_role.value == "none"
        assert content.audit_entries[-1].details == {"previous_role": "mitglied"}

    def test_request_twice_conflicts(self, auth, identity):
        member = make_user(identity, "m@x.test", "mitglied")
        auth.request_alumni_status(member.id)

        with pytest.raises(ConflictError):
            auth.request_alumni_status(member.id)

    def test_board_member_cannot_request(self, auth, identity):
        board = make_user(identity, "b@x.test", "1v")

        with pytest.raises(PermissionDenied):
            auth.request_alumni_status(board.id)

    def test_board_validates_alumni(self, auth, identity, content):
        admin = make_user(identity, "admin@x.test", "alumni-vorstand")
        member = make_user(identity, "m@x.test", "mitglied")
        auth.request_alumni_status(member.id)

        assert [u.id for u in auth.list_pending_alumni(principal_for(admin))] == [member.id]
        validated = auth.validate_alumni(principal_for(admin), member.id)

        assert validated.is_alumni_validated
        assert principal_for(validated).check_permission("alumni")
        assert auth.list_pending_alumni(principal_for(admin)) == []
        assert content.audit_entries[-1].action == "validate_alumni"

    def test_non_board_cannot_validate(self, auth, identity):
        lead = make_user(identity, "lead@x.test", "ressortleiter")
        member = make_user(identity, "m@x.test", "mitglied")
        auth.request_alumni_status(member.id)

        with pytest.raises(PermissionDenied):
            auth.validate_alumni(principal_for(lead), member.id)
        with pytest.raises(PermissionDenied):
            auth.list_pending_alumni(principal_for(lead))

    def test_validate_non_alumni_rejected(self, auth, identity):
        admin = make_user(identity, "admin@x.test", "admin")
        member = make_user(identity, "m@x.test", "mitglied")

        with pytest.raises(ValidationError):
            auth.validate_alumni(principal_for(admin), member.id)

    def test_create_alumni_account(self, auth, identity):
        admin = make_user(identity, "admin@x.test", "admin")

        user = auth.create_alumni_account(
            principal_for(admin), "Old@X.test", "Old", "Timer", PASSWORD
        )

        assert user.email == "old@x.test"
        assert user.role == "alumni"
        assert user.is_alumni_validated

    def test_create_alumni_duplicate_email(self, auth, identity):
        admin = make_user(identity, "admin@x.test", "admin")
        make_user(identity, "old@x.test", "mitglied")

        with pytest.raises(ConflictError):
            auth.create_alumni_account(principal_for(admin), "old@x.test", "Old", "Timer", PASSWORD)


class TestChangePassword:
    async def test_change_password_revokes_other_sessions(self, auth, identity, sessions, content):
        user = make_user(identity, "ana@x.test", "mitglied")
        current = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.1")
        other = await auth.login("ana@x.test", PASSWORD, ip="10.0.0.2")

        revoked = await auth.change_password(
            user.id, PASSWORD, "a whole new passphrase", current_session_id=current.session.id
        )

        assert revoked == 1
        await sessions.validate(current.session.id)
        with pytest.raises(SessionExpiredError):
            await sessions.validate(other.session.id)
        assert content.audit_entries[-1].action == "change_password"
        await auth.login("ana@x.test", "a whole new passphrase", ip="10.0.0.1")

    async def test_wrong_current_password(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")

        with pytest.raises(ValidationError) as exc_info:
            await auth.change_password(user.id, "not my password", "a whole new passphrase")

        assert exc_info.value.detail == {"field": "current_password"}

    async def test_new_password_too_short(self, auth, identity):
        user = make_user(identity, "ana@x.test", "mitglied")

        with pytest.raises(ValidationError):
            await auth.change_password(user.id, PASSWORD, "short")
