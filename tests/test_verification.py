"""Single-use email verification and password reset tokens."""

import pytest

from vendorportal.service.errors import InvalidResetTokenError, InvalidVerificationTokenError
from vendorportal.service.tokens import digest_token
from vendorportal.service.verification import VerificationTokenManager


@pytest.fixture
def manager(memory_store, settings, clock):
    return VerificationTokenManager(memory_store, settings, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("Recruiter@Example.com", "hash")


class TestEmailVerification:
    def test_consume_once(self, manager, user):
        token = manager.issue_email_verification(user.id, user.email)
        assert len(token) == 64
        assert manager.consume_email_verification(token) == user.id
        with pytest.raises(InvalidVerificationTokenError):
            manager.consume_email_verification(token)

    def test_expires_after_ttl(self, manager, user, clock):
        token = manager.issue_email_verification(user.id, user.email)
        clock.advance(hours=24)
        with pytest.raises(InvalidVerificationTokenError):
            manager.consume_email_verification(token)

    def test_reissue_invalidates_previous(self, manager, user):
        first = manager.issue_email_verification(user.id, user.email)
        second = manager.issue_email_verification(user.id, user.email)
        with pytest.raises(InvalidVerificationTokenError):
            manager.consume_email_verification(first)
        assert manager.consume_email_verification(second) == user.id

    def test_only_digest_is_stored(self, manager, user, memory_store):
        token = manager.issue_email_verification(user.id, user.email)
        assert token not in memory_store.email_verifications
        assert digest_token(token) in memory_store.email_verifications

    def test_unknown_token(self, manager):
        with pytest.raises(InvalidVerificationTokenError):
            manager.consume_email_verification("nope")


class TestPasswordReset:
    def test_unknown_email_returns_none(self, manager):
        assert manager.issue_password_reset("ghost@example.com") is None

    def test_lookup_is_case_insensitive(self, manager, user):
        issued = manager.issue_password_reset("RECRUITER@example.com", "10.1.1.1", "pytest")
        assert issued.user.id == user.id
        record = manager.check_password_reset(issued.token)
        assert record.ip_address == "10.1.1.1"
        assert record.user_agent == "pytest"

    def test_check_does_not_consume(self, manager, user):
        issued = manager.issue_password_reset(user.email)
        manager.check_password_reset(issued.token)
        manager.check_password_reset(issued.token)
        assert manager.consume_password_reset(issued.token).user_id == user.id
        with pytest.raises(InvalidResetTokenError):
            manager.check_password_reset(issued.token)
        with pytest.raises(InvalidResetTokenError):
            manager.consume_password_reset(issued.token)

    def test_expires_after_one_hour(self, manager, user, clock):
        issued = manager.issue_password_reset(user.email)
        clock.advance(minutes=59)
        manager.check_password_reset(issued.token)
        clock.advance(minutes=1)
        with pytest.raises(InvalidResetTokenError):
            manager.consume_password_reset(issued.token)

    def test_reissue_invalidates_previous(self, manager, user):
        first = manager.issue_password_reset(user.email)
        second = manager.issue_password_reset(user.email)
        with pytest.raises(InvalidResetTokenError):
            manager.consume_password_reset(first.token)
        manager.consume_password_reset(second.token)
