"""
Unit Tests for accounts and notifications

Tests cover:
1. Registration with and without a referral code
2. Unique emails and referral codes
3. User statistics
4. Notification reads
"""

from uuid import uuid4

import pytest

from earnings.errors import AccountExists, NotificationNotFound, ReferralNotFound, ValidationError
from earnings.logging_config import setup_logging
from earnings.models import UserAccount
from earnings.storage import utcnow


class TestRegistration:
    """Tests for account creation."""

    def test_register_without_referral(self, service):
        """Test that a plain registration starts from zero."""
        user = service.accounts.register("alice@example.com", "Alice")

        assert user.balance == 0
        assert user.total_earnings == 0
        assert user.referred_by is None
        assert len(user.referral_code) == 6

    def test_register_with_referral_code(self, service, make_user):
        """Test that a referral code links both accounts."""
        referrer = make_user("referrer")

        user = service.accounts.register("bob@example.com", "Bob", referrer.referral_code)

        assert user.referred_by == referrer.id
        assert service.accounts.get_user(referrer.id).referrals_count == 1
        referrals = service.referrals.list_referrals(referrer.id)
        assert len(referrals) == 1
        assert referrals[0].referred_id == user.id
        assert referrals[0].tasks_completed == 0

    def test_invalid_referral_code(self, service):
        """Test that an unknown code is refused and nothing is created."""
        with pytest.raises(ReferralNotFound):
            service.accounts.register("carol@example.com", "Carol", "ZZZZZZ")

        assert service.storage.users == {}

    def test_duplicate_email(self, service):
        """Test that an email can only be registered once."""
        service.accounts.register("ivan@example.com", "Ivan")

        with pytest.raises(AccountExists):
            service.accounts.register("ivan@example.com", "Ivan again")

        assert len(service.storage.users) == 1

    def test_duplicate_referral_code(self, service, make_user):
        """Test that the store refuses a second account with the same code."""
        existing = make_user("judy")
        now = utcnow()

        with pytest.raises(AccountExists):
            with service.storage.unit_of_work() as uow:
                uow.add_user(UserAccount(
                    id=uuid4(),
                    email="other@example.com",
                    name="Other",
                    referral_code=existing.referral_code,
                    created_at=now,
                    updated_at=now,
                ))

        assert service.referrals.validate_code(existing.referral_code).id == existing.id
        assert "other@example.com" not in service.storage.email_index

    def test_rolled_back_registration_frees_email(self, service):
        """Test that an aborted unit releases the email it reserved."""
        now = utcnow()
        with pytest.raises(RuntimeError):
            with service.storage.unit_of_work() as uow:
                uow.add_user(UserAccount(
                    id=uuid4(),
                    email="kim@example.com",
                    name="Kim",
                    referral_code="ABC123",
                    created_at=now,
                    updated_at=now,
                ))
                raise RuntimeError("abort")

        user = service.accounts.register("kim@example.com", "Kim")

        assert service.accounts.get_user(user.id).email == "kim@example.com"
        assert service.storage.referral_code_index == {user.referral_code: user.id}

    def test_missing_fields(self, service):
        """Test that email and name are required."""
        with pytest.raises(ValidationError):
            service.accounts.register("", "Nobody")


class TestUserStats:
    """Tests for the per-user summary."""

    def test_stats(self, service, make_user, make_task):
        """Test that stats combine balance, tasks and referral earnings."""
        referrer = make_user("dave")
        referred = make_user("erin", referral_code=referrer.referral_code)
        for i in range(3):
            service.complete_task(referred.id, make_task(reward=1000, title=f"Offer {i}").id)
        service.complete_task(referrer.id, make_task(reward=2000).id)

        stats = service.accounts.get_stats(referrer.id)

        assert stats.balance == 7000
        assert stats.total_earnings == 7000
        assert stats.tasks_completed == 1
        assert stats.referrals_count == 1
        assert stats.referral_earnings == 5000
        assert len(stats.recent_tasks) == 1


class TestNotifications:
    """Tests for reading notifications."""

    def test_mark_read_and_counts(self, service, make_user):
        """Test unread counts and marking notifications read."""
        user = make_user("frank", balance=100000)
        for _ in range(3):
            service.request_withdrawal(user.id, 25000, "nequi", "3001234567")

        assert service.notifications.unread_count(user.id) == 3
        first = service.notifications.list_notifications(user.id)[0]

        marked = service.notifications.mark_read(user.id, first.id)

        assert marked.read
        assert service.notifications.unread_count(user.id) == 2
        assert len(service.notifications.list_notifications(user.id, unread_only=True)) == 2
        assert service.notifications.mark_all_read(user.id) == 2
        assert service.notifications.unread_count(user.id) == 0

    def test_cannot_read_someone_elses_notification(self, service, make_user):
        """Test that notifications are scoped to their owner."""
        owner = make_user("grace", balance=30000)
        other = make_user("heidi")
        service.request_withdrawal(owner.id, 25000, "paypal", "grace@paypal.example")
        notification = service.notifications.list_notifications(owner.id)[0]

        with pytest.raises(NotificationNotFound):
            service.notifications.mark_read(other.id, notification.id)
        with pytest.raises(NotificationNotFound):
            service.notifications.mark_read(owner.id, uuid4())


class TestLogging:
    """Tests for the logging setup."""

    def test_setup_logging_json(self, capsys):
        """Test that JSON logging writes serialized records to stdout."""
        from loguru import logger

        setup_logging(json=True, level="INFO")
        logger.info("ledger ready")
        logger.complete()

        assert '"ledger ready"' in capsys.readouterr().out
        logger.remove()
