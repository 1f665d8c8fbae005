"""
Unit Tests for the Balance Mutator

Tests cover:
1. Credits and debits
2. Overdraft rejection
3. Zero-amount audit entries
4. Concurrent deltas on one user
5. Balance derived from the transaction log
"""

import threading
from uuid import UUID

import pytest

from earnings.errors import InsufficientFunds, UserNotFound, ValidationError
from earnings.models import TransactionType


MISSING_ID = UUID("00000000-0000-0000-0000-000000000000")


class TestApplyDelta:
    """Tests for single balance mutations."""

    def test_credit_updates_balance_and_earnings(self, service, make_user):
        """Test that an earning credit raises balance and total earnings."""
        user = make_user("alice")

        change = service.balance.apply_delta(user.id, 1500, True, "Survey reward")

        assert change.new_balance == 1500
        assert change.new_total_earnings == 1500
        assert change.transaction.amount == 1500
        assert change.transaction.type == TransactionType.EARN
        assert change.transaction.balance_after == 1500

    def test_debit_leaves_total_earnings(self, service, make_user):
        """Test that a debit never lowers total earnings."""
        user = make_user("bob", balance=5000)

        change = service.balance.apply_delta(user.id, -2000, False, "Manual adjustment")

        assert change.new_balance == 3000
        assert change.new_total_earnings == 5000
        assert change.transaction.type == TransactionType.WITHDRAW
        assert change.transaction.amount == -2000

    def test_overdraft_fails_and_changes_nothing(self, service, make_user):
        """Test that a debit past zero is rejected without side effects."""
        user = make_user("carol", balance=1000)

        with pytest.raises(InsufficientFunds):
            service.balance.apply_delta(user.id, -1001, False, "Too much")

        balance = service.balance.get_balance(user.id)
        assert balance.current_balance == 1000
        assert balance.total_entries == 1

    def test_zero_amount_still_records_transaction(self, service, make_user):
        """Test that a zero delta is kept in the audit trail."""
        user = make_user("dave", balance=700)

        change = service.balance.apply_delta(user.id, 0, False, "No-op")

        assert change.new_balance == 700
        assert service.balance.get_balance(user.id).total_entries == 2

    def test_unknown_user(self, service):
        """Test that mutating a missing account fails."""
        with pytest.raises(UserNotFound):
            service.balance.apply_delta(MISSING_ID, 100, True, "Ghost")

    def test_non_integer_amount_rejected(self, service, make_user):
        """Test that fractional amounts are refused."""
        user = make_user("erin")

        with pytest.raises(ValidationError):
            service.balance.apply_delta(user.id, 10.5, True, "Fraction")

    def test_explicit_transaction_type(self, service, make_user):
        """Test that the caller can label a credit as a bonus."""
        user = make_user("frank")

        change = service.balance.apply_delta(user.id, 400, True, "Promo", TransactionType.BONUS)

        assert change.transaction.type == TransactionType.BONUS


class TestConcurrentDeltas:
    """Tests for serialization of mutations on the same user."""

    def test_no_lost_updates(self, service, make_user):
        """Test that parallel credits and debits all land."""
        user = make_user("grace", balance=10_000)
        deltas = [250, -100, 75, -300, 1000, -50] * 10
        errors = []

        def apply(delta):
            try:
                service.balance.apply_delta(user.id, delta, delta > 0, "Parallel")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=apply, args=(d,)) for d in deltas]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        balance = service.balance.get_balance(user.id)
        assert balance.current_balance == 10_000 + sum(deltas)
        assert balance.consistent
        assert balance.total_entries == len(deltas) + 1

    def test_parallel_debits_never_overdraw(self, service, make_user):
        """Test that racing debits cannot take the balance below zero."""
        user = make_user("heidi", balance=1000)
        failures = []

        def debit():
            try:
                service.balance.apply_delta(user.id, -300, False, "Race")
            except InsufficientFunds as e:
                failures.append(e)

        threads = [threading.Thread(target=debit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        balance = service.balance.get_balance(user.id)
        assert len(failures) == 5
        assert balance.current_balance == 100
        assert balance.consistent


class TestBalanceCalculation:
    """Tests for balance reads."""

    def test_balance_matches_transaction_log(self, service, make_user):
        """Test that the cached balance equals the sum of transactions."""
        user = make_user("ivan", balance=500)
        service.balance.apply_delta(user.id, 250, True, "Reward")
        service.balance.apply_delta(user.id, -100, False, "Adjustment")

        balance = service.balance.get_balance(user.id)

        assert balance.current_balance == 650
        assert balance.ledger_balance == 650
        assert balance.total_earnings == 750
        assert balance.total_entries == 3
        assert balance.last_transaction_at is not None

    def test_ledger_history(self, service, make_user):
        """Test ledger history pagination."""
        user = make_user("judy")
        for amount in (100, 200, 300):
            service.balance.apply_delta(user.id, amount, True, f"Reward {amount}")

        history = service.balance.get_ledger_history(user.id, limit=2)

        assert history.user_id == user.id
        assert history.total_count == 3
        assert len(history.entries) == 2
        assert history.current_balance == 600
