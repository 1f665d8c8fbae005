"""
Earnings Ledger for a Task-Completion Rewards Platform

This module provides:
- Atomic balance mutations backed by an append-only transaction log
- Task completion with a (user, task) uniqueness guard
- One-time referral milestone bonuses (3, 7 and 15 tasks)
- Withdrawal requests with fee calculation
- In-memory and SQLAlchemy ledger stores
"""

from .errors import (
    AccountExists,
    AlreadyCompleted,
    BelowMinimum,
    EarningsError,
    InsufficientFunds,
    PersistenceError,
    TaskNotFound,
    UnsupportedMethod,
    UserNotFound,
)
from .models import (
    TransactionType,
    UserAccount,
    Referral,
    Task,
    Transaction,
    Withdrawal,
    WithdrawalRequest,
)
from .service import EarningsService
from .storage import InMemoryStorage, LedgerStore

__all__ = [
    "AccountExists",
    "AlreadyCompleted",
    "BelowMinimum",
    "EarningsError",
    "InsufficientFunds",
    "PersistenceError",
    "TaskNotFound",
    "UnsupportedMethod",
    "UserNotFound",
    "TransactionType",
    "UserAccount",
    "Referral",
    "Task",
    "Transaction",
    "Withdrawal",
    "WithdrawalRequest",
    "EarningsService",
    "InMemoryStorage",
    "LedgerStore",
]
