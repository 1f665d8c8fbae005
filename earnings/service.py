from typing import Optional
from uuid import UUID

from .accounts import AccountService
from .balance import BalanceMutator
from .config import EarningsSettings, get_settings
from .logging_config import setup_logging
from .models import FeeQuote, TaskCompletionResult, Withdrawal, WithdrawalRequest
from .notifications import NotificationService
from .referrals import ReferralBonusEngine
from .sql_storage import SqlStorage
from .storage import InMemoryStorage, LedgerStore
from .tasks import TaskCompletionService
from .withdrawals import WithdrawalService


class EarningsService:
    """Entry point for authenticated request handlers.

    Every component shares one store; pass ``SqlStorage`` for a database and
    leave it out for the in-memory store.
    """

    def __init__(self, storage: Optional[LedgerStore] = None, settings: Optional[EarningsSettings] = None):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()

        self.balance = BalanceMutator(self.storage)
        self.accounts = AccountService(self.storage)
        self.notifications = NotificationService(self.storage)
        self.referrals = ReferralBonusEngine(self.storage, self.balance, self.settings.frontend_url)
        self.tasks = TaskCompletionService(self.storage, self.balance, self.referrals)
        self.withdrawals = WithdrawalService(
            self.storage,
            self.balance,
            minimum_withdrawal=self.settings.minimum_withdrawal,
            fee_percent=self.settings.withdrawal_fee_percent,
        )

    def complete_task(self, user_id: UUID, task_id: UUID) -> TaskCompletionResult:
        return self.tasks.complete_task(user_id, task_id)

    def request_withdrawal(self, user_id: UUID, amount: int, method: str, account_info: str) -> Withdrawal:
        return self.withdrawals.request_withdrawal(user_id, amount, method, account_info)

    def submit_withdrawal(self, user_id: UUID, request: WithdrawalRequest) -> Withdrawal:
        return self.withdrawals.submit(user_id, request)

    def calculate_fee(self, amount: int) -> FeeQuote:
        return self.withdrawals.calculate_fee(amount)

    @classmethod
    def from_settings(cls, settings: Optional[EarningsSettings] = None) -> "EarningsService":
        """Configure logging and open the SQL store named by the settings."""
        settings = settings or get_settings()
        setup_logging(json=settings.log_json, level=settings.log_level)
        storage = SqlStorage(settings.database_url, echo=settings.database_echo)
        storage.create_all()
        return cls(storage, settings)
