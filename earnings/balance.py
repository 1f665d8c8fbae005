from typing import Optional
from uuid import UUID

from loguru import logger

from .errors import ValidationError
from .models import BalanceChange, LedgerHistoryResponse, TransactionType, UserBalance
from .storage import LedgerStore, UnitOfWork


class BalanceMutator:
    """Applies signed deltas to a user's balance and appends the matching transaction."""

    def __init__(self, store: LedgerStore):
        self.store = store

    def apply_delta(
        self,
        user_id: UUID,
        amount: int,
        is_earning: bool,
        description: str,
        tx_type: Optional[TransactionType] = None,
    ) -> BalanceChange:
        with self.store.unit_of_work() as uow:
            return self.apply(uow, user_id, amount, is_earning, description, tx_type)

    def apply(
        self,
        uow: UnitOfWork,
        user_id: UUID,
        amount: int,
        is_earning: bool,
        description: str,
        tx_type: Optional[TransactionType] = None,
        tasks_increment: int = 0,
    ) -> BalanceChange:
        """Same as ``apply_delta`` but inside a caller's unit of work.

        A zero amount still records a transaction so the audit trail has no gaps.
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(f"Amount must be an integer in minor units, got {amount!r}")
        if tx_type is None:
            tx_type = TransactionType.EARN if amount >= 0 else TransactionType.WITHDRAW

        change = uow.apply_delta(
            user_id,
            amount,
            is_earning=is_earning,
            tx_type=tx_type,
            description=description,
            tasks_increment=tasks_increment,
        )
        logger.debug(
            "Balance {user} {amount:+d} ({type}) -> {balance}",
            user=user_id, amount=amount, type=tx_type.value, balance=change.new_balance,
        )
        return change

    def get_balance(self, user_id: UUID) -> UserBalance:
        with self.store.unit_of_work() as uow:
            user = uow.get_user(user_id)
            entries = uow.list_transactions(user_id)

        return UserBalance(
            user_id=user_id,
            current_balance=user.balance,
            ledger_balance=sum(e.amount for e in entries),
            total_earnings=user.total_earnings,
            total_entries=len(entries),
            last_transaction_at=entries[0].created_at if entries else None,
        )

    def get_ledger_history(self, user_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.store.unit_of_work() as uow:
            user = uow.get_user(user_id)
            all_entries = uow.list_transactions(user_id)

        return LedgerHistoryResponse(
            user_id=user_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=user.balance,
        )
