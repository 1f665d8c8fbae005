import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional
from uuid import UUID, uuid4

from .errors import AccountExists, AlreadyCompleted, InsufficientFunds, UserNotFound
from .models import (
    BalanceChange,
    Notification,
    Referral,
    Task,
    Transaction,
    TransactionType,
    UserAccount,
    UserTaskCompletion,
    Withdrawal,
    WithdrawalStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UnitOfWork(ABC):
    """One store transaction. Everything done through it commits or rolls back together."""

    @abstractmethod
    def commit(self) -> None: ...

    @abstractmethod
    def rollback(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    # accounts
    @abstractmethod
    def get_user(self, user_id: UUID) -> UserAccount: ...

    @abstractmethod
    def find_user_by_referral_code(self, code: str) -> Optional[UserAccount]: ...

    @abstractmethod
    def add_user(self, user: UserAccount) -> UserAccount: ...

    @abstractmethod
    def increment_referrals_count(self, user_id: UUID) -> int: ...

    @abstractmethod
    def apply_delta(
        self,
        user_id: UUID,
        amount: int,
        *,
        is_earning: bool,
        tx_type: TransactionType,
        description: str,
        tasks_increment: int = 0,
    ) -> BalanceChange:
        """Conditionally add ``amount`` to the balance and append the transaction.

        Raises ``InsufficientFunds`` instead of letting the balance drop below zero.
        """

    @abstractmethod
    def list_transactions(self, user_id: UUID) -> list[Transaction]:
        """All transactions of a user, newest first."""

    # tasks
    @abstractmethod
    def get_task(self, task_id: UUID) -> Optional[Task]: ...

    @abstractmethod
    def add_task(self, task: Task) -> Task: ...

    @abstractmethod
    def find_completion(self, user_id: UUID, task_id: UUID) -> Optional[UserTaskCompletion]: ...

    @abstractmethod
    def add_completion(self, completion: UserTaskCompletion) -> UserTaskCompletion:
        """Raises ``AlreadyCompleted`` when (user, task) already has a completion."""

    @abstractmethod
    def list_completions(self, user_id: UUID, limit: Optional[int] = None, offset: int = 0) -> list[UserTaskCompletion]: ...

    # referrals
    @abstractmethod
    def get_referral(self, referrer_id: UUID, referred_id: UUID, for_update: bool = False) -> Optional[Referral]: ...

    @abstractmethod
    def add_referral(self, referral: Referral) -> Referral: ...

    @abstractmethod
    def update_referral(self, referral_id: UUID, bonus_increment: int, tasks_completed: int) -> Referral: ...

    @abstractmethod
    def list_referrals(self, referrer_id: UUID, limit: Optional[int] = None, offset: int = 0) -> list[Referral]: ...

    # withdrawals
    @abstractmethod
    def add_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal: ...

    @abstractmethod
    def list_withdrawals(self, user_id: UUID, limit: Optional[int] = None, offset: int = 0) -> list[Withdrawal]: ...

    @abstractmethod
    def total_fees(self, user_id: Optional[UUID] = None) -> int:
        """Sum of fees on withdrawals that were not rejected."""

    # notifications
    @abstractmethod
    def add_notification(self, notification: Notification) -> Notification: ...

    @abstractmethod
    def list_notifications(
        self, user_id: UUID, unread_only: bool = False, limit: Optional[int] = None, offset: int = 0
    ) -> list[Notification]: ...

    @abstractmethod
    def mark_notification_read(self, user_id: UUID, notification_id: UUID) -> Optional[Notification]: ...

    @abstractmethod
    def mark_all_notifications_read(self, user_id: UUID) -> int: ...

    @abstractmethod
    def count_unread(self, user_id: UUID) -> int: ...


class LedgerStore(ABC):
    @abstractmethod
    def _begin(self) -> UnitOfWork: ...

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        uow = self._begin()
        try:
            yield uow
            uow.commit()
        except BaseException:
            uow.rollback()
            raise
        finally:
            uow.close()


def _page(items: list, limit: Optional[int], offset: int) -> list:
    if limit is None:
        return items[offset:]
    return items[offset:offset + limit]


class InMemoryStorage(LedgerStore):
    """Dict-backed store.

    Rows touched by a write are locked until the unit of work ends, which gives
    the same per-row serialization a relational store gives with row locks.
    """

    def __init__(self):
        self.users: dict[UUID, dict] = {}
        self.email_index: dict[str, UUID] = {}
        self.referral_code_index: dict[str, UUID] = {}
        self.tasks: dict[UUID, dict] = {}
        self.completions: dict[UUID, dict] = {}
        self.completion_index: dict[tuple[UUID, UUID], UUID] = {}
        self.transactions: dict[UUID, dict] = {}
        self.referrals: dict[UUID, dict] = {}
        self.withdrawals: dict[UUID, dict] = {}
        self.notifications: dict[UUID, dict] = {}
        self._row_locks: dict[tuple[str, UUID], threading.RLock] = {}
        self._registry_lock = threading.Lock()
        # guards structural changes to the tables and the unique indexes
        self._data_lock = threading.RLock()

    def row_lock(self, table: str, key: UUID) -> threading.RLock:
        with self._registry_lock:
            lock = self._row_locks.get((table, key))
            if lock is None:
                lock = self._row_locks[(table, key)] = threading.RLock()
            return lock

    def _begin(self) -> UnitOfWork:
        return InMemoryUnitOfWork(self)


class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage
        self._held: list[threading.RLock] = []
        self._undo: list[Callable[[], None]] = []

    def commit(self) -> None:
        self._undo.clear()

    def rollback(self) -> None:
        with self.storage._data_lock:
            while self._undo:
                self._undo.pop()()

    def close(self) -> None:
        while self._held:
            self._held.pop().release()

    def _lock(self, table: str, key: UUID) -> None:
        lock = self.storage.row_lock(table, key)
        lock.acquire()
        self._held.append(lock)

    def _insert(self, table: dict, data: dict) -> None:
        with self.storage._data_lock:
            table[data["id"]] = data
        self._undo.append(lambda: table.pop(data["id"], None))

    def _update(self, row: dict, changes: dict) -> None:
        previous = {key: row[key] for key in changes}
        row.update(changes)
        self._undo.append(lambda: row.update(previous))

    def _rows(self, table: dict, **filters) -> list[dict]:
        # latest insert first, so equal timestamps still list newest first
        with self.storage._data_lock:
            rows = list(reversed(table.values()))
        return [r for r in rows if all(r[k] == v for k, v in filters.items())]

    def get_user(self, user_id: UUID) -> UserAccount:
        row = self.storage.users.get(user_id)
        if row is None:
            raise UserNotFound(f"User {user_id} not found")
        return UserAccount(**row)

    def find_user_by_referral_code(self, code: str) -> Optional[UserAccount]:
        user_id = self.storage.referral_code_index.get(code)
        row = self.storage.users.get(user_id) if user_id else None
        return UserAccount(**row) if row else None

    def add_user(self, user: UserAccount) -> UserAccount:
        emails = self.storage.email_index
        codes = self.storage.referral_code_index
        with self.storage._data_lock:
            if user.email in emails:
                raise AccountExists(f"Email {user.email!r} is already registered")
            if user.referral_code in codes:
                raise AccountExists(f"Referral code {user.referral_code!r} is already taken")
            emails[user.email] = user.id
            codes[user.referral_code] = user.id
        self._undo.append(lambda: emails.pop(user.email, None))
        self._undo.append(lambda: codes.pop(user.referral_code, None))
        self._insert(self.storage.users, user.model_dump())
        return user

    def increment_referrals_count(self, user_id: UUID) -> int:
        self._lock("users", user_id)
        row = self.storage.users.get(user_id)
        if row is None:
            raise UserNotFound(f"User {user_id} not found")
        self._update(row, {"referrals_count": row["referrals_count"] + 1, "updated_at": utcnow()})
        return row["referrals_count"]

    def apply_delta(self, user_id, amount, *, is_earning, tx_type, description, tasks_increment=0):
        self._lock("users", user_id)
        row = self.storage.users.get(user_id)
        if row is None:
            raise UserNotFound(f"User {user_id} not found")

        new_balance = row["balance"] + amount
        if new_balance < 0:
            raise InsufficientFunds(
                f"User {user_id} has {row['balance']}, cannot apply {amount}"
            )
        earned = amount if is_earning and amount > 0 else 0
        now = utcnow()
        self._update(row, {
            "balance": new_balance,
            "total_earnings": row["total_earnings"] + earned,
            "tasks_completed": row["tasks_completed"] + tasks_increment,
            "updated_at": now,
        })

        transaction = Transaction(
            id=uuid4(),
            user_id=user_id,
            amount=amount,
            type=tx_type,
            description=description,
            balance_after=new_balance,
            created_at=now,
        )
        self._insert(self.storage.transactions, transaction.model_dump())
        return BalanceChange(
            new_balance=row["balance"],
            new_total_earnings=row["total_earnings"],
            new_tasks_completed=row["tasks_completed"],
            transaction=transaction,
        )

    def list_transactions(self, user_id: UUID) -> list[Transaction]:
        entries = [Transaction(**r) for r in self._rows(self.storage.transactions, user_id=user_id)]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries

    def get_task(self, task_id: UUID) -> Optional[Task]:
        row = self.storage.tasks.get(task_id)
        return Task(**row) if row else None

    def add_task(self, task: Task) -> Task:
        self._insert(self.storage.tasks, task.model_dump())
        return task

    def find_completion(self, user_id: UUID, task_id: UUID) -> Optional[UserTaskCompletion]:
        completion_id = self.storage.completion_index.get((user_id, task_id))
        if completion_id is None:
            return None
        row = self.storage.completions.get(completion_id)
        return UserTaskCompletion(**row) if row else None

    def add_completion(self, completion: UserTaskCompletion) -> UserTaskCompletion:
        key = (completion.user_id, completion.task_id)
        index = self.storage.completion_index
        with self.storage._data_lock:
            if key in index:
                raise AlreadyCompleted(
                    f"Task {completion.task_id} already completed by user {completion.user_id}"
                )
            index[key] = completion.id
        self._undo.append(lambda: index.pop(key, None))
        self._insert(self.storage.completions, completion.model_dump())
        return completion

    def list_completions(self, user_id, limit=None, offset=0):
        items = [UserTaskCompletion(**r) for r in self._rows(self.storage.completions, user_id=user_id)]
        items.sort(key=lambda c: c.completed_at, reverse=True)
        return _page(items, limit, offset)

    def get_referral(self, referrer_id, referred_id, for_update=False):
        for row in self._rows(self.storage.referrals, referrer_id=referrer_id, referred_id=referred_id):
            if for_update:
                self._lock("referrals", row["id"])
                row = self.storage.referrals[row["id"]]
            return Referral(**row)
        return None

    def add_referral(self, referral: Referral) -> Referral:
        self._insert(self.storage.referrals, referral.model_dump())
        return referral

    def update_referral(self, referral_id, bonus_increment, tasks_completed):
        self._lock("referrals", referral_id)
        row = self.storage.referrals[referral_id]
        self._update(row, {
            "bonus_earned": row["bonus_earned"] + bonus_increment,
            "tasks_completed": tasks_completed,
        })
        return Referral(**row)

    def list_referrals(self, referrer_id, limit=None, offset=0):
        items = [Referral(**r) for r in self._rows(self.storage.referrals, referrer_id=referrer_id)]
        items.sort(key=lambda r: r.created_at, reverse=True)
        return _page(items, limit, offset)

    def add_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal:
        self._insert(self.storage.withdrawals, withdrawal.model_dump())
        return withdrawal

    def list_withdrawals(self, user_id, limit=None, offset=0):
        items = [Withdrawal(**r) for r in self._rows(self.storage.withdrawals, user_id=user_id)]
        items.sort(key=lambda w: w.created_at, reverse=True)
        return _page(items, limit, offset)

    def total_fees(self, user_id=None):
        filters = {"user_id": user_id} if user_id is not None else {}
        return sum(
            r["fee"] for r in self._rows(self.storage.withdrawals, **filters)
            if r["status"] != WithdrawalStatus.REJECTED
        )

    def add_notification(self, notification: Notification) -> Notification:
        self._insert(self.storage.notifications, notification.model_dump())
        return notification

    def list_notifications(self, user_id, unread_only=False, limit=None, offset=0):
        filters = {"user_id": user_id}
        if unread_only:
            filters["read"] = False
        items = [Notification(**r) for r in self._rows(self.storage.notifications, **filters)]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return _page(items, limit, offset)

    def mark_notification_read(self, user_id, notification_id):
        row = self.storage.notifications.get(notification_id)
        if row is None or row["user_id"] != user_id:
            return None
        self._update(row, {"read": True})
        return Notification(**row)

    def mark_all_notifications_read(self, user_id):
        rows = self._rows(self.storage.notifications, user_id=user_id, read=False)
        for row in rows:
            self._update(row, {"read": True})
        return len(rows)

    def count_unread(self, user_id):
        return len(self._rows(self.storage.notifications, user_id=user_id, read=False))
