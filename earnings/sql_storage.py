"""SQLAlchemy-backed ledger store.

Balance changes are a single conditional UPDATE evaluated against the stored
value, and the (user, task) unique constraint is what rejects a second
completion, so correctness does not depend on application-side checks.

SQLite has no row locks, so there every unit takes the database write lock
when it begins and units run one after another.
"""

import threading
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    update,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import AccountExists, AlreadyCompleted, InsufficientFunds, PersistenceError, UserNotFound
from .models import (
    BalanceChange,
    CompletionStatus,
    Notification,
    NotificationType,
    Referral,
    Task,
    TaskStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    UserAccount,
    UserTaskCompletion,
    Withdrawal,
    WithdrawalMethod,
    WithdrawalStatus,
)
from .storage import LedgerStore, UnitOfWork, utcnow


def _enum(enum_cls):
    return SAEnum(enum_cls, values_callable=lambda e: [m.value for m in e], native_enum=False)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    name: Mapped[str] = mapped_column(String(255))
    balance: Mapped[int] = mapped_column(Integer, default=0)
    total_earnings: Mapped[int] = mapped_column(Integer, default=0)
    tasks_completed: Mapped[int] = mapped_column(Integer, default=0)
    referrals_count: Mapped[int] = mapped_column(Integer, default=0)
    referral_code: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    referred_by: Mapped[Optional[UUID]] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ReferralRow(Base):
    __tablename__ = "referrals"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    referrer_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), index=True)
    referred_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), unique=True)
    bonus_earned: Mapped[int] = mapped_column(Integer, default=0)
    tasks_completed: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class TaskRow(Base):
    __tablename__ = "tasks"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    provider: Mapped[str] = mapped_column(String(64), index=True)
    reward: Mapped[int] = mapped_column(Integer)
    status: Mapped[TaskStatus] = mapped_column(_enum(TaskStatus), default=TaskStatus.ACTIVE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class UserTaskRow(Base):
    __tablename__ = "user_tasks"
    __table_args__ = (UniqueConstraint("user_id", "task_id", name="uq_user_task"),)

    id: Mapped[UUID] = mapped_column(primary_key=True)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), index=True)
    task_id: Mapped[UUID] = mapped_column(ForeignKey("tasks.id"))
    status: Mapped[CompletionStatus] = mapped_column(_enum(CompletionStatus), default=CompletionStatus.COMPLETED)
    reward_amount: Mapped[int] = mapped_column(Integer)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    type: Mapped[TransactionType] = mapped_column(_enum(TransactionType))
    description: Mapped[str] = mapped_column(Text)
    status: Mapped[TransactionStatus] = mapped_column(_enum(TransactionStatus), default=TransactionStatus.COMPLETED)
    balance_after: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class WithdrawalRow(Base):
    __tablename__ = "withdrawals"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    method: Mapped[WithdrawalMethod] = mapped_column(_enum(WithdrawalMethod))
    account_info: Mapped[str] = mapped_column(String(255))
    fee: Mapped[int] = mapped_column(Integer)
    net_amount: Mapped[int] = mapped_column(Integer)
    status: Mapped[WithdrawalStatus] = mapped_column(_enum(WithdrawalStatus), default=WithdrawalStatus.PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class NotificationRow(Base):
    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    type: Mapped[NotificationType] = mapped_column(_enum(NotificationType), default=NotificationType.INFO)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


def _is_completion_conflict(error: IntegrityError) -> bool:
    message = str(error.orig)
    # postgres names the constraint, sqlite names the columns
    return "uq_user_task" in message or "user_tasks.user_id, user_tasks.task_id" in message


def _is_account_conflict(error: IntegrityError) -> bool:
    message = str(error.orig)
    return "email" in message or "referral_code" in message


def _paged(stmt, limit: Optional[int], offset: int):
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt


def _sqlite_connection_setup(engine: Engine) -> None:
    """Enforce foreign keys and open every transaction with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, so two units that read a row
    and then update it deadlock on the SHARED to RESERVED upgrade. Taking the
    write lock up front makes concurrent units wait on the busy timeout instead.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlStorage(LedgerStore):
    def __init__(self, url: str = "sqlite:///:memory:", echo: bool = False, engine: Optional[Engine] = None):
        if engine is None:
            kwargs = {"echo": echo, "future": True}
            if url.startswith("sqlite") and ":memory:" in url:
                # one shared connection, otherwise every session sees an empty database
                kwargs.update(connect_args={"check_same_thread": False}, poolclass=StaticPool)
            elif url.startswith("sqlite"):
                kwargs.update(connect_args={"check_same_thread": False, "timeout": 30})
            else:
                kwargs["pool_pre_ping"] = True
            engine = create_engine(url, **kwargs)
            if engine.dialect.name == "sqlite":
                _sqlite_connection_setup(engine)
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        # units sharing the single StaticPool connection would see each other's rollbacks
        self._connection_lock = threading.Lock() if isinstance(engine.pool, StaticPool) else None

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("Ledger tables ensured on {url}", url=self.engine.url.render_as_string(hide_password=True))

    def _begin(self) -> UnitOfWork:
        if self._connection_lock is None:
            return SqlUnitOfWork(self.session_factory())
        self._connection_lock.acquire()
        try:
            return SqlUnitOfWork(self.session_factory(), release=self._connection_lock.release)
        except BaseException:
            self._connection_lock.release()
            raise


class SqlUnitOfWork(UnitOfWork):
    def __init__(self, session: Session, release: Optional[Callable[[], None]] = None):
        self.session = session
        self._release = release
        self.session.begin()

    def commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Commit failed: {e}") from e

    def rollback(self) -> None:
        self.session.rollback()

    def close(self) -> None:
        try:
            self.session.close()
        finally:
            if self._release is not None:
                self._release()
                self._release = None

    def _flush(self, what: str) -> None:
        try:
            self.session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to write {what}: {e}") from e

    def _all(self, stmt) -> list:
        try:
            return list(self.session.scalars(stmt))
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e

    def get_user(self, user_id: UUID) -> UserAccount:
        row = self.session.get(UserRow, user_id, populate_existing=True)
        if row is None:
            raise UserNotFound(f"User {user_id} not found")
        return UserAccount.model_validate(row)

    def find_user_by_referral_code(self, code: str) -> Optional[UserAccount]:
        row = self.session.scalars(select(UserRow).where(UserRow.referral_code == code)).one_or_none()
        return UserAccount.model_validate(row) if row else None

    def add_user(self, user: UserAccount) -> UserAccount:
        self.session.add(UserRow(**user.model_dump()))
        try:
            self.session.flush()
        except IntegrityError as e:
            if not _is_account_conflict(e):
                raise PersistenceError(f"Failed to write user: {e}") from e
            raise AccountExists(f"Account {user.email!r} conflicts with an existing one") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to write user: {e}") from e
        return user

    def increment_referrals_count(self, user_id: UUID) -> int:
        stmt = (
            update(UserRow)
            .where(UserRow.id == user_id)
            .values(referrals_count=UserRow.referrals_count + 1, updated_at=utcnow())
            .returning(UserRow.referrals_count)
            .execution_options(synchronize_session=False)
        )
        count = self.session.execute(stmt).scalar_one_or_none()
        if count is None:
            raise UserNotFound(f"User {user_id} not found")
        return count

    def apply_delta(self, user_id, amount, *, is_earning, tx_type, description, tasks_increment=0):
        earned = amount if is_earning and amount > 0 else 0
        now = utcnow()
        stmt = (
            update(UserRow)
            .where(UserRow.id == user_id, UserRow.balance + amount >= 0)
            .values(
                balance=UserRow.balance + amount,
                total_earnings=UserRow.total_earnings + earned,
                tasks_completed=UserRow.tasks_completed + tasks_increment,
                updated_at=now,
            )
            .returning(UserRow.balance, UserRow.total_earnings, UserRow.tasks_completed)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt).one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Balance update failed for user {user_id}: {e}") from e

        if result is None:
            current = self.session.scalar(select(UserRow.balance).where(UserRow.id == user_id))
            if current is None:
                raise UserNotFound(f"User {user_id} not found")
            raise InsufficientFunds(f"User {user_id} has {current}, cannot apply {amount}")

        new_balance, new_total, new_tasks = result
        row = TransactionRow(
            id=uuid4(),
            user_id=user_id,
            amount=amount,
            type=tx_type,
            description=description,
            status=TransactionStatus.COMPLETED,
            balance_after=new_balance,
            created_at=now,
        )
        self.session.add(row)
        self._flush("transaction")
        return BalanceChange(
            new_balance=new_balance,
            new_total_earnings=new_total,
            new_tasks_completed=new_tasks,
            transaction=Transaction.model_validate(row),
        )

    def list_transactions(self, user_id: UUID) -> list[Transaction]:
        stmt = (
            select(TransactionRow)
            .where(TransactionRow.user_id == user_id)
            .order_by(TransactionRow.created_at.desc())
        )
        return [Transaction.model_validate(r) for r in self._all(stmt)]

    def get_task(self, task_id: UUID) -> Optional[Task]:
        row = self.session.get(TaskRow, task_id)
        return Task.model_validate(row) if row else None

    def add_task(self, task: Task) -> Task:
        self.session.add(TaskRow(**task.model_dump()))
        self._flush("task")
        return task

    def find_completion(self, user_id: UUID, task_id: UUID) -> Optional[UserTaskCompletion]:
        stmt = select(UserTaskRow).where(UserTaskRow.user_id == user_id, UserTaskRow.task_id == task_id)
        row = self.session.scalars(stmt).one_or_none()
        return UserTaskCompletion.model_validate(row) if row else None

    def add_completion(self, completion: UserTaskCompletion) -> UserTaskCompletion:
        self.session.add(UserTaskRow(**completion.model_dump()))
        try:
            self.session.flush()
        except IntegrityError as e:
            if not _is_completion_conflict(e):
                raise PersistenceError(f"Failed to record completion: {e}") from e
            raise AlreadyCompleted(
                f"Task {completion.task_id} already completed by user {completion.user_id}"
            ) from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record completion: {e}") from e
        return completion

    def list_completions(self, user_id, limit=None, offset=0):
        stmt = (
            select(UserTaskRow)
            .where(UserTaskRow.user_id == user_id)
            .order_by(UserTaskRow.completed_at.desc())
        )
        return [UserTaskCompletion.model_validate(r) for r in self._all(_paged(stmt, limit, offset))]

    def get_referral(self, referrer_id, referred_id, for_update=False):
        stmt = select(ReferralRow).where(
            ReferralRow.referrer_id == referrer_id, ReferralRow.referred_id == referred_id
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        row = self.session.scalars(stmt).one_or_none()
        return Referral.model_validate(row) if row else None

    def add_referral(self, referral: Referral) -> Referral:
        self.session.add(ReferralRow(**referral.model_dump()))
        self._flush("referral")
        return referral

    def update_referral(self, referral_id, bonus_increment, tasks_completed):
        stmt = (
            update(ReferralRow)
            .where(ReferralRow.id == referral_id)
            .values(bonus_earned=ReferralRow.bonus_earned + bonus_increment, tasks_completed=tasks_completed)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(stmt)
        row = self.session.get(ReferralRow, referral_id, populate_existing=True)
        return Referral.model_validate(row)

    def list_referrals(self, referrer_id, limit=None, offset=0):
        stmt = (
            select(ReferralRow)
            .where(ReferralRow.referrer_id == referrer_id)
            .order_by(ReferralRow.created_at.desc())
        )
        return [Referral.model_validate(r) for r in self._all(_paged(stmt, limit, offset))]

    def add_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal:
        self.session.add(WithdrawalRow(**withdrawal.model_dump()))
        self._flush("withdrawal")
        return withdrawal

    def list_withdrawals(self, user_id, limit=None, offset=0):
        stmt = (
            select(WithdrawalRow)
            .where(WithdrawalRow.user_id == user_id)
            .order_by(WithdrawalRow.created_at.desc())
        )
        return [Withdrawal.model_validate(r) for r in self._all(_paged(stmt, limit, offset))]

    def total_fees(self, user_id=None):
        stmt = select(func.coalesce(func.sum(WithdrawalRow.fee), 0)).where(
            WithdrawalRow.status != WithdrawalStatus.REJECTED
        )
        if user_id is not None:
            stmt = stmt.where(WithdrawalRow.user_id == user_id)
        return int(self.session.scalar(stmt) or 0)

    def add_notification(self, notification: Notification) -> Notification:
        self.session.add(NotificationRow(**notification.model_dump()))
        self._flush("notification")
        return notification

    def list_notifications(self, user_id, unread_only=False, limit=None, offset=0):
        stmt = select(NotificationRow).where(NotificationRow.user_id == user_id)
        if unread_only:
            stmt = stmt.where(NotificationRow.read.is_(False))
        stmt = stmt.order_by(NotificationRow.created_at.desc())
        return [Notification.model_validate(r) for r in self._all(_paged(stmt, limit, offset))]

    def mark_notification_read(self, user_id, notification_id):
        row = self.session.get(NotificationRow, notification_id)
        if row is None or row.user_id != user_id:
            return None
        row.read = True
        self._flush("notification")
        return Notification.model_validate(row)

    def mark_all_notifications_read(self, user_id):
        stmt = (
            update(NotificationRow)
            .where(NotificationRow.user_id == user_id, NotificationRow.read.is_(False))
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount

    def count_unread(self, user_id):
        stmt = select(func.count(NotificationRow.id)).where(
            NotificationRow.user_id == user_id, NotificationRow.read.is_(False)
        )
        return int(self.session.scalar(stmt) or 0)
