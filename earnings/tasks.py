from uuid import UUID, uuid4

from loguru import logger

from .balance import BalanceMutator
from .errors import AlreadyCompleted, TaskNotFound, ValidationError
from .models import (
    Task,
    TaskCompletionResult,
    TaskStatus,
    TransactionType,
    UserTaskCompletion,
)
from .referrals import ReferralBonusEngine
from .storage import LedgerStore, utcnow


class TaskCompletionService:
    def __init__(self, store: LedgerStore, balance: BalanceMutator, referrals: ReferralBonusEngine):
        self.store = store
        self.balance = balance
        self.referrals = referrals

    def add_task(
        self,
        title: str,
        provider: str,
        reward: int,
        description: str = "",
        status: TaskStatus = TaskStatus.ACTIVE,
    ) -> Task:
        if isinstance(reward, bool) or not isinstance(reward, int) or reward < 0:
            raise ValidationError(f"Task reward must be a non-negative integer, got {reward!r}")
        task = Task(
            id=uuid4(),
            title=title,
            description=description,
            provider=provider,
            reward=reward,
            status=status,
            created_at=utcnow(),
        )
        with self.store.unit_of_work() as uow:
            return uow.add_task(task)

    def complete_task(self, user_id: UUID, task_id: UUID) -> TaskCompletionResult:
        """Record the completion and pay the reward in one unit of work.

        The referral evaluation runs only after that unit has committed.
        """
        with self.store.unit_of_work() as uow:
            uow.get_user(user_id)
            task = uow.get_task(task_id)
            if task is None or not task.is_active():
                raise TaskNotFound(f"Task {task_id} not found or inactive")

            # fast path only; add_completion enforces uniqueness
            if uow.find_completion(user_id, task_id) is not None:
                raise AlreadyCompleted(f"Task {task_id} already completed by user {user_id}")

            completion = uow.add_completion(UserTaskCompletion(
                id=uuid4(),
                user_id=user_id,
                task_id=task_id,
                reward_amount=task.reward,
                completed_at=utcnow(),
            ))
            change = self.balance.apply(
                uow,
                user_id,
                task.reward,
                True,
                f"Task completed: {task.title}",
                TransactionType.EARN,
                tasks_increment=1,
            )

        logger.info(
            "User {user} completed task {task} (+{reward}), {count} tasks total",
            user=user_id, task=task_id, reward=task.reward, count=change.new_tasks_completed,
        )
        bonus = self.referrals.evaluate_milestones(user_id, change.new_tasks_completed)
        return TaskCompletionResult(
            reward=task.reward,
            completion=completion,
            new_balance=change.new_balance,
            referral=bonus,
        )

    def list_completed(self, user_id: UUID, limit: int = 20, offset: int = 0) -> list[UserTaskCompletion]:
        with self.store.unit_of_work() as uow:
            return uow.list_completions(user_id, limit=limit, offset=offset)
