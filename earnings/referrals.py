from typing import Optional
from uuid import UUID

from loguru import logger

from .balance import BalanceMutator
from .errors import ReferralNotFound
from .models import (
    MilestoneProgress,
    MilestoneResult,
    NotificationType,
    Referral,
    ReferralStats,
    TransactionType,
    UserAccount,
)
from .notifications import format_amount, notify
from .storage import LedgerStore


# (tasks completed by the referred user, bonus paid to the referrer, ledger description)
REFERRAL_MILESTONES: tuple[tuple[int, int, str], ...] = (
    (3, 5000, "Bonus for 3 tasks completed by your referral"),
    (7, 4000, "Additional bonus for 7 tasks completed by your referral"),
    (15, 8000, "Extra bonus for 15 tasks completed by your referral"),
)


def crossed_milestones(snapshot: int, tasks_completed: int) -> list[tuple[int, int, str]]:
    """Milestones reached by ``tasks_completed`` that the snapshot has not seen yet.

    With one completion per evaluation this is the milestone whose threshold
    equals the new count; a jump past a threshold still pays it once.
    """
    return [m for m in REFERRAL_MILESTONES if snapshot < m[0] <= tasks_completed]


class ReferralBonusEngine:
    def __init__(self, store: LedgerStore, balance: BalanceMutator, frontend_url: str = "http://localhost:3000"):
        self.store = store
        self.balance = balance
        self.frontend_url = frontend_url.rstrip("/")

    def evaluate_milestones(self, user_id: UUID, tasks_completed: Optional[int] = None) -> MilestoneResult:
        """Pay the referrer of ``user_id`` for any milestone just reached.

        Never raises: a failed bonus is logged and reported as no award, so it
        cannot undo the task completion that triggered it.
        """
        try:
            return self._evaluate(user_id, tasks_completed)
        except Exception:
            logger.exception("Referral bonus check failed for user {user}", user=user_id)
            return MilestoneResult()

    def _evaluate(self, user_id: UUID, observed: Optional[int]) -> MilestoneResult:
        with self.store.unit_of_work() as uow:
            user = uow.get_user(user_id)
            if user.referred_by is None:
                return MilestoneResult()

            referrer_id = user.referred_by
            referral = uow.get_referral(referrer_id, user_id, for_update=True)
            if referral is None:
                return MilestoneResult()

            count = user.tasks_completed if observed is None else observed
            snapshot = max(referral.tasks_completed, count)
            reached = crossed_milestones(referral.tasks_completed, count)
            if not reached:
                uow.update_referral(referral.id, 0, snapshot)
                return MilestoneResult()

            total = 0
            for threshold, bonus, description in reached:
                self.balance.apply(uow, referrer_id, bonus, True, description, TransactionType.BONUS)
                total += bonus
            uow.update_referral(referral.id, total, snapshot)
            notify(
                uow,
                referrer_id,
                "New referral bonus!",
                f"You earned {format_amount(total)} for the tasks completed by your referral.",
                NotificationType.SUCCESS,
            )

        milestone = reached[-1][0]
        logger.info(
            "Referral bonus {amount} paid to {ref} for {user} reaching {tasks} tasks",
            amount=total, ref=referrer_id, user=user_id, tasks=milestone,
        )
        return MilestoneResult(bonus_awarded=True, amount=total, milestone=milestone)

    def list_referrals(self, referrer_id: UUID, limit: int = 20, offset: int = 0) -> list[Referral]:
        with self.store.unit_of_work() as uow:
            return uow.list_referrals(referrer_id, limit=limit, offset=offset)

    def get_stats(self, referrer_id: UUID) -> ReferralStats:
        with self.store.unit_of_work() as uow:
            referrals = uow.list_referrals(referrer_id)

        milestones = [
            MilestoneProgress(
                tasks=threshold,
                bonus=bonus,
                achieved=sum(1 for r in referrals if r.tasks_completed >= threshold),
            )
            for threshold, bonus, _ in REFERRAL_MILESTONES
        ]
        return ReferralStats(
            total_referrals=len(referrals),
            total_earnings=sum(r.bonus_earned for r in referrals),
            active_referrals=sum(1 for r in referrals if r.tasks_completed > 0),
            milestones=milestones,
        )

    def validate_code(self, code: str) -> UserAccount:
        with self.store.unit_of_work() as uow:
            user = uow.find_user_by_referral_code(code)
        if user is None:
            raise ReferralNotFound(f"Invalid referral code {code!r}")
        return user

    def build_link(self, user: UserAccount) -> str:
        return f"{self.frontend_url}/register?ref={user.referral_code}"
