import secrets
from typing import Optional
from uuid import UUID, uuid4

from loguru import logger

from .errors import ReferralNotFound, ValidationError
from .models import Referral, UserAccount, UserStats
from .storage import LedgerStore, UnitOfWork, utcnow


def generate_referral_code() -> str:
    return secrets.token_hex(3).upper()


class AccountService:
    """Account creation with referral linkage, and per-user statistics."""

    def __init__(self, store: LedgerStore):
        self.store = store

    def register(self, email: str, name: str, referral_code: Optional[str] = None) -> UserAccount:
        if not email or not name:
            raise ValidationError("Email and name are required")

        with self.store.unit_of_work() as uow:
            referrer = None
            if referral_code:
                referrer = uow.find_user_by_referral_code(referral_code)
                if referrer is None:
                    raise ReferralNotFound(f"Invalid referral code {referral_code!r}")

            now = utcnow()
            user = uow.add_user(UserAccount(
                id=uuid4(),
                email=email,
                name=name,
                referral_code=self._unique_code(uow),
                referred_by=referrer.id if referrer else None,
                created_at=now,
                updated_at=now,
            ))
            if referrer is not None:
                uow.add_referral(Referral(
                    id=uuid4(),
                    referrer_id=referrer.id,
                    referred_id=user.id,
                    created_at=now,
                ))
                uow.increment_referrals_count(referrer.id)

        if referrer is not None:
            logger.info("New referral: {ref} -> {user}", ref=referrer.id, user=user.id)
        return user

    def _unique_code(self, uow: UnitOfWork) -> str:
        while True:
            code = generate_referral_code()
            if uow.find_user_by_referral_code(code) is None:
                return code

    def get_user(self, user_id: UUID) -> UserAccount:
        with self.store.unit_of_work() as uow:
            return uow.get_user(user_id)

    def get_stats(self, user_id: UUID) -> UserStats:
        with self.store.unit_of_work() as uow:
            user = uow.get_user(user_id)
            referrals = uow.list_referrals(user_id)
            recent = uow.list_completions(user_id, limit=10)

        return UserStats(
            user_id=user.id,
            balance=user.balance,
            total_earnings=user.total_earnings,
            tasks_completed=user.tasks_completed,
            referrals_count=user.referrals_count,
            referral_earnings=sum(r.bonus_earned for r in referrals),
            recent_tasks=recent,
        )
