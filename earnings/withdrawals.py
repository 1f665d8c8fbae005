from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID, uuid4

from loguru import logger

from .balance import BalanceMutator
from .errors import BelowMinimum, InsufficientFunds, UnsupportedMethod, ValidationError
from .models import (
    FeeQuote,
    NotificationType,
    TransactionType,
    Withdrawal,
    WithdrawalMethod,
    WithdrawalMethodInfo,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .notifications import format_amount, notify
from .storage import LedgerStore, utcnow


MINIMUM_WITHDRAWAL = 25000
WITHDRAWAL_FEE_PERCENT = 10.0

PAYOUT_METHODS = {
    WithdrawalMethod.PAYPAL: ("PayPal", "Withdraw to a PayPal account", "1-3 business days"),
    WithdrawalMethod.NEQUI: ("Nequi", "Withdraw to a Nequi account", "1-2 business days"),
}


def _check_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"Amount must be an integer in minor units, got {amount!r}")
    if amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}")
    return amount


class WithdrawalService:
    def __init__(
        self,
        store: LedgerStore,
        balance: BalanceMutator,
        minimum_withdrawal: int = MINIMUM_WITHDRAWAL,
        fee_percent: float = WITHDRAWAL_FEE_PERCENT,
    ):
        self.store = store
        self.balance = balance
        self.minimum_withdrawal = minimum_withdrawal
        self.fee_percent = Decimal(str(fee_percent))

    def calculate_fee(self, amount: int) -> FeeQuote:
        """Fee is a pure function of the amount, rounded half up to a whole minor unit."""
        amount = _check_amount(amount)
        fee = int((Decimal(amount) * self.fee_percent / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return FeeQuote(
            amount=amount,
            fee=fee,
            net_amount=amount - fee,
            fee_percentage=float(self.fee_percent),
        )

    def list_methods(self) -> list[WithdrawalMethodInfo]:
        return [
            WithdrawalMethodInfo(
                id=method,
                name=name,
                description=description,
                min_amount=self.minimum_withdrawal,
                fee_percentage=float(self.fee_percent),
                processing_time=processing_time,
            )
            for method, (name, description, processing_time) in PAYOUT_METHODS.items()
        ]

    def request_withdrawal(self, user_id: UUID, amount: int, method: str, account_info: str) -> Withdrawal:
        try:
            payout_method = WithdrawalMethod(method)
        except ValueError:
            raise UnsupportedMethod(f"Unsupported withdrawal method {method!r}") from None
        amount = _check_amount(amount)
        if amount < self.minimum_withdrawal:
            raise BelowMinimum(f"Minimum withdrawal amount is {format_amount(self.minimum_withdrawal)}")
        if not account_info or not account_info.strip():
            raise ValidationError("Account info is required")

        quote = self.calculate_fee(amount)
        with self.store.unit_of_work() as uow:
            user = uow.get_user(user_id)
            if user.balance < amount:
                raise InsufficientFunds(f"User {user_id} has {user.balance}, requested {amount}")

            withdrawal = uow.add_withdrawal(Withdrawal(
                id=uuid4(),
                user_id=user_id,
                amount=amount,
                method=payout_method,
                account_info=account_info.strip(),
                fee=quote.fee,
                net_amount=quote.net_amount,
                status=WithdrawalStatus.PENDING,
                created_at=utcnow(),
            ))
            # the gross amount leaves the balance; the fee stays on the withdrawal row
            self.balance.apply(
                uow,
                user_id,
                -amount,
                False,
                f"Withdrawal via {payout_method.value} (fee {quote.fee})",
                TransactionType.WITHDRAW,
            )
            notify(
                uow,
                user_id,
                "Withdrawal request received",
                f"Your withdrawal request for {format_amount(amount)} has been received and is being processed.",
                NotificationType.INFO,
            )

        logger.info(
            "Withdrawal {id} for user {user}: {amount} via {method}, fee {fee}",
            id=withdrawal.id, user=user_id, amount=amount, method=payout_method.value, fee=quote.fee,
        )
        return withdrawal

    def submit(self, user_id: UUID, request: WithdrawalRequest) -> Withdrawal:
        return self.request_withdrawal(user_id, request.amount, request.method, request.account_info)

    def list_withdrawals(self, user_id: UUID, limit: int = 20, offset: int = 0) -> list[Withdrawal]:
        with self.store.unit_of_work() as uow:
            return uow.list_withdrawals(user_id, limit=limit, offset=offset)

    def retained_fees(self, user_id: Optional[UUID] = None) -> int:
        with self.store.unit_of_work() as uow:
            return uow.total_fees(user_id)
