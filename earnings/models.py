from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    EARN = "earn"
    WITHDRAW = "withdraw"
    BONUS = "bonus"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"


class TaskStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class CompletionStatus(str, Enum):
    COMPLETED = "completed"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    REJECTED = "rejected"


class WithdrawalMethod(str, Enum):
    PAYPAL = "paypal"
    NEQUI = "nequi"


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class UserAccount(BaseModel):
    id: UUID
    email: str
    name: str
    balance: int = Field(default=0, ge=0)
    total_earnings: int = Field(default=0, ge=0)
    tasks_completed: int = Field(default=0, ge=0)
    referrals_count: int = Field(default=0, ge=0)
    referral_code: str
    referred_by: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Referral(BaseModel):
    id: UUID
    referrer_id: UUID
    referred_id: UUID
    bonus_earned: int = 0
    tasks_completed: int = Field(default=0, description="Referred user's count at the last milestone evaluation")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Task(BaseModel):
    id: UUID
    title: str
    description: str = ""
    provider: str
    reward: int = Field(..., ge=0)
    status: TaskStatus = TaskStatus.ACTIVE
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_active(self) -> bool:
        return self.status == TaskStatus.ACTIVE


class UserTaskCompletion(BaseModel):
    id: UUID
    user_id: UUID
    task_id: UUID
    status: CompletionStatus = CompletionStatus.COMPLETED
    reward_amount: int
    completed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: UUID
    user_id: UUID
    amount: int
    type: TransactionType
    description: str
    status: TransactionStatus = TransactionStatus.COMPLETED
    balance_after: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Withdrawal(BaseModel):
    id: UUID
    user_id: UUID
    amount: int
    method: WithdrawalMethod
    account_info: str
    fee: int
    net_amount: int
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Notification(BaseModel):
    id: UUID
    user_id: UUID
    title: str
    message: str
    type: NotificationType = NotificationType.INFO
    read: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BalanceChange(BaseModel):
    new_balance: int
    new_total_earnings: int
    new_tasks_completed: int
    transaction: Transaction


class UserBalance(BaseModel):
    user_id: UUID
    current_balance: int
    ledger_balance: int
    total_earnings: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None

    @property
    def consistent(self) -> bool:
        return self.current_balance == self.ledger_balance


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[Transaction]
    total_count: int
    current_balance: int


class MilestoneResult(BaseModel):
    bonus_awarded: bool = False
    amount: int = 0
    milestone: Optional[int] = None


class TaskCompletionResult(BaseModel):
    reward: int
    completion: UserTaskCompletion
    new_balance: int
    referral: MilestoneResult = Field(default_factory=MilestoneResult)


class FeeQuote(BaseModel):
    amount: int
    fee: int
    net_amount: int
    fee_percentage: float


class WithdrawalRequest(BaseModel):
    amount: int
    method: str
    account_info: str = Field(..., min_length=1)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 30000,
            "method": "nequi",
            "account_info": "3001234567",
        }
    })


class WithdrawalMethodInfo(BaseModel):
    id: WithdrawalMethod
    name: str
    description: str
    min_amount: int
    fee_percentage: float
    processing_time: str
    active: bool = True


class MilestoneProgress(BaseModel):
    tasks: int
    bonus: int
    achieved: int = 0


class ReferralStats(BaseModel):
    total_referrals: int
    total_earnings: int
    active_referrals: int
    milestones: list[MilestoneProgress]


class UserStats(BaseModel):
    user_id: UUID
    balance: int
    total_earnings: int
    tasks_completed: int
    referrals_count: int
    referral_earnings: int
    recent_tasks: list[UserTaskCompletion]
