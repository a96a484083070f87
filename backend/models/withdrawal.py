from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


WITHDRAWAL_TRANSITIONS: dict[WithdrawalStatus, frozenset[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset({
        WithdrawalStatus.UNDER_REVIEW,
        WithdrawalStatus.APPROVED,
        WithdrawalStatus.REJECTED,
    }),
    WithdrawalStatus.UNDER_REVIEW: frozenset({
        WithdrawalStatus.APPROVED,
        WithdrawalStatus.REJECTED,
    }),
    WithdrawalStatus.APPROVED: frozenset({WithdrawalStatus.PROCESSING}),
    WithdrawalStatus.PROCESSING: frozenset({
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.FAILED,
    }),
    WithdrawalStatus.COMPLETED: frozenset(),
    WithdrawalStatus.REJECTED: frozenset(),
    WithdrawalStatus.FAILED: frozenset(),
}

# States whose amount is reserved in wallet.pending
RESERVED_STATUSES = frozenset({WithdrawalStatus.APPROVED, WithdrawalStatus.PROCESSING})


class WithdrawalCreate(BaseModel):
    amount: int = Field(..., gt=0)
    bank_account_id: str = Field(..., min_length=1)
    description: Optional[str] = Field(None, max_length=500)


class WithdrawalReview(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class WithdrawalApprove(BaseModel):
    transaction_reference: Optional[str] = Field(None, min_length=1, max_length=120)
    notes: Optional[str] = Field(None, max_length=1000)


class WithdrawalComplete(BaseModel):
    transaction_reference: str = Field(..., min_length=1, max_length=120)


class WithdrawalFail(BaseModel):
    reason: str = Field(..., min_length=3, max_length=1000)


class WithdrawalReject(BaseModel):
    reason: str = Field(..., min_length=3, max_length=1000)
