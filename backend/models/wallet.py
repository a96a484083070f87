from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionSource(str, Enum):
    ESCROW_RELEASE = "escrow_release"
    REFUND = "refund"
    WITHDRAWAL_PAYOUT = "withdrawal_payout"
    ADJUSTMENT = "adjustment"


class WalletAdjustment(BaseModel):
    type: TransactionType
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=3, max_length=500)
    related_document_id: Optional[str] = None
