from dataclasses import dataclass

from config.constants import (
    COMMISSION_PERCENT,
    COMMISSION_LOWER_THRESHOLD,
    COMMISSION_UPPER_THRESHOLD,
    COMMISSION_FLAT_FEE_LOW,
    COMMISSION_FLAT_FEE_HIGH,
    WITHDRAWAL_FEE_PERCENT,
    WITHDRAWAL_FEE_FIXED,
)
from utils.money import ensure_minor_units, percentage_of


@dataclass(frozen=True)
class CommissionResult:
    gross: int
    commission: int
    settle_amount: int
    percentage_fee: int
    flat_fee: int

    def as_dict(self) -> dict:
        return {
            "gross": self.gross,
            "commission": self.commission,
            "settleAmount": self.settle_amount,
            "breakdown": {
                "percentageFee": self.percentage_fee,
                "flatFee": self.flat_fee,
            },
        }


def flat_fee_for(gross: int) -> int:
    if gross < COMMISSION_LOWER_THRESHOLD:
        return COMMISSION_FLAT_FEE_LOW
    if gross >= COMMISSION_UPPER_THRESHOLD:
        return COMMISSION_FLAT_FEE_HIGH
    return 0


def calculate_commission(gross: int) -> CommissionResult:
    """
    Platform commission for a settled sub-order.

    5% of gross plus a tiered flat fee:
      gross < 2,500          -> +100
      2,500 <= gross < 5,000 -> +0
      gross >= 5,000         -> +200

    Every money path (release queue preview, release, override) goes
    through here. Commission never exceeds gross.
    """
    ensure_minor_units(gross, "gross")

    percentage_fee = percentage_of(gross, COMMISSION_PERCENT)
    flat_fee = flat_fee_for(gross)
    commission = min(percentage_fee + flat_fee, gross)

    return CommissionResult(
        gross=gross,
        commission=commission,
        settle_amount=gross - commission,
        percentage_fee=percentage_fee,
        flat_fee=flat_fee,
    )


def calculate_withdrawal_fee(amount: int) -> tuple[int, int]:
    """Returns (processing_fee, net_amount)."""
    ensure_minor_units(amount, "amount")
    fee = percentage_of(amount, WITHDRAWAL_FEE_PERCENT) + WITHDRAWAL_FEE_FIXED
    return fee, amount - fee
