# app/escrow/fees.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR

from settings import settings


@dataclass(frozen=True)
class FeeSplit:
    gross: int
    recipient_amount: int
    total_fee: int
    platform_share: int
    referral_share: int

    def to_dict(self) -> dict:
        return {
            "gross": self.gross,
            "recipient_amount": self.recipient_amount,
            "total_fee": self.total_fee,
            "platform_share": self.platform_share,
            "referral_share": self.referral_share,
        }


def _floor_rate(gross: int, rate: float) -> int:
    # Integer XAF only; floor never rounds in the recipient's favour.
    return int((Decimal(gross) * Decimal(str(rate))).to_integral_value(rounding=ROUND_FLOOR))


def seller_split(gross: int, *, has_referrer: bool) -> FeeSplit:
    """
    Split for every seller payout (code, link, milestone, dispute-to-seller).
    The referrer's cut comes out of the platform fee, never the seller's share.
    """
    gross = int(gross)
    if gross <= 0:
        raise ValueError("gross must be positive")

    total_fee = _floor_rate(gross, settings.PLATFORM_FEE_RATE)
    referral_share = _floor_rate(gross, settings.REFERRAL_FEE_RATE) if has_referrer else 0
    return FeeSplit(
        gross=gross,
        recipient_amount=gross - total_fee,
        total_fee=total_fee,
        platform_share=total_fee - referral_share,
        referral_share=referral_share,
    )


def refund_split(gross: int) -> FeeSplit:
    """Dispute decided for the buyer: the buyer bears the platform fee, no referral credit."""
    gross = int(gross)
    if gross <= 0:
        raise ValueError("gross must be positive")

    total_fee = _floor_rate(gross, settings.PLATFORM_FEE_RATE)
    return FeeSplit(
        gross=gross,
        recipient_amount=gross - total_fee,
        total_fee=total_fee,
        platform_share=total_fee,
        referral_share=0,
    )
