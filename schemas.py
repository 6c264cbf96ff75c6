# schemas.py
from __future__ import annotations

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal, Any

Opener = Literal["buyer", "seller"]
Decision = Literal["seller", "buyer"]


# -------- PAYMENTS --------
class RequestPaymentIn(BaseModel):
    invoice_number: str = Field(min_length=1, max_length=64)
    phone: str = Field(min_length=12, max_length=12, description="2376XXXXXXXX")
    email: EmailStr


class RequestPaymentOut(BaseModel):
    success: bool
    reference: Optional[str] = None
    payment_ref: str
    operator: str
    message: str


class PollOut(BaseModel):
    status: str
    rail_status: Optional[str] = None


# -------- RELEASE --------
class ReleaseFundsIn(BaseModel):
    invoice_number: str = Field(min_length=1, max_length=64)
    code: str = Field(min_length=4, max_length=16)


class SplitOut(BaseModel):
    gross: int
    platform_share: int
    referral_share: int
    total_fee: int
    recipient_amount: int


class SettlementOut(BaseModel):
    attempt_id: int
    unit_type: str
    invoice_number: str
    recipient_amount: int
    split: SplitOut
    gateway_reference: Optional[str] = None
    settled: bool
    remaining_milestones: Optional[int] = None


class ReleaseOut(BaseModel):
    ok: bool = True
    message: str
    settlement: SettlementOut


# -------- DISPUTES --------
class OpenDisputeIn(BaseModel):
    opened_by: Opener
    reason: str = Field(min_length=1, max_length=2000)
    # buyers authenticate with their private chat token
    token: Optional[str] = None


class ResolveDisputeIn(BaseModel):
    decision: Decision
    note: Optional[str] = Field(default=None, max_length=2000)


class ModeratorMessageIn(BaseModel):
    message: str = Field(min_length=1, max_length=2000)


# -------- REFERRALS --------
class WithdrawIn(BaseModel):
    amount: int = Field(gt=0)
    momo_number: str = Field(min_length=12, max_length=12)


# -------- ADMIN --------
class PlatformSettingsIn(BaseModel):
    key: Literal["maintenance_mode", "payments_blocked", "payouts_blocked"]
    value: bool


class PlatformSettingsOut(BaseModel):
    maintenance_mode: bool
    payments_blocked: bool
    payouts_blocked: bool


class AttemptItem(BaseModel):
    id: int
    unit_type: str
    unit_ref: str
    invoice_number: str
    status: str
    amount: int
    external_reference: str
    gateway_reference: Optional[str] = None
    last_error: Optional[str] = None
    attempt_count: int = 0


class AttemptListOut(BaseModel):
    attempts: List[AttemptItem]


class OkOut(BaseModel):
    ok: bool = True
    message: Optional[str] = None
    data: Optional[dict[str, Any]] = None
