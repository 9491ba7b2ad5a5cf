from datetime import datetime
from typing import Optional

from pydantic import Field

from app.schemas.wallet import CamelModel


class ReferralCodeRequest(CamelModel):
    referral_code: str = Field(..., min_length=1, max_length=16)


class ReferralValidateOut(CamelModel):
    valid: bool
    referrer_wallet: Optional[str] = None
    referrer_display_name: Optional[str] = None


class ReferralApplyOut(CamelModel):
    referrer_wallet: str
    referrer_display_name: Optional[str] = None


class RefereeStatsOut(CamelModel):
    referee_id: int
    referee_wallet: str
    referee_display_name: str
    joined_at: Optional[datetime] = None
    total_earned: str
    earned_from_kills: str
    earned_from_deaths: str
    last_activity_at: Optional[datetime] = None


class PaginationOut(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ReferralStatsOut(CamelModel):
    referral_code: str
    referral_link: str
    total_referrals: int
    active_referrals: int
    total_earned: str
    earned_from_kills: str
    earned_from_deaths: str
    referrals: list[RefereeStatsOut]
    pagination: PaginationOut
