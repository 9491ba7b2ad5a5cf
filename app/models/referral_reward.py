import enum
from sqlalchemy import Column, Integer, String, ForeignKey, Numeric, Index, JSON
from app.core.database import Base
from app.models.base import TimestampMixin, enum_column


class ReferralRewardType(str, enum.Enum):
    GAME_COMMISSION = "game_commission"


class ReferralRewardStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    # Terminal: the referrer hit the commission cap before this row could be paid.
    CAPPED = "capped"


class ReferralRewardAction(str, enum.Enum):
    KILL = "kill"
    DEATH = "death"


class ReferralReward(Base, TimestampMixin):
    """
    Commission accrued by a referrer on a referee's settled reward.

    Users and transactions are referenced by id only. ``transaction_id`` is
    the originating (referee) transaction and, with the referrer and action,
    forms the dedupe key; ``payout_transaction_id`` is the referrer's credit.
    """

    __tablename__ = "referral_rewards"

    id = Column(Integer, primary_key=True, index=True)
    referrer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    referee_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    reward_type = enum_column(ReferralRewardType, "referral_reward_type", nullable=False, default=ReferralRewardType.GAME_COMMISSION)
    action_type = Column(String(16), nullable=False)
    amount = Column(Numeric(18, 6), nullable=False)
    status = enum_column(ReferralRewardStatus, "referral_reward_status", nullable=False, default=ReferralRewardStatus.PENDING)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    payout_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    failure_reason = Column(String(255), nullable=True)
    meta = Column(JSON, nullable=True)


Index(
    "uq_referral_rewards_referrer_tx_action",
    ReferralReward.referrer_id,
    ReferralReward.transaction_id,
    ReferralReward.action_type,
    unique=True,
)
Index("ix_referral_rewards_referrer_status", ReferralReward.referrer_id, ReferralReward.status)
