from app.models.user import User
from app.models.wallet_balance import WalletBalance
from app.models.transaction import Transaction, TransactionStatus, TransactionType
from app.models.vip_room_config import VipRoomConfig, VipRoomType
from app.models.vip_ticket import VipTicket, VipTicketStatus
from app.models.kill_log import KillLog
from app.models.referral_reward import (
    ReferralReward,
    ReferralRewardAction,
    ReferralRewardStatus,
    ReferralRewardType,
)

__all__ = [
    "User",
    "WalletBalance",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "VipRoomConfig",
    "VipRoomType",
    "VipTicket",
    "VipTicketStatus",
    "KillLog",
    "ReferralReward",
    "ReferralRewardAction",
    "ReferralRewardStatus",
    "ReferralRewardType",
]
