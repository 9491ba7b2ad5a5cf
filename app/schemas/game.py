from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from app.models.vip_room_config import VipRoomType
from app.models.vip_ticket import VipTicketStatus
from app.schemas.wallet import CamelModel


class VipRoomConfigOut(CamelModel):
    room_type: str
    entry_fee: str
    reward_rate_player: str
    reward_rate_treasury: str
    respawn_cost: str
    max_clients: int
    tick_rate: int
    is_active: bool


class VipTicketOut(CamelModel):
    id: int
    ticket_code: str
    user_id: int
    room_type: VipRoomType | str
    entry_fee: Decimal
    room_instance_id: Optional[str] = None
    status: VipTicketStatus | str
    expires_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None


class CheckAccessRequest(CamelModel):
    room_type: VipRoomType = VipRoomType.SNAKE_VIP


class CheckAccessOut(CamelModel):
    can_join: bool
    credit: str
    ticket: Optional[VipTicketOut] = None
    config: Optional[VipRoomConfigOut] = None
    reason: Optional[str] = None


class CheckTicketRequest(CamelModel):
    ticket_id: int
    user_id: Optional[int] = None


class CheckTicketOut(CamelModel):
    ticket: VipTicketOut
    config: VipRoomConfigOut
    credit: str


class ConsumeTicketRequest(CamelModel):
    ticket_id: int
    room_instance_id: str = Field(..., min_length=1, max_length=64)


class ConsumeTicketOut(CamelModel):
    ticket: VipTicketOut
    credit: str
    already_consumed: bool = False


class CancelTicketOut(CamelModel):
    ticket: VipTicketOut
    credit: str


class KillRequest(CamelModel):
    killer_ticket_id: int
    victim_ticket_id: int
    kill_reference: str = Field(..., min_length=1, max_length=64)
    room_instance_id: str = Field(..., min_length=1, max_length=64)


class KillOut(CamelModel):
    killer_credit: str
    victim_credit: str
    reward_amount: str
    fee_amount: str
    kill_log_id: int
    already_processed: bool


class RespawnRequest(CamelModel):
    ticket_id: int


class RespawnOut(CamelModel):
    credit: str
    cost: str
    transaction_id: Optional[int] = None
