from sqlalchemy import Column, Integer, String, ForeignKey, Numeric, DateTime, JSON, func
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.models.base import TimestampMixin, enum_column
from app.models.vip_room_config import VipRoomType


class KillLog(Base, TimestampMixin):
    """One row per settled kill; its ``kill_reference`` is the settlement idempotency key."""

    __tablename__ = "kill_logs"

    id = Column(Integer, primary_key=True, index=True)
    kill_reference = Column(String(64), unique=True, nullable=False)
    room_instance_id = Column(String(64), nullable=False, index=True)
    room_type = enum_column(VipRoomType, "vip_room_type", nullable=False, default=VipRoomType.SNAKE_VIP)
    killer_user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    victim_user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    killer_ticket_id = Column(Integer, ForeignKey("vip_tickets.id"), nullable=True, index=True)
    victim_ticket_id = Column(Integer, ForeignKey("vip_tickets.id"), nullable=True, index=True)
    reward_amount = Column(Numeric(18, 6), nullable=False, default=0)
    fee_amount = Column(Numeric(18, 6), nullable=False, default=0)
    reward_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    occurred_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    meta = Column(JSON, nullable=True)

    killer_ticket = relationship("VipTicket", foreign_keys=[killer_ticket_id])
    victim_ticket = relationship("VipTicket", foreign_keys=[victim_ticket_id])
