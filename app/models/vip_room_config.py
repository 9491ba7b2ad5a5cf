import enum
from sqlalchemy import Column, Integer, Numeric, Boolean, JSON
from app.core.database import Base
from app.models.base import TimestampMixin, enum_column


class VipRoomType(str, enum.Enum):
    SNAKE_VIP = "snake_game_vip"


class VipRoomConfig(Base, TimestampMixin):
    __tablename__ = "vip_room_configs"

    id = Column(Integer, primary_key=True, index=True)
    room_type = enum_column(VipRoomType, "vip_room_type", nullable=False, unique=True)
    entry_fee = Column(Numeric(18, 6), nullable=False, default=0)
    reward_rate_player = Column(Numeric(18, 6), nullable=False, default=0.9)
    reward_rate_treasury = Column(Numeric(18, 6), nullable=False, default=0.1)
    respawn_cost = Column(Numeric(18, 6), nullable=False, default=0)
    max_clients = Column(Integer, nullable=False, default=20)
    tick_rate = Column(Integer, nullable=False, default=60)
    is_active = Column(Boolean, nullable=False, default=True)
    meta = Column(JSON, nullable=True)
