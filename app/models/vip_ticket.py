import enum
from sqlalchemy import Column, Integer, String, ForeignKey, Numeric, DateTime, Index, JSON
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.core.errors import AlreadyConsumed, InvalidState, TicketCancelled, TicketExpired
from app.models.base import TimestampMixin, enum_column
from app.models.vip_room_config import VipRoomType


class VipTicketStatus(str, enum.Enum):
    ISSUED = "issued"
    CONSUMED = "consumed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TICKET_TRANSITIONS: dict[VipTicketStatus, frozenset[VipTicketStatus]] = {
    VipTicketStatus.ISSUED: frozenset(
        {VipTicketStatus.CONSUMED, VipTicketStatus.CANCELLED, VipTicketStatus.EXPIRED}
    ),
    VipTicketStatus.CONSUMED: frozenset(),
    VipTicketStatus.CANCELLED: frozenset(),
    VipTicketStatus.EXPIRED: frozenset(),
}

_TERMINAL_ERRORS = {
    VipTicketStatus.CONSUMED: (AlreadyConsumed, "Ticket has already been consumed"),
    VipTicketStatus.CANCELLED: (TicketCancelled, "Ticket has been cancelled"),
    VipTicketStatus.EXPIRED: (TicketExpired, "Ticket has expired"),
}


def state_error(status: VipTicketStatus) -> InvalidState:
    error_cls, message = _TERMINAL_ERRORS.get(status, (InvalidState, "Ticket is not usable"))
    return error_cls(message)


class VipTicket(Base, TimestampMixin):
    __tablename__ = "vip_tickets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    ticket_code = Column(String(64), unique=True, nullable=False)
    room_type = enum_column(VipRoomType, "vip_room_type", nullable=False, default=VipRoomType.SNAKE_VIP)
    entry_fee = Column(Numeric(18, 6), nullable=False, default=0)
    room_instance_id = Column(String(64), nullable=True, index=True)
    status = enum_column(VipTicketStatus, "vip_ticket_status", nullable=False, default=VipTicketStatus.ISSUED)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    # Confirmed entry-fee debit; reversed when the ticket is refunded.
    entry_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    meta = Column(JSON, nullable=True)

    user = relationship("User", back_populates="tickets")

    @property
    def is_terminal(self) -> bool:
        return not TICKET_TRANSITIONS[VipTicketStatus(self.status)]

    def transition_to(self, target: VipTicketStatus) -> None:
        current = VipTicketStatus(self.status)
        if target not in TICKET_TRANSITIONS[current]:
            if current in _TERMINAL_ERRORS:
                raise state_error(current)
            raise InvalidState(f"Ticket cannot move from {current.value} to {target.value}")
        self.status = target


Index("ix_vip_tickets_user_status", VipTicket.user_id, VipTicket.status)
