import logging
import uuid
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from app.core.config import get_settings
from app.core.database import atomic
from app.core.errors import InvalidState, NotFound, TicketExpired, Unauthorized
from app.models import Transaction, TransactionType, VipRoomType, VipTicket, VipTicketStatus
from app.models.base import as_utc, utcnow
from app.models.vip_ticket import state_error
from app.services.rooms import get_active_config
from app.services.users import get_user
from app.services.wallet import (
    as_decimal,
    format_amount,
    get_credit,
    get_or_create_balance,
    hold_funds,
    post_transaction,
    quantize_amount,
    release_hold,
    reverse_transaction,
    spend_hold,
)

settings = get_settings()
logger = logging.getLogger(__name__)


def _ticket_ttl() -> timedelta:
    return timedelta(minutes=max(1, int(settings.vip_ticket_ttl_minutes)))


def _find_ticket(db: Session, ticket_id: int, *, lock: bool = False) -> VipTicket:
    query = db.query(VipTicket).filter(VipTicket.id == ticket_id, VipTicket.deleted_at.is_(None))
    if lock:
        query = query.with_for_update()
    ticket = query.first()
    if not ticket:
        raise NotFound("VIP ticket not found")
    return ticket


def _is_stale(ticket: VipTicket, now: datetime) -> bool:
    expires_at = as_utc(ticket.expires_at)
    return (
        VipTicketStatus(ticket.status) == VipTicketStatus.ISSUED
        and expires_at is not None
        and expires_at <= now
    )


def _refund_ticket(db: Session, ticket: VipTicket, target: VipTicketStatus, reason: str) -> None:
    """Move an issued ticket to a terminal state and give the held entry fee back."""
    ticket.transition_to(target)
    entry_fee = quantize_amount(ticket.entry_fee)
    if entry_fee > 0:
        release_hold(db, ticket.user_id, entry_fee)
    if ticket.entry_transaction_id:
        entry_tx = db.get(Transaction, ticket.entry_transaction_id)
        if entry_tx is not None:
            reverse_transaction(db, entry_tx, reason)
    db.flush()
    logger.info("Ticket id=%s %s; refunded %s to user_id=%s", ticket.id, target.value, format_amount(entry_fee), ticket.user_id)


def _issue_ticket(db: Session, user_id: int, config, now: datetime) -> VipTicket:
    entry_fee = quantize_amount(config.entry_fee)
    ticket_code = str(uuid.uuid4())
    ticket = VipTicket(
        user_id=user_id,
        ticket_code=ticket_code,
        room_type=config.room_type,
        entry_fee=entry_fee,
        status=VipTicketStatus.ISSUED,
        expires_at=now + _ticket_ttl(),
        meta={"issued_at": now.isoformat(), "issued_by": "ticket-issuer"},
    )
    db.add(ticket)
    db.flush()
    if entry_fee > 0:
        entry_tx = Transaction(
            user_id=user_id,
            tx_type=TransactionType.PENALTY,
            amount=entry_fee,
            fee_amount=0,
            reference_code=f"vip-entry:{ticket_code}",
            reference_id=ticket.id,
            meta={"source": "vip-entry-fee", "ticket_id": ticket.id, "room_type": VipRoomType(config.room_type).value},
        )
        post_transaction(db, entry_tx)
        hold_funds(db, user_id, entry_fee)
        ticket.entry_transaction_id = entry_tx.id
        db.flush()
    logger.info("Issued ticket id=%s user_id=%s entry_fee=%s", ticket.id, user_id, format_amount(entry_fee))
    return ticket


def check_access(db: Session, user_id: int, room_type: VipRoomType = VipRoomType.SNAKE_VIP) -> dict:
    with atomic(db):
        get_user(db, user_id)
        try:
            config = get_active_config(db, room_type)
        except InvalidState as exc:
            return {"can_join": False, "credit": get_credit(db, user_id), "reason": exc.message}

        # The balance row lock serializes concurrent purchases by the same user.
        balance = get_or_create_balance(db, user_id, lock=True)
        now = utcnow()
        live = None
        issued = (
            db.query(VipTicket)
            .filter(
                VipTicket.user_id == user_id,
                VipTicket.room_type == room_type,
                VipTicket.status == VipTicketStatus.ISSUED,
                VipTicket.deleted_at.is_(None),
            )
            .order_by(VipTicket.id.asc())
            .with_for_update()
            .all()
        )
        for ticket in issued:
            if _is_stale(ticket, now):
                _refund_ticket(db, ticket, VipTicketStatus.EXPIRED, "ticket expired")
            elif live is None:
                live = ticket

        if live is not None:
            return {
                "can_join": True,
                "credit": format_amount(balance.available_amount),
                "ticket": live,
                "config": config,
            }

        if as_decimal(balance.available_amount) < quantize_amount(config.entry_fee):
            return {
                "can_join": False,
                "credit": format_amount(balance.available_amount),
                "config": config,
                "reason": "Insufficient credit to join VIP room",
            }

        ticket = _issue_ticket(db, user_id, config, now)
        return {
            "can_join": True,
            "credit": format_amount(balance.available_amount),
            "ticket": ticket,
            "config": config,
        }


def validate_ticket(db: Session, ticket_id: int, expected_user_id: int | None = None) -> dict:
    """Admission gate the game server calls before letting a socket join."""
    with atomic(db):
        ticket = _find_ticket(db, ticket_id)
        status = VipTicketStatus(ticket.status)
        if status != VipTicketStatus.ISSUED:
            raise state_error(status)
        if _is_stale(ticket, utcnow()):
            raise TicketExpired("Ticket has expired")
        if expected_user_id is not None and ticket.user_id != expected_user_id:
            raise Unauthorized("Ticket does not belong to the user")
        config = get_active_config(db, ticket.room_type)
        credit = get_credit(db, ticket.user_id)
    return {"ticket": ticket, "config": config, "credit": credit}


def consume_ticket(db: Session, ticket_id: int, room_instance_id: str) -> dict:
    room_instance_id = str(room_instance_id or "").strip()
    if not room_instance_id:
        raise InvalidState("Room instance id is required")

    expired = False
    with atomic(db):
        ticket = _find_ticket(db, ticket_id, lock=True)
        status = VipTicketStatus(ticket.status)
        if status == VipTicketStatus.CONSUMED and ticket.room_instance_id == room_instance_id:
            # Gateway retry of a consume that already succeeded.
            logger.info("Ticket id=%s already consumed in %s", ticket.id, room_instance_id)
            return {"credit": get_credit(db, ticket.user_id), "ticket": ticket, "already_consumed": True}
        if status != VipTicketStatus.ISSUED:
            raise state_error(status)
        if _is_stale(ticket, utcnow()):
            _refund_ticket(db, ticket, VipTicketStatus.EXPIRED, "ticket expired")
            expired = True
        else:
            ticket.transition_to(VipTicketStatus.CONSUMED)
            ticket.room_instance_id = room_instance_id
            ticket.consumed_at = utcnow()
            entry_fee = quantize_amount(ticket.entry_fee)
            if entry_fee > 0:
                spend_hold(db, ticket.user_id, entry_fee)
            db.flush()
            credit = get_credit(db, ticket.user_id)
    if expired:
        raise TicketExpired("Ticket has expired")
    logger.info("Consumed ticket id=%s in room %s", ticket.id, room_instance_id)
    return {"credit": credit, "ticket": ticket, "already_consumed": False}


def cancel_ticket(db: Session, ticket_id: int, user_id: int) -> dict:
    with atomic(db):
        ticket = _find_ticket(db, ticket_id, lock=True)
        if ticket.user_id != user_id:
            raise Unauthorized("Ticket does not belong to the user")
        if VipTicketStatus(ticket.status) != VipTicketStatus.CANCELLED:
            _refund_ticket(db, ticket, VipTicketStatus.CANCELLED, "ticket cancelled by user")
        credit = get_credit(db, user_id)
    return {"credit": credit, "ticket": ticket}


def expire_stale_tickets(db: Session, now: datetime | None = None, limit: int = 500) -> int:
    now = now or utcnow()
    with atomic(db):
        stale = (
            db.query(VipTicket)
            .filter(
                VipTicket.status == VipTicketStatus.ISSUED,
                VipTicket.expires_at.isnot(None),
                VipTicket.expires_at <= now,
                VipTicket.deleted_at.is_(None),
            )
            .order_by(VipTicket.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )
        for ticket in stale:
            _refund_ticket(db, ticket, VipTicketStatus.EXPIRED, "ticket expired")
    if stale:
        logger.info("Expired %s stale VIP ticket(s)", len(stale))
    return len(stale)
