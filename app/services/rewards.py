import logging
import uuid
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.config import get_settings
from app.core.database import atomic
from app.core.errors import DuplicateReference, InvalidEvent, InvalidState, NotFound
from app.models import KillLog, ReferralRewardAction, Transaction, TransactionType, VipTicket, VipTicketStatus
from app.models.base import utcnow
from app.models.vip_ticket import state_error
from app.services.referral import accrue_game_commission, record_failed_commission
from app.services.rooms import get_active_config, kill_split
from app.services.users import get_or_create_user_by_wallet
from app.services.wallet import format_amount, get_credit, post_transaction, quantize_amount

settings = get_settings()
logger = logging.getLogger(__name__)


def _find_kill_log(db: Session, kill_reference: str) -> KillLog | None:
    return db.query(KillLog).filter(KillLog.kill_reference == kill_reference).first()


def _victim_ticket_paid_out(db: Session, victim_ticket_id: int) -> bool:
    """A victim ticket backs at most one paying kill: its spent entry fee."""
    return (
        db.query(KillLog.id)
        .filter(
            KillLog.victim_ticket_id == victim_ticket_id,
            or_(KillLog.reward_amount > 0, KillLog.fee_amount > 0),
        )
        .first()
        is not None
    )


def _replay_result(db: Session, kill_log: KillLog) -> dict:
    return {
        "killer_credit": get_credit(db, kill_log.killer_user_id),
        "victim_credit": get_credit(db, kill_log.victim_user_id),
        "reward_amount": format_amount(kill_log.reward_amount),
        "fee_amount": format_amount(kill_log.fee_amount),
        "kill_log": kill_log,
        "already_processed": True,
    }


def _lock_tickets(db: Session, killer_ticket_id: int, victim_ticket_id: int) -> tuple[VipTicket, VipTicket]:
    # Ascending id order so two settlements touching the same pair cannot deadlock.
    rows = (
        db.query(VipTicket)
        .filter(VipTicket.id.in_([killer_ticket_id, victim_ticket_id]), VipTicket.deleted_at.is_(None))
        .order_by(VipTicket.id.asc())
        .with_for_update()
        .all()
    )
    by_id = {ticket.id: ticket for ticket in rows}
    killer = by_id.get(killer_ticket_id)
    victim = by_id.get(victim_ticket_id)
    if killer is None:
        raise NotFound("Killer ticket not found")
    if victim is None:
        raise NotFound("Victim ticket not found")
    return killer, victim


def _check_kill_tickets(killer: VipTicket, victim: VipTicket, room_instance_id: str) -> None:
    for ticket in (killer, victim):
        status = VipTicketStatus(ticket.status)
        if status == VipTicketStatus.ISSUED:
            raise InvalidState(f"Ticket {ticket.id} has not been consumed")
        if status != VipTicketStatus.CONSUMED:
            raise state_error(status)
        if ticket.room_instance_id != room_instance_id:
            raise InvalidState(f"Ticket {ticket.id} is not in room instance {room_instance_id}")
    if killer.room_type != victim.room_type:
        raise InvalidState("Killer and victim are in different room types")
    if killer.user_id == victim.user_id:
        raise InvalidState("Killer and victim must be different players")


def _credit_treasury(db: Session, fee, kill_log: KillLog) -> None:
    treasury = get_or_create_user_by_wallet(db, settings.treasury_wallet_address)
    fee_tx = Transaction(
        user_id=treasury.id,
        tx_type=TransactionType.SYSTEM_ADJUST,
        amount=fee,
        fee_amount=0,
        reference_code=f"kill-fee:{kill_log.kill_reference}",
        reference_id=kill_log.id,
        meta={"source": "vip-kill-fee", "kill_reference": kill_log.kill_reference},
    )
    post_transaction(db, fee_tx)


def _accrue_referrals(db: Session, reward_tx: Transaction, kill_log: KillLog) -> None:
    """Best-effort commission for the players' referrers; never undoes the settled kill."""
    accruals = [(ReferralRewardAction.KILL, reward_tx.user_id, None)]
    if settings.referral_death_commission_enabled and quantize_amount(kill_log.fee_amount) > 0:
        accruals.append((ReferralRewardAction.DEATH, kill_log.victim_user_id, kill_log.fee_amount))
    for action, referee_id, base_amount in accruals:
        try:
            accrue_game_commission(db, reward_tx, action, base_amount=base_amount, referee_id=referee_id)
        except Exception as exc:
            logger.exception(
                "Referral accrual failed for transaction id=%s action=%s kill_reference=%s",
                reward_tx.id,
                action.value,
                kill_log.kill_reference,
            )
            record_failed_commission(db, reward_tx, action, str(exc), referee_id=referee_id, base_amount=base_amount)


def process_kill_reward(
    db: Session,
    killer_ticket_id: int,
    victim_ticket_id: int,
    kill_reference: str,
    room_instance_id: str,
) -> dict:
    kill_reference = str(kill_reference or "").strip()
    room_instance_id = str(room_instance_id or "").strip()
    if not kill_reference or not room_instance_id:
        raise InvalidEvent("Kill reference and room instance id are required")
    if killer_ticket_id == victim_ticket_id:
        raise InvalidState("Killer and victim must hold different tickets")

    with atomic(db):
        existing = _find_kill_log(db, kill_reference)
        if existing:
            logger.info("Kill %s already settled; returning stored amounts", kill_reference)
            return _replay_result(db, existing)

    reward_tx = None
    try:
        with atomic(db):
            killer, victim = _lock_tickets(db, killer_ticket_id, victim_ticket_id)
            # A concurrent delivery may have settled while we waited on the locks.
            existing = _find_kill_log(db, kill_reference)
            if existing:
                return _replay_result(db, existing)
            _check_kill_tickets(killer, victim, room_instance_id)

            config = get_active_config(db, killer.room_type)
            reward, fee = kill_split(config)
            funded = not _victim_ticket_paid_out(db, victim.id)
            if not funded:
                logger.info(
                    "Victim ticket id=%s already funded a kill; settling %s at zero", victim.id, kill_reference
                )
                reward, fee = quantize_amount(0), quantize_amount(0)
            now = utcnow()
            kill_log = KillLog(
                kill_reference=kill_reference,
                room_instance_id=room_instance_id,
                room_type=killer.room_type,
                killer_user_id=killer.user_id,
                victim_user_id=victim.user_id,
                killer_ticket_id=killer.id,
                victim_ticket_id=victim.id,
                reward_amount=reward,
                fee_amount=fee,
                occurred_at=now,
                meta={
                    "source": "vip-kill-reward",
                    "entry_fee": format_amount(config.entry_fee),
                    "reward_rate_player": format_amount(config.reward_rate_player),
                    "reward_rate_treasury": format_amount(config.reward_rate_treasury),
                    "funded_by_entry_fee": funded,
                },
            )
            db.add(kill_log)
            try:
                db.flush()
            except IntegrityError as exc:
                raise DuplicateReference(f"Kill {kill_reference} already recorded") from exc

            if reward > 0:
                reward_tx = Transaction(
                    user_id=killer.user_id,
                    tx_type=TransactionType.REWARD,
                    amount=reward,
                    fee_amount=fee,
                    reference_code=f"kill:{kill_reference}",
                    reference_id=kill_log.id,
                    occurred_at=now,
                    meta={
                        "source": "vip-kill-reward",
                        "kill_reference": kill_reference,
                        "opponent_ticket_id": victim.id,
                        "room_instance_id": room_instance_id,
                    },
                )
                post_transaction(db, reward_tx)
                kill_log.reward_transaction_id = reward_tx.id
            if fee > 0 and settings.treasury_wallet_address:
                _credit_treasury(db, fee, kill_log)
            db.flush()
            result = {
                "killer_credit": get_credit(db, killer.user_id),
                "victim_credit": get_credit(db, victim.user_id),
                "reward_amount": format_amount(reward),
                "fee_amount": format_amount(fee),
                "kill_log": kill_log,
                "already_processed": False,
            }
    except DuplicateReference:
        with atomic(db):
            existing = _find_kill_log(db, kill_reference)
            if existing is None:
                raise
            logger.info("Kill %s settled concurrently; returning stored amounts", kill_reference)
            return _replay_result(db, existing)

    logger.info(
        "Settled kill %s room=%s killer_user_id=%s reward=%s fee=%s",
        kill_reference,
        room_instance_id,
        kill_log.killer_user_id,
        result["reward_amount"],
        result["fee_amount"],
    )
    if reward_tx is not None:
        _accrue_referrals(db, reward_tx, kill_log)
    return result


def process_respawn(db: Session, ticket_id: int) -> dict:
    with atomic(db):
        ticket = (
            db.query(VipTicket)
            .filter(VipTicket.id == ticket_id, VipTicket.deleted_at.is_(None))
            .with_for_update()
            .first()
        )
        if not ticket:
            raise NotFound("VIP ticket not found")
        status = VipTicketStatus(ticket.status)
        if status == VipTicketStatus.ISSUED:
            raise InvalidState("Ticket has not been consumed")
        if status != VipTicketStatus.CONSUMED:
            raise state_error(status)

        config = get_active_config(db, ticket.room_type)
        cost = quantize_amount(config.respawn_cost)
        if cost <= 0:
            return {"credit": get_credit(db, ticket.user_id), "cost": format_amount(0), "transaction": None}

        respawn_tx = Transaction(
            user_id=ticket.user_id,
            tx_type=TransactionType.PENALTY,
            amount=cost,
            fee_amount=0,
            reference_code=f"respawn:{ticket.id}:{uuid.uuid4().hex}",
            reference_id=ticket.id,
            meta={"source": "vip-respawn", "ticket_id": ticket.id, "room_instance_id": ticket.room_instance_id},
        )
        balance = post_transaction(db, respawn_tx)
        credit = format_amount(balance.available_amount)
    logger.info("Respawn for ticket id=%s cost=%s", ticket_id, format_amount(cost))
    return {"credit": credit, "cost": format_amount(cost), "transaction": respawn_tx}
