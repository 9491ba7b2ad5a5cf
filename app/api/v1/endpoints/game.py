from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from app.core.database import get_db
from app.dependencies import get_current_user, require_internal_key
from app.middlewares.rate_limit import limiter
from app.models import User, VipRoomType
from app.schemas.game import (
    CancelTicketOut,
    CheckAccessOut,
    CheckAccessRequest,
    CheckTicketOut,
    CheckTicketRequest,
    ConsumeTicketOut,
    ConsumeTicketRequest,
    KillOut,
    KillRequest,
    RespawnOut,
    RespawnRequest,
    VipRoomConfigOut,
)
from app.services.rewards import process_kill_reward, process_respawn
from app.services.rooms import config_snapshot, get_cached_config_snapshot
from app.services.tickets import cancel_ticket, check_access, consume_ticket, validate_ticket

router = APIRouter()


@router.get("/rooms/vip/config", response_model=VipRoomConfigOut)
def read_vip_config(room_type: VipRoomType = VipRoomType.SNAKE_VIP, db: Session = Depends(get_db)):
    return get_cached_config_snapshot(db, room_type)


@router.post("/rooms/vip/check", response_model=CheckAccessOut)
@limiter.limit("30/minute")
def check_vip_access(
    request: Request,
    payload: CheckAccessRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = check_access(db, user.id, payload.room_type)
    config = result.get("config")
    return {**result, "config": config_snapshot(config) if config is not None else None}


@router.post("/rooms/vip/tickets/{ticket_id}/cancel", response_model=CancelTicketOut)
def cancel_vip_ticket(ticket_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return cancel_ticket(db, ticket_id, user.id)


@router.post("/rooms/vip/check-ticket", response_model=CheckTicketOut, dependencies=[Depends(require_internal_key)])
def validate_vip_ticket(payload: CheckTicketRequest, db: Session = Depends(get_db)):
    result = validate_ticket(db, payload.ticket_id, expected_user_id=payload.user_id)
    return {**result, "config": config_snapshot(result["config"])}


@router.post("/rooms/vip/consume", response_model=ConsumeTicketOut, dependencies=[Depends(require_internal_key)])
def consume_vip_ticket(payload: ConsumeTicketRequest, db: Session = Depends(get_db)):
    return consume_ticket(db, payload.ticket_id, payload.room_instance_id)


@router.post("/vip/kill", response_model=KillOut, dependencies=[Depends(require_internal_key)])
def process_vip_kill(payload: KillRequest, db: Session = Depends(get_db)):
    result = process_kill_reward(
        db,
        killer_ticket_id=payload.killer_ticket_id,
        victim_ticket_id=payload.victim_ticket_id,
        kill_reference=payload.kill_reference,
        room_instance_id=payload.room_instance_id,
    )
    return {**result, "kill_log_id": result["kill_log"].id}


@router.post("/vip/respawn", response_model=RespawnOut, dependencies=[Depends(require_internal_key)])
def process_vip_respawn(payload: RespawnRequest, db: Session = Depends(get_db)):
    result = process_respawn(db, payload.ticket_id)
    transaction = result.get("transaction")
    return {**result, "transaction_id": transaction.id if transaction is not None else None}
