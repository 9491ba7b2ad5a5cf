import logging
from decimal import Decimal
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.config import get_settings
from app.core.database import atomic
from app.core.errors import InvalidState
from app.models import VipRoomConfig, VipRoomType
from app.models.base import utcnow
from app.services.wallet import as_decimal, format_amount, quantize_amount
from app.utils.cache import get_cached, invalidate_cached, set_cached

settings = get_settings()
logger = logging.getLogger(__name__)

CONFIG_CACHE_TTL_SECONDS = 30


def validate_rates(reward_rate_player, reward_rate_treasury) -> None:
    player = as_decimal(reward_rate_player)
    treasury = as_decimal(reward_rate_treasury)
    if player < 0 or treasury < 0 or player > 1 or treasury > 1:
        raise InvalidState("Reward rates must be between 0 and 1")
    if player + treasury > 1:
        raise InvalidState("Player and treasury reward rates must sum to at most 1")


def _default_config(room_type: VipRoomType) -> VipRoomConfig:
    validate_rates(settings.vip_reward_rate_player, settings.vip_reward_rate_treasury)
    return VipRoomConfig(
        room_type=room_type,
        entry_fee=quantize_amount(settings.vip_entry_fee),
        reward_rate_player=quantize_amount(settings.vip_reward_rate_player),
        reward_rate_treasury=quantize_amount(settings.vip_reward_rate_treasury),
        respawn_cost=quantize_amount(settings.vip_respawn_cost),
        max_clients=settings.vip_max_clients,
        tick_rate=settings.vip_tick_rate,
        is_active=True,
        meta={"auto_generated": True, "generated_at": utcnow().isoformat()},
    )


def get_active_config(db: Session, room_type: VipRoomType = VipRoomType.SNAKE_VIP) -> VipRoomConfig:
    config = (
        db.query(VipRoomConfig)
        .filter(VipRoomConfig.room_type == room_type, VipRoomConfig.is_active.is_(True))
        .first()
    )
    if config:
        return config
    existing = db.query(VipRoomConfig).filter(VipRoomConfig.room_type == room_type).first()
    if existing:
        raise InvalidState(f"VIP room {VipRoomType(room_type).value} is not active")
    try:
        with db.begin_nested():
            config = _default_config(room_type)
            db.add(config)
    except IntegrityError:
        config = db.query(VipRoomConfig).filter(VipRoomConfig.room_type == room_type).first()
        if config is None:
            raise
    logger.info("Auto-created VIP room config for %s", VipRoomType(room_type).value)
    return config


def upsert_room_config(db: Session, room_type: VipRoomType, **fields) -> VipRoomConfig:
    with atomic(db):
        config = db.query(VipRoomConfig).filter(VipRoomConfig.room_type == room_type).with_for_update().first()
        if not config:
            config = _default_config(room_type)
            config.meta = {"auto_generated": False}
            db.add(config)
        for key in ("entry_fee", "reward_rate_player", "reward_rate_treasury", "respawn_cost"):
            if key in fields and fields[key] is not None:
                setattr(config, key, quantize_amount(fields[key]))
        for key in ("max_clients", "tick_rate", "is_active"):
            if key in fields and fields[key] is not None:
                setattr(config, key, fields[key])
        validate_rates(config.reward_rate_player, config.reward_rate_treasury)
    invalidate_cached(_cache_key(room_type))
    return config


def config_snapshot(config: VipRoomConfig) -> dict:
    return {
        "room_type": VipRoomType(config.room_type).value,
        "entry_fee": format_amount(config.entry_fee),
        "reward_rate_player": format_amount(config.reward_rate_player),
        "reward_rate_treasury": format_amount(config.reward_rate_treasury),
        "respawn_cost": format_amount(config.respawn_cost),
        "max_clients": int(config.max_clients),
        "tick_rate": int(config.tick_rate),
        "is_active": bool(config.is_active),
    }


def _cache_key(room_type: VipRoomType) -> str:
    return f"vip-room-config:{VipRoomType(room_type).value}"


def get_cached_config_snapshot(db: Session, room_type: VipRoomType = VipRoomType.SNAKE_VIP) -> dict:
    """Public read path only; settlement always reads the config inside its own transaction."""
    key = _cache_key(room_type)
    cached = get_cached(key)
    if cached:
        return cached
    snapshot = config_snapshot(get_active_config(db, room_type))
    db.commit()
    set_cached(key, snapshot, ttl_seconds=CONFIG_CACHE_TTL_SECONDS)
    return snapshot


def kill_split(config: VipRoomConfig) -> tuple[Decimal, Decimal]:
    """Reward to the killer and fee to the treasury for one kill in this room."""
    entry_fee = as_decimal(config.entry_fee)
    reward = quantize_amount(entry_fee * as_decimal(config.reward_rate_player))
    fee = quantize_amount(entry_fee * as_decimal(config.reward_rate_treasury))
    return reward, fee
