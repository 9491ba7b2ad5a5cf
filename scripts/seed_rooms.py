import logging
import os
from decimal import Decimal
from app.core.database import SessionLocal
from app.core.logging import configure_logging
from app.models import VipRoomType
from app.services.rooms import config_snapshot, upsert_room_config


ROOMS = [
    {
        "room_type": VipRoomType.SNAKE_VIP,
        "entry_fee": Decimal(os.getenv("SEED_VIP_ENTRY_FEE", "1")),
        "reward_rate_player": Decimal(os.getenv("SEED_VIP_REWARD_RATE_PLAYER", "0.9")),
        "reward_rate_treasury": Decimal(os.getenv("SEED_VIP_REWARD_RATE_TREASURY", "0.1")),
        "respawn_cost": Decimal(os.getenv("SEED_VIP_RESPAWN_COST", "0")),
        "max_clients": 20,
        "tick_rate": 60,
        "is_active": True,
    },
]


def main():
    configure_logging()
    logger = logging.getLogger("seed_rooms")
    db = SessionLocal()
    try:
        for room in ROOMS:
            fields = dict(room)
            room_type = fields.pop("room_type")
            config = upsert_room_config(db, room_type, **fields)
            logger.info("Seeded room config %s", config_snapshot(config))
    finally:
        db.close()


if __name__ == "__main__":
    main()
