import logging
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.errors import InvalidEvent, NotFound
from app.models import User
from app.services.referral import generate_unique_referral_code

logger = logging.getLogger(__name__)


def normalize_wallet_address(value: str | None) -> str:
    address = str(value or "").strip()
    if not address or len(address) > 64:
        raise InvalidEvent("Invalid wallet address")
    return address


def get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()
    if not user:
        raise NotFound("User not found")
    return user


def get_or_create_user_by_wallet(db: Session, wallet_address: str) -> User:
    address = normalize_wallet_address(wallet_address)
    user = db.query(User).filter(User.wallet_address == address).first()
    if user:
        return user
    try:
        with db.begin_nested():
            user = User(
                wallet_address=address,
                display_name=address[:8],
                referral_code=generate_unique_referral_code(db),
            )
            db.add(user)
    except IntegrityError:
        user = db.query(User).filter(User.wallet_address == address).first()
        if user is None:
            raise
        return user
    logger.info("Created user id=%s for wallet %s", user.id, address)
    return user
