import logging
import math
import secrets
import string
from decimal import Decimal
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.config import get_settings
from app.core.database import atomic
from app.core.errors import DuplicateReference, InvalidEvent, InvalidState, NotFound, StoreUnavailable
from app.models import (
    ReferralReward,
    ReferralRewardAction,
    ReferralRewardStatus,
    ReferralRewardType,
    Transaction,
    TransactionType,
    User,
)
from app.models.base import utcnow
from app.services.wallet import ZERO, as_decimal, format_amount, get_or_create_balance, post_transaction, quantize_amount

settings = get_settings()
logger = logging.getLogger(__name__)

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_ATTEMPTS = 10
_SETTLED = {ReferralRewardStatus.CONFIRMED, ReferralRewardStatus.CAPPED}


def _commission_rate(action: ReferralRewardAction) -> Decimal:
    if action == ReferralRewardAction.KILL:
        return as_decimal(settings.referral_kill_commission_rate)
    return as_decimal(settings.referral_death_commission_rate)


def _commission_cap() -> Decimal | None:
    # Zero or unset means no cap.
    cap = quantize_amount(settings.referral_commission_cap_per_user)
    return cap if cap > 0 else None


def _find_user(db: Session, user_id: int, *, lock: bool = False) -> User:
    query = db.query(User).filter(User.id == user_id, User.deleted_at.is_(None))
    if lock:
        query = query.with_for_update()
    user = query.first()
    if not user:
        raise NotFound("User not found")
    return user


def _find_reward(db: Session, referrer_id: int, transaction_id: int, action: ReferralRewardAction, *, lock: bool = False):
    query = db.query(ReferralReward).filter(
        ReferralReward.referrer_id == referrer_id,
        ReferralReward.transaction_id == transaction_id,
        ReferralReward.action_type == action.value,
    )
    if lock:
        query = query.with_for_update()
    return query.first()


def confirmed_commission_total(db: Session, referrer_id: int) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(ReferralReward.amount), 0))
        .filter(
            ReferralReward.referrer_id == referrer_id,
            ReferralReward.status == ReferralRewardStatus.CONFIRMED,
        )
        .scalar()
    )
    return quantize_amount(total)


def accrue_game_commission(
    db: Session,
    origin_tx: Transaction,
    action_type: ReferralRewardAction,
    base_amount=None,
    referee_id: int | None = None,
) -> ReferralReward | None:
    """
    Credit the referee's referrer with a commission on a settled transaction.

    Keyed on (referrer, originating transaction, action): a confirmed row is
    returned unchanged and a failed row is retried in place. The referrer's
    balance row lock serializes cap checks, so the aggregate never exceeds
    ``referral_commission_cap_per_user``. Returns None when there is no
    referrer or nothing is left under the cap.
    """
    action = ReferralRewardAction(action_type)
    referee_id = referee_id or origin_tx.user_id
    try:
        with atomic(db):
            referee = db.query(User).filter(User.id == referee_id).first()
            if referee is None or not referee.referred_by_id:
                return None
            referrer_id = referee.referred_by_id
            get_or_create_balance(db, referrer_id, lock=True)

            reward = _find_reward(db, referrer_id, origin_tx.id, action, lock=True)
            if reward is not None and ReferralRewardStatus(reward.status) in _SETTLED:
                return reward

            base = quantize_amount(origin_tx.amount if base_amount is None else base_amount)
            commission = quantize_amount(base * _commission_rate(action))
            accrued = commission
            cap = _commission_cap()
            if cap is not None:
                cap_remaining = cap - confirmed_commission_total(db, referrer_id)
                accrued = min(commission, cap_remaining)
            if accrued <= 0:
                logger.info(
                    "No referral commission for referrer_id=%s on transaction id=%s (commission=%s, cap reached or zero)",
                    referrer_id,
                    origin_tx.id,
                    format_amount(commission),
                )
                if reward is not None:
                    # Confirmed commissions only accumulate, so this row can never pay.
                    reward.status = ReferralRewardStatus.CAPPED
                    reward.amount = ZERO
                    reward.failure_reason = "Commission cap reached"
                return None

            if reward is None:
                reward = ReferralReward(
                    referrer_id=referrer_id,
                    referee_id=referee_id,
                    reward_type=ReferralRewardType.GAME_COMMISSION,
                    action_type=action.value,
                    transaction_id=origin_tx.id,
                )
                db.add(reward)
            reward.amount = accrued
            reward.status = ReferralRewardStatus.PENDING
            reward.failure_reason = None
            reward.meta = {
                "base_amount": format_amount(base),
                "rate": str(_commission_rate(action)),
                "commission": format_amount(commission),
                "capped": accrued < commission,
            }
            try:
                db.flush()
            except IntegrityError as exc:
                raise DuplicateReference("Referral commission already recorded") from exc

            payout = Transaction(
                user_id=referrer_id,
                tx_type=TransactionType.REWARD,
                amount=accrued,
                fee_amount=0,
                reference_code=f"referral:{origin_tx.id}:{action.value}",
                reference_id=reward.id,
                meta={
                    "source": "referral-commission",
                    "reward_type": ReferralRewardType.GAME_COMMISSION.value,
                    "action_type": action.value,
                    "referee_id": referee_id,
                    "origin_transaction_id": origin_tx.id,
                },
            )
            post_transaction(db, payout)
            reward.payout_transaction_id = payout.id
            reward.status = ReferralRewardStatus.CONFIRMED
            db.flush()
    except DuplicateReference:
        # Another worker accrued the same commission first.
        with atomic(db):
            existing = _find_reward(db, referrer_id, origin_tx.id, action)
            if existing is None:
                raise
        logger.info("Referral commission for transaction id=%s (%s) recorded concurrently", origin_tx.id, action.value)
        return existing

    logger.info(
        "Referral commission %s to referrer_id=%s from referee_id=%s (%s, transaction id=%s)",
        format_amount(accrued),
        referrer_id,
        referee_id,
        action.value,
        origin_tx.id,
    )
    return reward


def record_failed_commission(
    db: Session,
    origin_tx: Transaction,
    action_type: ReferralRewardAction,
    reason: str,
    referee_id: int | None = None,
    base_amount=None,
) -> ReferralReward | None:
    """Leave a ``failed`` marker for reconciliation. Never raises."""
    action = ReferralRewardAction(action_type)
    referee_id = referee_id or origin_tx.user_id
    try:
        with atomic(db):
            referee = db.query(User).filter(User.id == referee_id).first()
            if referee is None or not referee.referred_by_id:
                return None
            reward = _find_reward(db, referee.referred_by_id, origin_tx.id, action, lock=True)
            if reward is None:
                reward = ReferralReward(
                    referrer_id=referee.referred_by_id,
                    referee_id=referee_id,
                    reward_type=ReferralRewardType.GAME_COMMISSION,
                    action_type=action.value,
                    transaction_id=origin_tx.id,
                    amount=ZERO,
                    meta={"base_amount": format_amount(origin_tx.amount if base_amount is None else base_amount)},
                )
                db.add(reward)
            elif ReferralRewardStatus(reward.status) in _SETTLED:
                return reward
            reward.status = ReferralRewardStatus.FAILED
            reward.failure_reason = str(reason or "unknown error")[:255]
        return reward
    except Exception:
        logger.exception(
            "Could not record failed referral commission for transaction id=%s action=%s",
            origin_tx.id,
            action.value,
        )
        return None


def retry_failed_commissions(db: Session, limit: int = 100) -> int:
    """Re-run accrual for failed commission rows; returns how many were confirmed."""
    failed = (
        db.query(ReferralReward)
        .filter(ReferralReward.status == ReferralRewardStatus.FAILED, ReferralReward.transaction_id.isnot(None))
        .order_by(ReferralReward.id.asc())
        .limit(limit)
        .all()
    )
    targets = [(row.transaction_id, row.action_type, row.referee_id, (row.meta or {}).get("base_amount")) for row in failed]
    db.rollback()

    confirmed = 0
    for transaction_id, action_type, referee_id, base_amount in targets:
        origin_tx = db.get(Transaction, transaction_id)
        if origin_tx is None:
            continue
        try:
            reward = accrue_game_commission(
                db,
                origin_tx,
                ReferralRewardAction(action_type),
                base_amount=base_amount,
                referee_id=referee_id,
            )
        except Exception as exc:
            logger.exception("Retry of referral commission failed for transaction id=%s", transaction_id)
            record_failed_commission(
                db, origin_tx, ReferralRewardAction(action_type), str(exc), referee_id=referee_id, base_amount=base_amount
            )
            continue
        if reward is not None and ReferralRewardStatus(reward.status) == ReferralRewardStatus.CONFIRMED:
            confirmed += 1
    return confirmed


def generate_unique_referral_code(db: Session, length: int | None = None) -> str:
    length = max(4, int(length or settings.referral_code_length))
    for _ in range(REFERRAL_CODE_ATTEMPTS):
        code = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))
        if not db.query(User.id).filter(User.referral_code == code).first():
            return code
    raise StoreUnavailable("Failed to generate unique referral code")


def ensure_referral_code(db: Session, user: User) -> str:
    if not user.referral_code:
        user.referral_code = generate_unique_referral_code(db)
        db.flush()
    return user.referral_code


def _find_referrer_by_code(db: Session, code: str) -> User | None:
    normalized = str(code or "").strip().upper()
    if not normalized:
        raise InvalidEvent("Referral code is required")
    return (
        db.query(User)
        .filter(func.upper(User.referral_code) == normalized, User.deleted_at.is_(None))
        .first()
    )


def mask_wallet(wallet_address: str) -> str:
    if len(wallet_address) > 8:
        return f"{wallet_address[:4]}...{wallet_address[-4:]}"
    return wallet_address


def validate_referral_code(db: Session, code: str) -> dict:
    referrer = _find_referrer_by_code(db, code)
    if referrer is None:
        return {"valid": False}
    return {
        "valid": True,
        "referrer_wallet": mask_wallet(referrer.wallet_address),
        "referrer_display_name": referrer.display_name,
    }


def apply_referral_code(db: Session, user_id: int, code: str) -> User:
    """Bind the user to the referrer owning ``code``; the binding is permanent."""
    with atomic(db):
        user = _find_user(db, user_id, lock=True)
        referrer = _find_referrer_by_code(db, code)
        if referrer is None:
            raise NotFound("Invalid referral code")
        if user.referred_by_id:
            if user.referred_by_id == referrer.id:
                return referrer
            raise InvalidState("Referrer is already set")
        if referrer.id == user.id:
            raise InvalidState("Cannot refer yourself")
        if referrer.referred_by_id == user.id:
            raise InvalidState("Cannot refer your own referrer")
        user.referred_by_id = referrer.id
        user.referred_at = utcnow()
    logger.info("User id=%s referred by user id=%s", user_id, referrer.id)
    return referrer


def get_referral_stats(db: Session, user_id: int, page: int = 1, limit: int = 10) -> dict:
    page = max(1, int(page))
    limit = min(max(1, int(limit)), 100)
    with atomic(db):
        user = _find_user(db, user_id)
        code = ensure_referral_code(db, user)

    total_referrals = db.query(func.count(User.id)).filter(User.referred_by_id == user_id).scalar() or 0
    referees = (
        db.query(User)
        .filter(User.referred_by_id == user_id)
        .order_by(User.created_at.desc(), User.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    rows = (
        db.query(ReferralReward.referee_id, ReferralReward.action_type, func.coalesce(func.sum(ReferralReward.amount), 0))
        .filter(
            ReferralReward.referrer_id == user_id,
            ReferralReward.status == ReferralRewardStatus.CONFIRMED,
        )
        .group_by(ReferralReward.referee_id, ReferralReward.action_type)
        .all()
    )

    earned: dict[int, dict[str, Decimal]] = {}
    for referee_id, action_type, amount in rows:
        bucket = earned.setdefault(referee_id, {ReferralRewardAction.KILL.value: ZERO, ReferralRewardAction.DEATH.value: ZERO})
        bucket[action_type] = bucket.get(action_type, ZERO) + as_decimal(amount)

    def _sum(action: str | None = None) -> Decimal:
        total = ZERO
        for bucket in earned.values():
            total += sum(bucket.values(), ZERO) if action is None else bucket.get(action, ZERO)
        return total

    referrals = []
    for referee in referees:
        bucket = earned.get(referee.id, {})
        kills = bucket.get(ReferralRewardAction.KILL.value, ZERO)
        deaths = bucket.get(ReferralRewardAction.DEATH.value, ZERO)
        referrals.append(
            {
                "referee_id": referee.id,
                "referee_wallet": referee.wallet_address,
                "referee_display_name": referee.display_name or "",
                "joined_at": referee.referred_at or referee.created_at,
                "total_earned": format_amount(kills + deaths),
                "earned_from_kills": format_amount(kills),
                "earned_from_deaths": format_amount(deaths),
                "last_activity_at": referee.last_login_at,
            }
        )

    base_url = (settings.frontend_base_url or "").rstrip("/")
    return {
        "referral_code": code,
        "referral_link": f"{base_url}?ref={code}" if base_url else "",
        "total_referrals": int(total_referrals),
        "active_referrals": len(earned),
        "total_earned": format_amount(_sum()),
        "earned_from_kills": format_amount(_sum(ReferralRewardAction.KILL.value)),
        "earned_from_deaths": format_amount(_sum(ReferralRewardAction.DEATH.value)),
        "referrals": referrals,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": int(total_referrals),
            "total_pages": max(1, math.ceil(total_referrals / limit)),
        },
    }
