import hmac
import logging
import uuid
from decimal import Decimal, InvalidOperation
from sqlalchemy.orm import Session
from app.core.config import get_settings
from app.core.database import atomic
from app.core.errors import DuplicateReference, InvalidEvent, InvalidState, Unauthorized
from app.models import Transaction, TransactionStatus, TransactionType
from app.models.base import utcnow
from app.schemas.wallet import DepositWebhookPayload
from app.services.users import get_or_create_user_by_wallet
from app.services.wallet import MAX_AMOUNT, apply_delta, format_amount, post_transaction, quantize_amount, signed_delta

settings = get_settings()
logger = logging.getLogger(__name__)

DEPOSIT_EVENT_TYPE = "DepositEvent"
_REPAIRABLE = {TransactionStatus.PENDING, TransactionStatus.FAILED}


def verify_webhook_secret(secret_header: str | None) -> None:
    expected = settings.wallet_webhook_secret
    if not expected:
        return
    if not secret_header or not hmac.compare_digest(str(secret_header), str(expected)):
        raise Unauthorized("Invalid webhook secret")


def to_ledger_amount(raw_amount, decimals: int | None = None) -> tuple[int, Decimal]:
    """Convert an indexer amount to (raw units, ledger amount).

    Integer strings are raw on-chain units; a value containing a decimal point
    is already expressed in tokens.
    """
    decimals = settings.token_decimals if decimals is None else int(decimals)
    text = str(raw_amount if raw_amount is not None else "").strip()
    if not text:
        raise InvalidEvent("Invalid webhook amount")
    try:
        value = Decimal(text)
        if not value.is_finite():
            raise InvalidEvent("Invalid webhook amount")
        if "." in text:
            tokens = value
            raw = int((tokens * (Decimal(10) ** decimals)).to_integral_value())
        else:
            raw = int(value)
            tokens = Decimal(raw) / (Decimal(10) ** decimals)
        amount = quantize_amount(tokens)
    except (InvalidOperation, ValueError, OverflowError) as exc:
        raise InvalidEvent("Invalid webhook amount") from exc
    if amount <= 0 or amount > MAX_AMOUNT:
        raise InvalidEvent("Invalid webhook amount")
    return raw, amount


def _find_deposit(db: Session, signature: str) -> Transaction | None:
    return db.query(Transaction).filter(Transaction.signature == signature).with_for_update().first()


def handle_deposit_webhook(db: Session, payload: DepositWebhookPayload, secret_header: str | None = None) -> dict:
    verify_webhook_secret(secret_header)

    event = payload.event
    if event is None:
        raise InvalidEvent("Missing event payload")
    if not event.success or event.event_type != DEPOSIT_EVENT_TYPE:
        raise InvalidEvent(f"Unsupported deposit event (type={event.event_type}, success={event.success})")

    signature = str(event.signature or "").strip()
    wallet_address = event.data.user if event.data else None
    raw_amount = event.data.amount if event.data else None
    if not signature or not wallet_address or raw_amount in (None, ""):
        raise InvalidEvent("Invalid webhook payload")
    raw_units, amount = to_ledger_amount(raw_amount)

    try:
        with atomic(db):
            existing = _find_deposit(db, signature)
            if existing:
                status = TransactionStatus(existing.status)
                if status not in _REPAIRABLE:
                    logger.info("Deposit %s already %s; ignoring replay", signature, status.value)
                    return {"processed": False}
                if TransactionType(existing.tx_type) != TransactionType.DEPOSIT:
                    raise InvalidEvent("Signature belongs to a non-deposit transaction")
                existing.status = TransactionStatus.CONFIRMED
                existing.processed_at = utcnow()
                apply_delta(db, existing.user_id, signed_delta(existing), existing)
                logger.info("Repaired deposit %s for user_id=%s amount=%s", signature, existing.user_id, existing.amount)
                return {"processed": True}

            user = get_or_create_user_by_wallet(db, wallet_address)
            tx = Transaction(
                user_id=user.id,
                tx_type=TransactionType.DEPOSIT,
                amount=amount,
                fee_amount=0,
                signature=signature,
                meta={
                    "raw_amount": str(raw_units),
                    "raw_amount_source": str(raw_amount),
                    "decimals": settings.token_decimals,
                    "timestamp": payload.timestamp,
                    "indexer_version": payload.indexer_version,
                },
            )
            post_transaction(db, tx)
    except DuplicateReference:
        # A concurrent delivery of the same signature committed first.
        logger.info("Deposit %s recorded concurrently; ignoring replay", signature)
        return {"processed": False}

    logger.info("Credited deposit %s user_id=%s amount=%s", signature, user.id, format_amount(amount))
    return {"processed": True}


def create_deposit_metadata(db: Session, wallet_address: str, amount) -> dict:
    if not settings.deposit_token_mint:
        raise InvalidState("Deposit token mint is not configured")
    normalized = quantize_amount(amount)
    if normalized <= 0:
        raise InvalidEvent("Deposit amount must be greater than zero")
    if normalized > MAX_AMOUNT:
        raise InvalidEvent("Deposit amount is too large")
    with atomic(db):
        user = get_or_create_user_by_wallet(db, wallet_address)
    reference_code = str(uuid.uuid4())
    return {
        "token_mint": settings.deposit_token_mint,
        "decimals": settings.token_decimals,
        "amount": format_amount(normalized),
        "reference_code": reference_code,
        "memo": f"deposit:{user.id}:{reference_code}",
    }
