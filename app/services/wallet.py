import logging
from decimal import Decimal, ROUND_DOWN
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.errors import DuplicateReference, InsufficientFunds, InvalidState, LedgerError
from app.models import Transaction, TransactionStatus, TransactionType, WalletBalance
from app.models.base import utcnow
from app.models.transaction import CREDIT_TYPES, DEBIT_TYPES

logger = logging.getLogger(__name__)

AMOUNT_QUANT = Decimal("0.000001")
# Largest value a NUMERIC(18, 6) column holds.
MAX_AMOUNT = Decimal("999999999999.999999")
ZERO = Decimal("0")


def as_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value))


def quantize_amount(value) -> Decimal:
    # ROUND_DOWN truncates toward zero, so negative deltas keep their sign.
    return as_decimal(value).quantize(AMOUNT_QUANT, rounding=ROUND_DOWN)


def format_amount(value) -> str:
    return f"{quantize_amount(value):.6f}"


def signed_delta(tx: Transaction) -> Decimal:
    amount = as_decimal(tx.amount)
    tx_type = TransactionType(tx.tx_type)
    if tx_type in CREDIT_TYPES:
        return abs(amount)
    if tx_type in DEBIT_TYPES:
        return -abs(amount)
    return amount


def _select_balance(db: Session, user_id: int, lock: bool) -> WalletBalance | None:
    query = db.query(WalletBalance).filter(WalletBalance.user_id == user_id)
    if lock:
        query = query.with_for_update()
    return query.first()


def get_or_create_balance(db: Session, user_id: int, *, lock: bool = False) -> WalletBalance:
    balance = _select_balance(db, user_id, lock)
    if balance:
        return balance
    try:
        with db.begin_nested():
            balance = WalletBalance(user_id=user_id, available_amount=ZERO, locked_amount=ZERO)
            db.add(balance)
    except IntegrityError:
        # A concurrent request created the row first.
        balance = _select_balance(db, user_id, lock)
        if balance is None:
            raise
    return balance


def record_transaction(db: Session, tx: Transaction) -> Transaction:
    """Persist ``tx``; a reused signature or reference code raises DuplicateReference.

    The caller owns the unit of work and must treat DuplicateReference as
    "already processed" and roll back.
    """
    db.add(tx)
    try:
        db.flush()
    except IntegrityError as exc:
        raise DuplicateReference(
            f"Transaction reference already recorded (signature={tx.signature}, reference_code={tx.reference_code})"
        ) from exc
    return tx


def apply_delta(db: Session, user_id: int, delta, transaction: Transaction | None = None) -> WalletBalance:
    """Apply a signed delta to the user's available credit under a row lock. Does not commit."""
    delta = quantize_amount(delta)
    balance = get_or_create_balance(db, user_id, lock=True)
    current = as_decimal(balance.available_amount)
    next_value = current + delta
    if delta < 0 and next_value < 0:
        raise InsufficientFunds(
            f"Insufficient balance: available {format_amount(current)}, required {format_amount(-delta)}"
        )
    balance.available_amount = next_value
    if transaction is not None and transaction.id is not None:
        balance.last_transaction_id = transaction.id
    db.flush()
    return balance


def post_transaction(db: Session, tx: Transaction) -> WalletBalance:
    """Record a confirmed transaction and apply its signed delta in the caller's unit of work."""
    tx.status = TransactionStatus.CONFIRMED
    now = utcnow()
    tx.occurred_at = tx.occurred_at or now
    tx.processed_at = tx.processed_at or now
    delta = signed_delta(tx)
    if delta < 0:
        # Check funds before the row is written so a rejected debit leaves no trace.
        balance = get_or_create_balance(db, tx.user_id, lock=True)
        if as_decimal(balance.available_amount) + delta < 0:
            raise InsufficientFunds(
                f"Insufficient balance: available {format_amount(balance.available_amount)}, required {format_amount(-delta)}"
            )
    record_transaction(db, tx)
    return apply_delta(db, tx.user_id, delta, tx)


def hold_funds(db: Session, user_id: int, amount) -> WalletBalance:
    """Park an already-debited amount in the locked bucket until it is spent or released."""
    balance = get_or_create_balance(db, user_id, lock=True)
    balance.locked_amount = as_decimal(balance.locked_amount) + quantize_amount(amount)
    db.flush()
    return balance


def spend_hold(db: Session, user_id: int, amount) -> WalletBalance:
    balance = get_or_create_balance(db, user_id, lock=True)
    locked = as_decimal(balance.locked_amount) - quantize_amount(amount)
    if locked < 0:
        raise LedgerError("Locked amount would go negative", code="LOCKED_UNDERFLOW")
    balance.locked_amount = locked
    db.flush()
    return balance


def release_hold(db: Session, user_id: int, amount) -> WalletBalance:
    """Return a held amount to available credit."""
    balance = spend_hold(db, user_id, amount)
    balance.available_amount = as_decimal(balance.available_amount) + quantize_amount(amount)
    db.flush()
    return balance


def reverse_transaction(db: Session, tx: Transaction, reason: str) -> Transaction:
    # Compensation is a status change; ledger rows are never deleted.
    if TransactionStatus(tx.status) != TransactionStatus.CONFIRMED:
        raise InvalidState(f"Transaction {tx.id} is {TransactionStatus(tx.status).value}, not confirmed")
    tx.status = TransactionStatus.REVERSED
    tx.meta = {**(tx.meta or {}), "reversal_reason": reason, "reversed_at": utcnow().isoformat()}
    db.flush()
    logger.info("Reversed transaction id=%s user_id=%s reason=%s", tx.id, tx.user_id, reason)
    return tx


def get_credit(db: Session, user_id: int) -> str:
    balance = get_or_create_balance(db, user_id)
    return format_amount(balance.available_amount)


def list_transactions(db: Session, user_id: int, limit: int = 50) -> list[Transaction]:
    return (
        db.query(Transaction)
        .filter(Transaction.user_id == user_id, Transaction.deleted_at.is_(None))
        .order_by(Transaction.id.desc())
        .limit(limit)
        .all()
    )


def confirmed_total(db: Session, user_id: int) -> Decimal:
    """Sum of the user's confirmed signed deltas; always equals ``available_amount``."""
    rows = (
        db.query(Transaction.tx_type, func.coalesce(func.sum(Transaction.amount), 0))
        .filter(Transaction.user_id == user_id, Transaction.status == TransactionStatus.CONFIRMED)
        .group_by(Transaction.tx_type)
        .all()
    )
    total = ZERO
    for tx_type, amount in rows:
        amount = as_decimal(amount)
        tx_type = TransactionType(tx_type)
        if tx_type in DEBIT_TYPES:
            total -= amount
        else:
            total += amount
    return quantize_amount(total)
