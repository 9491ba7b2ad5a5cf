import logging
import uuid
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.database import atomic
from app.core.errors import InvalidEvent, InvalidState, NotFound, PaymentRejected, PaymentUnavailable
from app.models import Transaction, TransactionStatus, TransactionType
from app.models.base import utcnow
from app.services.payments import PaymentApiError, PaymentClient
from app.services.users import get_user, normalize_wallet_address
from app.services.wallet import (
    MAX_AMOUNT,
    apply_delta,
    format_amount,
    get_credit,
    post_transaction,
    quantize_amount,
    reverse_transaction,
)

logger = logging.getLogger(__name__)

TRANSFER_SENT = "sent"
TRANSFER_UNKNOWN = "unknown"
TRANSFER_REJECTED = "rejected"


def _lock_transaction(db: Session, transaction_id: int) -> Transaction:
    tx = db.query(Transaction).filter(Transaction.id == transaction_id).with_for_update().first()
    if not tx:
        raise NotFound("Withdrawal transaction not found")
    return tx


def _refund_failed_withdraw(db: Session, transaction_id: int, error: PaymentApiError) -> None:
    with atomic(db):
        tx = _lock_transaction(db, transaction_id)
        reverse_transaction(db, tx, "payment failed")
        tx.meta = {**(tx.meta or {}), "transfer_state": TRANSFER_REJECTED, "error": error.to_meta()}
        apply_delta(db, tx.user_id, quantize_amount(tx.amount), tx)
    logger.warning(
        "Withdrawal %s refunded after payment failure (status=%s): %s",
        tx.reference_code,
        error.status_code,
        error.message,
    )


def _mark_transfer_unknown(db: Session, transaction_id: int, error: PaymentApiError) -> None:
    with atomic(db):
        tx = _lock_transaction(db, transaction_id)
        tx.meta = {**(tx.meta or {}), "transfer_state": TRANSFER_UNKNOWN, "error": error.to_meta()}
    logger.warning(
        "Withdrawal %s outcome unknown (status=%s): %s; debit kept for reconciliation",
        tx.reference_code,
        error.status_code,
        error.message,
    )


def _record_transfer(db: Session, transaction_id: int, transfer: dict) -> None:
    transfer_meta = {
        key: transfer.get(key)
        for key in ("transactionId", "mintAddress", "senderAddress", "tokenAccountCreated")
        if key in transfer
    }
    try:
        with atomic(db):
            tx = _lock_transaction(db, transaction_id)
            tx.signature = str(transfer["signature"])
            tx.processed_at = utcnow()
            meta = {key: value for key, value in (tx.meta or {}).items() if key != "error"}
            tx.meta = {**meta, "transfer_state": TRANSFER_SENT, "transfer": transfer_meta}
    except IntegrityError:
        # The funds moved; keep the debit and park the colliding signature in meta.
        logger.error("Withdrawal transaction id=%s got an already-recorded signature %s", transaction_id, transfer["signature"])
        with atomic(db):
            tx = _lock_transaction(db, transaction_id)
            tx.meta = {
                **(tx.meta or {}),
                "transfer_state": TRANSFER_SENT,
                "transfer": transfer_meta,
                "duplicate_signature": str(transfer["signature"]),
            }


def _send_transfer(db: Session, transaction_id: int, recipient: str, amount, reference_code: str, client: PaymentClient) -> dict:
    try:
        transfer = client.transfer(recipient, format_amount(amount), reference_code)
    except PaymentApiError as exc:
        if exc.ambiguous:
            _mark_transfer_unknown(db, transaction_id, exc)
            raise PaymentUnavailable(f"{exc.message} Withdrawal {reference_code} is pending reconciliation.") from exc
        _refund_failed_withdraw(db, transaction_id, exc)
        if exc.retryable:
            raise PaymentUnavailable(exc.message) from exc
        raise PaymentRejected(exc.message) from exc
    _record_transfer(db, transaction_id, transfer)
    return transfer


def _withdraw_result(db: Session, tx: Transaction, transfer: dict) -> dict:
    available = get_credit(db, tx.user_id)
    db.commit()
    return {
        "signature": str(transfer["signature"]),
        "transaction_id": tx.id,
        "reference_code": tx.reference_code,
        "recipient_address": (tx.meta or {}).get("recipient_address"),
        "amount": format_amount(tx.amount),
        "available_amount": available,
    }


def withdraw(db: Session, user_id: int, recipient_address: str, amount, client: PaymentClient | None = None) -> dict:
    """
    Debit the user's credit and ask the payment service to send the tokens.

    The debit is committed as a confirmed ``withdraw`` transaction before the
    transfer request, so concurrent requests can never overdraw. A definite
    rejection from the payment service reverses the transaction and returns
    the amount to available credit. When the outcome is unknown (timeout,
    5xx, unreadable success response) the debit stays and the transaction is
    marked for :func:`retry_withdrawal`.
    """
    recipient = normalize_wallet_address(recipient_address)
    amount = quantize_amount(amount)
    if amount <= 0:
        raise InvalidEvent("Withdrawal amount must be greater than zero")
    if amount > MAX_AMOUNT:
        raise InvalidEvent("Withdrawal amount is too large")
    client = client or PaymentClient()
    if not client.configured:
        raise PaymentUnavailable("Payment service is not configured")

    reference_code = str(uuid.uuid4())
    with atomic(db):
        get_user(db, user_id)
        tx = Transaction(
            user_id=user_id,
            tx_type=TransactionType.WITHDRAW,
            amount=amount,
            fee_amount=0,
            reference_code=reference_code,
            meta={"source": "withdraw", "recipient_address": recipient},
        )
        post_transaction(db, tx)
    logger.info("Withdrawal %s debited %s from user_id=%s", reference_code, format_amount(amount), user_id)

    transfer = _send_transfer(db, tx.id, recipient, amount, reference_code, client)
    logger.info("Withdrawal %s sent with signature %s", reference_code, transfer["signature"])
    return _withdraw_result(db, tx, transfer)


def list_unresolved_withdrawals(db: Session, limit: int = 100) -> list[int]:
    """Ids of confirmed withdrawals whose transfer outcome is still unknown."""
    rows = (
        db.query(Transaction)
        .filter(
            Transaction.tx_type == TransactionType.WITHDRAW,
            Transaction.status == TransactionStatus.CONFIRMED,
            Transaction.signature.is_(None),
        )
        .order_by(Transaction.id.asc())
        .limit(limit)
        .all()
    )
    ids = [tx.id for tx in rows if (tx.meta or {}).get("transfer_state") == TRANSFER_UNKNOWN]
    db.rollback()
    return ids


def retry_withdrawal(db: Session, transaction_id: int, client: PaymentClient | None = None) -> dict:
    """Resend a withdrawal with its original idempotency key and settle the outcome."""
    client = client or PaymentClient()
    if not client.configured:
        raise PaymentUnavailable("Payment service is not configured")
    with atomic(db):
        tx = _lock_transaction(db, transaction_id)
        meta = tx.meta or {}
        if (
            TransactionType(tx.tx_type) != TransactionType.WITHDRAW
            or TransactionStatus(tx.status) != TransactionStatus.CONFIRMED
            or tx.signature
            or meta.get("transfer_state") != TRANSFER_UNKNOWN
        ):
            raise InvalidState("Withdrawal is not awaiting reconciliation")
        recipient = meta.get("recipient_address")
        amount = quantize_amount(tx.amount)
        reference_code = tx.reference_code

    transfer = _send_transfer(db, transaction_id, recipient, amount, reference_code, client)
    logger.info("Withdrawal %s reconciled with signature %s", reference_code, transfer["signature"])
    return _withdraw_result(db, tx, transfer)
