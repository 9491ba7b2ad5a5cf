import enum
from sqlalchemy import Column, Integer, String, ForeignKey, Numeric, Index, JSON, DateTime
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.models.base import TimestampMixin, enum_column


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REVERSED = "reversed"


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    REWARD = "reward"
    PENALTY = "penalty"
    SYSTEM_ADJUST = "system_adjust"


CREDIT_TYPES = {TransactionType.DEPOSIT, TransactionType.REWARD}
DEBIT_TYPES = {TransactionType.WITHDRAW, TransactionType.PENALTY}


class Transaction(Base, TimestampMixin):
    """
    Immutable record of a balance-affecting event.

    ``amount`` is a magnitude for deposit/reward/withdraw/penalty (the type
    gives the sign) and a signed value for system_adjust. Rows are never
    deleted; a compensated row moves to ``reversed``.
    """

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    tx_type = enum_column(TransactionType, "transaction_type", nullable=False)
    status = enum_column(TransactionStatus, "transaction_status", nullable=False, default=TransactionStatus.PENDING)
    amount = Column(Numeric(18, 6), nullable=False)
    fee_amount = Column(Numeric(18, 6), nullable=False, default=0)

    # On-chain events carry a signature, off-chain requests a reference code.
    signature = Column(String(128), unique=True, nullable=True)
    reference_code = Column(String(96), unique=True, nullable=True)
    reference_id = Column(Integer, nullable=True, index=True)

    meta = Column(JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="transactions")


Index("ix_transactions_user_status", Transaction.user_id, Transaction.status)
Index("ix_transactions_type_status", Transaction.tx_type, Transaction.status)
