from sqlalchemy import CheckConstraint, Column, Integer, ForeignKey, Numeric
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.models.base import TimestampMixin


class WalletBalance(Base, TimestampMixin):
    __tablename__ = "wallet_balances"
    __table_args__ = (
        CheckConstraint("available_amount >= 0", name="ck_wallet_balances_available_non_negative"),
        CheckConstraint("locked_amount >= 0", name="ck_wallet_balances_locked_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)
    available_amount = Column(Numeric(18, 6), default=0, nullable=False)
    locked_amount = Column(Numeric(18, 6), default=0, nullable=False)
    # Advisory pointer only; the transactions table is authoritative.
    last_transaction_id = Column(Integer, nullable=True)

    user = relationship("User", back_populates="balance")
