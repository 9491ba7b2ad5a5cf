from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Index, JSON
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.models.base import TimestampMixin


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    wallet_address = Column(String(64), unique=True, nullable=False, index=True)
    display_name = Column(String(64), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    meta = Column(JSON, nullable=True)

    referral_code = Column(String(16), unique=True, nullable=True, index=True)
    # Set once at signup; never rebound.
    referred_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    referred_at = Column(DateTime(timezone=True), nullable=True)

    referred_by = relationship("User", remote_side=[id])
    balance = relationship("WalletBalance", back_populates="user", uselist=False)
    transactions = relationship("Transaction", back_populates="user")
    tickets = relationship("VipTicket", back_populates="user")


Index("ix_users_referred_by_id", User.referred_by_id)
