from typing import List, Optional
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sella.db import Base


class RewardWallet(Base):
    __tablename__ = "reward_wallets"
    __table_args__ = (
        CheckConstraint("balance_points >= 0", name="ck_reward_wallets_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), unique=True)
    # 1 point = R0.01
    balance_points: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    transactions: Mapped[List["RewardTransaction"]] = relationship(
        "RewardTransaction", back_populates="wallet", cascade="all, delete-orphan",
        order_by="RewardTransaction.id",
    )


class RewardTransaction(Base):
    __tablename__ = "reward_transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("reward_wallets.id"), index=True)

    # earn | redeem | expire | adjust
    type: Mapped[str] = mapped_column(String(16))
    points: Mapped[int] = mapped_column(Integer)        # signed delta
    memo: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)

    # e.g. "earn:<order id>", keeps accrual single-shot per order
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(80), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    wallet: Mapped["RewardWallet"] = relationship("RewardWallet", back_populates="transactions")
