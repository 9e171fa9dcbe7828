import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


WITHDRAWAL_DESCRIPTION = "Withdrawal"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def round_half_up(value: float) -> int:
    """Round like JavaScript's Math.round: halves go towards +infinity."""
    return int(math.floor(value + 0.5))


def progress_percentage(current_balance: float, target_amount: float) -> int:
    """Balance as a rounded percentage of target.

    Unclamped: an overfunded plan reports more than 100. A non-positive
    target yields 0 rather than dividing by zero.
    """
    if not target_amount or target_amount <= 0:
        return 0
    return round_half_up(current_balance / target_amount * 100)


class TransactionKind(str, Enum):
    contribution = "contribution"
    withdrawal = "withdrawal"


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    goal_name: Mapped[str] = mapped_column(String(100), nullable=False)
    target_amount: Mapped[float] = mapped_column(Float, nullable=False)
    current_balance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by=lambda: [Transaction.created_at.desc(), Transaction.id.desc()],
    )

    __table_args__ = (
        CheckConstraint("target_amount > 0", name="ck_plans_target_positive"),
        Index("ix_plans_created_at", "created_at"),
    )

    @property
    def progress_percentage(self) -> int:
        return progress_percentage(self.current_balance or 0.0, self.target_amount)

    @property
    def remaining_amount(self) -> float:
        return max((self.target_amount or 0.0) - (self.current_balance or 0.0), 0.0)


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("plans.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    plan: Mapped["Plan"] = relationship("Plan", back_populates="transactions")

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_transactions_amount_nonzero"),
        Index("ix_transactions_plan_created", "plan_id", "created_at"),
        Index("ix_transactions_created_at", "created_at"),
    )

    @property
    def kind(self) -> TransactionKind:
        if self.amount < 0:
            return TransactionKind.withdrawal
        return TransactionKind.contribution
