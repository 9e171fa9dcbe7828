from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from models import WITHDRAWAL_DESCRIPTION, Plan, Transaction


logger = logging.getLogger(__name__)

GOAL_NAME_MAX_LENGTH = 100
BALANCE_TOLERANCE = 1e-6


class LedgerError(ValueError):
    pass


class ValidationError(LedgerError):
    pass


class NotFoundError(LedgerError):
    pass


class InsufficientBalanceError(LedgerError):
    pass


class StoreError(LedgerError):
    pass


def _coerce_amount(value: object, message: str) -> float:
    if value is None or isinstance(value, bool):
        raise ValidationError(message)
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise ValidationError(message)
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(message) from exc
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError(message)
    return amount


def _clean_description(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    clean = value.strip()
    return clean or None


@dataclass
class LedgerEntry:
    transaction: Transaction
    plan: Plan


@dataclass
class TransactionPage:
    items: list[Transaction]
    total: int


@dataclass(frozen=True)
class Reconciliation:
    plan_id: int
    cached_balance: float
    ledger_balance: float

    @property
    def drift(self) -> float:
        return self.cached_balance - self.ledger_balance

    @property
    def consistent(self) -> bool:
        return math.isclose(
            self.cached_balance, self.ledger_balance, abs_tol=BALANCE_TOLERANCE
        )


class PlanService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, goal_name: Optional[str], target_amount: object) -> Plan:
        clean_name = (goal_name or "").strip()
        if not clean_name or target_amount is None or target_amount == "":
            raise ValidationError("Goal name and target amount are required")
        if len(clean_name) > GOAL_NAME_MAX_LENGTH:
            raise ValidationError(
                f"Goal name must be at most {GOAL_NAME_MAX_LENGTH} characters"
            )
        target = _coerce_amount(target_amount, "Target amount must be positive")

        plan = Plan(goal_name=clean_name, target_amount=target, current_balance=0.0)
        try:
            self.session.add(plan)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(f"plan_create_failed: goal_name={clean_name!r}")
            raise StoreError("Failed to create savings plan") from exc
        self.session.refresh(plan)
        logger.info(f"plan_created: plan_id={plan.id} target={target}")
        return plan

    def get(self, plan_id: int) -> Plan:
        stmt = (
            select(Plan)
            .options(selectinload(Plan.transactions))
            .where(Plan.id == plan_id)
        )
        plan = self.session.scalar(stmt)
        if not plan:
            raise NotFoundError("Savings plan not found")
        return plan

    def list_all(self) -> list[Plan]:
        stmt = (
            select(Plan)
            .options(selectinload(Plan.transactions))
            .order_by(Plan.created_at.desc(), Plan.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def delete(self, plan_id: int) -> None:
        plan = self.session.get(Plan, plan_id)
        if not plan:
            raise NotFoundError("Savings plan not found")
        try:
            self.session.delete(plan)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(f"plan_delete_failed: plan_id={plan_id}")
            raise StoreError("Failed to delete savings plan") from exc
        logger.info(f"plan_deleted: plan_id={plan_id}")


class LedgerService:
    """Sole writer of transactions and of ``Plan.current_balance``.

    Every mutation inserts the transaction and moves the cached balance in
    one database transaction. Balance arithmetic runs inside the UPDATE
    statement so concurrent writers never apply a stale Python-side value,
    and withdrawals carry a ``current_balance >= amount`` guard that the
    store evaluates atomically.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _lock_plan(self, plan_id: int) -> Plan:
        stmt = (
            select(Plan)
            .where(Plan.id == plan_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        plan = self.session.scalar(stmt)
        if not plan:
            raise NotFoundError("Savings plan not found")
        return plan

    def _apply_balance_delta(self, plan_id: int, delta: float) -> bool:
        stmt = (
            update(Plan)
            .where(Plan.id == plan_id)
            .values(current_balance=Plan.current_balance + delta)
            .execution_options(synchronize_session=False)
        )
        if delta < 0:
            stmt = stmt.where(Plan.current_balance >= -delta)
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def _post(
        self, plan: Plan, amount: float, description: Optional[str]
    ) -> LedgerEntry:
        plan_id = plan.id
        txn = Transaction(plan_id=plan_id, amount=amount, description=description)
        try:
            self.session.add(txn)
            self.session.flush()
            if not self._apply_balance_delta(plan_id, amount):
                self.session.rollback()
                if amount < 0:
                    raise InsufficientBalanceError(
                        "Insufficient balance. Cannot withdraw more than current balance."
                    )
                raise NotFoundError("Savings plan not found")
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(f"ledger_post_failed: plan_id={plan_id} amount={amount}")
            raise StoreError("Failed to record transaction") from exc

        self.session.refresh(txn)
        self.session.refresh(plan)
        logger.info(
            f"ledger_posted: plan_id={plan_id} transaction_id={txn.id} "
            f"amount={amount} balance={plan.current_balance}"
        )
        return LedgerEntry(transaction=txn, plan=plan)

    def contribute(
        self, plan_id: int, amount: object, description: Optional[str] = None
    ) -> LedgerEntry:
        value = _coerce_amount(amount, "Contribution amount must be positive")
        plan = self._lock_plan(plan_id)
        return self._post(plan, value, _clean_description(description))

    def withdraw(
        self, plan_id: int, amount: object, description: Optional[str] = None
    ) -> LedgerEntry:
        value = _coerce_amount(amount, "Withdrawal amount must be positive")
        plan = self._lock_plan(plan_id)
        if value > plan.current_balance:
            # nothing has been written yet; release the read
            self.session.rollback()
            raise InsufficientBalanceError(
                "Insufficient balance. Cannot withdraw more than current balance."
            )
        return self._post(
            plan, -value, _clean_description(description) or WITHDRAWAL_DESCRIPTION
        )

    def list_transactions(
        self, limit: int = 50, offset: int = 0, plan_id: Optional[int] = None
    ) -> TransactionPage:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.plan))
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        count_stmt = select(func.count(Transaction.id))
        if plan_id is not None:
            stmt = stmt.where(Transaction.plan_id == plan_id)
            count_stmt = count_stmt.where(Transaction.plan_id == plan_id)
        items = list(self.session.scalars(stmt).all())
        total = self.session.execute(count_stmt).scalar_one() or 0
        return TransactionPage(items=items, total=int(total))

    def ledger_balance(self, plan_id: int) -> float:
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0.0)).where(
            Transaction.plan_id == plan_id
        )
        return float(self.session.execute(stmt).scalar_one())

    def _repair_balances(self, plan_ids: list[int]) -> None:
        # the sum is taken inside the UPDATE, so postings committed after
        # the drift was observed are still counted
        ledger_total = (
            select(func.coalesce(func.sum(Transaction.amount), 0.0))
            .where(Transaction.plan_id == Plan.id)
            .scalar_subquery()
        )
        stmt = (
            update(Plan)
            .where(Plan.id.in_(plan_ids))
            .values(current_balance=ledger_total)
            .execution_options(synchronize_session=False)
        )
        try:
            self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(f"ledger_repair_failed: plans={plan_ids}")
            raise StoreError("Failed to repair plan balances") from exc
        # cached Plan rows still hold the pre-repair balance
        self.session.expire_all()
        logger.warning(f"ledger_repaired: plans={plan_ids}")

    def reconcile(self, plan_id: int, repair: bool = False) -> Reconciliation:
        plan = self.session.get(Plan, plan_id, populate_existing=True)
        if not plan:
            raise NotFoundError("Savings plan not found")
        result = Reconciliation(
            plan_id=plan.id,
            cached_balance=float(plan.current_balance),
            ledger_balance=self.ledger_balance(plan.id),
        )
        if repair and not result.consistent:
            self._repair_balances([plan.id])
        return result

    def reconcile_all(self, repair: bool = False) -> list[Reconciliation]:
        totals = (
            select(
                Transaction.plan_id.label("plan_id"),
                func.sum(Transaction.amount).label("total"),
            )
            .group_by(Transaction.plan_id)
            .subquery()
        )
        stmt = (
            select(Plan, func.coalesce(totals.c.total, 0.0))
            .outerjoin(totals, totals.c.plan_id == Plan.id)
            .order_by(Plan.id)
            .execution_options(populate_existing=True)
        )
        drifted: list[Reconciliation] = []
        for plan, ledger_total in self.session.execute(stmt):
            result = Reconciliation(
                plan_id=plan.id,
                cached_balance=float(plan.current_balance),
                ledger_balance=float(ledger_total),
            )
            if result.consistent:
                continue
            drifted.append(result)
        if repair and drifted:
            self._repair_balances([r.plan_id for r in drifted])
        return drifted
