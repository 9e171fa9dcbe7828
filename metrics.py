"""Read-only statistics over the plan ledger.

Every public function here is a pure reduction over a ``LedgerSnapshot``:
it keeps its accumulators local to the call and never touches the session.
``MetricsService`` loads the snapshot and shields chart callers from
individual chart failures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import Plan, Transaction, progress_percentage, round_half_up, utcnow
from periods import MonthKey, trailing_days, trailing_months
from schemas import (
    CategoryTotal,
    ChartBundle,
    DashboardSummary,
    FlowTotals,
    MonthBucket,
    PlanRanking,
    ProgressDistribution,
)
from services import StoreError


logger = logging.getLogger(__name__)

T = TypeVar("T")

OTHER_CATEGORY = "other"

# Checked in order; the first category with a matching keyword wins.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("education", ("school", "fees", "education")),
    ("emergency fund", ("emergency",)),
    ("clothing", ("uniform", "clothes")),
    ("transport", ("transport", "travel")),
    ("electronics", ("laptop", "computer", "phone")),
    ("books & supplies", ("book", "stationery")),
)


@dataclass
class LedgerSnapshot:
    plans: list[Plan] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)
    taken_at: datetime = field(default_factory=utcnow)


def _raw_progress(plan: Plan) -> float:
    if not plan.target_amount or plan.target_amount <= 0:
        return 0.0
    return plan.current_balance / plan.target_amount * 100


def dashboard_summary(snapshot: LedgerSnapshot) -> DashboardSummary:
    plans = snapshot.plans
    if not plans:
        return DashboardSummary()
    average = sum(_raw_progress(plan) for plan in plans) / len(plans)
    return DashboardSummary(
        total_plans=len(plans),
        total_savings=sum(plan.current_balance for plan in plans),
        total_targets=sum(plan.target_amount for plan in plans),
        total_contribution_count=sum(
            1 for txn in snapshot.transactions if txn.amount > 0
        ),
        average_progress=round_half_up(average),
    )


def monthly_trend(
    transactions: Iterable[Transaction],
    *,
    now: Optional[datetime] = None,
    window_months: int = 6,
) -> list[MonthBucket]:
    window = trailing_months(window_months, now=now)
    buckets: dict[MonthKey, MonthBucket] = {}
    for txn in transactions:
        if txn.created_at < window.start:
            continue
        key = MonthKey.of(txn.created_at)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = MonthBucket(year=key.year, month=key.month, label=key.label)
            buckets[key] = bucket
        if txn.amount > 0:
            bucket.contributions += txn.amount
        else:
            bucket.withdrawals += abs(txn.amount)
    return [buckets[key] for key in sorted(buckets)]


def progress_distribution(plans: Iterable[Plan]) -> ProgressDistribution:
    out = ProgressDistribution()
    for plan in plans:
        progress = progress_percentage(plan.current_balance, plan.target_amount)
        if progress >= 100:
            out.completed += 1
        elif progress >= 75:
            out.almost_there += 1
        elif progress >= 50:
            out.on_track += 1
        elif progress >= 1:
            out.started += 1
        else:
            out.not_started += 1
    return out


def top_performing_plans(plans: Iterable[Plan], limit: int = 5) -> list[PlanRanking]:
    candidates = [plan for plan in plans if plan.target_amount > 0]
    # sorted() is stable, so equal progress keeps snapshot order
    ranked = sorted(candidates, key=lambda plan: plan.progress_percentage, reverse=True)
    return [
        PlanRanking(
            id=plan.id,
            goal_name=plan.goal_name,
            progress_percentage=plan.progress_percentage,
            current_balance=plan.current_balance,
            target_amount=plan.target_amount,
        )
        for plan in ranked[: max(limit, 0)]
    ]


def contribution_comparison(
    transactions: Iterable[Transaction],
    *,
    now: Optional[datetime] = None,
    window_days: int = 30,
) -> FlowTotals:
    window = trailing_days(window_days, now=now)
    out = FlowTotals()
    for txn in transactions:
        if txn.created_at < window.start:
            continue
        if txn.amount > 0:
            out.contributions += txn.amount
        else:
            out.withdrawals += abs(txn.amount)
    return out


def categorize(goal_name: str) -> str:
    name = (goal_name or "").lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in name for keyword in keywords):
            return category
    return OTHER_CATEGORY


def savings_by_category(plans: Iterable[Plan]) -> list[CategoryTotal]:
    totals: dict[str, CategoryTotal] = {}
    for plan in plans:
        category = categorize(plan.goal_name)
        entry = totals.get(category)
        if entry is None:
            entry = CategoryTotal(category=category, total_savings=0.0, plan_count=0)
            totals[category] = entry
        entry.total_savings += plan.current_balance
        entry.plan_count += 1
    order = [name for name, _ in CATEGORY_KEYWORDS] + [OTHER_CATEGORY]
    return [totals[name] for name in order if name in totals]


class MetricsService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = get_settings()

    def snapshot(self, now: Optional[datetime] = None) -> LedgerSnapshot:
        # one statement, so a transaction is never seen without its balance
        stmt = (
            select(Plan)
            .options(joinedload(Plan.transactions))
            .order_by(Plan.created_at.asc(), Plan.id.asc())
            .execution_options(populate_existing=True)
        )
        try:
            plans = list(self.session.scalars(stmt).unique().all())
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("metrics_snapshot_failed")
            raise StoreError("Failed to load savings data") from exc
        transactions = [txn for plan in plans for txn in plan.transactions]
        return LedgerSnapshot(
            plans=plans, transactions=transactions, taken_at=now or utcnow()
        )

    def dashboard_summary(self) -> DashboardSummary:
        return dashboard_summary(self.snapshot())

    def chart_bundle(self, now: Optional[datetime] = None) -> ChartBundle:
        try:
            snapshot = self.snapshot(now)
        except StoreError:
            return ChartBundle()
        now = snapshot.taken_at
        settings = self.settings
        return ChartBundle(
            monthly_trend=_degrade(
                "monthly_trend",
                lambda: monthly_trend(
                    snapshot.transactions,
                    now=now,
                    window_months=settings.trend_window_months,
                ),
                list,
            ),
            progress_distribution=_degrade(
                "progress_distribution",
                lambda: progress_distribution(snapshot.plans),
                ProgressDistribution,
            ),
            top_performing_plans=_degrade(
                "top_performing_plans",
                lambda: top_performing_plans(
                    snapshot.plans, limit=settings.top_plans_limit
                ),
                list,
            ),
            contribution_comparison=_degrade(
                "contribution_comparison",
                lambda: contribution_comparison(
                    snapshot.transactions,
                    now=now,
                    window_days=settings.comparison_window_days,
                ),
                FlowTotals,
            ),
            savings_by_category=_degrade(
                "savings_by_category",
                lambda: savings_by_category(snapshot.plans),
                list,
            ),
        )


def _degrade(name: str, compute: Callable[[], T], empty: Callable[[], T]) -> T:
    try:
        return compute()
    except Exception:
        logger.exception(f"chart_degraded: chart={name}")
        return empty()

