from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from models import TransactionKind


class PlanIn(BaseModel):
    # length is checked by PlanService.create after trimming
    goal_name: Optional[str] = None
    target_amount: Optional[Union[float, str]] = None


class ContributionIn(BaseModel):
    amount: Optional[Union[float, str]] = None
    description: Optional[str] = Field(default=None, max_length=100)


class WithdrawalIn(BaseModel):
    amount: Optional[Union[float, str]] = None
    description: Optional[str] = Field(default=None, max_length=200)


class PlanRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    goal_name: str


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    plan_id: int
    amount: float
    kind: TransactionKind
    description: Optional[str]
    created_at: datetime


class TransactionListItem(TransactionOut):
    plan: PlanRef


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    goal_name: str
    target_amount: float
    current_balance: float
    remaining_amount: float
    progress_percentage: int
    created_at: datetime
    transactions: list[TransactionOut] = Field(default_factory=list)

    @computed_field
    @property
    def display_progress(self) -> int:
        return max(0, min(self.progress_percentage, 100))


class ContributionOut(BaseModel):
    contribution: TransactionOut
    plan: PlanOut


class WithdrawalOut(BaseModel):
    withdrawal: TransactionOut
    plan: PlanOut


class TransactionPageOut(BaseModel):
    items: list[TransactionListItem]
    total: int
    limit: int
    offset: int


class DashboardSummary(BaseModel):
    total_plans: int = 0
    total_savings: float = 0.0
    total_targets: float = 0.0
    total_contribution_count: int = 0
    average_progress: int = 0


class MonthBucket(BaseModel):
    year: int
    month: int
    label: str
    contributions: float = 0.0
    withdrawals: float = 0.0


class ProgressDistribution(BaseModel):
    completed: int = 0
    almost_there: int = 0
    on_track: int = 0
    started: int = 0
    not_started: int = 0


class PlanRanking(BaseModel):
    id: int
    goal_name: str
    progress_percentage: int
    current_balance: float
    target_amount: float


class FlowTotals(BaseModel):
    contributions: float = 0.0
    withdrawals: float = 0.0


class CategoryTotal(BaseModel):
    category: str
    total_savings: float
    plan_count: int


class ChartBundle(BaseModel):
    monthly_trend: list[MonthBucket] = Field(default_factory=list)
    progress_distribution: ProgressDistribution = Field(
        default_factory=ProgressDistribution
    )
    top_performing_plans: list[PlanRanking] = Field(default_factory=list)
    contribution_comparison: FlowTotals = Field(default_factory=FlowTotals)
    savings_by_category: list[CategoryTotal] = Field(default_factory=list)


class ReconciliationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    plan_id: int
    cached_balance: float
    ledger_balance: float
    drift: float
