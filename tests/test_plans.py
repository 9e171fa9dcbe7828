import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Plan, Transaction, TransactionKind, progress_percentage
from services import (
    InsufficientBalanceError,
    LedgerService,
    NotFoundError,
    PlanService,
    StoreError,
    ValidationError,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def ledger_sum(session, plan_id: int) -> float:
    return session.execute(
        select(func.coalesce(func.sum(Transaction.amount), 0.0)).where(
            Transaction.plan_id == plan_id
        )
    ).scalar_one()


def test_school_fees_scenario_rejects_overdraft() -> None:
    session = make_session()
    plans = PlanService(session)
    ledger = LedgerService(session)

    plan = plans.create("School Fees", 15000)
    assert plan.current_balance == 0
    assert plan.progress_percentage == 0
    assert plan.transactions == []

    entry = ledger.contribute(plan.id, 5000)
    assert entry.plan.current_balance == 5000
    assert entry.plan.progress_percentage == 33
    assert entry.transaction.amount == 5000
    assert entry.transaction.description is None
    assert entry.transaction.kind == TransactionKind.contribution

    with pytest.raises(InsufficientBalanceError, match="Insufficient balance"):
        ledger.withdraw(plan.id, 6000)

    assert plans.get(plan.id).current_balance == 5000
    assert len(plans.get(plan.id).transactions) == 1


def test_delete_plan_cascades_transactions() -> None:
    session = make_session()
    plans = PlanService(session)
    ledger = LedgerService(session)

    plan = plans.create("Emergency Fund", 10000)
    entry = ledger.contribute(plan.id, 10000)
    assert entry.plan.progress_percentage == 100

    plans.delete(plan.id)

    assert plan.id not in [p.id for p in plans.list_all()]
    remaining = session.scalars(
        select(Transaction).where(Transaction.plan_id == plan.id)
    ).all()
    assert remaining == []
    with pytest.raises(NotFoundError):
        plans.get(plan.id)


def test_balance_tracks_ledger_after_every_mutation() -> None:
    session = make_session()
    plan = PlanService(session).create("Laptop", 80000)
    ledger = LedgerService(session)

    steps = [
        ("contribute", 1200.5),
        ("contribute", 300),
        ("withdraw", 500.5),
        ("contribute", "250"),
        ("withdraw", 1250),
    ]
    for op, amount in steps:
        entry = getattr(ledger, op)(plan.id, amount)
        assert entry.plan.current_balance == pytest.approx(ledger_sum(session, plan.id))
        assert ledger.reconcile(plan.id).consistent

    assert PlanService(session).get(plan.id).current_balance == pytest.approx(0)


def test_withdrawal_is_negative_with_default_description() -> None:
    session = make_session()
    plan = PlanService(session).create("Travel", 2000)
    ledger = LedgerService(session)
    ledger.contribute(plan.id, 1500, "  Salary  ")

    entry = ledger.withdraw(plan.id, 400)
    assert entry.transaction.amount == -400
    assert entry.transaction.description == "Withdrawal"
    assert entry.transaction.kind == TransactionKind.withdrawal
    assert entry.plan.current_balance == 1100

    named = ledger.withdraw(plan.id, 100, "Bus fare")
    assert named.transaction.description == "Bus fare"

    descriptions = [t.description for t in PlanService(session).get(plan.id).transactions]
    assert descriptions == ["Bus fare", "Withdrawal", "Salary"]


def test_withdrawing_entire_balance_is_allowed() -> None:
    session = make_session()
    plan = PlanService(session).create("Uniform", 3000)
    ledger = LedgerService(session)
    ledger.contribute(plan.id, 750)

    entry = ledger.withdraw(plan.id, 750)
    assert entry.plan.current_balance == 0
    assert entry.plan.progress_percentage == 0


@pytest.mark.parametrize(
    "goal_name, target, message",
    [
        ("", 100, "required"),
        ("   ", 100, "required"),
        (None, 100, "required"),
        ("Books", None, "required"),
        ("Books", 0, "must be positive"),
        ("Books", -10, "must be positive"),
        ("Books", "abc", "must be positive"),
        ("Books", float("nan"), "must be positive"),
        ("x" * 101, 100, "at most 100"),
    ],
)
def test_create_plan_validation(goal_name, target, message) -> None:
    session = make_session()
    with pytest.raises(ValidationError, match=message):
        PlanService(session).create(goal_name, target)
    assert session.scalar(select(func.count(Plan.id))) == 0


def test_create_plan_trims_name_and_coerces_numeric_string() -> None:
    session = make_session()
    plan = PlanService(session).create("  New Phone  ", "25000.50")
    assert plan.goal_name == "New Phone"
    assert plan.target_amount == 25000.5
    assert plan.remaining_amount == 25000.5


@pytest.mark.parametrize("amount", [None, 0, -5, "", "ten", True, float("inf")])
def test_contribute_rejects_invalid_amounts(amount) -> None:
    session = make_session()
    plan = PlanService(session).create("Books", 1000)
    with pytest.raises(ValidationError, match="Contribution amount must be positive"):
        LedgerService(session).contribute(plan.id, amount)
    assert ledger_sum(session, plan.id) == 0


@pytest.mark.parametrize("amount", [None, 0, -5])
def test_withdraw_rejects_invalid_amounts(amount) -> None:
    session = make_session()
    plan = PlanService(session).create("Books", 1000)
    LedgerService(session).contribute(plan.id, 100)
    with pytest.raises(ValidationError, match="Withdrawal amount must be positive"):
        LedgerService(session).withdraw(plan.id, amount)


def test_unknown_plan_raises_not_found() -> None:
    session = make_session()
    ledger = LedgerService(session)
    with pytest.raises(NotFoundError, match="Savings plan not found"):
        ledger.contribute(999, 10)
    with pytest.raises(NotFoundError):
        ledger.withdraw(999, 10)
    with pytest.raises(NotFoundError):
        PlanService(session).delete(999)


def test_validation_happens_before_plan_lookup() -> None:
    session = make_session()
    with pytest.raises(ValidationError):
        LedgerService(session).contribute(999, 0)


def test_failed_withdrawal_leaves_state_untouched() -> None:
    session = make_session()
    plan = PlanService(session).create("Computer", 5000)
    ledger = LedgerService(session)
    ledger.contribute(plan.id, 1000)

    with pytest.raises(InsufficientBalanceError):
        ledger.withdraw(plan.id, 1000.01)

    fresh = PlanService(session).get(plan.id)
    assert fresh.current_balance == 1000
    assert [t.amount for t in fresh.transactions] == [1000]


def test_progress_percentage_formula() -> None:
    assert progress_percentage(5000, 15000) == 33
    assert progress_percentage(10000, 10000) == 100
    assert progress_percentage(15000, 10000) == 150
    assert progress_percentage(125, 1000) == 13
    assert progress_percentage(500, 0) == 0
    assert progress_percentage(0, 1000) == 0


def test_plans_listed_newest_first_with_transactions() -> None:
    session = make_session()
    plans = PlanService(session)
    first = plans.create("Transport", 1000)
    second = plans.create("Stationery", 500)
    LedgerService(session).contribute(first.id, 100)
    LedgerService(session).contribute(first.id, 200)

    listed = plans.list_all()
    assert [p.id for p in listed] == [second.id, first.id]
    assert [t.amount for t in listed[1].transactions] == [200, 100]
    assert listed[0].transactions == []


def test_list_transactions_paginates_and_filters() -> None:
    session = make_session()
    plans = PlanService(session)
    ledger = LedgerService(session)
    fees = plans.create("School Fees", 10000)
    phone = plans.create("Phone", 20000)
    for amount in (100, 200, 300):
        ledger.contribute(fees.id, amount)
    ledger.contribute(phone.id, 50)
    ledger.withdraw(fees.id, 25)

    page = ledger.list_transactions(limit=2, offset=0)
    assert page.total == 5
    assert [t.amount for t in page.items] == [-25, 50]
    assert page.items[1].plan.goal_name == "Phone"

    rest = ledger.list_transactions(limit=10, offset=2)
    assert [t.amount for t in rest.items] == [300, 200, 100]

    only_fees = ledger.list_transactions(plan_id=fees.id)
    assert only_fees.total == 4
    assert {t.plan_id for t in only_fees.items} == {fees.id}


def test_reconcile_detects_and_repairs_drift() -> None:
    session = make_session()
    plans = PlanService(session)
    ledger = LedgerService(session)
    healthy = plans.create("Books", 1000)
    broken = plans.create("Clothes", 1000)
    ledger.contribute(healthy.id, 400)
    ledger.contribute(broken.id, 300)

    broken.current_balance = 999
    session.commit()

    drifted = ledger.reconcile_all()
    assert [r.plan_id for r in drifted] == [broken.id]
    assert drifted[0].drift == pytest.approx(699)
    assert plans.get(broken.id).current_balance == 999

    ledger.reconcile_all(repair=True)
    assert plans.get(broken.id).current_balance == 300
    assert ledger.reconcile_all() == []

    broken.current_balance = 1
    session.commit()
    result = ledger.reconcile(broken.id, repair=True)
    assert not result.consistent
    assert ledger.reconcile(broken.id).consistent


def test_failed_repair_rolls_back_and_raises_store_error(monkeypatch) -> None:
    session = make_session()
    plan = PlanService(session).create("Laptop", 2000)
    ledger = LedgerService(session)
    ledger.contribute(plan.id, 500)
    plan.current_balance = 50
    session.commit()

    def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(session, "commit", failing_commit)
    with pytest.raises(StoreError):
        ledger.reconcile_all(repair=True)
    monkeypatch.undo()

    fresh = session.get(Plan, plan.id, populate_existing=True)
    assert fresh.current_balance == 50
    assert [r.plan_id for r in ledger.reconcile_all()] == [plan.id]
