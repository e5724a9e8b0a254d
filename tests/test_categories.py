from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidStateError, NotFoundError, ValidationError
from models import (
    BudgetLog,
    BudgetLogType,
    BudgetPlan,
    BudgetRequest,
    Category,
    Expense,
    RequestStatus,
)
from schemas import (
    BudgetAdjustmentIn,
    BudgetPlanIn,
    BudgetRequestIn,
    CategoryIn,
    CategoryUpdate,
    ExpenseIn,
    ExpenseReportIn,
    SubActivityIn,
    SubActivityUpdate,
)
from services import (
    BudgetPlanService,
    CategoryService,
    ExpenseService,
    RequestService,
    SubActivityService,
)

YEAR = 2568


def make_engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def test_duplicate_name_is_rejected_within_a_year_only() -> None:
    engine = make_engine()
    with Session(engine) as session:
        service = CategoryService(session)
        service.create(CategoryIn(name="Operations", year=YEAR, allocated_cents=100))
        service.create(CategoryIn(name="Operations", year=YEAR + 1))

        with pytest.raises(ValidationError, match="already exists"):
            service.create(CategoryIn(name=" Operations ", year=YEAR))
        assert [c.year for c in service.list_all()] == [YEAR + 1, YEAR]
        assert len(service.list_all(YEAR)) == 1


def test_rename_updates_requests_that_reference_the_old_name() -> None:
    engine = make_engine()
    with Session(engine) as session:
        service = CategoryService(session)
        category = service.create(CategoryIn(name="Ops", year=YEAR))
        RequestService(session, fiscal_year=YEAR).create(
            BudgetRequestIn(
                project="Cleanup", category="Ops", requester="malee", amount_cents=500
            )
        )

        renamed = service.update(category.id, CategoryUpdate(name="Operations"))
        assert renamed.name == "Operations"
        categories = session.scalars(select(BudgetRequest.category)).all()
        assert categories == ["Operations"]


def test_adjust_moves_the_allocation_and_logs_it() -> None:
    engine = make_engine()
    with Session(engine) as session:
        service = CategoryService(session)
        category = service.create(
            CategoryIn(name="Operations", year=YEAR, allocated_cents=100_000)
        )

        raised = service.adjust(
            category.id,
            BudgetAdjustmentIn(
                amount_cents=50_000, type=BudgetLogType.transfer_in, reason="Mid-year"
            ),
        )
        assert raised.allocated_cents == 150_000
        lowered = service.adjust(
            category.id,
            BudgetAdjustmentIn(
                amount_cents=30_000,
                type=BudgetLogType.reduce,
                reason="Cut",
                user="finance",
            ),
        )
        assert lowered.allocated_cents == 120_000
        assert lowered.used_cents == 0

        with pytest.raises(ValidationError, match="negative"):
            service.adjust(
                category.id,
                BudgetAdjustmentIn(
                    amount_cents=200_000, type=BudgetLogType.transfer_out, reason="x"
                ),
            )

        logs = service.logs(category.id)
        assert [(log.type, log.amount_cents, log.user) for log in logs] == [
            (BudgetLogType.reduce, 30_000, "finance"),
            (BudgetLogType.transfer_in, 50_000, "System"),
        ]


def test_delete_is_blocked_once_the_category_has_history() -> None:
    engine = make_engine()
    with Session(engine) as session:
        service = CategoryService(session)
        fresh = service.create(CategoryIn(name="Unused", year=YEAR))
        SubActivityService(session).create(
            SubActivityIn(category_id=fresh.id, name="Placeholder")
        )
        fresh_id = fresh.id
        service.delete(fresh_id)
        assert session.get(Category, fresh_id) is None

        used = service.create(CategoryIn(name="Operations", year=YEAR))
        service.adjust(
            used.id,
            BudgetAdjustmentIn(amount_cents=100, type=BudgetLogType.add, reason="Seed"),
        )
        with pytest.raises(InvalidStateError):
            service.delete(used.id)
        assert session.query(BudgetLog).count() == 1

        with pytest.raises(NotFoundError):
            service.delete(9999)


def test_sub_activity_tree_reports_derived_usage() -> None:
    engine = make_engine()
    with Session(engine) as session:
        category = CategoryService(session).create(
            CategoryIn(name="Operations", year=YEAR)
        )
        subs = SubActivityService(session)
        parent = subs.create(
            SubActivityIn(
                category_id=category.id, name="Events", allocated_cents=80_000
            )
        )
        child = subs.create(
            SubActivityIn(
                category_id=category.id,
                name="Sports day",
                allocated_cents=50_000,
                parent_id=parent.id,
            )
        )
        requests = RequestService(session, fiscal_year=YEAR)
        requests.create(
            BudgetRequestIn(
                project="Relay",
                category="Operations",
                sub_activity_id=child.id,
                requester="malee",
                amount_cents=20_000,
            )
        )

        [root] = subs.tree(category.id)
        assert root.id == parent.id
        assert root.used_cents == 0
        [leaf] = root.children
        assert leaf.used_cents == 20_000
        assert leaf.remaining_cents == 30_000
        assert subs.describe(child.id).remaining_cents == 30_000


def test_sub_activity_parent_rules() -> None:
    engine = make_engine()
    with Session(engine) as session:
        categories = CategoryService(session)
        operations = categories.create(CategoryIn(name="Operations", year=YEAR))
        travel = categories.create(CategoryIn(name="Travel", year=YEAR))
        subs = SubActivityService(session)
        top = subs.create(SubActivityIn(category_id=operations.id, name="Top"))
        nested = subs.create(
            SubActivityIn(category_id=operations.id, name="Nested", parent_id=top.id)
        )
        elsewhere = subs.create(SubActivityIn(category_id=travel.id, name="Elsewhere"))

        with pytest.raises(ValidationError, match="nested under itself"):
            subs.update(top.id, SubActivityUpdate(parent_id=nested.id))
        with pytest.raises(ValidationError, match="another category"):
            subs.update(nested.id, SubActivityUpdate(parent_id=elsewhere.id))
        with pytest.raises(ValidationError, match="not found"):
            subs.create(
                SubActivityIn(category_id=operations.id, name="Orphan", parent_id=999)
            )

        renamed = subs.update(nested.id, SubActivityUpdate(name="Renamed"))
        assert renamed.parent_id == top.id
        detached = subs.update(nested.id, SubActivityUpdate(parent_id=None))
        assert detached.parent_id is None


def test_sub_activity_delete_unlinks_requests() -> None:
    engine = make_engine()
    with Session(engine) as session:
        category = CategoryService(session).create(
            CategoryIn(name="Operations", year=YEAR)
        )
        subs = SubActivityService(session)
        top = subs.create(
            SubActivityIn(category_id=category.id, name="Top", allocated_cents=1_000)
        )
        leaf = subs.create(
            SubActivityIn(
                category_id=category.id,
                name="Leaf",
                allocated_cents=1_000,
                parent_id=top.id,
            )
        )
        request = RequestService(session, fiscal_year=YEAR).create(
            BudgetRequestIn(
                project="Relay",
                category="Operations",
                sub_activity_id=leaf.id,
                requester="malee",
                amount_cents=500,
            )
        )

        with pytest.raises(ValidationError, match="nested"):
            subs.delete(top.id)
        subs.delete(leaf.id)
        assert session.scalar(
            select(BudgetRequest.sub_activity_id).where(BudgetRequest.id == request.id)
        ) is None


def test_manual_expenses_move_used() -> None:
    engine = make_engine()
    with Session(engine) as session:
        category = CategoryService(session).create(
            CategoryIn(name="Operations", year=YEAR, allocated_cents=100_000)
        )
        expenses = ExpenseService(session)
        expense = expenses.create(
            ExpenseIn(
                category_id=category.id,
                amount_cents=12_500,
                payee="Stationery shop",
                date=date(2025, 2, 1),
            )
        )
        assert session.get(Category, category.id).used_cents == 12_500
        assert [e.id for e in CategoryService(session).expenses(category.id)] == [
            expense.id
        ]

        expense_id = expense.id
        expenses.delete(expense_id)
        assert session.get(Category, category.id).used_cents == 0
        with pytest.raises(NotFoundError):
            expenses.delete(expense_id)
        with pytest.raises(ValidationError, match="Category not found"):
            expenses.create(
                ExpenseIn(
                    category_id=999, amount_cents=1, payee="x", date=date(2025, 1, 1)
                )
            )


def test_materialized_expense_cannot_be_deleted_directly() -> None:
    engine = make_engine()
    with Session(engine) as session:
        CategoryService(session).create(
            CategoryIn(name="Operations", year=YEAR, allocated_cents=100_000)
        )
        requests = RequestService(session, fiscal_year=YEAR)
        request = requests.create(
            BudgetRequestIn(
                project="Fair",
                category="Operations",
                requester="malee",
                amount_cents=900,
            )
        )
        requests.approve(request.id, "director")
        requests.submit_expense(request.id, ExpenseReportIn(actual_total_cents=900))
        requests.complete(request.id)

        expense_id = session.scalar(select(Expense.id))
        with pytest.raises(InvalidStateError):
            ExpenseService(session).delete(expense_id)
        assert session.query(Expense).count() == 1


def test_budget_plan_upsert_keeps_one_row_per_month() -> None:
    engine = make_engine()
    with Session(engine) as session:
        category = CategoryService(session).create(
            CategoryIn(name="Operations", year=YEAR)
        )
        sub = SubActivityService(session).create(
            SubActivityIn(category_id=category.id, name="Events")
        )
        plans = BudgetPlanService(session)
        first = plans.upsert(
            BudgetPlanIn(sub_activity_id=sub.id, year=YEAR, month=3, amount_cents=1_000)
        )
        second = plans.upsert(
            BudgetPlanIn(sub_activity_id=sub.id, year=YEAR, month=3, amount_cents=2_500)
        )
        assert first.id == second.id
        assert session.query(BudgetPlan).count() == 1
        assert [p.amount_cents for p in plans.list(YEAR)] == [2_500]
        assert plans.list(YEAR + 1) == []

        with pytest.raises(ValidationError, match="Sub-activity not found"):
            plans.upsert(
                BudgetPlanIn(sub_activity_id=999, year=YEAR, month=1, amount_cents=1)
            )


def test_summary_totals_the_fiscal_year() -> None:
    engine = make_engine()
    with Session(engine) as session:
        categories = CategoryService(session)
        categories.create(
            CategoryIn(name="Operations", year=YEAR, allocated_cents=100_000)
        )
        categories.create(CategoryIn(name="Travel", year=YEAR, allocated_cents=50_000))
        categories.create(
            CategoryIn(name="Operations", year=YEAR - 1, allocated_cents=999_999)
        )
        requests = RequestService(session, fiscal_year=YEAR)
        waiting = requests.create(
            BudgetRequestIn(
                project="Fair",
                category="Travel",
                requester="malee",
                amount_cents=30_000,
            )
        )
        requests.create(
            BudgetRequestIn(
                project="Expo",
                category="Operations",
                requester="malee",
                amount_cents=10_000,
            )
        )
        requests.approve(waiting.id, "director")
        requests.submit_expense(
            waiting.id,
            ExpenseReportIn(actual_total_cents=25_000, return_amount_cents=5_000),
        )

        summary = categories.summary(YEAR)
        assert summary.year == YEAR
        assert summary.starts_on == date(2025, 1, 1)
        assert summary.ends_on == date(2025, 12, 31)
        assert summary.allocated_cents == 150_000
        assert summary.used_cents == 30_000
        assert summary.remaining_cents == 120_000
        assert summary.pending_cents == 10_000
        assert summary.refund_pending_cents == 5_000
        assert summary.usage_ratio == 0.2
        assert session.get(BudgetRequest, waiting.id).status == (
            RequestStatus.waiting_verification
        )
