from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from config import get_settings
from errors import InvalidStateError, NotFoundError, ValidationError
from fiscal import current_fiscal_year, fiscal_year_by_label, local_now, local_today
from models import (
    ActivityLog,
    BudgetLog,
    BudgetLogType,
    BudgetPlan,
    BudgetRequest,
    Category,
    Expense,
    ExpenseLineItem,
    RequestStatus,
    SubActivity,
)
from money import line_total_cents
from reconciliation import (
    AllocationChecker,
    CategoryResolver,
    apply_used_delta,
    commit_request,
    materialize_expenses,
    reconcile,
    remove_materialized_expenses,
)
from schemas import (
    BudgetAdjustmentIn,
    BudgetPlanIn,
    BudgetRequestIn,
    BudgetSummaryOut,
    CategoryIn,
    CategoryUpdate,
    ExpenseIn,
    ExpenseReportIn,
    SubActivityIn,
    SubActivityOut,
    SubActivityUpdate,
)

logger = logging.getLogger(__name__)

TEMP_ITEM_PREFIX = "temp-"
DEFAULT_REPORTED_CATEGORY = "other"
DEFAULT_UNIT = "unit"


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


class ActivityLogService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def record(
        self, user_id: Optional[str], action: str, details: dict[str, object]
    ) -> Optional[ActivityLog]:
        entry = ActivityLog(
            user_id=user_id,
            action=action,
            details=json.dumps(details, default=str, sort_keys=True),
        )
        try:
            self.session.add(entry)
            self.session.commit()
        except SQLAlchemyError:
            # the audited change is already committed; losing the entry is acceptable
            self.session.rollback()
            logger.exception(f"activity_log_failed: action={action}")
            return None
        return entry

    def recent(self, limit: int = 100) -> list[ActivityLog]:
        stmt = (
            select(ActivityLog)
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()


def _existing_item_id(raw: Optional[Union[int, str]]) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw
    value = raw.strip()
    if not value or value.startswith(TEMP_ITEM_PREFIX):
        return None
    if not value.isdigit():
        raise ValidationError(f"Invalid expense item id: {raw}")
    return int(value)


class RequestService:
    def __init__(
        self,
        session: Session,
        fiscal_year: Optional[int] = None,
        activity: Optional[ActivityLogService] = None,
    ) -> None:
        self.session = session
        self.fiscal_year = fiscal_year or current_fiscal_year()
        self.activity = activity or ActivityLogService(session)

    def _resolver(self) -> CategoryResolver:
        return CategoryResolver(self.session, self.fiscal_year)

    def _get_for_update(self, request_id: int) -> BudgetRequest:
        stmt = (
            select(BudgetRequest)
            .options(selectinload(BudgetRequest.expense_items))
            .where(BudgetRequest.id == request_id)
            .with_for_update(of=BudgetRequest)
            .execution_options(populate_existing=True)
        )
        request = self.session.scalar(stmt)
        if request is None:
            raise NotFoundError("Request not found")
        return request

    def get(self, request_id: int) -> BudgetRequest:
        stmt = (
            select(BudgetRequest)
            .options(selectinload(BudgetRequest.expense_items))
            .where(BudgetRequest.id == request_id)
        )
        request = self.session.scalar(stmt)
        if request is None:
            raise NotFoundError("Request not found")
        return request

    def list(self, status: Optional[RequestStatus] = None) -> list[BudgetRequest]:
        stmt = (
            select(BudgetRequest)
            .options(selectinload(BudgetRequest.expense_items))
            .order_by(BudgetRequest.created_at.desc(), BudgetRequest.id.desc())
        )
        if status is not None:
            stmt = stmt.where(BudgetRequest.status == status)
        return self.session.scalars(stmt).all()

    def create(self, data: BudgetRequestIn) -> BudgetRequest:
        category = data.category.strip()
        if not category:
            raise ValidationError("Category is required")
        if data.amount_cents <= 0:
            raise ValidationError("Amount must be greater than zero")

        with unit_of_work(self.session):
            if data.sub_activity_id is not None:
                AllocationChecker(self.session).check(
                    data.sub_activity_id, data.amount_cents
                )
            request = BudgetRequest(
                project=data.project.strip(),
                category=category,
                activity=data.activity,
                sub_activity_id=data.sub_activity_id,
                requester=data.requester.strip(),
                department=data.department,
                notes=data.notes,
                request_date=data.request_date or local_today(),
                amount_cents=data.amount_cents,
                status=RequestStatus.pending,
            )
            request.expense_items = [
                ExpenseLineItem(
                    category=item.category,
                    description=item.description,
                    quantity=item.quantity,
                    unit=item.unit,
                    unit_price_cents=item.unit_price_cents,
                    total_cents=(
                        item.total_cents
                        if item.total_cents is not None
                        else line_total_cents(item.quantity, item.unit_price_cents)
                    ),
                )
                for item in data.expense_items
            ]
            self.session.add(request)
            self.session.flush()

        logger.info(
            f"request_created: request_id={request.id} amount={request.amount_cents} "
            f"items={len(request.expense_items)}"
        )
        self.activity.record(
            request.requester,
            "CREATE_REQUEST",
            {
                "request_id": request.id,
                "project": request.project,
                "amount_cents": request.amount_cents,
            },
        )
        return request

    def approve(self, request_id: int, approver_id: str) -> BudgetRequest:
        with unit_of_work(self.session):
            request = self._get_for_update(request_id)
            request.status = RequestStatus.approved
            request.approver_id = approver_id
            request.approved_at = local_now()
            applied = commit_request(self.session, request, self._resolver())

        committed = sum(delta.delta_cents for delta in applied)
        logger.info(
            f"request_approved: request_id={request_id} committed={committed} "
            f"categories={len(applied)}"
        )
        self.activity.record(
            approver_id,
            "APPROVE_REQUEST",
            {"request_id": request_id, "amount_cents": request.amount_cents},
        )
        return request

    def reject(
        self, request_id: int, approver_id: str, reason: Optional[str]
    ) -> BudgetRequest:
        with unit_of_work(self.session):
            request = self._get_for_update(request_id)
            request.status = RequestStatus.rejected
            request.approver_id = approver_id
            request.approved_at = local_now()
            request.rejection_reason = reason

        logger.info(f"request_rejected: request_id={request_id}")
        self.activity.record(
            approver_id, "REJECT_REQUEST", {"request_id": request_id, "reason": reason}
        )
        return request

    def submit_expense(self, request_id: int, report: ExpenseReportIn) -> BudgetRequest:
        with unit_of_work(self.session):
            request = self._get_for_update(request_id)
            existing = {item.id: item for item in request.expense_items}
            for reported in report.expense_items:
                item_id = _existing_item_id(reported.id)
                if item_id is None:
                    request.expense_items.append(
                        ExpenseLineItem(
                            category=reported.category or DEFAULT_REPORTED_CATEGORY,
                            description=reported.description,
                            quantity=reported.quantity or 1,
                            unit=reported.unit or DEFAULT_UNIT,
                            unit_price_cents=reported.actual_amount_cents,
                            total_cents=0,
                            actual_amount_cents=reported.actual_amount_cents,
                        )
                    )
                    continue
                item = existing.get(item_id)
                if item is None:
                    raise ValidationError(
                        f"Expense item {item_id} does not belong to request {request_id}"
                    )
                item.actual_amount_cents = reported.actual_amount_cents
            request.status = RequestStatus.waiting_verification
            request.actual_amount_cents = report.actual_total_cents
            request.return_amount_cents = report.return_amount_cents
            self.session.flush()

        logger.info(
            f"expense_submitted: request_id={request_id} "
            f"actual={report.actual_total_cents} returned={report.return_amount_cents}"
        )
        self.activity.record(
            None,
            "SUBMIT_EXPENSE_REPORT",
            {"request_id": request_id, "actual_total_cents": report.actual_total_cents},
        )
        return request

    def reject_expense(self, request_id: int, reason: Optional[str]) -> BudgetRequest:
        with unit_of_work(self.session):
            request = self._get_for_update(request_id)
            request.status = RequestStatus.approved
            request.rejection_reason = reason

        logger.info(f"expense_sent_back: request_id={request_id}")
        self.activity.record(
            None, "REJECT_EXPENSE_REPORT", {"request_id": request_id, "reason": reason}
        )
        return request

    def complete(self, request_id: int) -> BudgetRequest:
        with unit_of_work(self.session):
            request = self._get_for_update(request_id)
            request.status = RequestStatus.completed
            request.completed_at = local_now()
            resolver = self._resolver()
            applied = reconcile(self.session, request, 1, resolver)
            expenses = materialize_expenses(
                self.session, request, resolver, local_today()
            )

        logger.info(
            f"request_completed: request_id={request_id} adjustments={len(applied)} "
            f"expenses={len(expenses)}"
        )
        self.activity.record(
            None,
            "VERIFY_AND_COMPLETE_REQUEST",
            {
                "request_id": request_id,
                "return_amount_cents": request.return_amount_cents or 0,
            },
        )
        return request

    def revert_complete(self, request_id: int) -> BudgetRequest:
        with unit_of_work(self.session):
            request = self._get_for_update(request_id)
            # conditional write; a revert that committed first matches no row
            claimed = self.session.execute(
                update(BudgetRequest)
                .where(
                    BudgetRequest.id == request_id,
                    BudgetRequest.status == RequestStatus.completed,
                )
                .values(status=RequestStatus.waiting_verification, completed_at=None)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                raise InvalidStateError("Request is not completed")
            self.session.expire(request, ["status", "completed_at", "updated_at"])
            applied = reconcile(self.session, request, -1, self._resolver())
            removed = remove_materialized_expenses(
                self.session, request, get_settings().expense_revert_match
            )

        logger.info(
            f"request_reverted: request_id={request_id} adjustments={len(applied)} "
            f"expenses_removed={removed}"
        )
        self.activity.record(
            None,
            "REVERT_COMPLETE_REQUEST",
            {
                "request_id": request_id,
                "return_amount_cents": request.return_amount_cents or 0,
            },
        )
        return request

    def update_status(self, request_id: int, status: RequestStatus) -> BudgetRequest:
        # manual correction: no reconciliation runs here
        with unit_of_work(self.session):
            request = self._get_for_update(request_id)
            request.status = status

        logger.info(f"request_status_set: request_id={request_id} status={status.value}")
        self.activity.record(
            None,
            "UPDATE_REQUEST_STATUS",
            {"request_id": request_id, "status": status.value},
        )
        return request

    def delete(self, request_id: int) -> None:
        with unit_of_work(self.session):
            request = self._get_for_update(request_id)
            project = request.project
            self.session.delete(request)

        logger.info(f"request_deleted: request_id={request_id}")
        self.activity.record(
            None, "DELETE_REQUEST", {"request_id": request_id, "project": project}
        )


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, year: Optional[int] = None) -> list[Category]:
        stmt = select(Category).order_by(Category.year.desc(), Category.name)
        if year is not None:
            stmt = stmt.where(Category.year == year)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _ensure_unique(
        self, name: str, year: int, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category.id).where(Category.name == name, Category.year == year)
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ValidationError("Category with this name already exists for the year")

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        self._ensure_unique(name, data.year)
        category = Category(
            name=name,
            code=data.code,
            color=data.color,
            year=data.year,
            allocated_cents=data.allocated_cents,
            used_cents=0,
        )
        with unit_of_work(self.session):
            self.session.add(category)
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        with unit_of_work(self.session):
            category = self.get(category_id)
            old_name = category.name
            new_name = data.name.strip() if data.name is not None else old_name
            year = data.year if data.year is not None else category.year
            self._ensure_unique(new_name, year, exclude_id=category.id)

            category.name = new_name
            category.year = year
            if data.code is not None:
                category.code = data.code
            if data.color is not None:
                category.color = data.color
            if data.allocated_cents is not None:
                category.allocated_cents = data.allocated_cents

            if new_name != old_name:
                # requests hold the category by name
                result = self.session.execute(
                    update(BudgetRequest)
                    .where(BudgetRequest.category == old_name)
                    .values(category=new_name)
                    .execution_options(synchronize_session="fetch")
                )
                logger.info(
                    f"category_renamed: category_id={category.id} "
                    f"from={old_name!r} to={new_name!r} requests={result.rowcount}"
                )
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        with unit_of_work(self.session):
            category = self.get(category_id)
            has_logs = self.session.scalar(
                select(BudgetLog.id).where(BudgetLog.category_id == category.id)
            )
            has_expenses = self.session.scalar(
                select(Expense.id).where(Expense.category_id == category.id)
            )
            if has_logs is not None or has_expenses is not None:
                raise InvalidStateError(
                    "Category has budget logs or expenses and cannot be deleted"
                )
            self.session.delete(category)

    def adjust(self, category_id: int, data: BudgetAdjustmentIn) -> Category:
        """Manual change of the allocated ceiling, recorded in the budget log."""
        with unit_of_work(self.session):
            category = self.session.scalar(
                select(Category)
                .where(Category.id == category_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if category is None:
                raise NotFoundError("Category not found")
            if data.type in (BudgetLogType.add, BudgetLogType.transfer_in):
                allocated = category.allocated_cents + data.amount_cents
            else:
                allocated = category.allocated_cents - data.amount_cents
            if allocated < 0:
                raise ValidationError("Adjustment would make the allocation negative")
            category.allocated_cents = allocated
            self.session.add(
                BudgetLog(
                    category_id=category.id,
                    amount_cents=data.amount_cents,
                    type=data.type,
                    reason=data.reason,
                    user=data.user,
                )
            )
        logger.info(
            f"category_adjusted: category_id={category_id} type={data.type.value} "
            f"amount={data.amount_cents}"
        )
        return category

    def logs(self, category_id: int) -> list[BudgetLog]:
        self.get(category_id)
        stmt = (
            select(BudgetLog)
            .where(BudgetLog.category_id == category_id)
            .order_by(BudgetLog.created_at.desc(), BudgetLog.id.desc())
        )
        return self.session.scalars(stmt).all()

    def expenses(self, category_id: int) -> list[Expense]:
        self.get(category_id)
        stmt = (
            select(Expense)
            .where(Expense.category_id == category_id)
            .order_by(Expense.date.desc(), Expense.id.desc())
        )
        return self.session.scalars(stmt).all()

    def summary(self, year: Optional[int] = None) -> BudgetSummaryOut:
        fiscal = fiscal_year_by_label(year or current_fiscal_year())
        allocated, used = self.session.execute(
            select(
                func.coalesce(func.sum(Category.allocated_cents), 0),
                func.coalesce(func.sum(Category.used_cents), 0),
            ).where(Category.year == fiscal.year)
        ).one()
        names = select(Category.name).where(Category.year == fiscal.year)
        pending = self.session.scalar(
            select(func.coalesce(func.sum(BudgetRequest.amount_cents), 0)).where(
                BudgetRequest.status == RequestStatus.pending,
                BudgetRequest.category.in_(names),
            )
        )
        refund_pending = self.session.scalar(
            select(func.coalesce(func.sum(BudgetRequest.return_amount_cents), 0)).where(
                BudgetRequest.status == RequestStatus.waiting_verification,
                BudgetRequest.category.in_(names),
            )
        )
        allocated = int(allocated or 0)
        used = int(used or 0)
        return BudgetSummaryOut(
            year=fiscal.year,
            starts_on=fiscal.start,
            ends_on=fiscal.end,
            allocated_cents=allocated,
            used_cents=used,
            remaining_cents=allocated - used,
            pending_cents=int(pending or 0),
            refund_pending_cents=int(refund_pending or 0),
            usage_ratio=round(used / allocated, 4) if allocated else 0.0,
        )


class SubActivityService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, sub_activity_id: int) -> SubActivity:
        sub = self.session.get(SubActivity, sub_activity_id)
        if not sub:
            raise NotFoundError("Sub-activity not found")
        return sub

    def tree(self, category_id: Optional[int] = None) -> list[SubActivityOut]:
        stmt = select(SubActivity).order_by(SubActivity.name, SubActivity.id)
        if category_id is not None:
            stmt = stmt.where(SubActivity.category_id == category_id)
        rows = self.session.scalars(stmt).all()
        usage = AllocationChecker(self.session).usage_by_sub_activity()
        known = {sub.id for sub in rows}
        by_parent: dict[Optional[int], list[SubActivity]] = {}
        for sub in rows:
            parent = sub.parent_id if sub.parent_id in known else None
            by_parent.setdefault(parent, []).append(sub)

        def build(sub: SubActivity) -> SubActivityOut:
            used = usage.get(sub.id, 0)
            return SubActivityOut(
                id=sub.id,
                category_id=sub.category_id,
                parent_id=sub.parent_id,
                name=sub.name,
                allocated_cents=sub.allocated_cents,
                used_cents=used,
                remaining_cents=sub.allocated_cents - used,
                children=[build(child) for child in by_parent.get(sub.id, [])],
            )

        return [build(sub) for sub in by_parent.get(None, [])]

    def describe(self, sub_activity_id: int) -> SubActivityOut:
        sub = self.get(sub_activity_id)
        used = AllocationChecker(self.session).usage(sub.id)
        return SubActivityOut(
            id=sub.id,
            category_id=sub.category_id,
            parent_id=sub.parent_id,
            name=sub.name,
            allocated_cents=sub.allocated_cents,
            used_cents=used,
            remaining_cents=sub.allocated_cents - used,
        )

    def _check_parent(
        self, sub: Optional[SubActivity], parent_id: int, category_id: int
    ) -> None:
        parent = self.session.get(SubActivity, parent_id)
        if parent is None:
            raise ValidationError("Parent sub-activity not found")
        if parent.category_id != category_id:
            raise ValidationError("Parent sub-activity belongs to another category")
        cursor: Optional[SubActivity] = parent
        while cursor is not None and sub is not None:
            if cursor.id == sub.id:
                raise ValidationError("Sub-activity cannot be nested under itself")
            cursor = cursor.parent

    def create(self, data: SubActivityIn) -> SubActivity:
        if self.session.get(Category, data.category_id) is None:
            raise ValidationError("Category not found")
        if data.parent_id is not None:
            self._check_parent(None, data.parent_id, data.category_id)
        sub = SubActivity(
            category_id=data.category_id,
            parent_id=data.parent_id,
            name=data.name.strip(),
            allocated_cents=data.allocated_cents,
        )
        with unit_of_work(self.session):
            self.session.add(sub)
        self.session.refresh(sub)
        return sub

    def update(self, sub_activity_id: int, data: SubActivityUpdate) -> SubActivity:
        with unit_of_work(self.session):
            sub = self.get(sub_activity_id)
            if "parent_id" in data.model_fields_set:
                if data.parent_id is not None:
                    self._check_parent(sub, data.parent_id, sub.category_id)
                sub.parent_id = data.parent_id
            if data.name is not None:
                sub.name = data.name.strip()
            if data.allocated_cents is not None:
                sub.allocated_cents = data.allocated_cents
        self.session.refresh(sub)
        return sub

    def delete(self, sub_activity_id: int) -> None:
        with unit_of_work(self.session):
            sub = self.get(sub_activity_id)
            if sub.children:
                raise ValidationError("Sub-activity has nested sub-activities")
            self.session.execute(
                update(BudgetRequest)
                .where(BudgetRequest.sub_activity_id == sub.id)
                .values(sub_activity_id=None)
                .execution_options(synchronize_session="fetch")
            )
            self.session.delete(sub)


class ExpenseService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: ExpenseIn) -> Expense:
        with unit_of_work(self.session):
            if self.session.get(Category, data.category_id) is None:
                raise ValidationError("Category not found")
            expense = Expense(
                category_id=data.category_id,
                amount_cents=data.amount_cents,
                payee=data.payee.strip(),
                date=data.date,
                description=data.description,
            )
            self.session.add(expense)
            apply_used_delta(self.session, data.category_id, data.amount_cents)
        logger.info(
            f"expense_recorded: category_id={data.category_id} amount={data.amount_cents}"
        )
        return expense

    def delete(self, expense_id: int) -> None:
        with unit_of_work(self.session):
            expense = self.session.get(Expense, expense_id)
            if not expense:
                raise NotFoundError("Expense not found")
            if expense.request_id is not None:
                raise InvalidStateError(
                    "Expense belongs to a completed request; revert the request instead"
                )
            apply_used_delta(self.session, expense.category_id, -expense.amount_cents)
            self.session.delete(expense)
        logger.info(f"expense_deleted: expense_id={expense_id}")


class BudgetPlanService:
    def __init__(
        self, session: Session, activity: Optional[ActivityLogService] = None
    ) -> None:
        self.session = session
        self.activity = activity or ActivityLogService(session)

    def list(self, year: Optional[int] = None) -> list[BudgetPlan]:
        stmt = select(BudgetPlan).order_by(
            BudgetPlan.year, BudgetPlan.month, BudgetPlan.sub_activity_id
        )
        if year is not None:
            stmt = stmt.where(BudgetPlan.year == year)
        return self.session.scalars(stmt).all()

    def upsert(self, data: BudgetPlanIn) -> BudgetPlan:
        try:
            with unit_of_work(self.session):
                if self.session.get(SubActivity, data.sub_activity_id) is None:
                    raise ValidationError("Sub-activity not found")
                plan = self.session.scalar(
                    select(BudgetPlan).where(
                        BudgetPlan.sub_activity_id == data.sub_activity_id,
                        BudgetPlan.year == data.year,
                        BudgetPlan.month == data.month,
                    )
                )
                if plan is None:
                    plan = BudgetPlan(
                        sub_activity_id=data.sub_activity_id,
                        year=data.year,
                        month=data.month,
                        amount_cents=data.amount_cents,
                    )
                    self.session.add(plan)
                else:
                    plan.amount_cents = data.amount_cents
        except IntegrityError as exc:
            raise ValidationError("Budget plan was updated concurrently; retry") from exc
        self.activity.record(
            None,
            "UPDATE_BUDGET_PLAN",
            {
                "sub_activity_id": data.sub_activity_id,
                "year": data.year,
                "month": data.month,
                "amount_cents": data.amount_cents,
            },
        )
        return plan
