from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from errors import InsufficientBudget, ValidationError
from models import (
    BudgetLog,
    BudgetLogType,
    BudgetRequest,
    Category,
    Expense,
    RequestStatus,
    SubActivity,
)

logger = logging.getLogger(__name__)

SYSTEM_USER = "System"
DEFAULT_EXPENSE_DESCRIPTION = "Project Expense"
SUGGESTION_MAX_DISTANCE = 2


class AllocationChecker:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _committed(self):
        return select(
            func.coalesce(func.sum(BudgetRequest.amount_cents), 0),
            func.coalesce(func.sum(BudgetRequest.return_amount_cents), 0),
        ).where(BudgetRequest.status != RequestStatus.rejected)

    def usage(self, sub_activity_id: int) -> int:
        amount, returned = self.session.execute(
            self._committed().where(BudgetRequest.sub_activity_id == sub_activity_id)
        ).one()
        return int(amount or 0) - int(returned or 0)

    def usage_by_sub_activity(self) -> dict[int, int]:
        stmt = (
            self._committed()
            .add_columns(BudgetRequest.sub_activity_id)
            .where(BudgetRequest.sub_activity_id.is_not(None))
            .group_by(BudgetRequest.sub_activity_id)
        )
        return {
            row[2]: int(row[0] or 0) - int(row[1] or 0)
            for row in self.session.execute(stmt).all()
        }

    def check(self, sub_activity_id: int, requested_cents: int) -> int:
        """Raise InsufficientBudget if the request would overrun the sub-activity.

        Returns the remaining balance before the request.
        """
        sub = self.session.get(SubActivity, sub_activity_id)
        if sub is None:
            raise ValidationError("Sub-activity not found")
        used = self.usage(sub.id)
        remaining = sub.allocated_cents - used
        if used + requested_cents > sub.allocated_cents:
            logger.info(
                f"allocation_rejected: sub_activity_id={sub.id} "
                f"remaining={remaining} requested={requested_cents}"
            )
            raise InsufficientBudget(sub.name, remaining, requested_cents)
        return remaining


@dataclass(frozen=True)
class CategoryResolution:
    name: str
    category: Optional[Category] = None
    via_fallback: bool = False
    suggestion: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.category is not None


class CategoryResolver:
    """Maps category names on requests and line items to one fiscal year's rows."""

    def __init__(self, session: Session, fiscal_year: int) -> None:
        self.session = session
        self.fiscal_year = fiscal_year
        self._by_name: Optional[dict[str, Category]] = None

    def _categories(self) -> dict[str, Category]:
        if self._by_name is None:
            rows = self.session.scalars(
                select(Category).where(Category.year == self.fiscal_year)
            ).all()
            self._by_name = {category.name: category for category in rows}
        return self._by_name

    def resolve(
        self, name: Optional[str], *, fallback: Optional[str] = None
    ) -> CategoryResolution:
        categories = self._categories()
        key = name or ""
        category = categories.get(key)
        if category is not None:
            return CategoryResolution(key, category)
        if fallback is not None and fallback != key:
            category = categories.get(fallback)
            if category is not None:
                return CategoryResolution(key, category, via_fallback=True)
        return CategoryResolution(key, suggestion=self._closest(key))

    def _closest(self, name: str) -> Optional[str]:
        needle = name.strip().lower()
        if not needle:
            return None
        best_distance: Optional[int] = None
        best: Optional[str] = None
        for candidate in self._categories():
            dist = int(Levenshtein.distance(needle, candidate.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = candidate
        if best_distance is not None and best_distance <= SUGGESTION_MAX_DISTANCE:
            return best
        return None


def _warn_unresolved(
    resolution: CategoryResolution, request: BudgetRequest, stage: str
) -> None:
    hint = f" closest={resolution.suggestion!r}" if resolution.suggestion else ""
    logger.warning(
        f"category_unresolved: stage={stage} request_id={request.id} "
        f"category={resolution.name!r}{hint}"
    )


@dataclass(frozen=True)
class AppliedDelta:
    category_id: int
    category_name: str
    delta_cents: int
    log_type: Optional[BudgetLogType] = None
    reason: Optional[str] = None


@dataclass
class CategoryTally:
    category: Category
    allocated_cents: int = 0
    actual_cents: int = 0

    @property
    def net_cents(self) -> int:
        return self.actual_cents - self.allocated_cents


def apply_used_delta(session: Session, category_id: int, delta_cents: int) -> None:
    """Atomically shift ``Category.used_cents`` by ``delta_cents`` in SQL."""
    if delta_cents == 0:
        return
    session.execute(
        update(Category)
        .where(Category.id == category_id)
        .values(used_cents=Category.used_cents + delta_cents)
        .execution_options(synchronize_session=False)
    )
    cached = session.identity_map.get(Session.identity_key(Category, category_id))
    if cached is not None:
        session.expire(cached, ["used_cents"])


def attribute_commitments(request: BudgetRequest) -> dict[str, int]:
    if not request.expense_items:
        return {request.category: request.amount_cents}
    totals: dict[str, int] = {}
    for item in request.expense_items:
        name = item.category or request.category
        totals[name] = totals.get(name, 0) + (item.total_cents or 0)
    return totals


def commit_request(
    session: Session, request: BudgetRequest, resolver: CategoryResolver
) -> list[AppliedDelta]:
    applied: list[AppliedDelta] = []
    for name, amount in attribute_commitments(request).items():
        resolution = resolver.resolve(name)
        if not resolution.found:
            _warn_unresolved(resolution, request, "approve")
            continue
        category = resolution.category
        apply_used_delta(session, category.id, amount)
        applied.append(AppliedDelta(category.id, category.name, amount))
    return applied


def _actual_sources(request: BudgetRequest) -> list[tuple[str, int, int, Optional[str]]]:
    if request.expense_items:
        return [
            (
                item.category or request.category,
                item.total_cents or 0,
                item.actual_amount_cents or 0,
                item.description,
            )
            for item in request.expense_items
        ]
    return [
        (request.category, request.amount_cents, request.actual_amount_cents or 0, None)
    ]


def tally_actuals(
    request: BudgetRequest, resolver: CategoryResolver
) -> list[CategoryTally]:
    tallies: dict[int, CategoryTally] = {}
    for name, allocated, actual, _ in _actual_sources(request):
        resolution = resolver.resolve(name, fallback=request.category)
        if not resolution.found:
            _warn_unresolved(resolution, request, "reconcile")
            continue
        tally = tallies.setdefault(
            resolution.category.id, CategoryTally(resolution.category)
        )
        tally.allocated_cents += allocated
        tally.actual_cents += actual
    return list(tallies.values())


def _reason(direction: int, net_cents: int, label: str) -> str:
    if direction > 0:
        if net_cents < 0:
            return f"Return unused budget: {label}"
        return f"Charge overage: {label}"
    if net_cents < 0:
        return f"Cancel close-out (reclaim returned budget): {label}"
    return f"Cancel close-out (release overage charge): {label}"


def reconcile(
    session: Session,
    request: BudgetRequest,
    direction: int,
    resolver: CategoryResolver,
) -> list[AppliedDelta]:
    """True up each category from the committed amount to the reported actuals.

    ``direction`` 1 applies the close-out, -1 undoes it. Running both leaves
    ``used_cents`` exactly where it started.
    """
    if direction not in (1, -1):
        raise ValueError("direction must be 1 or -1")
    applied: list[AppliedDelta] = []
    for tally in tally_actuals(request, resolver):
        net = tally.net_cents
        if net == 0:
            continue
        category = tally.category
        delta = net * direction
        log_type = BudgetLogType.add if delta > 0 else BudgetLogType.reduce
        reason = _reason(direction, net, f"{request.project} ({category.name})")
        apply_used_delta(session, category.id, delta)
        session.add(
            BudgetLog(
                category_id=category.id,
                amount_cents=abs(net),
                type=log_type,
                reason=reason,
                user=SYSTEM_USER,
            )
        )
        logger.info(
            f"category_reconciled: request_id={request.id} category_id={category.id} "
            f"direction={direction} delta={delta}"
        )
        applied.append(
            AppliedDelta(category.id, category.name, delta, log_type, reason)
        )
    return applied


def expense_description(project: str, description: Optional[str]) -> str:
    return f"[{project}] {description or DEFAULT_EXPENSE_DESCRIPTION}"


def materialize_expenses(
    session: Session,
    request: BudgetRequest,
    resolver: CategoryResolver,
    on: date,
) -> list[Expense]:
    created: list[Expense] = []
    for name, _, actual, description in _actual_sources(request):
        if actual <= 0:
            continue
        resolution = resolver.resolve(name, fallback=request.category)
        if not resolution.found:
            _warn_unresolved(resolution, request, "materialize")
            continue
        expense = Expense(
            category_id=resolution.category.id,
            request_id=request.id,
            amount_cents=actual,
            payee=request.requester,
            date=on,
            description=expense_description(request.project, description),
        )
        session.add(expense)
        created.append(expense)
    return created


def remove_materialized_expenses(
    session: Session, request: BudgetRequest, match: str = "request_id"
) -> int:
    if match == "project_prefix":
        # matches every expense whose description carries this project tag,
        # including ones materialized by other requests of the same project
        stmt = delete(Expense).where(
            Expense.description.startswith(f"[{request.project}]", autoescape=True)
        )
    elif match == "request_id":
        stmt = delete(Expense).where(Expense.request_id == request.id)
    else:
        raise ValueError(f"Unknown expense match mode: {match}")
    result = session.execute(stmt.execution_options(synchronize_session="fetch"))
    return int(result.rowcount or 0)
