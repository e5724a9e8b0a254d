from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from fiscal import local_now


class RequestStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    waiting_verification = "waiting_verification"
    completed = "completed"


class BudgetLogType(str, Enum):
    add = "ADD"
    reduce = "REDUCE"
    transfer_in = "TRANSFER_IN"
    transfer_out = "TRANSFER_OUT"


REQUEST_STATUS_ENUM = SAEnum(
    RequestStatus,
    name="requeststatus",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

BUDGET_LOG_TYPE_ENUM = SAEnum(
    BudgetLogType,
    name="budgetlogtype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=local_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=local_now, onupdate=local_now, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(40))
    color: Mapped[Optional[str]] = mapped_column(String(9))
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # running counter, mutated only through reconciliation.apply_used_delta
    used_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    sub_activities: Mapped[list["SubActivity"]] = relationship(
        "SubActivity", back_populates="category", cascade="all, delete-orphan"
    )
    logs: Mapped[list["BudgetLog"]] = relationship(
        "BudgetLog", back_populates="category"
    )
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("name", "year", name="uq_category_name_year"),
        Index("ix_categories_year", "year"),
    )

    @property
    def remaining_cents(self) -> int:
        return self.allocated_cents - self.used_cents


class SubActivity(Base, TimestampMixin):
    __tablename__ = "sub_activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("sub_activities.id"))
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="sub_activities"
    )
    parent: Mapped[Optional["SubActivity"]] = relationship(
        "SubActivity", remote_side="SubActivity.id", back_populates="children"
    )
    children: Mapped[list["SubActivity"]] = relationship(
        "SubActivity", back_populates="parent"
    )
    plans: Mapped[list["BudgetPlan"]] = relationship(
        "BudgetPlan", back_populates="sub_activity", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "allocated_cents >= 0", name="ck_sub_activity_allocated_positive"
        ),
    )


class BudgetRequest(Base, TimestampMixin):
    __tablename__ = "budget_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project: Mapped[str] = mapped_column(String(200), nullable=False)
    # category is referenced by name and resolved per fiscal year
    category: Mapped[str] = mapped_column(String(120), nullable=False)
    activity: Mapped[Optional[str]] = mapped_column(String(200))
    sub_activity_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sub_activities.id", ondelete="SET NULL")
    )
    requester: Mapped[str] = mapped_column(String(120), nullable=False)
    department: Mapped[Optional[str]] = mapped_column(String(120))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    request_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    return_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[RequestStatus] = mapped_column(
        REQUEST_STATUS_ENUM, nullable=False, default=RequestStatus.pending
    )
    approver_id: Mapped[Optional[str]] = mapped_column(String(120))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)

    sub_activity: Mapped[Optional["SubActivity"]] = relationship("SubActivity")
    expense_items: Mapped[list["ExpenseLineItem"]] = relationship(
        "ExpenseLineItem",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="ExpenseLineItem.id",
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_request_amount_positive"),
        Index("ix_requests_sub_activity_status", "sub_activity_id", "status"),
        Index("ix_requests_status", "status"),
    )


class ExpenseLineItem(Base, TimestampMixin):
    __tablename__ = "expense_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(
        ForeignKey("budget_requests.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[Optional[str]] = mapped_column(String(120))
    description: Mapped[str] = mapped_column(String(300), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=1)
    unit: Mapped[Optional[str]] = mapped_column(String(40))
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # fixed when the item is created; actuals never rewrite it
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)

    request: Mapped["BudgetRequest"] = relationship(
        "BudgetRequest", back_populates="expense_items"
    )


class BudgetLog(Base):
    __tablename__ = "budget_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[BudgetLogType] = mapped_column(BUDGET_LOG_TYPE_ENUM, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    user: Mapped[str] = mapped_column(String(120), nullable=False, default="System")
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=local_now, nullable=False
    )

    category: Mapped["Category"] = relationship("Category", back_populates="logs")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_log_amount_positive"),
        Index("ix_budget_logs_category_created", "category_id", "created_at"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    # set for rows materialized from a completed request
    request_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_requests.id", ondelete="SET NULL")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payee: Mapped[str] = mapped_column(String(120), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped["Category"] = relationship("Category", back_populates="expenses")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_expense_amount_positive"),
        Index("ix_expenses_category_date", "category_id", "date"),
        Index("ix_expenses_request", "request_id"),
    )


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(120))
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=local_now, nullable=False
    )

    __table_args__ = (Index("ix_activity_logs_created", "created_at"),)


class BudgetPlan(Base, TimestampMixin):
    __tablename__ = "budget_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sub_activity_id: Mapped[int] = mapped_column(
        ForeignKey("sub_activities.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    sub_activity: Mapped["SubActivity"] = relationship(
        "SubActivity", back_populates="plans"
    )

    __table_args__ = (
        UniqueConstraint(
            "sub_activity_id", "year", "month", name="uq_budget_plan_sub_month"
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_plan_month"),
        CheckConstraint("amount_cents >= 0", name="ck_budget_plan_amount_positive"),
    )
