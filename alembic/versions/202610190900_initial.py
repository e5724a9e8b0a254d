"""initial budget schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None

REQUEST_STATUSES = (
    "pending",
    "approved",
    "rejected",
    "waiting_verification",
    "completed",
)
BUDGET_LOG_TYPES = ("ADD", "REDUCE", "TRANSFER_IN", "TRANSFER_OUT")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("code", sa.String(length=40)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("allocated_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("used_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("name", "year", name="uq_category_name_year"),
    )
    op.create_index("ix_categories_year", "categories", ["year"])

    op.create_table(
        "sub_activities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("sub_activities.id")),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("allocated_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint(
            "allocated_cents >= 0", name="ck_sub_activity_allocated_positive"
        ),
    )

    op.create_table(
        "budget_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=120), nullable=False),
        sa.Column("activity", sa.String(length=200)),
        sa.Column(
            "sub_activity_id",
            sa.Integer(),
            sa.ForeignKey("sub_activities.id", ondelete="SET NULL"),
        ),
        sa.Column("requester", sa.String(length=120), nullable=False),
        sa.Column("department", sa.String(length=120)),
        sa.Column("notes", sa.Text()),
        sa.Column("request_date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("actual_amount_cents", sa.Integer()),
        sa.Column("return_amount_cents", sa.Integer()),
        sa.Column(
            "status",
            sa.Enum(*REQUEST_STATUSES, name="requeststatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("approver_id", sa.String(length=120)),
        sa.Column("approved_at", sa.DateTime()),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("rejection_reason", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_request_amount_positive"),
    )
    op.create_index(
        "ix_requests_sub_activity_status",
        "budget_requests",
        ["sub_activity_id", "status"],
    )
    op.create_index("ix_requests_status", "budget_requests", ["status"])

    op.create_table(
        "expense_line_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "request_id",
            sa.Integer(),
            sa.ForeignKey("budget_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=120)),
        sa.Column("description", sa.String(length=300), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False, server_default="1"),
        sa.Column("unit", sa.String(length=40)),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actual_amount_cents", sa.Integer()),
        *_timestamps(),
    )

    op.create_table(
        "budget_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", sa.Enum(*BUDGET_LOG_TYPES, name="budgetlogtype"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("user", sa.String(length=120), nullable=False, server_default="System"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_log_amount_positive"),
    )
    op.create_index(
        "ix_budget_logs_category_created", "budget_logs", ["category_id", "created_at"]
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "request_id",
            sa.Integer(),
            sa.ForeignKey("budget_requests.id", ondelete="SET NULL"),
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("payee", sa.String(length=120), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_expense_amount_positive"),
    )
    op.create_index("ix_expenses_category_date", "expenses", ["category_id", "date"])
    op.create_index("ix_expenses_request", "expenses", ["request_id"])

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=120)),
        sa.Column("action", sa.String(length=60), nullable=False),
        sa.Column("details", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_activity_logs_created", "activity_logs", ["created_at"])

    op.create_table(
        "budget_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "sub_activity_id",
            sa.Integer(),
            sa.ForeignKey("sub_activities.id"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "sub_activity_id", "year", "month", name="uq_budget_plan_sub_month"
        ),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_plan_month"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_plan_amount_positive"),
    )


def downgrade():
    op.drop_table("budget_plans")
    op.drop_index("ix_activity_logs_created", table_name="activity_logs")
    op.drop_table("activity_logs")
    op.drop_index("ix_expenses_request", table_name="expenses")
    op.drop_index("ix_expenses_category_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_budget_logs_category_created", table_name="budget_logs")
    op.drop_table("budget_logs")
    op.drop_table("expense_line_items")
    op.drop_index("ix_requests_status", table_name="budget_requests")
    op.drop_index("ix_requests_sub_activity_status", table_name="budget_requests")
    op.drop_table("budget_requests")
    op.drop_table("sub_activities")
    op.drop_index("ix_categories_year", table_name="categories")
    op.drop_table("categories")
