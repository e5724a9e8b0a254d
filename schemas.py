import json
from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import BudgetLogType, RequestStatus


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    code: Optional[str] = Field(None, max_length=40)
    color: Optional[str] = Field(None, max_length=9)
    year: int = Field(..., ge=1900, le=3000)
    allocated_cents: int = Field(0, ge=0)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    code: Optional[str] = Field(None, max_length=40)
    color: Optional[str] = Field(None, max_length=9)
    year: Optional[int] = Field(None, ge=1900, le=3000)
    allocated_cents: Optional[int] = Field(None, ge=0)


class BudgetAdjustmentIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    type: BudgetLogType
    reason: str = Field(..., min_length=1)
    user: str = Field("System", min_length=1, max_length=120)


class SubActivityIn(BaseModel):
    category_id: int
    name: str = Field(..., min_length=1, max_length=200)
    allocated_cents: int = Field(0, ge=0)
    parent_id: Optional[int] = None


class SubActivityUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    allocated_cents: Optional[int] = Field(None, ge=0)
    parent_id: Optional[int] = None


class ExpenseItemIn(BaseModel):
    category: Optional[str] = Field(None, max_length=120)
    description: str = Field(..., min_length=1, max_length=300)
    quantity: float = Field(1, gt=0)
    unit: Optional[str] = Field(None, max_length=40)
    unit_price_cents: int = Field(..., ge=0)
    total_cents: Optional[int] = Field(None, ge=0)


class BudgetRequestIn(BaseModel):
    project: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., max_length=120)
    activity: Optional[str] = Field(None, max_length=200)
    sub_activity_id: Optional[int] = None
    requester: str = Field(..., min_length=1, max_length=120)
    department: Optional[str] = Field(None, max_length=120)
    notes: Optional[str] = None
    request_date: Optional[date] = None
    amount_cents: int
    expense_items: list[ExpenseItemIn] = Field(default_factory=list)


class ReportedItemIn(BaseModel):
    # existing items carry their numeric id; new rows use "temp-..." or omit it
    id: Optional[Union[int, str]] = None
    category: Optional[str] = Field(None, max_length=120)
    description: str = Field("", max_length=300)
    quantity: Optional[float] = Field(None, gt=0)
    unit: Optional[str] = Field(None, max_length=40)
    actual_amount_cents: int = Field(0, ge=0)


class ExpenseReportIn(BaseModel):
    expense_items: list[ReportedItemIn] = Field(default_factory=list)
    actual_total_cents: int = Field(..., ge=0)
    return_amount_cents: int = Field(0, ge=0)


class ApproveIn(BaseModel):
    approver_id: str = Field(..., min_length=1, max_length=120)


class RejectIn(BaseModel):
    approver_id: str = Field(..., min_length=1, max_length=120)
    reason: Optional[str] = None


class RejectExpenseIn(BaseModel):
    reason: Optional[str] = None


class StatusIn(BaseModel):
    status: RequestStatus


class ExpenseIn(BaseModel):
    category_id: int
    amount_cents: int = Field(..., gt=0)
    payee: str = Field(..., min_length=1, max_length=120)
    date: date
    description: Optional[str] = None


class BudgetPlanIn(BaseModel):
    sub_activity_id: int
    year: int = Field(..., ge=1900, le=3000)
    month: int = Field(..., ge=1, le=12)
    amount_cents: int = Field(..., ge=0)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    code: Optional[str]
    color: Optional[str]
    year: int
    allocated_cents: int
    used_cents: int
    remaining_cents: int


class SubActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    parent_id: Optional[int]
    name: str
    allocated_cents: int
    used_cents: int = 0
    remaining_cents: int = 0
    children: list["SubActivityOut"] = Field(default_factory=list)


SubActivityOut.model_rebuild()


class ExpenseItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category: Optional[str]
    description: str
    quantity: float
    unit: Optional[str]
    unit_price_cents: int
    total_cents: int
    actual_amount_cents: Optional[int]


class BudgetRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project: str
    category: str
    activity: Optional[str]
    sub_activity_id: Optional[int]
    requester: str
    department: Optional[str]
    notes: Optional[str]
    request_date: date
    amount_cents: int
    actual_amount_cents: Optional[int]
    return_amount_cents: Optional[int]
    status: RequestStatus
    approver_id: Optional[str]
    approved_at: Optional[datetime]
    completed_at: Optional[datetime]
    rejection_reason: Optional[str]
    created_at: datetime
    expense_items: list[ExpenseItemOut] = Field(default_factory=list)


class BudgetLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    amount_cents: int
    type: BudgetLogType
    reason: str
    user: str
    created_at: datetime


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    request_id: Optional[int]
    amount_cents: int
    payee: str
    date: date
    description: Optional[str]


class ActivityLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[str]
    action: str
    details: Optional[dict]
    created_at: datetime

    @field_validator("details", mode="before")
    @classmethod
    def _decode_details(cls, value):
        if isinstance(value, str):
            return json.loads(value)
        return value


class BudgetPlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sub_activity_id: int
    year: int
    month: int
    amount_cents: int


class BudgetSummaryOut(BaseModel):
    year: int
    starts_on: date
    ends_on: date
    allocated_cents: int
    used_cents: int
    remaining_cents: int
    pending_cents: int
    refund_pending_cents: int
    usage_ratio: float
