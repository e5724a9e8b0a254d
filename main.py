import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from errors import BudgetError, InsufficientBudget
from models import RequestStatus
from schemas import (
    ActivityLogOut,
    ApproveIn,
    BudgetAdjustmentIn,
    BudgetLogOut,
    BudgetPlanIn,
    BudgetPlanOut,
    BudgetRequestIn,
    BudgetRequestOut,
    BudgetSummaryOut,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    ExpenseIn,
    ExpenseOut,
    ExpenseReportIn,
    RejectExpenseIn,
    RejectIn,
    StatusIn,
    SubActivityIn,
    SubActivityOut,
    SubActivityUpdate,
)
from services import (
    ActivityLogService,
    BudgetPlanService,
    CategoryService,
    ExpenseService,
    RequestService,
    SubActivityService,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Desk")


@app.exception_handler(BudgetError)
async def budget_error_handler(request: Request, exc: BudgetError):
    content: dict[str, object] = {"detail": str(exc)}
    if isinstance(exc, InsufficientBudget):
        content["remaining_cents"] = exc.remaining_cents
        content["requested_cents"] = exc.requested_cents
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400, content={"detail": jsonable_encoder(exc.errors())}
    )


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.exception(
        f"unhandled_error: method={request.method} path={request.url.path}"
    )
    detail = str(exc) if get_settings().debug else "Internal Server Error"
    return JSONResponse(status_code=500, content={"detail": detail})


def _request_out(request) -> BudgetRequestOut:
    return BudgetRequestOut.model_validate(request)


# --- Budget requests ---


@app.get("/requests", response_model=list[BudgetRequestOut])
def list_requests(
    status: Optional[RequestStatus] = None, db: Session = Depends(get_db)
):
    return [_request_out(r) for r in RequestService(db).list(status)]


@app.get("/requests/{request_id}", response_model=BudgetRequestOut)
def get_request(request_id: int, db: Session = Depends(get_db)):
    return _request_out(RequestService(db).get(request_id))


@app.post("/requests", response_model=BudgetRequestOut)
def create_request(payload: BudgetRequestIn, db: Session = Depends(get_db)):
    return _request_out(RequestService(db).create(payload))


@app.put("/requests/{request_id}/approve", response_model=BudgetRequestOut)
def approve_request(request_id: int, payload: ApproveIn, db: Session = Depends(get_db)):
    return _request_out(RequestService(db).approve(request_id, payload.approver_id))


@app.put("/requests/{request_id}/reject", response_model=BudgetRequestOut)
def reject_request(request_id: int, payload: RejectIn, db: Session = Depends(get_db)):
    service = RequestService(db)
    return _request_out(
        service.reject(request_id, payload.approver_id, payload.reason)
    )


@app.put("/requests/{request_id}/submit-expense", response_model=BudgetRequestOut)
def submit_expense(
    request_id: int, payload: ExpenseReportIn, db: Session = Depends(get_db)
):
    return _request_out(RequestService(db).submit_expense(request_id, payload))


@app.put("/requests/{request_id}/reject-expense", response_model=BudgetRequestOut)
def reject_expense(
    request_id: int, payload: RejectExpenseIn, db: Session = Depends(get_db)
):
    return _request_out(RequestService(db).reject_expense(request_id, payload.reason))


@app.put("/requests/{request_id}/complete", response_model=BudgetRequestOut)
def complete_request(request_id: int, db: Session = Depends(get_db)):
    return _request_out(RequestService(db).complete(request_id))


@app.put("/requests/{request_id}/revert-complete", response_model=BudgetRequestOut)
def revert_complete_request(request_id: int, db: Session = Depends(get_db)):
    return _request_out(RequestService(db).revert_complete(request_id))


@app.put("/requests/{request_id}/status", response_model=BudgetRequestOut)
def update_request_status(
    request_id: int, payload: StatusIn, db: Session = Depends(get_db)
):
    return _request_out(RequestService(db).update_status(request_id, payload.status))


@app.delete("/requests/{request_id}")
def delete_request(request_id: int, db: Session = Depends(get_db)):
    RequestService(db).delete(request_id)
    return {"success": True}


# --- Categories ---


@app.get("/categories", response_model=list[CategoryOut])
def list_categories(year: Optional[int] = None, db: Session = Depends(get_db)):
    return [CategoryOut.model_validate(c) for c in CategoryService(db).list_all(year)]


@app.post("/categories", response_model=CategoryOut)
def create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    return CategoryOut.model_validate(CategoryService(db).create(payload))


@app.put("/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int, payload: CategoryUpdate, db: Session = Depends(get_db)
):
    return CategoryOut.model_validate(CategoryService(db).update(category_id, payload))


@app.delete("/categories/{category_id}")
def delete_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).delete(category_id)
    return {"success": True}


@app.post("/categories/{category_id}/adjust", response_model=CategoryOut)
def adjust_category(
    category_id: int, payload: BudgetAdjustmentIn, db: Session = Depends(get_db)
):
    return CategoryOut.model_validate(CategoryService(db).adjust(category_id, payload))


@app.get("/categories/{category_id}/logs", response_model=list[BudgetLogOut])
def category_logs(category_id: int, db: Session = Depends(get_db)):
    return [
        BudgetLogOut.model_validate(log)
        for log in CategoryService(db).logs(category_id)
    ]


@app.get("/categories/{category_id}/expenses", response_model=list[ExpenseOut])
def category_expenses(category_id: int, db: Session = Depends(get_db)):
    return [
        ExpenseOut.model_validate(expense)
        for expense in CategoryService(db).expenses(category_id)
    ]


@app.get("/summary", response_model=BudgetSummaryOut)
def budget_summary(year: Optional[int] = None, db: Session = Depends(get_db)):
    return CategoryService(db).summary(year)


# --- Sub-activities ---


@app.get("/sub-activities", response_model=list[SubActivityOut])
def list_sub_activities(
    category_id: Optional[int] = None, db: Session = Depends(get_db)
):
    return SubActivityService(db).tree(category_id)


@app.post("/sub-activities", response_model=SubActivityOut)
def create_sub_activity(payload: SubActivityIn, db: Session = Depends(get_db)):
    service = SubActivityService(db)
    sub = service.create(payload)
    return service.describe(sub.id)


@app.put("/sub-activities/{sub_activity_id}", response_model=SubActivityOut)
def update_sub_activity(
    sub_activity_id: int, payload: SubActivityUpdate, db: Session = Depends(get_db)
):
    service = SubActivityService(db)
    service.update(sub_activity_id, payload)
    return service.describe(sub_activity_id)


@app.delete("/sub-activities/{sub_activity_id}")
def delete_sub_activity(sub_activity_id: int, db: Session = Depends(get_db)):
    SubActivityService(db).delete(sub_activity_id)
    return {"success": True}


# --- Expenses, plans, activity ---


@app.post("/expenses", response_model=ExpenseOut)
def create_expense(payload: ExpenseIn, db: Session = Depends(get_db)):
    return ExpenseOut.model_validate(ExpenseService(db).create(payload))


@app.delete("/expenses/{expense_id}")
def delete_expense(expense_id: int, db: Session = Depends(get_db)):
    ExpenseService(db).delete(expense_id)
    return {"success": True}


@app.get("/budget-plans", response_model=list[BudgetPlanOut])
def list_budget_plans(year: Optional[int] = None, db: Session = Depends(get_db)):
    return [BudgetPlanOut.model_validate(p) for p in BudgetPlanService(db).list(year)]


@app.api_route(
    "/budget-plans", methods=["POST", "PUT"], response_model=BudgetPlanOut
)
def upsert_budget_plan(payload: BudgetPlanIn, db: Session = Depends(get_db)):
    return BudgetPlanOut.model_validate(BudgetPlanService(db).upsert(payload))


@app.get("/activity-logs", response_model=list[ActivityLogOut])
def list_activity_logs(limit: int = 100, db: Session = Depends(get_db)):
    limit = min(max(limit, 1), 500)
    return [
        ActivityLogOut.model_validate(entry)
        for entry in ActivityLogService(db).recent(limit)
    ]


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
