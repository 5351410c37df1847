import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from config import get_settings
from errors import ConsistencyError, NotFoundError, StorageError, ValidationError
from fx_rates import FxRateService
from ledger import BucketKey, Drift
from models import BudgetGoal, Expense, RecurringTemplate
from money import format_amount
from periods import resolve_period
from scheduler import SchedulerManager
from schemas import BudgetGoalIn, ExpenseIn, RecurringTemplateIn
from services import Coordinator
from storage import SqlStorage


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Expense Ledger")


@app.on_event("startup")
def startup_event():
    storage = SqlStorage()
    storage.create_schema()
    coordinator = Coordinator(storage)
    coordinator.load()
    app.state.coordinator = coordinator
    app.state.scheduler = SchedulerManager(coordinator)
    app.state.scheduler.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.stop()


def get_coordinator(request: Request) -> Coordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Ledger not loaded")
    return coordinator


@app.exception_handler(NotFoundError)
def not_found_handler(_request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
def validation_handler(_request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ConsistencyError)
def consistency_handler(_request: Request, exc: ConsistencyError):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "drifts": [drift_out(d) for d in exc.drifts]},
    )


@app.exception_handler(StorageError)
def storage_handler(_request: Request, exc: StorageError):
    logger.error(f"storage_error: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def expense_out(expense: Expense) -> dict:
    currency = expense.currency_code or get_settings().ledger_currency
    return {
        "id": expense.id,
        "title": expense.title,
        "amount_cents": expense.amount_cents,
        "amount_display": format_amount(expense.amount_cents, currency),
        "date": expense.date,
        "category": expense.category,
        "notes": expense.notes,
        "currency_code": currency,
        "origin_template_id": expense.origin_template_id,
    }


def template_out(template: RecurringTemplate) -> dict:
    return {
        "id": template.id,
        "title": template.title,
        "amount_cents": template.amount_cents,
        "category": template.category,
        "notes": template.notes,
        "currency_code": template.currency_code,
        "start_date": template.start_date,
        "end_date": template.end_date,
        "interval_unit": template.interval_unit,
        "interval_count": template.interval_count,
        "pattern": template.pattern.describe(),
        "anchor_day_of_month": template.anchor_day_of_month,
        "last_generated_date": template.last_generated_date,
        "active": template.active,
    }


def goal_out(goal: BudgetGoal) -> dict:
    return {
        "category": goal.category,
        "month": goal.month,
        "year": goal.year,
        "limit_cents": goal.limit_cents,
        "spent_cents": goal.spent_cents,
    }


def key_out(key: BucketKey) -> dict:
    return {"category": key.category, "month": key.month, "year": key.year}


def drift_out(drift: Drift) -> dict:
    return {
        **key_out(drift.key),
        "tracked_cents": drift.tracked_cents,
        "actual_cents": drift.actual_cents,
    }


def _ratio(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


class ActiveIn(BaseModel):
    active: bool


# Expenses


@app.get("/expenses")
def list_expenses(
    category: Optional[str] = None,
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    template_id: Optional[str] = None,
    coordinator: Coordinator = Depends(get_coordinator),
):
    start_date = end_date = None
    if period or start or end:
        resolved = resolve_period(period or "custom", start, end)
        start_date, end_date = resolved.start, resolved.end
    rows = coordinator.list_expenses(
        category=category, start=start_date, end=end_date, template_id=template_id
    )
    return [expense_out(e) for e in rows]


@app.post("/expenses", status_code=201)
def create_expense(data: ExpenseIn, coordinator: Coordinator = Depends(get_coordinator)):
    return expense_out(coordinator.create_expense(data))


@app.get("/expenses/{expense_id}")
def get_expense(
    expense_id: str,
    display_currency: Optional[str] = None,
    coordinator: Coordinator = Depends(get_coordinator),
):
    expense = coordinator.get_expense(expense_id)
    payload = expense_out(expense)
    if display_currency:
        try:
            cents, quote = FxRateService().convert_for_display(
                expense.amount_cents,
                payload["currency_code"],
                display_currency,
                expense.date,
            )
        except (RuntimeError, ValueError) as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        payload["display"] = {
            "currency_code": display_currency.upper(),
            "amount_cents": cents,
            "amount_display": format_amount(cents, display_currency),
            "rate_date": quote.rate_date if quote else None,
        }
    return payload


@app.put("/expenses/{expense_id}")
def update_expense(
    expense_id: str, data: ExpenseIn, coordinator: Coordinator = Depends(get_coordinator)
):
    return expense_out(coordinator.update_expense(expense_id, data))


@app.delete("/expenses/{expense_id}", status_code=204)
def delete_expense(expense_id: str, coordinator: Coordinator = Depends(get_coordinator)):
    coordinator.delete_expense(expense_id)
    return Response(status_code=204)


# Recurring templates


@app.get("/templates")
def list_templates(coordinator: Coordinator = Depends(get_coordinator)):
    return [template_out(t) for t in coordinator.list_templates()]


@app.get("/templates/statistics")
def template_statistics(coordinator: Coordinator = Depends(get_coordinator)):
    return coordinator.recurring_statistics()


@app.post("/templates", status_code=201)
def create_template(
    data: RecurringTemplateIn, coordinator: Coordinator = Depends(get_coordinator)
):
    return template_out(coordinator.create_template(data))


@app.get("/templates/{template_id}")
def get_template(template_id: str, coordinator: Coordinator = Depends(get_coordinator)):
    return template_out(coordinator.get_template(template_id))


@app.put("/templates/{template_id}")
def update_template(
    template_id: str,
    data: RecurringTemplateIn,
    coordinator: Coordinator = Depends(get_coordinator),
):
    return template_out(coordinator.update_template(template_id, data))


@app.post("/templates/{template_id}/active")
def set_template_active(
    template_id: str, data: ActiveIn, coordinator: Coordinator = Depends(get_coordinator)
):
    return template_out(coordinator.set_template_active(template_id, data.active))


@app.delete("/templates/{template_id}", status_code=204)
def delete_template(template_id: str, coordinator: Coordinator = Depends(get_coordinator)):
    coordinator.delete_template(template_id)
    return Response(status_code=204)


@app.get("/templates/{template_id}/upcoming")
def upcoming_occurrences(
    template_id: str, until: date, coordinator: Coordinator = Depends(get_coordinator)
):
    return {"dates": coordinator.upcoming(template_id, until)}


@app.post("/recurring/run")
def run_recurring(
    as_of: Optional[date] = None, coordinator: Coordinator = Depends(get_coordinator)
):
    created = coordinator.generate_due_expenses(as_of)
    return {"created": [expense_out(e) for e in created]}


# Budgets


@app.put("/budgets")
def set_budget(data: BudgetGoalIn, coordinator: Coordinator = Depends(get_coordinator)):
    goal = coordinator.set_budget(data.category, data.limit_cents, data.month, data.year)
    return goal_out(goal)


@app.delete("/budgets/{category}/{year}/{month}", status_code=204)
def delete_budget(
    category: str, year: int, month: int, coordinator: Coordinator = Depends(get_coordinator)
):
    coordinator.delete_budget(category, month, year)
    return Response(status_code=204)


@app.get("/budgets/reconcile")
def reconcile_budgets(coordinator: Coordinator = Depends(get_coordinator)):
    return {"drifts": [drift_out(d) for d in coordinator.reconcile()]}


@app.post("/budgets/heal")
def heal_budgets(coordinator: Coordinator = Depends(get_coordinator)):
    return {"corrected": [drift_out(d) for d in coordinator.heal()]}


@app.get("/budgets/{year}/{month}")
def budget_progress(
    year: int, month: int, coordinator: Coordinator = Depends(get_coordinator)
):
    return [
        {
            "category": row.category,
            "month": row.month,
            "year": row.year,
            "limit_cents": row.limit_cents,
            "spent_cents": row.spent_cents,
            "remaining_cents": row.remaining_cents,
            "utilization": _ratio(row.utilization),
        }
        for row in coordinator.budget_progress(year, month)
    ]


@app.get("/budgets/{category}/{year}/{month}/utilization")
def budget_utilization(
    category: str, year: int, month: int, coordinator: Coordinator = Depends(get_coordinator)
):
    ratio = coordinator.get_utilization(category, month, year)
    if ratio is None:
        raise HTTPException(status_code=404, detail="Budget not found")
    return {**key_out(BucketKey(category, month, year)), "utilization": _ratio(ratio)}


@app.get("/alerts")
def budget_alerts(
    threshold: Optional[str] = None, coordinator: Coordinator = Depends(get_coordinator)
):
    return [key_out(key) for key in coordinator.alerts(threshold)]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
