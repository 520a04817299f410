import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response, StreamingResponse

from config import get_settings
from database import make_engine, make_session_factory
from errors import LedgerError, NotFoundError, PersistenceError, ValidationError
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    DepositIn,
    GoalIn,
    PreferencesIn,
    RecurringTemplateIn,
    TransactionIn,
    to_local_naive,
)
from services import Ledger
from storage import SqlKeyValueStore
from store import DataStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Monetia")

_ledger: Optional[Ledger] = None
scheduler_manager: Optional[SchedulerManager] = None


def build_ledger() -> Ledger:
    settings = get_settings()
    engine = make_engine(settings.database_url)
    backend = SqlKeyValueStore.create_all(make_session_factory(engine))
    return Ledger(DataStore(backend), settings=settings)


def get_ledger() -> Ledger:
    global _ledger
    if _ledger is None:
        _ledger = build_ledger()
        result = _ledger.start()
        logger.info(
            f"ledger_started: generated={result.generated} failures={len(result.errors)}"
        )
    return _ledger


@app.on_event("startup")
def startup_event():
    global scheduler_manager
    scheduler_manager = SchedulerManager(get_ledger())
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    if scheduler_manager is not None:
        scheduler_manager.stop()


@contextmanager
def service_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error(f"persistence_error: {exc}")
        raise HTTPException(
            status_code=503, detail="Could not save your changes, please retry"
        ) from exc
    except LedgerError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def period_from_request(request: Request, ledger: Ledger) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end, today=ledger.clock.now().date())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/health")
def health():
    return {"status": "ok", "version": get_settings().app_version}


# Accounts


@app.get("/accounts")
def list_accounts(ledger: Ledger = Depends(get_ledger)):
    return ledger.accounts.list_all()


@app.post("/accounts", status_code=201)
def create_account(data: AccountIn, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.accounts.create(data)


@app.get("/accounts/{account_id}")
def get_account(account_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.accounts.get(account_id)


@app.put("/accounts/{account_id}")
def update_account(account_id: UUID, data: AccountIn, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.accounts.update(account_id, data)


@app.delete("/accounts/{account_id}", status_code=204)
def delete_account(account_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        ledger.accounts.delete(account_id)
    return Response(status_code=204)


@app.get("/accounts/{account_id}/balance")
def account_balance(account_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        cached = ledger.transactions.get_account_balance(account_id)
        replayed = ledger.transactions.recompute_balance(account_id)
    return {"balance": str(cached), "recomputed": str(replayed)}


@app.get("/accounts/{account_id}/transactions")
def account_transactions(account_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        ledger.accounts.get(account_id)
    return ledger.transactions.for_account(account_id)


# Categories


@app.get("/categories")
def list_categories(ledger: Ledger = Depends(get_ledger)):
    return ledger.categories.list_all()


@app.post("/categories", status_code=201)
def create_category(data: CategoryIn, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.categories.create(data)


@app.put("/categories/{category_id}")
def update_category(
    category_id: UUID, data: CategoryIn, ledger: Ledger = Depends(get_ledger)
):
    with service_errors():
        return ledger.categories.update(category_id, data)


@app.delete("/categories/{category_id}", status_code=204)
def delete_category(category_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        ledger.categories.delete(category_id)
    return Response(status_code=204)


# Transactions


@app.get("/transactions")
def list_transactions(request: Request, ledger: Ledger = Depends(get_ledger)):
    if not request.query_params.get("period"):
        return ledger.transactions.list_all()
    start, end = period_from_request(request, ledger).window()
    return ledger.transactions.for_period(start, end)


@app.get("/transactions/upcoming")
def upcoming_transactions(limit: int = 20, ledger: Ledger = Depends(get_ledger)):
    return ledger.transactions.upcoming(limit)


@app.post("/transactions", status_code=201)
def create_transaction(data: TransactionIn, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        if data.recurrence is not None:
            txn, template = ledger.engine.create_recurring(data)
            return {"transaction": txn, "template": template}
        return {"transaction": ledger.transactions.create(data), "template": None}


@app.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.transactions.get(transaction_id)


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: UUID, data: TransactionIn, ledger: Ledger = Depends(get_ledger)
):
    with service_errors():
        return ledger.transactions.update(transaction_id, data)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        ledger.transactions.delete(transaction_id)
    return Response(status_code=204)


# Recurring


@app.get("/recurring")
def list_templates(ledger: Ledger = Depends(get_ledger)):
    return ledger.templates.list_all()


@app.get("/recurring/statistics")
def recurring_statistics(ledger: Ledger = Depends(get_ledger)):
    return ledger.templates.get_statistics()


@app.post("/recurring", status_code=201)
def create_template(data: RecurringTemplateIn, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.templates.create(data)


@app.put("/recurring/{template_id}")
def update_template(
    template_id: UUID, data: RecurringTemplateIn, ledger: Ledger = Depends(get_ledger)
):
    with service_errors():
        return ledger.templates.update(template_id, data)


@app.post("/recurring/{template_id}/toggle")
def toggle_template(template_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.templates.toggle_active(template_id)


@app.delete("/recurring/{template_id}", status_code=204)
def delete_template(template_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        ledger.templates.delete(template_id)
    return Response(status_code=204)


@app.post("/recurring/groups/{group_id}/disable")
def disable_series(
    group_id: UUID,
    cutoff: Optional[datetime] = None,
    ledger: Ledger = Depends(get_ledger),
):
    if cutoff is not None:
        cutoff = to_local_naive(cutoff)
    with service_errors():
        removed = ledger.engine.disable_series(group_id, cutoff)
    return {"removed": removed}


@app.post("/generation/run")
def run_generation(ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        result = ledger.engine.run_pass()
    return {
        "settled": result.settled,
        "caught_up": result.caught_up,
        "looked_ahead": result.looked_ahead,
        "errors": [
            {"template_id": str(err.template_id), "message": err.message}
            for err in result.errors
        ],
    }


# Budgets and goals


@app.get("/budgets")
def list_budgets(ledger: Ledger = Depends(get_ledger)):
    return ledger.budgets.list_all()


@app.post("/budgets", status_code=201)
def create_budget(data: BudgetIn, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.budgets.create(data)


@app.put("/budgets/{budget_id}")
def update_budget(budget_id: UUID, data: BudgetIn, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.budgets.update(budget_id, data)


@app.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(budget_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        ledger.budgets.delete(budget_id)
    return Response(status_code=204)


@app.get("/budgets/{budget_id}/progress")
def budget_progress(budget_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        progress = ledger.metrics.budget_progress(ledger.budgets.get(budget_id))
    return {
        "spent": str(progress.spent),
        "remaining": str(progress.remaining),
        "percentage": progress.percentage,
    }


@app.get("/goals")
def list_goals(ledger: Ledger = Depends(get_ledger)):
    return ledger.goals.list_all()


@app.post("/goals", status_code=201)
def create_goal(data: GoalIn, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.goals.create(data)


@app.put("/goals/{goal_id}")
def update_goal(goal_id: UUID, data: GoalIn, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.goals.update(goal_id, data)


@app.post("/goals/{goal_id}/deposit")
def deposit_goal(goal_id: UUID, data: DepositIn, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.goals.deposit(goal_id, data.amount)


@app.delete("/goals/{goal_id}", status_code=204)
def delete_goal(goal_id: UUID, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        ledger.goals.delete(goal_id)
    return Response(status_code=204)


# Analytics


@app.get("/api/kpis")
def api_kpis(request: Request, ledger: Ledger = Depends(get_ledger)):
    period = period_from_request(request, ledger)
    kpis = ledger.metrics.kpis(period)
    return {key: str(value) for key, value in kpis.items()}


@app.get("/api/expenses-by-category")
def api_expenses_by_category(request: Request, ledger: Ledger = Depends(get_ledger)):
    start, end = period_from_request(request, ledger).window()
    breakdown = ledger.metrics.expenses_by_category(start, end)
    return {str(category_id): str(amount) for category_id, amount in breakdown.items()}


# Settings and backup


@app.get("/preferences")
def get_preferences(ledger: Ledger = Depends(get_ledger)):
    return ledger.preferences.get()


@app.put("/preferences")
def update_preferences(data: PreferencesIn, ledger: Ledger = Depends(get_ledger)):
    with service_errors():
        return ledger.preferences.update(data)


@app.get("/export/transactions.csv")
def export_csv(ledger: Ledger = Depends(get_ledger)):
    csv_text = ledger.csv.export()
    filename = f"transactions_{datetime.now():%Y%m%d}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/export/backup.json")
def export_json(ledger: Ledger = Depends(get_ledger)):
    return Response(content=ledger.backup.export_json(), media_type="application/json")


@app.post("/import/backup.json")
async def import_json(request: Request, ledger: Ledger = Depends(get_ledger)):
    payload = await request.body()
    with service_errors():
        backup = ledger.backup.import_json(payload)
    return {
        "restored": True,
        "backupDate": backup.backup_date.isoformat(),
        "transactions": len(backup.transactions),
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
