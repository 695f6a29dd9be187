import logging
import tomllib
from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import NotFoundError
from models import (
    Account,
    Budget,
    BudgetCategory,
    Goal,
    Transaction,
    TransactionType,
)
from periods import resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountUpdate,
    AssignIn,
    BudgetCategoryIn,
    BudgetCategoryUpdate,
    CoverOverspendingIn,
    DeleteManyIn,
    GoalContributionIn,
    GoalIn,
    GoalTransferIn,
    GoalUpdate,
    MoveMoneyIn,
    ReorderItem,
    TransactionIn,
    TransactionUpdate,
    TransferIn,
)
from services import (
    AccountService,
    BudgetService,
    EnvelopeService,
    GoalService,
    MoveResult,
    ReadyToAssignService,
    TransactionFilters,
    TransactionService,
    TransferService,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Envelope Budget")


def _load_app_version() -> str:
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@contextmanager
def service_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def account_out(account: Account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "balance": account.balance,
        "is_goal_tracking": account.is_goal_tracking,
        "institution": account.institution,
        "sort_order": account.sort_order,
    }


def budget_out(budget: Budget) -> dict:
    return {
        "id": budget.id,
        "month": budget.month,
        "name": budget.name,
        "total_income": budget.total_income,
        "total_allocated": budget.total_allocated,
    }


def category_out(category: BudgetCategory) -> dict:
    return {
        "id": category.id,
        "budget_id": category.budget_id,
        "account_id": category.account_id,
        "name": category.name,
        "category_type": category.category_type.value,
        "category_group": category.category_group,
        "sort_order": category.sort_order,
        "allocated_amount": category.allocated_amount,
        "spent_amount": category.spent_amount,
        "available_amount": category.available_amount,
        "overspent_amount": category.overspent_amount,
    }


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "counterpart_account_id": txn.counterpart_account_id,
        "category_id": txn.category_id,
        "amount": txn.amount,
        "type": txn.type.value,
        "date": txn.date.isoformat(),
        "description": txn.description,
        "subscription_id": txn.subscription_id,
    }


def goal_out(goal: Goal) -> dict:
    return {
        "id": goal.id,
        "name": goal.name,
        "category_id": goal.category_id,
        "account_id": goal.account_id,
        "target_amount": goal.target_amount,
        "current_amount": goal.current_amount,
        "target_date": goal.target_date.isoformat() if goal.target_date else None,
        "image_url": goal.image_url,
    }


def move_out(result: MoveResult) -> dict:
    return {
        "amount": result.amount,
        "from_category": category_out(result.from_category),
        "to_category": category_out(result.to_category),
    }


@app.get("/api/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


# ---- accounts --------------------------------------------------------------


@app.get("/api/accounts")
def list_accounts(db: Session = Depends(get_db)):
    return [account_out(a) for a in AccountService(db).list_all()]


@app.post("/api/accounts", status_code=201)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    with service_errors():
        return account_out(AccountService(db).create(data))


@app.post("/api/accounts/reorder", status_code=204)
def reorder_accounts(items: list[ReorderItem], db: Session = Depends(get_db)):
    with service_errors():
        AccountService(db).reorder(items)
    return Response(status_code=204)


@app.get("/api/accounts/{account_id}")
def get_account(account_id: int, db: Session = Depends(get_db)):
    with service_errors():
        return account_out(AccountService(db).get(account_id))


@app.patch("/api/accounts/{account_id}")
def update_account(account_id: int, data: AccountUpdate, db: Session = Depends(get_db)):
    with service_errors():
        return account_out(AccountService(db).update(account_id, data))


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(account_id: int, db: Session = Depends(get_db)):
    with service_errors():
        AccountService(db).delete(account_id)
    return Response(status_code=204)


@app.get("/api/accounts/{account_id}/transactions")
def account_transactions(account_id: int, db: Session = Depends(get_db)):
    with service_errors():
        items = TransactionService(db).list_for_account(account_id)
    return [transaction_out(t) for t in items]


@app.get("/api/accounts/{account_id}/categories")
def account_categories(
    account_id: int, budget_id: Optional[int] = None, db: Session = Depends(get_db)
):
    with service_errors():
        AccountService(db).get(account_id)
        items = BudgetService(db).list_account_categories(account_id, budget_id)
    return [category_out(c) for c in items]


@app.get("/api/accounts/{account_id}/ready-to-assign")
def account_ready_to_assign(
    account_id: int, budget_id: int, db: Session = Depends(get_db)
):
    with service_errors():
        amount = ReadyToAssignService(db).ready_to_assign(account_id, budget_id)
    return {"account_id": account_id, "budget_id": budget_id, "ready_to_assign": amount}


# ---- budgets & categories --------------------------------------------------


@app.get("/api/budgets")
def list_budgets(db: Session = Depends(get_db)):
    return [budget_out(b) for b in BudgetService(db).list_budgets()]


@app.put("/api/budgets/{month}")
def ensure_budget(
    month: str, copy_previous: bool = False, db: Session = Depends(get_db)
):
    with service_errors():
        budget = BudgetService(db).get_or_create_for_month(
            month, copy_previous=copy_previous
        )
    return budget_out(budget)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    with service_errors():
        BudgetService(db).delete(budget_id)
    return Response(status_code=204)


@app.get("/api/budgets/{budget_id}/categories")
def budget_categories(budget_id: int, db: Session = Depends(get_db)):
    with service_errors():
        service = BudgetService(db)
        service.get(budget_id)
        grouped = service.grouped(budget_id)
    return {
        group: [category_out(c) for c in categories]
        for group, categories in grouped.items()
    }


@app.get("/api/budgets/{budget_id}/ready-to-assign")
def budget_ready_to_assign(budget_id: int, db: Session = Depends(get_db)):
    with service_errors():
        per_account = ReadyToAssignService(db).for_budget(budget_id)
    return {str(account_id): amount for account_id, amount in per_account.items()}


@app.post("/api/categories", status_code=201)
def create_category(data: BudgetCategoryIn, db: Session = Depends(get_db)):
    with service_errors():
        return category_out(BudgetService(db).create_category(data))


@app.post("/api/categories/move")
def move_money(data: MoveMoneyIn, db: Session = Depends(get_db)):
    with service_errors():
        result = EnvelopeService(db).move_money(
            data.from_category_id, data.to_category_id, data.amount
        )
    return move_out(result)


@app.post("/api/categories/cover")
def cover_overspending(data: CoverOverspendingIn, db: Session = Depends(get_db)):
    with service_errors():
        result = EnvelopeService(db).cover_overspending(
            data.overspent_category_id, data.source_category_id
        )
    return move_out(result)


@app.post("/api/categories/reorder", status_code=204)
def reorder_categories(items: list[ReorderItem], db: Session = Depends(get_db)):
    with service_errors():
        BudgetService(db).reorder_categories(items)
    return Response(status_code=204)


@app.patch("/api/categories/{category_id}")
def update_category(
    category_id: int, data: BudgetCategoryUpdate, db: Session = Depends(get_db)
):
    with service_errors():
        return category_out(BudgetService(db).update_category(category_id, data))


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(category_id: int, db: Session = Depends(get_db)):
    with service_errors():
        BudgetService(db).delete_category(category_id)
    return Response(status_code=204)


@app.post("/api/categories/{category_id}/assign")
def assign_money(category_id: int, data: AssignIn, db: Session = Depends(get_db)):
    with service_errors():
        return category_out(EnvelopeService(db).assign(category_id, data.amount))


@app.post("/api/categories/{category_id}/quick-assign")
def quick_assign(category_id: int, db: Session = Depends(get_db)):
    with service_errors():
        return category_out(EnvelopeService(db).quick_assign(category_id))


# ---- transactions & transfers ----------------------------------------------


@app.get("/api/transactions")
def list_transactions(request: Request, db: Session = Depends(get_db)):
    params = request.query_params
    try:
        raw_period = params.get("period")
        # No period means every transaction, future-dated ones included
        period = (
            resolve_period(raw_period, params.get("start"), params.get("end"))
            if raw_period and raw_period != "all"
            else None
        )
        txn_type = TransactionType(params["type"]) if params.get("type") else None
        filters = TransactionFilters(
            account_id=int(params["account"]) if params.get("account") else None,
            type=txn_type,
            category_id=int(params["category"]) if params.get("category") else None,
            query=params.get("q"),
        )
        page = max(int(params.get("page", "1")), 1)
        limit = min(max(int(params.get("limit", "50")), 1), 100)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    offset = (page - 1) * limit
    items = TransactionService(db).list(period, filters, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    return {
        "items": [transaction_out(t) for t in items[:limit]],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    with service_errors():
        return transaction_out(TransactionService(db).create(data))


@app.post("/api/transactions/delete-many")
def delete_transactions(data: DeleteManyIn, db: Session = Depends(get_db)):
    with service_errors():
        deleted = TransactionService(db).delete_many(data.ids)
    return {"deleted": deleted}


@app.get("/api/transactions/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    with service_errors():
        return transaction_out(TransactionService(db).get(transaction_id))


@app.patch("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int, data: TransactionUpdate, db: Session = Depends(get_db)
):
    with service_errors():
        return transaction_out(TransactionService(db).update(transaction_id, data))


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    with service_errors():
        TransactionService(db).delete(transaction_id)
    return Response(status_code=204)


@app.get("/api/transfers")
def list_transfers(db: Session = Depends(get_db)):
    return [transaction_out(t) for t in TransferService(db).list_transfers()]


@app.post("/api/transfers", status_code=201)
def create_transfer(data: TransferIn, db: Session = Depends(get_db)):
    with service_errors():
        return transaction_out(TransferService(db).transfer(data))


@app.delete("/api/transfers/{transaction_id}", status_code=204)
def delete_transfer(transaction_id: int, db: Session = Depends(get_db)):
    with service_errors():
        TransferService(db).delete_transfer(transaction_id)
    return Response(status_code=204)


# ---- goals -----------------------------------------------------------------


@app.get("/api/goals")
def list_goals(db: Session = Depends(get_db)):
    return [goal_out(g) for g in GoalService(db).list_all()]


@app.post("/api/goals", status_code=201)
def create_goal(data: GoalIn, db: Session = Depends(get_db)):
    with service_errors():
        return goal_out(GoalService(db).create(data))


@app.post("/api/goals/transfer")
def transfer_between_goals(data: GoalTransferIn, db: Session = Depends(get_db)):
    with service_errors():
        result = GoalService(db).transfer_between_goals(
            data.from_goal_id, data.to_goal_id, data.amount
        )
    return move_out(result)


@app.patch("/api/goals/{goal_id}")
def update_goal(goal_id: int, data: GoalUpdate, db: Session = Depends(get_db)):
    with service_errors():
        return goal_out(GoalService(db).update(goal_id, data))


@app.post("/api/goals/{goal_id}/contribute")
def add_to_goal(goal_id: int, data: GoalContributionIn, db: Session = Depends(get_db)):
    with service_errors():
        return goal_out(GoalService(db).add_to_goal(goal_id, data.amount))


@app.delete("/api/goals/{goal_id}", status_code=204)
def delete_goal(
    goal_id: int, move_funds_to: Optional[int] = None, db: Session = Depends(get_db)
):
    service = GoalService(db)
    with service_errors():
        goal = service.get(goal_id)
        if goal.current_amount > 0 and move_funds_to is None:
            logger.info(
                f"goal_delete_refused: id={goal_id} remaining={goal.current_amount}"
            )
            raise HTTPException(
                status_code=400,
                detail="Move the remaining funds to another goal before deleting",
            )
        service.delete(goal_id, move_funds_to=move_funds_to)
    return Response(status_code=204)
