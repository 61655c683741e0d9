from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from sqlalchemy.orm import Session

from database import SessionLocal
from models import (
    Account,
    Budget,
    Category,
    RecurringTemplate,
    Scope,
    Transaction,
    TransactionKind,
)
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetCopyIn,
    BudgetIn,
    CategoryIn,
    CategoryUpdate,
    RecurringTemplateIn,
    RecurringTemplateUpdate,
    RecurringToggleIn,
    TransactionIn,
    TransactionUpdate,
    to_naive_utc,
)
from services import (
    AccountService,
    AnalyticsService,
    BudgetService,
    CategoryService,
    NotFound,
    RecurringTemplateService,
    TransactionFilters,
    TransactionService,
    Unauthenticated,
)

app = FastAPI(title="Finance Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Not authenticated") from exc


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, Unauthenticated):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def account_json(account: Account) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "is_business": account.is_business,
        "currency": account.currency,
        "initial_balance_cents": account.initial_balance_cents,
        "current_balance_cents": account.current_balance_cents,
        "archived": account.archived,
        "created_at": account.created_at.isoformat(),
    }


def category_json(category: Optional[Category]) -> Optional[dict[str, object]]:
    if category is None:
        return None
    return {
        "id": category.id,
        "label": category.label,
        "slug": category.slug,
        "kind": category.kind.value,
        "scope": category.scope.value,
        "is_global": category.user_id is None,
    }


def transaction_json(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "date": txn.date.isoformat(),
        "amount_cents": txn.amount_cents,
        "kind": txn.kind.value,
        "is_business": txn.is_business,
        "description": txn.description,
        "notes": txn.notes,
        "tags": txn.tags or [],
        "recurring_template_id": txn.recurring_template_id,
        "account": account_json(txn.account) if txn.account else None,
        "category": category_json(txn.category),
    }


def budget_json(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "year_month": budget.year_month,
        "amount_cents": budget.amount_cents,
        "scope": budget.scope.value,
        "category": category_json(budget.category),
    }


def template_json(template: RecurringTemplate) -> dict[str, object]:
    return {
        "id": template.id,
        "account_id": template.account_id,
        "category_id": template.category_id,
        "template_amount_cents": template.template_amount_cents,
        "kind": template.kind.value,
        "is_business": template.is_business,
        "description": template.description,
        "frequency": template.frequency.value,
        "interval": template.interval,
        "day_of_month": template.day_of_month,
        "day_of_week": template.day_of_week,
        "next_occurrence": template.next_occurrence.isoformat(),
        "end_date": template.end_date.isoformat() if template.end_date else None,
        "active": template.active,
        "account": account_json(template.account) if template.account else None,
        "category": category_json(template.category),
    }


# Accounts


@app.get("/api/accounts")
def list_accounts(
    is_business: Optional[bool] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    accounts = AccountService(db, user_id).list(is_business=is_business)
    return [account_json(a) for a in accounts]


@app.post("/api/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return account_json(AccountService(db, user_id).create(payload))


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return account_json(AccountService(db, user_id).get(account_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return account_json(AccountService(db, user_id).update(account_id, payload))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/accounts/{account_id}/archive", status_code=204)
def archive_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        AccountService(db, user_id).archive(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/accounts/{account_id}/recompute")
def recompute_account_balance(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        account = AccountService(db, user_id).recompute_balance(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return account_json(account)


# Categories


@app.get("/api/categories")
def list_categories(
    kind: Optional[TransactionKind] = None,
    scope: Optional[Scope] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    categories = CategoryService(db, user_id).list(kind=kind, scope=scope)
    return [category_json(c) for c in categories]


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return category_json(CategoryService(db, user_id).create(payload))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/categories/seed")
def seed_categories(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return {"created": CategoryService(db, user_id).seed_defaults()}


@app.patch("/api/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        category = CategoryService(db, user_id).update(category_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category_json(category)


# Transactions


@app.get("/api/transactions")
def list_transactions(
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    is_business: Optional[bool] = None,
    kind: Optional[TransactionKind] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    filters = TransactionFilters(
        account_id=account_id,
        category_id=category_id,
        is_business=is_business,
        kind=kind,
        start=to_naive_utc(start),
        end=to_naive_utc(end),
        limit=min(max(limit, 1), 500) if limit else None,
    )
    return [transaction_json(t) for t in TransactionService(db, user_id).list(filters)]


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        txn = TransactionService(db, user_id).create(payload)
    except ValueError as exc:
        db.rollback()
        raise http_error(exc) from exc
    return transaction_json(txn)


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return transaction_json(TransactionService(db, user_id).get(transaction_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        txn = TransactionService(db, user_id).update(transaction_id, payload)
    except ValueError as exc:
        db.rollback()
        raise http_error(exc) from exc
    return transaction_json(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except ValueError as exc:
        db.rollback()
        raise http_error(exc) from exc


# Budgets


@app.get("/api/budgets")
def list_budgets(
    year_month: str,
    scope: Optional[Scope] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        budgets = BudgetService(db, user_id).list_for_month(year_month, scope)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [budget_json(b) for b in budgets]


@app.put("/api/budgets")
def upsert_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return budget_json(BudgetService(db, user_id).upsert(payload))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/budgets/vs-actual")
def budget_vs_actual(
    year_month: str,
    scope: Optional[Scope] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        rows = BudgetService(db, user_id).budget_vs_actual(year_month, scope)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [
        {
            "category_id": row.category_id,
            "category_label": row.category_label,
            "budgeted_cents": row.budgeted_cents,
            "spent_cents": row.spent_cents,
            "remaining_cents": row.remaining_cents,
            "percentage": row.percentage,
            "is_over_budget": row.is_over_budget,
        }
        for row in rows
    ]


@app.post("/api/budgets/copy")
def copy_budgets(
    payload: BudgetCopyIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        created = BudgetService(db, user_id).copy(payload.from_month, payload.to_month)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"created": created}


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        BudgetService(db, user_id).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Recurring templates


@app.get("/api/recurring")
def list_recurring(
    active: Optional[bool] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    templates = RecurringTemplateService(db, user_id).list(active=active)
    return [template_json(t) for t in templates]


@app.post("/api/recurring", status_code=201)
def create_recurring(
    payload: RecurringTemplateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        template = RecurringTemplateService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return template_json(template)


@app.patch("/api/recurring/{template_id}")
def update_recurring(
    template_id: int,
    payload: RecurringTemplateUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        template = RecurringTemplateService(db, user_id).update(template_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return template_json(template)


@app.post("/api/recurring/{template_id}/toggle")
def toggle_recurring(
    template_id: int,
    payload: RecurringToggleIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        template = RecurringTemplateService(db, user_id).toggle(
            template_id, payload.active
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return template_json(template)


@app.delete("/api/recurring/{template_id}", status_code=204)
def delete_recurring(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        RecurringTemplateService(db, user_id).delete(template_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Analytics


@app.get("/api/analytics/summary")
def analytics_summary(
    scope: Optional[Scope] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return AnalyticsService(db, user_id).dashboard_summary(scope)


@app.get("/api/analytics/spending-by-category")
def analytics_spending_by_category(
    start: datetime,
    end: datetime,
    scope: Optional[Scope] = None,
    kind: Optional[TransactionKind] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return AnalyticsService(db, user_id).spending_by_category(
            to_naive_utc(start), to_naive_utc(end), scope, kind
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/analytics/cash-flow")
def analytics_cash_flow(
    months: int = 6,
    scope: Optional[Scope] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return AnalyticsService(db, user_id).cash_flow_series(months, scope)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/analytics/account-balances")
def analytics_account_balances(
    scope: Optional[Scope] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    groups = AnalyticsService(db, user_id).account_balances(scope)
    return [
        {**group, "accounts": [account_json(a) for a in group["accounts"]]}
        for group in groups
    ]


@app.get("/api/analytics/recent")
def analytics_recent(
    limit: int = 10,
    scope: Optional[Scope] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    limit = min(max(limit, 1), 100)
    txns = AnalyticsService(db, user_id).recent_transactions(limit, scope)
    return [transaction_json(t) for t in txns]
