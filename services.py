from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import (
    Account,
    Budget,
    Category,
    RecurringTemplate,
    Scope,
    Transaction,
    TransactionKind,
)
from periods import (
    Period,
    current_month_period,
    format_year_month,
    parse_year_month,
    trailing_month_periods,
    year_month_period,
)
from recurrence import RecurringEngine, SweepResult
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    CategoryIn,
    CategoryUpdate,
    RecurringTemplateIn,
    RecurringTemplateUpdate,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)


class Unauthenticated(Exception):
    pass


class NotFound(ValueError):
    """Entity is missing or belongs to another user; callers cannot tell which."""


class AccountNotFound(NotFound):
    pass


class InvalidInput(ValueError):
    pass


DEFAULT_CATEGORIES: list[tuple[str, str, TransactionKind, Scope]] = [
    ("Food & Dining", "food-dining", TransactionKind.expense, Scope.personal),
    ("Groceries", "groceries", TransactionKind.expense, Scope.personal),
    ("Transportation", "transportation", TransactionKind.expense, Scope.personal),
    ("Utilities", "utilities", TransactionKind.expense, Scope.both),
    ("Rent/Mortgage", "rent-mortgage", TransactionKind.expense, Scope.personal),
    ("Healthcare", "healthcare", TransactionKind.expense, Scope.personal),
    ("Entertainment", "entertainment", TransactionKind.expense, Scope.personal),
    ("Shopping", "shopping", TransactionKind.expense, Scope.personal),
    ("Education", "education", TransactionKind.expense, Scope.personal),
    ("Subscriptions", "subscriptions", TransactionKind.expense, Scope.both),
    ("Office Supplies", "office-supplies", TransactionKind.expense, Scope.business),
    ("Marketing", "marketing", TransactionKind.expense, Scope.business),
    ("Software/Tools", "software-tools", TransactionKind.expense, Scope.business),
    (
        "Professional Services",
        "professional-services",
        TransactionKind.expense,
        Scope.business,
    ),
    ("Salary", "salary", TransactionKind.income, Scope.personal),
    ("Business Income", "business-income", TransactionKind.income, Scope.business),
    ("Investment", "investment", TransactionKind.income, Scope.both),
    ("Other Income", "other-income", TransactionKind.income, Scope.both),
]


def signed_amount(kind: TransactionKind, amount_cents: int) -> int:
    return amount_cents if kind == TransactionKind.income else -amount_cents


def _require_user(user_id: Optional[int]) -> int:
    if user_id is None:
        raise Unauthenticated("Not authenticated")
    return user_id


def _is_business_filter(scope: Optional[Scope]) -> Optional[bool]:
    if scope is None or scope == Scope.both:
        return None
    return scope == Scope.business


def budget_progress(
    budgeted_cents: int, spent_cents: int
) -> tuple[int, float, bool]:
    """Return (remaining, percentage, is_over_budget) for one budget line."""
    percentage = (spent_cents / budgeted_cents * 100) if budgeted_cents > 0 else 0.0
    return budgeted_cents - spent_cents, percentage, spent_cents > budgeted_cents


def _parse_year_month(value: str) -> tuple[int, int]:
    try:
        return parse_year_month(value)
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc


class BalanceMaintainer:
    """Single place where ``Account.current_balance_cents`` changes.

    Callers reverse the old signed effect before applying a new one and
    commit both in the same session transaction.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise AccountNotFound("Account not found")
        return account

    def apply_effect(self, account_id: int, signed_cents: int) -> Account:
        account = self.account(account_id)
        account.current_balance_cents += signed_cents
        return account

    def reverse_effect(self, account_id: int, signed_cents: int) -> Account:
        return self.apply_effect(account_id, -signed_cents)

    def recompute(self, account_id: int) -> Account:
        account = self.account(account_id)
        rows = self.session.execute(
            select(
                Transaction.kind,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.account_id == account.id,
            )
            .group_by(Transaction.kind)
        ).all()
        delta = sum(signed_amount(row.kind, int(row.total or 0)) for row in rows)
        expected = account.initial_balance_cents + delta
        if account.current_balance_cents != expected:
            logger.warning(
                f"balance_recompute: account_id={account.id} "
                f"stored={account.current_balance_cents} expected={expected}"
            )
        account.current_balance_cents = expected
        return account


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)

    def list(self, is_business: Optional[bool] = None) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id, Account.archived.is_(False))
            .order_by(Account.created_at, Account.id)
        )
        if is_business is not None:
            stmt = stmt.where(Account.is_business.is_(is_business))
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> Account:
        return BalanceMaintainer(self.session, self.user_id).account(account_id)

    def create(self, data: AccountIn) -> Account:
        currency = data.currency or get_settings().default_currency
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            is_business=data.is_business,
            currency=currency.upper(),
            initial_balance_cents=data.initial_balance_cents,
            current_balance_cents=data.initial_balance_cents,
            archived=False,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        for field, value in data.changes().items():
            setattr(account, field, value)
        self.session.commit()
        self.session.refresh(account)
        return account

    def archive(self, account_id: int) -> None:
        account = self.get(account_id)
        account.archived = True
        self.session.commit()

    def recompute_balance(self, account_id: int) -> Account:
        account = BalanceMaintainer(self.session, self.user_id).recompute(account_id)
        self.session.commit()
        self.session.refresh(account)
        return account


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)

    def _visible(self):
        return or_(Category.user_id == self.user_id, Category.user_id.is_(None))

    def list(
        self,
        kind: Optional[TransactionKind] = None,
        scope: Optional[Scope] = None,
    ) -> list[Category]:
        stmt = select(Category).where(self._visible()).order_by(
            Category.kind, Category.label, Category.id
        )
        if kind:
            stmt = stmt.where(Category.kind == kind)
        if scope and scope != Scope.both:
            stmt = stmt.where(Category.scope.in_([scope, Scope.both]))
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or (
            category.user_id is not None and category.user_id != self.user_id
        ):
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category.id).where(
                Category.user_id == self.user_id, Category.slug == data.slug
            )
        )
        if existing:
            raise InvalidInput("Category with this slug already exists")
        category = Category(
            user_id=self.user_id,
            label=data.label.strip(),
            slug=data.slug,
            kind=data.kind,
            scope=data.scope,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        if category.user_id is None:
            # global defaults are read-only for everyone
            raise NotFound("Category not found")
        for field, value in data.changes().items():
            setattr(category, field, value)
        self.session.commit()
        self.session.refresh(category)
        return category

    def seed_defaults(self) -> int:
        owned = self.session.scalar(
            select(func.count(Category.id)).where(Category.user_id == self.user_id)
        )
        if owned:
            return 0
        for label, slug, kind, scope in DEFAULT_CATEGORIES:
            self.session.add(
                Category(
                    user_id=self.user_id,
                    label=label,
                    slug=slug,
                    kind=kind,
                    scope=scope,
                )
            )
        self.session.commit()
        logger.info(
            f"categories_seeded: user_id={self.user_id} count={len(DEFAULT_CATEGORIES)}"
        )
        return len(DEFAULT_CATEGORIES)


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    is_business: Optional[bool] = None
    kind: Optional[TransactionKind] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: Optional[int] = None


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account), joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.is_business is not None:
            stmt = stmt.where(Transaction.is_business.is_(filters.is_business))
        if filters.kind:
            stmt = stmt.where(Transaction.kind == filters.kind)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.limit:
            stmt = stmt.limit(filters.limit)
        return list(self.session.scalars(stmt).all())

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account), joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        balances = BalanceMaintainer(self.session, self.user_id)
        account = balances.account(data.account_id)
        CategoryService(self.session, self.user_id).get(data.category_id)

        txn = Transaction(
            user_id=self.user_id,
            account_id=account.id,
            category_id=data.category_id,
            date=data.date,
            amount_cents=data.amount_cents,
            kind=data.kind,
            is_business=data.is_business,
            description=data.description,
            notes=data.notes,
            tags=data.tags or None,
        )
        self.session.add(txn)
        balances.apply_effect(account.id, signed_amount(txn.kind, txn.amount_cents))
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.changes()
        if "category_id" in changes:
            CategoryService(self.session, self.user_id).get(changes["category_id"])

        # resolve both sides before touching any balance
        balances = BalanceMaintainer(self.session, self.user_id)
        old_account = balances.account(txn.account_id)
        new_account = balances.account(changes.get("account_id", txn.account_id))

        balances.reverse_effect(
            old_account.id, signed_amount(txn.kind, txn.amount_cents)
        )
        for field, value in changes.items():
            if field == "tags":
                value = value or None
            setattr(txn, field, value)
        balances.apply_effect(
            new_account.id, signed_amount(txn.kind, txn.amount_cents)
        )

        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        BalanceMaintainer(self.session, self.user_id).reverse_effect(
            txn.account_id, signed_amount(txn.kind, txn.amount_cents)
        )
        self.session.delete(txn)
        self.session.commit()


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)

    @dataclass(frozen=True)
    class Comparison:
        category_id: int
        category_label: str
        budgeted_cents: int
        spent_cents: int
        remaining_cents: int
        percentage: float
        is_over_budget: bool

    def list_for_month(
        self, year_month: str, scope: Optional[Scope] = None
    ) -> list[Budget]:
        year, month = _parse_year_month(year_month)
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(
                Budget.user_id == self.user_id,
                Budget.year_month == format_year_month(year, month),
            )
            .order_by(Budget.category_id)
        )
        if scope and scope != Scope.both:
            stmt = stmt.where(Budget.scope.in_([scope, Scope.both]))
        return list(self.session.scalars(stmt).all())

    def upsert(self, data: BudgetIn) -> Budget:
        year, month = _parse_year_month(data.year_month)
        year_month = format_year_month(year, month)
        CategoryService(self.session, self.user_id).get(data.category_id)

        existing = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == data.category_id,
                Budget.year_month == year_month,
            )
        )
        if existing:
            existing.amount_cents = data.amount_cents
            existing.scope = data.scope
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            year_month=year_month,
            amount_cents=data.amount_cents,
            scope=data.scope,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFound("Budget not found")
        self.session.delete(budget)
        self.session.commit()

    def spent_by_category(self, period: Period) -> dict[int, int]:
        stmt = (
            select(
                Transaction.category_id,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("spent"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.kind == TransactionKind.expense,
                Transaction.date >= period.start,
                Transaction.date < period.end,
            )
            .group_by(Transaction.category_id)
        )
        return {
            row.category_id: int(row.spent or 0) for row in self.session.execute(stmt)
        }

    def budget_vs_actual(
        self, year_month: str, scope: Optional[Scope] = None
    ) -> list[Comparison]:
        budgets = self.list_for_month(year_month, scope)
        spent_by_category = self.spent_by_category(year_month_period(year_month))

        results: list[BudgetService.Comparison] = []
        for budget in budgets:
            spent = spent_by_category.get(budget.category_id, 0)
            remaining, percentage, over = budget_progress(budget.amount_cents, spent)
            results.append(
                BudgetService.Comparison(
                    category_id=budget.category_id,
                    category_label=budget.category.label
                    if budget.category
                    else "Unknown",
                    budgeted_cents=budget.amount_cents,
                    spent_cents=spent,
                    remaining_cents=remaining,
                    percentage=percentage,
                    is_over_budget=over,
                )
            )
        return results

    def copy(self, from_month: str, to_month: str) -> int:
        source = self.list_for_month(from_month)
        to_year, to_month_number = _parse_year_month(to_month)
        target_month = format_year_month(to_year, to_month_number)
        taken = set(
            self.session.scalars(
                select(Budget.category_id).where(
                    Budget.user_id == self.user_id,
                    Budget.year_month == target_month,
                )
            ).all()
        )

        created = 0
        for budget in source:
            if budget.category_id in taken:
                continue
            self.session.add(
                Budget(
                    user_id=self.user_id,
                    category_id=budget.category_id,
                    year_month=target_month,
                    amount_cents=budget.amount_cents,
                    scope=budget.scope,
                )
            )
            taken.add(budget.category_id)
            created += 1
        self.session.commit()
        logger.info(
            f"budgets_copied: user_id={self.user_id} from={from_month} "
            f"to={target_month} created={created} source={len(source)}"
        )
        return created


class RecurringTemplateService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)

    def list(self, active: Optional[bool] = None) -> list[RecurringTemplate]:
        stmt = (
            select(RecurringTemplate)
            .options(
                joinedload(RecurringTemplate.account),
                joinedload(RecurringTemplate.category),
            )
            .where(RecurringTemplate.user_id == self.user_id)
            .order_by(RecurringTemplate.next_occurrence, RecurringTemplate.id)
        )
        if active is not None:
            stmt = stmt.where(RecurringTemplate.active.is_(active))
        return list(self.session.scalars(stmt).all())

    def get(self, template_id: int) -> RecurringTemplate:
        template = self.session.get(RecurringTemplate, template_id)
        if not template or template.user_id != self.user_id:
            raise NotFound("Recurring transaction not found")
        return template

    def create(self, data: RecurringTemplateIn) -> RecurringTemplate:
        account = BalanceMaintainer(self.session, self.user_id).account(
            data.account_id
        )
        CategoryService(self.session, self.user_id).get(data.category_id)
        template = RecurringTemplate(
            user_id=self.user_id,
            account_id=account.id,
            category_id=data.category_id,
            template_amount_cents=data.template_amount_cents,
            kind=data.kind,
            is_business=data.is_business,
            description=data.description,
            frequency=data.frequency,
            interval=data.interval,
            day_of_month=data.day_of_month,
            day_of_week=data.day_of_week,
            next_occurrence=data.start_date,
            end_date=data.end_date,
            active=True,
        )
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        return template

    def update(
        self, template_id: int, data: RecurringTemplateUpdate
    ) -> RecurringTemplate:
        template = self.get(template_id)
        for field, value in data.changes().items():
            setattr(template, field, value)
        self.session.commit()
        self.session.refresh(template)
        return template

    def toggle(self, template_id: int, active: bool) -> RecurringTemplate:
        template = self.get(template_id)
        template.active = active
        self.session.commit()
        self.session.refresh(template)
        return template

    def delete(self, template_id: int) -> None:
        template = self.get(template_id)
        self.session.delete(template)
        self.session.commit()


def run_recurring_sweep(
    session: Session, now: Optional[datetime] = None
) -> SweepResult:
    result = RecurringEngine(session).sweep(now)
    session.commit()
    return result


class AnalyticsService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)

    def _accounts(self, scope: Optional[Scope]) -> list[Account]:
        return AccountService(self.session, self.user_id).list(
            is_business=_is_business_filter(scope)
        )

    def _transactions_stmt(self, scope: Optional[Scope]):
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        is_business = _is_business_filter(scope)
        if is_business is not None:
            stmt = stmt.where(Transaction.is_business.is_(is_business))
        return stmt

    def _income_expense(
        self, start: datetime, end: datetime, scope: Optional[Scope]
    ) -> tuple[int, int, int]:
        stmt = self._transactions_stmt(scope).where(
            Transaction.date >= start, Transaction.date < end
        )
        income = expenses = count = 0
        for txn in self.session.scalars(stmt):
            count += 1
            if txn.kind == TransactionKind.income:
                income += txn.amount_cents
            else:
                expenses += txn.amount_cents
        return income, expenses, count

    def dashboard_summary(
        self, scope: Optional[Scope] = None, today: Optional[date] = None
    ) -> dict[str, int]:
        total_balance = sum(a.current_balance_cents for a in self._accounts(scope))
        period = current_month_period(today)
        income, expenses, count = self._income_expense(period.start, period.end, scope)
        return {
            "total_balance_cents": total_balance,
            "month_income_cents": income,
            "month_expenses_cents": expenses,
            "net_cash_flow_cents": income - expenses,
            "transaction_count": count,
        }

    def spending_by_category(
        self,
        start: datetime,
        end: datetime,
        scope: Optional[Scope] = None,
        kind: Optional[TransactionKind] = None,
    ) -> list[dict[str, object]]:
        if start > end:
            raise InvalidInput("Start date must be before end date")
        stmt = (
            self._transactions_stmt(scope)
            .options(joinedload(Transaction.category))
            .where(Transaction.date >= start, Transaction.date <= end)
        )
        if kind:
            stmt = stmt.where(Transaction.kind == kind)

        by_category: dict[int, dict[str, object]] = {}
        for txn in self.session.scalars(stmt):
            entry = by_category.setdefault(
                txn.category_id,
                {
                    "category_id": txn.category_id,
                    "label": txn.category.label if txn.category else "Uncategorized",
                    "amount_cents": 0,
                    "count": 0,
                },
            )
            entry["amount_cents"] += txn.amount_cents
            entry["count"] += 1
        return sorted(
            by_category.values(), key=lambda e: e["amount_cents"], reverse=True
        )

    def cash_flow_series(
        self,
        months: int = 6,
        scope: Optional[Scope] = None,
        today: Optional[date] = None,
    ) -> list[dict[str, object]]:
        if months < 1:
            raise InvalidInput("months must be at least 1")
        periods = trailing_month_periods(months, today)
        stmt = self._transactions_stmt(scope).where(
            Transaction.date >= periods[0].start, Transaction.date < periods[-1].end
        )
        series = {
            p.slug: {"year_month": p.slug, "income_cents": 0, "expenses_cents": 0}
            for p in periods
        }
        for txn in self.session.scalars(stmt):
            period = next(p for p in periods if p.contains(txn.date))
            entry = series[period.slug]
            if txn.kind == TransactionKind.income:
                entry["income_cents"] += txn.amount_cents
            else:
                entry["expenses_cents"] += txn.amount_cents
        for entry in series.values():
            entry["net_cents"] = entry["income_cents"] - entry["expenses_cents"]
        return [series[p.slug] for p in periods]

    def account_balances(self, scope: Optional[Scope] = None) -> list[dict[str, object]]:
        by_type: dict[str, dict[str, object]] = {}
        for account in self._accounts(scope):
            entry = by_type.setdefault(
                account.type.value,
                {
                    "type": account.type.value,
                    "balance_cents": 0,
                    "count": 0,
                    "accounts": [],
                },
            )
            entry["balance_cents"] += account.current_balance_cents
            entry["count"] += 1
            entry["accounts"].append(account)
        return list(by_type.values())

    def recent_transactions(
        self, limit: int = 10, scope: Optional[Scope] = None
    ) -> list[Transaction]:
        stmt = (
            self._transactions_stmt(scope)
            .options(joinedload(Transaction.account), joinedload(Transaction.category))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())
