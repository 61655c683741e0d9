from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionKind(str, Enum):
    income = "income"
    expense = "expense"


class AccountType(str, Enum):
    savings = "savings"
    current = "current"
    credit_card = "credit_card"
    cash = "cash"
    other = "other"


class Scope(str, Enum):
    personal = "personal"
    business = "business"
    both = "both"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    is_business: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (
        Index("ix_accounts_user", "user_id"),
        Index("ix_accounts_user_business", "user_id", "is_business"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # NULL owner marks a global category shared by every user
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    label: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False
    )
    scope: Mapped[Scope] = mapped_column(SAEnum(Scope), nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "slug", name="uq_category_user_slug"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False
    )
    is_business: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    tags: Mapped[Optional[list[str]]] = mapped_column(JSON)
    # plain column: deleting a template leaves its transactions pointing at it
    recurring_template_id: Mapped[Optional[int]] = mapped_column(Integer)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account", "account_id"),
        Index("ix_transactions_user_business", "user_id", "is_business"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    scope: Mapped[Scope] = mapped_column(SAEnum(Scope), nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "category_id",
            "year_month",
            name="uq_budget_user_category_month",
        ),
        Index("ix_budget_user_month", "user_id", "year_month"),
        CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
    )


class RecurringTemplate(Base, TimestampMixin):
    __tablename__ = "recurring_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    template_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False
    )
    is_business: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    interval: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer)
    next_occurrence: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    account: Mapped["Account"] = relationship("Account")
    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        Index("ix_recurring_user", "user_id"),
        Index("ix_recurring_active_next", "active", "next_occurrence"),
        CheckConstraint("interval > 0", name="ck_recurring_interval_positive"),
        CheckConstraint(
            "template_amount_cents > 0", name="ck_recurring_amount_positive"
        ),
    )
