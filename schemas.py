from datetime import datetime, timezone
from typing import Annotated, ClassVar, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from models import AccountType, Frequency, Scope, TransactionKind

YEAR_MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
SLUG_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


UtcDatetime = Annotated[datetime, AfterValidator(to_naive_utc)]


class _PartialUpdate(BaseModel):
    """Update structs: unset fields are left alone, set fields are merged.

    Fields listed in ``non_nullable_fields`` may be omitted but never set to None.
    """

    model_config = ConfigDict(extra="forbid")

    non_nullable_fields: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def reject_explicit_nulls(self):
        for name in self.model_fields_set & self.non_nullable_fields:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    is_business: bool = False
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    initial_balance_cents: int = 0


class AccountUpdate(_PartialUpdate):
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset(
        {"name", "type", "is_business"}
    )

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    is_business: Optional[bool] = None


class CategoryIn(BaseModel):
    label: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=100, pattern=SLUG_PATTERN)
    kind: TransactionKind
    scope: Scope = Scope.both


class CategoryUpdate(_PartialUpdate):
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"label", "scope"})

    label: Optional[str] = Field(default=None, min_length=1, max_length=100)
    scope: Optional[Scope] = None


class TransactionIn(BaseModel):
    account_id: int
    category_id: int
    date: UtcDatetime
    amount_cents: int = Field(..., gt=0)
    kind: TransactionKind
    is_business: bool = False
    description: str = Field(..., min_length=1, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=500)
    tags: list[str] = Field(default_factory=list)


class TransactionUpdate(_PartialUpdate):
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset(
        {
            "account_id",
            "category_id",
            "date",
            "amount_cents",
            "kind",
            "is_business",
            "description",
        }
    )

    account_id: Optional[int] = None
    category_id: Optional[int] = None
    date: Optional[UtcDatetime] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    kind: Optional[TransactionKind] = None
    is_business: Optional[bool] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=500)
    tags: Optional[list[str]] = None


class BudgetIn(BaseModel):
    category_id: int
    year_month: str = Field(..., pattern=YEAR_MONTH_PATTERN)
    amount_cents: int = Field(..., gt=0)
    scope: Scope = Scope.both


class BudgetCopyIn(BaseModel):
    from_month: str = Field(..., pattern=YEAR_MONTH_PATTERN)
    to_month: str = Field(..., pattern=YEAR_MONTH_PATTERN)


class RecurringTemplateIn(BaseModel):
    account_id: int
    category_id: int
    template_amount_cents: int = Field(..., gt=0)
    kind: TransactionKind
    is_business: bool = False
    description: str = Field(..., min_length=1, max_length=200)
    frequency: Frequency
    interval: int = Field(default=1, gt=0)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None


class RecurringTemplateUpdate(_PartialUpdate):
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset(
        {"template_amount_cents", "description", "frequency", "interval"}
    )

    template_amount_cents: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    frequency: Optional[Frequency] = None
    interval: Optional[int] = Field(default=None, gt=0)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    end_date: Optional[UtcDatetime] = None


class RecurringToggleIn(BaseModel):
    active: bool
