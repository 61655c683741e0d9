import pytest
from sqlalchemy.orm import sessionmaker

from database import Base, make_engine
from models import Category, Scope, TransactionKind
from schemas import CategoryIn, CategoryUpdate
from services import DEFAULT_CATEGORIES, CategoryService, InvalidInput, NotFound


def make_session():
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_seed_defaults_runs_once_per_user():
    session = make_session()
    categories = CategoryService(session, 1)

    assert categories.seed_defaults() == len(DEFAULT_CATEGORIES)
    assert categories.seed_defaults() == 0
    assert CategoryService(session, 2).seed_defaults() == len(DEFAULT_CATEGORIES)

    incomes = categories.list(kind=TransactionKind.income)
    assert {c.slug for c in incomes} == {
        "salary",
        "business-income",
        "investment",
        "other-income",
    }


def test_duplicate_slug_is_rejected_per_user():
    session = make_session()
    payload = CategoryIn(label="Food", slug="food", kind=TransactionKind.expense)
    CategoryService(session, 1).create(payload)

    with pytest.raises(InvalidInput):
        CategoryService(session, 1).create(payload)
    assert CategoryService(session, 2).create(payload).user_id == 2


def test_global_categories_are_shared_and_read_only():
    session = make_session()
    shared = Category(
        user_id=None,
        label="Misc",
        slug="misc",
        kind=TransactionKind.expense,
        scope=Scope.both,
    )
    session.add(shared)
    session.commit()

    categories = CategoryService(session, 1)
    assert [c.id for c in categories.list()] == [shared.id]
    assert categories.get(shared.id).label == "Misc"
    with pytest.raises(NotFound):
        categories.update(shared.id, CategoryUpdate(label="Mine"))


def test_update_and_scope_filter():
    session = make_session()
    categories = CategoryService(session, 1)
    food = categories.create(
        CategoryIn(
            label="Food", slug="food", kind=TransactionKind.expense, scope=Scope.personal
        )
    )
    categories.create(
        CategoryIn(
            label="Ads", slug="ads", kind=TransactionKind.expense, scope=Scope.business
        )
    )
    categories.create(
        CategoryIn(label="Tax", slug="tax", kind=TransactionKind.expense, scope=Scope.both)
    )

    business = categories.list(scope=Scope.business)
    assert {c.slug for c in business} == {"ads", "tax"}
    assert len(categories.list(scope=Scope.both)) == 3

    renamed = categories.update(food.id, CategoryUpdate(label="Dining"))
    assert renamed.label == "Dining"
    assert renamed.scope == Scope.personal

    with pytest.raises(NotFound):
        CategoryService(session, 2).get(food.id)
