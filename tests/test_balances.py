from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from database import Base, make_engine
from models import AccountType, TransactionKind
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionUpdate
from services import (
    AccountNotFound,
    AccountService,
    CategoryService,
    NotFound,
    TransactionFilters,
    TransactionService,
    Unauthenticated,
)


def make_session():
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _setup(session, user_id: int = 1, initial: int = 1000):
    account = AccountService(session, user_id).create(
        AccountIn(name="Main", type=AccountType.savings, initial_balance_cents=initial)
    )
    category = CategoryService(session, user_id).create(
        CategoryIn(label="Food", slug="food", kind=TransactionKind.expense)
    )
    return account, category


def _txn(account_id: int, category_id: int, amount: int, kind=TransactionKind.expense):
    return TransactionIn(
        account_id=account_id,
        category_id=category_id,
        date=datetime(2025, 3, 10, 12, 0),
        amount_cents=amount,
        kind=kind,
        description="Entry",
    )


def test_balance_follows_create_and_delete():
    session = make_session()
    account, category = _setup(session)
    accounts = AccountService(session, 1)
    txns = TransactionService(session, 1)

    lunch = txns.create(_txn(account.id, category.id, 200))
    assert accounts.get(account.id).current_balance_cents == 800

    txns.create(_txn(account.id, category.id, 500, TransactionKind.income))
    assert accounts.get(account.id).current_balance_cents == 1300

    txns.delete(lunch.id)
    assert accounts.get(account.id).current_balance_cents == 1500
    assert len(txns.list()) == 1


def test_update_kind_only_flips_effect():
    session = make_session()
    account, category = _setup(session)
    txns = TransactionService(session, 1)

    txn = txns.create(_txn(account.id, category.id, 200))
    txns.update(txn.id, TransactionUpdate(kind=TransactionKind.income))

    assert AccountService(session, 1).get(account.id).current_balance_cents == 1200


def test_update_amount_only_applies_difference():
    session = make_session()
    account, category = _setup(session)
    txns = TransactionService(session, 1)

    txn = txns.create(_txn(account.id, category.id, 200))
    updated = txns.update(txn.id, TransactionUpdate(amount_cents=300))

    assert updated.amount_cents == 300
    assert updated.description == "Entry"
    assert AccountService(session, 1).get(account.id).current_balance_cents == 700


def test_moving_transaction_between_accounts():
    session = make_session()
    first, category = _setup(session)
    accounts = AccountService(session, 1)
    second = accounts.create(
        AccountIn(name="Wallet", type=AccountType.cash, initial_balance_cents=0)
    )
    txns = TransactionService(session, 1)

    txn = txns.create(_txn(first.id, category.id, 200))
    txns.update(txn.id, TransactionUpdate(account_id=second.id))

    assert accounts.get(first.id).current_balance_cents == 1000
    assert accounts.get(second.id).current_balance_cents == -200


def test_update_to_unknown_account_changes_nothing():
    session = make_session()
    account, category = _setup(session)
    foreign, _ = _setup(session, user_id=2, initial=50)
    txns = TransactionService(session, 1)
    txn = txns.create(_txn(account.id, category.id, 200))

    for target in (9999, foreign.id):
        with pytest.raises(AccountNotFound):
            txns.update(txn.id, TransactionUpdate(account_id=target, amount_cents=999))
        session.rollback()

        reloaded = txns.get(txn.id)
        assert reloaded.account_id == account.id
        assert reloaded.amount_cents == 200
        assert AccountService(session, 1).get(account.id).current_balance_cents == 800
        assert AccountService(session, 2).get(foreign.id).current_balance_cents == 50


def test_create_against_foreign_account_is_rejected():
    session = make_session()
    _, category = _setup(session)
    foreign, _ = _setup(session, user_id=2)

    with pytest.raises(AccountNotFound):
        TransactionService(session, 1).create(_txn(foreign.id, category.id, 100))
    session.rollback()
    assert AccountService(session, 2).get(foreign.id).current_balance_cents == 1000


def test_foreign_transactions_are_invisible():
    session = make_session()
    account, category = _setup(session)
    txn = TransactionService(session, 1).create(_txn(account.id, category.id, 100))

    other = TransactionService(session, 2)
    assert other.list() == []
    with pytest.raises(NotFound):
        other.get(txn.id)
    with pytest.raises(NotFound):
        other.delete(txn.id)
    with pytest.raises(NotFound):
        AccountService(session, 2).get(account.id)


def test_missing_user_is_unauthenticated():
    session = make_session()
    with pytest.raises(Unauthenticated):
        TransactionService(session, None)
    with pytest.raises(Unauthenticated):
        AccountService(session, None)


def test_recompute_repairs_drifted_balance():
    session = make_session()
    account, category = _setup(session)
    txns = TransactionService(session, 1)
    txns.create(_txn(account.id, category.id, 200))
    txns.create(_txn(account.id, category.id, 50, TransactionKind.income))

    account.current_balance_cents = 12345
    session.commit()

    repaired = AccountService(session, 1).recompute_balance(account.id)
    assert repaired.current_balance_cents == 850


def test_archived_accounts_are_hidden_from_list():
    session = make_session()
    account, _ = _setup(session)
    accounts = AccountService(session, 1)

    accounts.archive(account.id)

    assert accounts.list() == []
    assert accounts.get(account.id).archived is True


def test_transaction_filters():
    session = make_session()
    account, category = _setup(session)
    txns = TransactionService(session, 1)
    txns.create(_txn(account.id, category.id, 100))
    txns.create(_txn(account.id, category.id, 300, TransactionKind.income))

    incomes = txns.list(TransactionFilters(kind=TransactionKind.income))
    assert [t.amount_cents for t in incomes] == [300]
    assert len(txns.list(TransactionFilters(limit=1))) == 1
    assert txns.list(TransactionFilters(start=datetime(2025, 4, 1))) == []
