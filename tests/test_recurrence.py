from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import Base, make_engine
from models import (
    AccountType,
    Frequency,
    RecurringTemplate,
    Transaction,
    TransactionKind,
)
from recurrence import RecurringEngine, calculate_next_occurrence
from schemas import AccountIn, CategoryIn, RecurringTemplateIn
from services import (
    AccountService,
    CategoryService,
    RecurringTemplateService,
    run_recurring_sweep,
)


def make_session():
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_monthly_with_day_of_month():
    assert calculate_next_occurrence(
        datetime(2025, 1, 15), Frequency.monthly, 1, day_of_month=15
    ) == datetime(2025, 2, 15)


def test_monthly_day_31_overflows_through_short_month():
    # June has 30 days so the step lands on Jul 1, then day 31 is applied
    assert calculate_next_occurrence(
        datetime(2025, 5, 31), Frequency.monthly, 1, day_of_month=31
    ) == datetime(2025, 7, 31)


def test_monthly_day_31_from_thirty_day_month():
    assert calculate_next_occurrence(
        datetime(2025, 4, 30), Frequency.monthly, 1, day_of_month=31
    ) == datetime(2025, 5, 31)
    assert calculate_next_occurrence(
        datetime(2025, 9, 30, 8, 0), Frequency.monthly, 1, day_of_month=31
    ) == datetime(2025, 10, 31, 8, 0)


def test_monthly_end_of_january_rolls_into_march():
    assert calculate_next_occurrence(
        datetime(2025, 1, 31), Frequency.monthly, 1
    ) == datetime(2025, 3, 3)
    assert calculate_next_occurrence(
        datetime(2024, 1, 31), Frequency.monthly, 1
    ) == datetime(2024, 3, 2)


def test_monthly_interval_crosses_year_and_keeps_time():
    assert calculate_next_occurrence(
        datetime(2025, 11, 10, 9, 30), Frequency.monthly, 3
    ) == datetime(2026, 2, 10, 9, 30)


def test_yearly_leap_day():
    assert calculate_next_occurrence(
        datetime(2024, 2, 29), Frequency.yearly, 1
    ) == datetime(2025, 3, 1)
    assert calculate_next_occurrence(
        datetime(2024, 2, 29), Frequency.yearly, 4
    ) == datetime(2028, 2, 29)


def test_daily_and_weekly_steps():
    assert calculate_next_occurrence(
        datetime(2025, 2, 27), Frequency.daily, 3
    ) == datetime(2025, 3, 2)
    assert calculate_next_occurrence(
        datetime(2025, 1, 1), Frequency.weekly, 2
    ) == datetime(2025, 1, 15)


def _setup(session):
    account = AccountService(session, 1).create(
        AccountIn(name="Main", type=AccountType.current, initial_balance_cents=10_000)
    )
    category = CategoryService(session, 1).create(
        CategoryIn(label="Rent", slug="rent", kind=TransactionKind.expense)
    )
    return account, category


def _template_in(account_id: int, category_id: int, **overrides) -> RecurringTemplateIn:
    values = dict(
        account_id=account_id,
        category_id=category_id,
        template_amount_cents=1_000,
        kind=TransactionKind.expense,
        description="Rent",
        frequency=Frequency.monthly,
        interval=1,
        day_of_month=15,
        start_date=datetime(2025, 1, 15),
    )
    values.update(overrides)
    return RecurringTemplateIn(**values)


def test_sweep_posts_one_period_per_run():
    session = make_session()
    account, category = _setup(session)
    template = RecurringTemplateService(session, 1).create(
        _template_in(account.id, category.id)
    )
    now = datetime(2025, 3, 1)

    first = run_recurring_sweep(session, now)
    assert (first.due, first.posted, first.failed) == (1, 1, 0)
    assert template.next_occurrence == datetime(2025, 2, 15)

    posted = session.scalars(select(Transaction)).all()
    assert len(posted) == 1
    assert posted[0].date == datetime(2025, 1, 15)
    assert posted[0].recurring_template_id == template.id
    assert posted[0].amount_cents == 1_000
    assert AccountService(session, 1).get(account.id).current_balance_cents == 9_000

    second = run_recurring_sweep(session, now)
    assert second.posted == 1
    assert template.next_occurrence == datetime(2025, 3, 15)

    third = run_recurring_sweep(session, now)
    assert (third.due, third.posted) == (0, 0)
    assert AccountService(session, 1).get(account.id).current_balance_cents == 8_000


def test_sweep_expires_finished_templates_without_posting():
    session = make_session()
    account, category = _setup(session)
    template = RecurringTemplateService(session, 1).create(
        _template_in(account.id, category.id, end_date=datetime(2025, 2, 1))
    )

    result = run_recurring_sweep(session, datetime(2025, 3, 1))

    assert (result.expired, result.posted) == (1, 0)
    assert template.active is False
    assert template.next_occurrence == datetime(2025, 1, 15)
    assert session.scalars(select(Transaction)).all() == []
    assert AccountService(session, 1).get(account.id).current_balance_cents == 10_000


def test_sweep_skips_inactive_and_future_templates():
    session = make_session()
    account, category = _setup(session)
    templates = RecurringTemplateService(session, 1)
    paused = templates.create(_template_in(account.id, category.id))
    templates.toggle(paused.id, False)
    templates.create(
        _template_in(account.id, category.id, start_date=datetime(2025, 6, 1))
    )

    result = run_recurring_sweep(session, datetime(2025, 3, 1))

    assert (result.due, result.posted) == (0, 0)


def test_failing_template_does_not_block_others():
    session = make_session()
    account, category = _setup(session)
    foreign = AccountService(session, 2).create(
        AccountIn(name="Other", type=AccountType.cash, initial_balance_cents=0)
    )
    broken = RecurringTemplate(
        user_id=1,
        account_id=foreign.id,
        category_id=category.id,
        template_amount_cents=500,
        kind=TransactionKind.expense,
        description="Broken",
        frequency=Frequency.daily,
        interval=1,
        next_occurrence=datetime(2025, 1, 1),
        active=True,
    )
    session.add(broken)
    session.commit()
    healthy = RecurringTemplateService(session, 1).create(
        _template_in(account.id, category.id)
    )

    result = RecurringEngine(session).sweep(datetime(2025, 3, 1))
    session.commit()

    assert (result.due, result.posted, result.failed) == (2, 1, 1)
    assert broken.active is True
    assert broken.next_occurrence == datetime(2025, 1, 1)
    assert healthy.next_occurrence == datetime(2025, 2, 15)
    descriptions = [t.description for t in session.scalars(select(Transaction))]
    assert descriptions == ["Rent"]
    assert AccountService(session, 2).get(foreign.id).current_balance_cents == 0
    assert AccountService(session, 1).get(account.id).current_balance_cents == 9_000


def test_deleting_template_keeps_posted_transactions():
    session = make_session()
    account, category = _setup(session)
    templates = RecurringTemplateService(session, 1)
    template = templates.create(_template_in(account.id, category.id))
    run_recurring_sweep(session, datetime(2025, 1, 20))

    templates.delete(template.id)

    posted = session.scalars(select(Transaction)).all()
    assert len(posted) == 1
    assert posted[0].recurring_template_id == template.id
    assert templates.list() == []


def test_sweep_day_31_template_starting_in_thirty_day_month():
    session = make_session()
    account, category = _setup(session)
    template = RecurringTemplateService(session, 1).create(
        _template_in(
            account.id,
            category.id,
            day_of_month=31,
            start_date=datetime(2025, 4, 30),
        )
    )

    run_recurring_sweep(session, datetime(2025, 5, 1))
    assert template.next_occurrence == datetime(2025, 5, 31)

    run_recurring_sweep(session, datetime(2025, 6, 1))
    # June has 30 days: the step overflows to Jul 1, then day 31 applies
    assert template.next_occurrence == datetime(2025, 7, 31)

    posted = session.scalars(select(Transaction).order_by(Transaction.id))
    dates = [t.date for t in posted]
    assert dates == [datetime(2025, 4, 30), datetime(2025, 5, 31)]
