import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Frequency, RecurringTemplate, Transaction, utcnow
from periods import shift_month

logger = logging.getLogger(__name__)


def _with_overflowing_day(value: datetime, year: int, month: int, day: int) -> datetime:
    # day past the end of the month rolls into the next one (Apr 31 -> May 1)
    first = value.replace(year=year, month=month, day=1)
    return first + timedelta(days=day - 1)


def calculate_next_occurrence(
    current: datetime,
    frequency: Frequency,
    interval: int,
    day_of_month: Optional[int] = None,
) -> datetime:
    """Advance ``current`` by exactly one period of ``interval`` units.

    Monthly and yearly steps keep the time of day and let out-of-range days
    overflow into the following month instead of clamping them: Jan 31 plus
    one month is Mar 3 (Mar 2 in leap years), and with ``day_of_month=31`` a
    step landing in a 30-day month moves on to the 1st of the month after.
    """
    if frequency == Frequency.daily:
        return current + timedelta(days=interval)
    if frequency == Frequency.weekly:
        return current + timedelta(weeks=interval)
    if frequency == Frequency.monthly:
        year, month = shift_month(current.year, current.month, interval)
        next_value = _with_overflowing_day(current, year, month, current.day)
        if day_of_month:
            next_value = _with_overflowing_day(
                next_value, next_value.year, next_value.month, day_of_month
            )
        return next_value
    return _with_overflowing_day(
        current, current.year + interval, current.month, current.day
    )


def next_occurrence_for(template: RecurringTemplate) -> datetime:
    return calculate_next_occurrence(
        template.next_occurrence,
        template.frequency,
        template.interval,
        template.day_of_month,
    )


@dataclass
class SweepResult:
    due: int = 0
    posted: int = 0
    expired: int = 0
    failed: int = 0


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def due_templates(self, now: datetime) -> list[RecurringTemplate]:
        stmt = (
            select(RecurringTemplate)
            .where(
                RecurringTemplate.active.is_(True),
                RecurringTemplate.next_occurrence <= now,
            )
            .order_by(RecurringTemplate.next_occurrence, RecurringTemplate.id)
        )
        return list(self.session.scalars(stmt).all())

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or utcnow()
        templates = self.due_templates(now)
        result = SweepResult(due=len(templates))
        logger.info(f"recurring_sweep: due={result.due} now={now.isoformat()}")

        for template in templates:
            if template.end_date is not None and template.end_date < now:
                template.active = False
                result.expired += 1
                logger.info(f"recurring_sweep: template_id={template.id} expired")
                continue
            try:
                with self.session.begin_nested():
                    txn = self._materialize(template, now)
            except Exception:
                result.failed += 1
                logger.exception(
                    f"recurring_sweep: template_id={template.id} materialization failed"
                )
                continue
            result.posted += 1
            logger.info(
                f"recurring_sweep: template_id={template.id} transaction_id={txn.id} "
                f"next_occurrence={template.next_occurrence.isoformat()}"
            )

        self.session.flush()
        logger.info(
            f"recurring_sweep: posted={result.posted} expired={result.expired} "
            f"failed={result.failed}"
        )
        return result

    def _materialize(self, template: RecurringTemplate, now: datetime) -> Transaction:
        from services import BalanceMaintainer, signed_amount

        txn = Transaction(
            user_id=template.user_id,
            account_id=template.account_id,
            category_id=template.category_id,
            date=template.next_occurrence,
            amount_cents=template.template_amount_cents,
            kind=template.kind,
            is_business=template.is_business,
            description=template.description,
            recurring_template_id=template.id,
            created_at=now,
            updated_at=now,
        )
        BalanceMaintainer(self.session, template.user_id).apply_effect(
            template.account_id,
            signed_amount(template.kind, template.template_amount_cents),
        )
        self.session.add(txn)
        template.next_occurrence = next_occurrence_for(template)
        template.updated_at = now
        self.session.flush()
        return txn
