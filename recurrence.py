from datetime import date, datetime, timedelta
from typing import Optional, TypeVar, Union

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from database import atomic
from errors import UnknownInterval
from models import RecurringInterval, Transaction, TransactionStatus
from periods import utcnow

D = TypeVar("D", date, datetime)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: D, months: int) -> D:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # Jan 31 + 1 month lands on the last day of February, never in March
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def next_recurring_date(
    value: D, interval: Union[RecurringInterval, str, None]
) -> D:
    """Next due date after ``value`` for one step of ``interval``.

    Works on dates and datetimes alike; the time of day is kept. Month and
    year steps clamp the day to the length of the target month, so a
    transaction on the 31st recurs on the 30th in April and on the 28th or
    29th in February, and Feb 29 recurs yearly on Feb 28.
    """
    try:
        interval = RecurringInterval(interval)
    except ValueError:
        raise UnknownInterval(interval) from None

    if interval == RecurringInterval.daily:
        return value + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return value + timedelta(weeks=1)
    if interval == RecurringInterval.monthly:
        return _add_months(value, 1)
    return _add_months(value, 12)


def is_transaction_due(txn: Transaction, now: datetime) -> bool:
    if txn.last_processed is None:
        return True
    if txn.next_recurring_date is None:
        return False
    return txn.next_recurring_date <= now


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def due_transactions(self, now: Optional[datetime] = None) -> list[Transaction]:
        now = now or utcnow()
        stmt = (
            select(Transaction)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.status == TransactionStatus.completed,
                or_(
                    Transaction.last_processed.is_(None),
                    Transaction.next_recurring_date <= now,
                ),
            )
            .order_by(Transaction.user_id, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def process(
        self, transaction_id: int, user_id: int, now: Optional[datetime] = None
    ) -> Optional[Transaction]:
        """Post one occurrence of a recurring transaction if it is still due.

        Returns the posted copy, or ``None`` when the source row is gone, is
        no longer recurring, or was already processed for this period.
        """
        from services import apply_balance_change, signed_amount

        now = now or utcnow()
        source = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id, Transaction.user_id == user_id
            )
        )
        if (
            source is None
            or not source.is_recurring
            or source.status != TransactionStatus.completed
            or not is_transaction_due(source, now)
        ):
            return None

        with atomic(self.session):
            posted = Transaction(
                user_id=source.user_id,
                account_id=source.account_id,
                type=source.type,
                amount=source.amount,
                description=f"{source.description or ''} (Recurring)".strip(),
                date=now,
                category=source.category,
                is_recurring=False,
                status=TransactionStatus.completed,
            )
            self.session.add(posted)
            apply_balance_change(
                self.session,
                source.account_id,
                signed_amount(source.type, source.amount),
            )
            source.last_processed = now
            source.next_recurring_date = next_recurring_date(
                now, source.recurring_interval
            )
            self.session.flush()
        return posted
