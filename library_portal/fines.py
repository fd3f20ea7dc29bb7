"""Overdue fine arithmetic.

Every fine in the portal, whether displayed on a dashboard, summed into
the admin statistics or frozen onto a loan when its return is approved,
is computed by :func:`calculate_fine`.  All moments are normalised to UTC
before they are compared, so a plain ``"2024-01-05"`` and a timestamp read
back from the database land on the same clock.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional, Union
import logging

from sqlalchemy.orm import Session

from library_portal import models

logger = logging.getLogger(__name__)

DEFAULT_DAILY_RATE = Decimal("10")
ONE_DAY = timedelta(days=1)

Moment = Union[str, date, datetime]


@dataclass(frozen=True)
class FineCalculation:
    total_fine: Decimal
    days_overdue: int
    daily_rate: Decimal
    is_overdue: bool


def as_utc(value: Moment) -> datetime:
    """Coerce a date, datetime or ISO-8601 string into an aware UTC datetime.

    Bare dates mean midnight UTC and naive datetimes are taken to already
    be in UTC.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid date: {value!r}")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise TypeError(f"Unsupported date value: {value!r}")


def calculate_fine(
    due_date: Moment,
    as_of: Optional[Moment] = None,
    daily_rate=DEFAULT_DAILY_RATE,
) -> FineCalculation:
    due = as_utc(due_date)
    now = as_utc(as_of) if as_of is not None else datetime.now(timezone.utc)
    rate = Decimal(str(daily_rate))

    days_overdue = max(0, (now - due) // ONE_DAY)
    return FineCalculation(
        total_fine=Decimal(days_overdue) * rate,
        days_overdue=days_overdue,
        daily_rate=rate,
        is_overdue=days_overdue > 0,
    )


def days_remaining(due_date: Moment, as_of: Optional[Moment] = None) -> int:
    """Whole days left until ``due_date``, rounded up; negative once overdue."""
    due = as_utc(due_date)
    now = as_utc(as_of) if as_of is not None else datetime.now(timezone.utc)
    return -((now - due) // ONE_DAY)


def refresh_fines(db: Session, as_of: Optional[Moment] = None) -> int:
    """Write the current fine onto every active loan that has one."""
    now = as_utc(as_of) if as_of is not None else datetime.now(timezone.utc)
    loans = (
        db.query(models.BorrowedBook)
        .filter(models.BorrowedBook.return_date.is_(None))
        .all()
    )

    updated = 0
    for loan in loans:
        fine = calculate_fine(loan.due_date, now, loan.daily_fine_rate)
        if fine.total_fine > 0:
            loan.total_fine = fine.total_fine
            loan.due_fee = fine.total_fine
            loan.last_fine_update = now
            updated += 1

    db.commit()
    logger.info("Fines updated for %d active loans", updated)
    return updated
