import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from models import utcnow


class MonthKey(NamedTuple):
    year: int
    month: int

    @classmethod
    def of(cls, moment: datetime) -> "MonthKey":
        return cls(moment.year, moment.month)

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime


def add_months(moment: datetime, count: int) -> datetime:
    month_index = (moment.year * 12) + (moment.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def trailing_months(months: int, *, now: Optional[datetime] = None) -> Period:
    now = now or utcnow()
    if months < 0:
        raise ValueError("Window must not be negative")
    return Period(f"last_{months}_months", add_months(now, -months), now)


def trailing_days(days: int, *, now: Optional[datetime] = None) -> Period:
    now = now or utcnow()
    if days < 0:
        raise ValueError("Window must not be negative")
    return Period(f"last_{days}_days", now - timedelta(days=days), now)
