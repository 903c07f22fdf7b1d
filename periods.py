from datetime import date, datetime
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


class Period(str, Enum):
    day = "day"
    month = "month"
    year = "year"

    @property
    def pattern(self) -> str:
        return _PATTERNS[self]


_PATTERNS = {
    Period.day: "%Y-%m-%d",
    Period.month: "%Y-%m",
    Period.year: "%Y",
}


def period_key(value: date, period: Period) -> str:
    return value.strftime(period.pattern)


def local_today(today: Optional[date] = None) -> date:
    if today is not None:
        return today
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).date()
