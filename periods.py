import calendar
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError
from models import BudgetPeriod


def today_local(tz_name: Optional[str] = None) -> date:
    tz = ZoneInfo(tz_name or get_settings().timezone)
    return datetime.now(tz).date()


def _add_months(d: date, count: int) -> date:
    month_index = d.month - 1 + count
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def default_end_date(start: date, period: BudgetPeriod) -> date:
    """Last day covered by one period starting on ``start``."""
    if period == BudgetPeriod.weekly:
        return start + timedelta(days=6)
    if period == BudgetPeriod.yearly:
        return _add_months(start, 12) - date.resolution
    return _add_months(start, 1) - date.resolution


def resolve_range(
    period: BudgetPeriod, start: Optional[date], end: Optional[date]
) -> tuple[date, date]:
    start_date = start or today_local()
    end_date = end or default_end_date(start_date, period)
    if start_date > end_date:
        raise ValidationError(
            "End date must not be before start date", reason="invalid_date_range"
        )
    return start_date, end_date
