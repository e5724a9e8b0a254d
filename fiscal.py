from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class FiscalYear:
    year: int
    start: date
    end: date


def local_now() -> datetime:
    return datetime.now(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def fiscal_year_by_label(
    year: int, *, offset: Optional[int] = None, start_month: Optional[int] = None
) -> FiscalYear:
    """Date range of the fiscal year labelled ``year``.

    Labels are the calendar year the fiscal year ends in plus ``offset``
    (543 gives Buddhist-era labels). With ``start_month`` 10 the year opens on
    1 October of the previous calendar year.
    """
    settings = get_settings()
    offset = settings.fiscal_year_offset if offset is None else offset
    start_month = (
        settings.fiscal_year_start_month if start_month is None else start_month
    )
    end_calendar_year = year - offset
    if start_month == 1:
        return FiscalYear(
            year, date(end_calendar_year, 1, 1), date(end_calendar_year, 12, 31)
        )
    start = date(end_calendar_year - 1, start_month, 1)
    end = date(end_calendar_year, start_month, 1) - date.resolution
    return FiscalYear(year, start, end)


def resolve_fiscal_year(
    today: Optional[date] = None,
    *,
    offset: Optional[int] = None,
    start_month: Optional[int] = None,
) -> FiscalYear:
    settings = get_settings()
    today = today or local_today()
    offset = settings.fiscal_year_offset if offset is None else offset
    start_month = (
        settings.fiscal_year_start_month if start_month is None else start_month
    )
    if start_month == 1 or today.month < start_month:
        end_calendar_year = today.year
    else:
        end_calendar_year = today.year + 1
    return fiscal_year_by_label(
        end_calendar_year + offset, offset=offset, start_month=start_month
    )


def current_fiscal_year(today: Optional[date] = None) -> int:
    return resolve_fiscal_year(today).year
