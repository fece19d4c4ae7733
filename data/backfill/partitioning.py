"""
Download Periods and Chunk Planning

Turns a requested period ("1Y", "5 years", "max") into an absolute range and
splits long ranges into the year- or month-sized chunks a bulk download walks
through sequentially.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import List, Optional

import pandas as pd

from core.database.models import Timeframe
from data.bars import ensure_utc

DEFAULT_MONTHLY_THRESHOLD_DAYS = 90
DEFAULT_HISTORY_START = date(2010, 1, 1)

_ONE_MICROSECOND = timedelta(microseconds=1)
_YEARS_PATTERN = re.compile(r"^(\d+)\s*(y|yr|yrs|year|years)$")
_MAX_ALIASES = {"max", "max available", "maximum", "all"}


class DownloadPeriod(Enum):
    """Span of history a bulk download covers, counted back from its end date."""
    ONE_YEAR = "1Y"
    TWO_YEARS = "2Y"
    FIVE_YEARS = "5Y"
    TEN_YEARS = "10Y"
    MAX = "MAX"

    @classmethod
    def parse(cls, value) -> "DownloadPeriod":
        """Accept '1Y', '5y', '1 year', '10 years', 'max' and members themselves."""
        if isinstance(value, cls):
            return value

        text = " ".join(str(value).strip().lower().split())
        if text in _MAX_ALIASES:
            return cls.MAX

        match = _YEARS_PATTERN.match(text)
        if match:
            code = f"{int(match.group(1))}Y"
            for member in cls:
                if member.value == code:
                    return member

        raise ValueError(f"Unsupported download period: {value!r}")

    @property
    def years(self) -> Optional[int]:
        if self is DownloadPeriod.MAX:
            return None
        return int(self.value[:-1])

    def start_for(self, end: datetime, history_start: date = DEFAULT_HISTORY_START) -> datetime:
        """Absolute range start for a download ending at `end` (aware UTC)."""
        end = ensure_utc(end)
        if self is DownloadPeriod.MAX:
            start = datetime.combine(history_start, time(), tzinfo=timezone.utc)
            return min(start, end)
        return (pd.Timestamp(end) - pd.DateOffset(years=self.years)).to_pydatetime()


@dataclass(frozen=True)
class DateChunk:
    """One bounded sub-range of a download, fetched and written as a unit."""
    start: datetime
    end: datetime
    label: str


def use_monthly_chunks(timeframe: Timeframe, start: datetime, end: datetime,
                       monthly_threshold_days: int = DEFAULT_MONTHLY_THRESHOLD_DAYS) -> bool:
    """Minute-resolution ranges longer than the threshold are split by month"""
    timeframe = Timeframe.parse(timeframe)
    return timeframe.is_minute_resolution and (end - start) > timedelta(days=monthly_threshold_days)


def _month_chunks(start: datetime, end: datetime) -> List[DateChunk]:
    first = pd.Timestamp(datetime(start.year, start.month, 1, tzinfo=timezone.utc))
    chunks = []
    for month_start in pd.date_range(first, end, freq="MS"):
        next_month = month_start + pd.offsets.MonthBegin(1)
        chunks.append(DateChunk(
            start=max(start, month_start.to_pydatetime()),
            end=min(end, next_month.to_pydatetime() - _ONE_MICROSECOND),
            label=month_start.strftime("%B %Y"),
        ))
    return chunks


def _year_chunks(start: datetime, end: datetime) -> List[DateChunk]:
    chunks = []
    for year in range(start.year, end.year + 1):
        year_start = datetime(year, 1, 1, tzinfo=timezone.utc)
        year_end = datetime(year + 1, 1, 1, tzinfo=timezone.utc) - _ONE_MICROSECOND
        chunks.append(DateChunk(start=max(start, year_start), end=min(end, year_end), label=str(year)))
    return chunks


def plan_chunks(timeframe: Timeframe,
                start: datetime,
                end: datetime,
                monthly_threshold_days: int = DEFAULT_MONTHLY_THRESHOLD_DAYS) -> List[DateChunk]:
    """
    Split [start, end] into ordered, non-overlapping chunks.

    Minute-resolution timeframes spanning more than monthly_threshold_days are
    cut at calendar month boundaries; everything else at calendar year boundaries.
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    if start > end:
        return []

    if use_monthly_chunks(timeframe, start, end, monthly_threshold_days):
        return _month_chunks(start, end)
    return _year_chunks(start, end)
