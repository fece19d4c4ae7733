"""
Staleness Detection

Compares the newest stored bar of a (symbol, timeframe) series against the
most recent completed session close to decide whether an incremental sync is
due, and which range it has to cover.

Known gaps:
- Holidays are not modelled; a holiday close counts as a regular session.
- The incremental range starts one day after the newest bar as a UTC
  instant, and the provider is queried by UTC date. For minute series with
  extended-hours bars after 19:00 New York time, the start lands two UTC
  dates later, so the following session is never requested. A bulk
  download fills it in.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from core.database.bar_store import BarStore
from core.database.models import Timeframe
from .market_calendar import MarketCalendar

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotOnboardedError(Exception):
    """Incremental sync requested for a series with no stored bars; use a bulk download first."""

    def __init__(self, symbol: str, timeframe: Timeframe):
        super().__init__(
            f"No existing data found for {symbol} {timeframe.value}. "
            f"Use a bulk download instead of an incremental sync."
        )
        self.symbol = symbol
        self.timeframe = timeframe


class RangeEmpty(Exception):
    """Nothing is missing; raised as a no-op signal, not a failure."""

    def __init__(self, symbol: str, timeframe: Timeframe,
                 latest: Optional[datetime], session_close: datetime):
        super().__init__(f"{symbol} {timeframe.value} is up to date (latest={latest}, close={session_close})")
        self.latest = latest
        self.session_close = session_close


@dataclass(frozen=True)
class MissingRange:
    """Inclusive [start, end] range an incremental sync fetches."""
    symbol: str
    timeframe: Timeframe
    start: datetime
    end: datetime


class StalenessDetector:
    """Decides whether stored data trails the most recent session close."""

    def __init__(self, bar_store: BarStore, calendar: MarketCalendar, clock: Optional[Clock] = None):
        self.bar_store = bar_store
        self.calendar = calendar
        self.clock = clock or utc_now

    def latest_timestamp(self, symbol: str, timeframe: Timeframe) -> Optional[datetime]:
        return self.bar_store.latest_timestamp(symbol.upper(), Timeframe.parse(timeframe))

    def needs_sync(self, symbol: str, timeframe: Timeframe) -> bool:
        """True when the series is empty or its newest bar precedes the last session close."""
        latest = self.latest_timestamp(symbol, timeframe)
        if latest is None:
            return True
        return latest < self.calendar.most_recent_session_close(self.clock())

    def missing_range(self, symbol: str, timeframe: Timeframe) -> MissingRange:
        """
        Range an incremental sync must fetch: one day after the newest stored bar
        up to the most recent session close.

        Raises:
            NotOnboardedError: The series has no stored bars
            RangeEmpty: The computed range is empty
        """
        symbol = symbol.upper()
        timeframe = Timeframe.parse(timeframe)

        latest = self.latest_timestamp(symbol, timeframe)
        if latest is None:
            raise NotOnboardedError(symbol, timeframe)

        session_close = self.calendar.most_recent_session_close(self.clock())
        start = latest + timedelta(days=1)

        if start >= session_close:
            logger.debug(f"{symbol} {timeframe.value} already up to date (latest={latest})")
            raise RangeEmpty(symbol, timeframe, latest, session_close)

        return MissingRange(symbol=symbol, timeframe=timeframe, start=start, end=session_close)
