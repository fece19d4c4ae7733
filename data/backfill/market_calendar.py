"""
Market Calendar

Regular-session rules for a single exchange: weekdays only, fixed open/close
in the exchange's local timezone. Exchange holidays are not modelled; a holiday
weekday is treated as a normal session.
"""

from datetime import datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from data.bars import ensure_utc


def _parse_clock(value: Union[str, time]) -> time:
    if isinstance(value, time):
        return value
    hours, minutes = str(value).split(":")
    return time(int(hours), int(minutes))


class MarketCalendar:
    """Session open/close answers for one exchange timezone."""

    def __init__(self,
                 tz: str = "America/New_York",
                 session_open: Union[str, time] = "09:30",
                 session_close: Union[str, time] = "16:00"):
        self.tz = ZoneInfo(tz)
        self.session_open = _parse_clock(session_open)
        self.session_close = _parse_clock(session_close)
        if self.session_open >= self.session_close:
            raise ValueError(f"Session open {self.session_open} must precede close {self.session_close}")

    @classmethod
    def from_settings(cls, settings) -> "MarketCalendar":
        return cls(settings.exchange_timezone, settings.session_open, settings.session_close)

    def _local(self, now: Optional[datetime]) -> datetime:
        now = datetime.now(timezone.utc) if now is None else ensure_utc(now)
        return now.astimezone(self.tz)

    @staticmethod
    def is_weekday(day: datetime) -> bool:
        return day.weekday() < 5

    def is_session_open(self, now: Optional[datetime] = None) -> bool:
        """True Monday-Friday while open <= local time < close."""
        local = self._local(now)
        if not self.is_weekday(local):
            return False
        return self.session_open <= local.time() < self.session_close

    def session_close_on(self, day) -> datetime:
        """Close of the session on the given local calendar day, as aware UTC."""
        local_close = datetime.combine(day, self.session_close, tzinfo=self.tz)
        return local_close.astimezone(timezone.utc)

    def most_recent_session_close(self, now: Optional[datetime] = None) -> datetime:
        """
        Latest completed session close at or before now.

        On a weekday at or after close this is today's close; otherwise walk back
        to the previous weekday. Returned as an aware UTC datetime.
        """
        local = self._local(now)
        day = local.date()

        if not (self.is_weekday(local) and local.time() >= self.session_close):
            day -= timedelta(days=1)

        while day.weekday() >= 5:
            day -= timedelta(days=1)

        return self.session_close_on(day)
