"""
Shared fixtures: in-memory bar store and scripted upstream providers
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional

import pytest

from core.database.bar_store import BarStore
from core.database.database_manager import DatabaseConfig, DatabaseManager
from core.database.models import Timeframe
from data.bars import Bar
from data.fetchers.base_fetcher import ProviderPage, ProviderStatus


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_bar(timestamp: datetime,
             symbol: str = "AAPL",
             timeframe: Timeframe = Timeframe.ONE_MINUTE,
             price: str = "100.00",
             volume: int = 1000) -> Bar:
    base = Decimal(price)
    return Bar(
        symbol=symbol,
        timestamp=timestamp,
        open=base,
        high=base + Decimal("1.25"),
        low=base - Decimal("0.75"),
        close=base + Decimal("0.50"),
        volume=volume,
        timeframe=timeframe,
    )


def minute_bars(start: datetime, count: int, symbol: str = "AAPL") -> List[Bar]:
    return [make_bar(start + timedelta(minutes=i), symbol=symbol) for i in range(count)]


def daily_bars(start: datetime, end: datetime, symbol: str = "AAPL") -> List[Bar]:
    """One bar per weekday at 05:00 UTC (midnight New York), like Polygon day aggregates"""
    bars = []
    day = datetime(start.year, start.month, start.day, 5, tzinfo=timezone.utc)
    while day <= end:
        if day.weekday() < 5 and day >= start:
            bars.append(make_bar(day, symbol=symbol, timeframe=Timeframe.ONE_DAY))
        day += timedelta(days=1)
    return bars


class FakeProvider:
    """
    In-process provider serving a fixed set of bars, a few per page,
    with the offset of the next page as the cursor.
    """

    def __init__(self,
                 bars: Optional[List[Bar]] = None,
                 page_size: int = 100,
                 status: ProviderStatus = ProviderStatus.OK,
                 fail_when: Optional[Callable[[datetime, datetime], bool]] = None,
                 before_fetch: Optional[Callable] = None):
        self.bars = sorted(bars or [], key=lambda bar: bar.timestamp)
        self.page_size = page_size
        self.status = status
        self.fail_when = fail_when
        self.before_fetch = before_fetch
        self.calls = []

    async def fetch_page(self, symbol, timeframe, start, end, cursor=None):
        self.calls.append((symbol, timeframe, start, end, cursor))
        if self.before_fetch is not None:
            await self.before_fetch(start, end)

        if self.fail_when is not None and self.fail_when(start, end):
            return ProviderPage(status=ProviderStatus.ERROR, message="upstream exploded")

        matching = [bar for bar in self.bars
                    if bar.symbol == symbol and bar.timeframe is timeframe and start <= bar.timestamp <= end]
        offset = int(cursor or 0)
        next_offset = offset + self.page_size
        return ProviderPage(
            status=self.status,
            bars=matching[offset:next_offset],
            next_cursor=str(next_offset) if next_offset < len(matching) else None,
        )

    def calls_for_year(self, year: int) -> int:
        return sum(1 for call in self.calls if call[2].year == year)


class ScriptedProvider:
    """Returns the given pages in order, one per request"""

    def __init__(self, pages: List[ProviderPage]):
        self.pages = list(pages)
        self.calls = []

    async def fetch_page(self, symbol, timeframe, start, end, cursor=None):
        self.calls.append(cursor)
        page = self.pages[min(len(self.calls), len(self.pages)) - 1]
        await asyncio.sleep(0)
        return page


@pytest.fixture
def db_manager():
    """Initialized manager over a private in-memory SQLite database"""
    manager = DatabaseManager(DatabaseConfig(database_url="sqlite:///:memory:"))
    manager.initialize()
    yield manager
    manager.close_all_connections()


@pytest.fixture
def bar_store(db_manager):
    return BarStore(db_manager)
