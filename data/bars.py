"""
Bar value type shared by the fetchers, the store and the sync engine
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Union

from core.database.models import Timeframe

Number = Union[int, float, str, Decimal]


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: datetime) -> datetime:
    """Storage form of a timestamp: UTC wall time without tzinfo."""
    return ensure_utc(value).replace(tzinfo=None)


def to_decimal(value: Number) -> Decimal:
    # Going through str() keeps 187.12 from becoming 187.1199999...
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class Bar:
    """One OHLCV observation. Identity is (symbol, timestamp, timeframe)."""
    symbol: str
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int
    timeframe: Timeframe

    def __post_init__(self):
        object.__setattr__(self, 'symbol', self.symbol.upper())
        object.__setattr__(self, 'timestamp', ensure_utc(self.timestamp))
        object.__setattr__(self, 'timeframe', Timeframe.parse(self.timeframe))
        for name in ('open', 'high', 'low', 'close'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        object.__setattr__(self, 'volume', int(self.volume or 0))

    @property
    def key(self):
        return (self.symbol, self.timestamp, self.timeframe)

    def to_row(self) -> Dict[str, Any]:
        """Column mapping for the historical_bars table"""
        return {
            'symbol': self.symbol,
            'timestamp': to_naive_utc(self.timestamp),
            'timeframe': self.timeframe.value,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }

    @classmethod
    def from_row(cls, row: Any) -> "Bar":
        """Build from a HistoricalBar ORM instance"""
        return cls(
            symbol=row.symbol,
            timestamp=row.timestamp,
            open=row.open,
            high=row.high,
            low=row.low,
            close=row.close,
            volume=row.volume,
            timeframe=row.timeframe,
        )


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def bar_from_candle(symbol: str, timeframe: Timeframe, candle: Dict[str, Any]) -> Bar:
    """Build a Bar from a compact provider candle {o, h, l, c, v, t(ms)}"""
    return Bar(
        symbol=symbol,
        timestamp=_EPOCH + timedelta(milliseconds=int(candle['t'])),
        open=candle['o'],
        high=candle['h'],
        low=candle['l'],
        close=candle['c'],
        volume=int(float(candle.get("v") or 0)),
        timeframe=timeframe,
    )
