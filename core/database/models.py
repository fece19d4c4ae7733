"""
BarSync Database Models
SQLAlchemy ORM models for historical bars and download job tracking
"""

import uuid
from enum import Enum
from typing import Tuple

from sqlalchemy import (
    Column, Integer, BigInteger, String, Float, DateTime, Text, Numeric,
    Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

# SQLAlchemy base class for all models
Base = declarative_base()

# Regular US equity session length in minutes (09:30 - 16:00)
SESSION_MINUTES = 390


class Timeframe(Enum):
    """Bar aggregation granularity, keyed by the wire code stored in the database."""
    ONE_MINUTE = "1M"
    FIVE_MINUTE = "5M"
    FIFTEEN_MINUTE = "15M"
    THIRTY_MINUTE = "30M"
    ONE_HOUR = "1H"
    ONE_DAY = "1D"

    @classmethod
    def parse(cls, value) -> "Timeframe":
        """Accept a Timeframe, its code ('1M') or its member name ('ONE_MINUTE')."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text.upper() == member.value.upper() or text.upper() == member.name:
                return member
        raise ValueError(f"Unsupported timeframe: {value!r}")

    @property
    def polygon_params(self) -> Tuple[int, str]:
        """(multiplier, timespan) pair understood by the aggregates endpoint."""
        return _POLYGON_PARAMS[self]

    @property
    def minutes(self) -> int:
        multiplier, timespan = self.polygon_params
        if timespan == "minute":
            return multiplier
        if timespan == "hour":
            return multiplier * 60
        return SESSION_MINUTES

    @property
    def bars_per_session(self) -> int:
        """Number of bars one regular session produces at this granularity."""
        if self is Timeframe.ONE_DAY:
            return 1
        # A partial trailing bar still counts as an observation
        return -(-SESSION_MINUTES // self.minutes)

    @property
    def is_minute_resolution(self) -> bool:
        return self.polygon_params[1] == "minute"


_POLYGON_PARAMS = {
    Timeframe.ONE_MINUTE: (1, "minute"),
    Timeframe.FIVE_MINUTE: (5, "minute"),
    Timeframe.FIFTEEN_MINUTE: (15, "minute"),
    Timeframe.THIRTY_MINUTE: (30, "minute"),
    Timeframe.ONE_HOUR: (1, "hour"),
    Timeframe.ONE_DAY: (1, "day"),
}


class JobStatus(Enum):
    """Lifecycle of a bulk download job. Terminal states never transition again."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.IN_PROGRESS


class HistoricalBar(Base):
    """
    Historical bars table for OHLCV time series data
    One row per (symbol, timestamp, timeframe); rows are insert-only
    """
    __tablename__ = 'historical_bars'

    id = Column(Integer, primary_key=True, autoincrement=True)

    symbol = Column(String(20), nullable=False,
                    comment="Trading symbol (e.g., AAPL, SPY)")
    timestamp = Column(DateTime, nullable=False,
                       comment="Bar start timestamp in UTC")
    timeframe = Column(String(10), nullable=False,
                       comment="Bar granularity code (1M, 5M, 15M, 30M, 1H, 1D)")

    # OHLCV data
    open = Column(Numeric(12, 4), nullable=False, comment="Opening price")
    high = Column(Numeric(12, 4), nullable=False, comment="Highest price")
    low = Column(Numeric(12, 4), nullable=False, comment="Lowest price")
    close = Column(Numeric(12, 4), nullable=False, comment="Closing price")
    volume = Column(BigInteger, nullable=False, default=0, comment="Trading volume")

    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        # Dedup key; writers rely on it for insert-ignore semantics
        UniqueConstraint('symbol', 'timestamp', 'timeframe',
                         name='uq_bar_symbol_timestamp_timeframe'),

        CheckConstraint('volume >= 0', name='ck_bar_volume_non_negative'),

        Index('idx_bars_series', 'symbol', 'timeframe', 'timestamp'),
    )

    def __repr__(self):
        return (f"<HistoricalBar(symbol='{self.symbol}', timeframe='{self.timeframe}', "
                f"timestamp='{self.timestamp}', close={self.close})>")


class SyncJob(Base):
    """
    Download jobs table
    Tracks one bulk download of (symbol, timeframe, period) from creation to a terminal status
    """
    __tablename__ = 'sync_jobs'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    symbol = Column(String(20), nullable=False)
    timeframe = Column(String(10), nullable=False)
    period = Column(String(10), nullable=False, comment="Requested span code (1Y, 5Y, MAX, ...)")
    status = Column(String(20), nullable=False, default=JobStatus.IN_PROGRESS.value)

    start_date = Column(DateTime, nullable=False, comment="Absolute range start (UTC)")
    end_date = Column(DateTime, nullable=False, comment="Absolute range end (UTC)")

    expected_records = Column(Integer, nullable=False, default=0)
    current_records = Column(Integer, nullable=False, default=0)
    progress_percentage = Column(Float, nullable=False, default=0.0)
    current_label = Column(String(50), comment="Label of the last completed chunk")
    error_message = Column(Text)

    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint("status IN ('in_progress', 'completed', 'failed')",
                        name='ck_sync_job_status'),
        CheckConstraint('progress_percentage >= 0 AND progress_percentage <= 100',
                        name='ck_sync_job_progress_range'),
        Index('idx_sync_jobs_lookup', 'symbol', 'timeframe', 'period', 'status'),
    )

    def __repr__(self):
        return (f"<SyncJob(id='{self.id}', symbol='{self.symbol}', "
                f"timeframe='{self.timeframe}', status='{self.status}')>")

