"""
Bar Store
Relational operations over historical_bars used by the sync engine and chart readers
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import pandas as pd
from sqlalchemy import and_, asc, func, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from data.bars import Bar, ensure_utc, to_naive_utc
from .database_manager import DatabaseManager
from .models import HistoricalBar, Timeframe

logger = logging.getLogger(__name__)

_CONFLICT_COLUMNS = ['symbol', 'timestamp', 'timeframe']


class BarStore:
    """Store for OHLCV bars keyed by (symbol, timestamp, timeframe)"""

    def __init__(self, database_manager: DatabaseManager):
        self.db = database_manager

    @staticmethod
    def _series_filter(symbol: str, timeframe: Timeframe,
                       start: Optional[datetime] = None,
                       end: Optional[datetime] = None):
        clauses = [
            HistoricalBar.symbol == symbol.upper(),
            HistoricalBar.timeframe == Timeframe.parse(timeframe).value,
        ]
        if start is not None:
            clauses.append(HistoricalBar.timestamp >= to_naive_utc(start))
        if end is not None:
            clauses.append(HistoricalBar.timestamp <= to_naive_utc(end))
        return and_(*clauses)

    def latest_timestamp(self, symbol: str, timeframe: Timeframe) -> Optional[datetime]:
        """Newest stored bar timestamp for the series (aware UTC), or None when empty"""
        query = select(func.max(HistoricalBar.timestamp)).where(self._series_filter(symbol, timeframe))
        latest = self.db.run_with_retry(lambda session: session.execute(query).scalar())
        return ensure_utc(latest) if latest is not None else None

    def existing_timestamps(self, symbol: str, timeframe: Timeframe,
                            start: Optional[datetime] = None,
                            end: Optional[datetime] = None) -> Set[datetime]:
        """Set of stored timestamps for the series, optionally bounded to [start, end]"""
        query = select(HistoricalBar.timestamp).where(self._series_filter(symbol, timeframe, start, end))
        rows = self.db.run_with_retry(lambda session: session.execute(query).scalars().all())
        return {ensure_utc(ts) for ts in rows}

    def count(self, symbol: str, timeframe: Timeframe,
              start: Optional[datetime] = None,
              end: Optional[datetime] = None) -> int:
        query = select(func.count(HistoricalBar.id)).where(self._series_filter(symbol, timeframe, start, end))
        return self.db.run_with_retry(lambda session: session.execute(query).scalar()) or 0

    def insert_ignore(self, rows: Iterable[Dict[str, Any]], batch_size: int = 1000) -> int:
        """
        Insert rows in batches, silently skipping any that collide with an existing key.
        Each batch is its own transaction and is retried on a locked database;
        replaying a batch is harmless because conflicts are ignored.

        Returns:
            Number of rows actually inserted
        """
        rows = list(rows)
        if not rows:
            return 0

        inserted = 0
        for i in range(0, len(rows), batch_size):
            batch = rows[i:i + batch_size]
            inserted += self.db.run_with_retry(self._insert_batch, batch)
            logger.debug(f"Inserted batch {i // batch_size + 1} ({len(batch)} candidate rows)")
        return inserted

    def _insert_batch(self, session: Session, batch: List[Dict[str, Any]]) -> int:
        dialect = session.get_bind().dialect.name

        if dialect == 'sqlite':
            stmt = sqlite.insert(HistoricalBar).values(batch)
        elif dialect == 'postgresql':
            stmt = postgresql.insert(HistoricalBar).values(batch)
        else:
            return self._insert_with_duplicate_handling(session, batch)

        result = session.execute(stmt.on_conflict_do_nothing(index_elements=_CONFLICT_COLUMNS))
        return max(result.rowcount or 0, 0)

    @staticmethod
    def _insert_with_duplicate_handling(session: Session, batch: List[Dict[str, Any]]) -> int:
        """Row-at-a-time insert for dialects without ON CONFLICT support"""
        inserted = 0
        for row in batch:
            try:
                with session.begin_nested():
                    session.execute(insert(HistoricalBar).values(**row))
                inserted += 1
            except IntegrityError:
                # Another writer got there first
                logger.debug(f"Skipped duplicate bar {row['symbol']} {row['timeframe']} {row['timestamp']}")
        return inserted

    def get_bars(self, symbol: str, timeframe: Timeframe,
                 start: Optional[datetime] = None,
                 end: Optional[datetime] = None,
                 limit: Optional[int] = None,
                 offset: int = 0) -> List[Bar]:
        """Stored bars for the series in ascending timestamp order"""
        query = (select(HistoricalBar)
                 .where(self._series_filter(symbol, timeframe, start, end))
                 .order_by(asc(HistoricalBar.timestamp)))
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return self.db.run_with_retry(
            lambda session: [Bar.from_row(row) for row in session.execute(query).scalars()]
        )

    def get_bars_as_dataframe(self, symbol: str, timeframe: Timeframe,
                              start: Optional[datetime] = None,
                              end: Optional[datetime] = None) -> pd.DataFrame:
        """
        Get bars as pandas DataFrame for analysis
        """
        bars = self.get_bars(symbol, timeframe, start, end)
        if not bars:
            return pd.DataFrame()

        df = pd.DataFrame([{
            'timestamp': bar.timestamp,
            'open': float(bar.open),
            'high': float(bar.high),
            'low': float(bar.low),
            'close': float(bar.close),
            'volume': bar.volume,
        } for bar in bars])

        df.set_index('timestamp', inplace=True)
        df.index = pd.to_datetime(df.index, utc=True)
        return df

    def get_data_coverage(self, symbol: str, timeframe: Timeframe) -> Dict[str, Any]:
        """
        Get data coverage statistics for a series
        """
        query = select(
            func.min(HistoricalBar.timestamp).label('start_date'),
            func.max(HistoricalBar.timestamp).label('end_date'),
            func.count(HistoricalBar.id).label('total_records'),
        ).where(self._series_filter(symbol, timeframe))
        result = self.db.run_with_retry(lambda session: session.execute(query).first())

        if result and result.total_records:
            return {
                'symbol': symbol.upper(),
                'timeframe': Timeframe.parse(timeframe).value,
                'start_date': ensure_utc(result.start_date),
                'end_date': ensure_utc(result.end_date),
                'total_records': result.total_records,
            }
        return {}
