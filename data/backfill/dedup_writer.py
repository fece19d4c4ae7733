"""
Dedup Writer

Persists only bars whose (symbol, timestamp, timeframe) key is not stored yet.
Writes go through the store's insert-ignore path, so a key that appears
between the existence check and the insert is skipped rather than failing.
"""

import logging
from typing import Iterable, List

from core.database.bar_store import BarStore
from core.database.models import Timeframe
from data.bars import Bar

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


class DedupWriter:
    """Idempotent bar writer for one store"""

    def __init__(self, bar_store: BarStore, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.bar_store = bar_store
        self.batch_size = batch_size

    def filter_new(self, symbol: str, timeframe: Timeframe, bars: Iterable[Bar]) -> List[Bar]:
        """Bars for the series whose timestamp is neither stored nor repeated earlier in the input"""
        symbol = symbol.upper()
        timeframe = Timeframe.parse(timeframe)

        candidates = [bar for bar in bars if bar.symbol == symbol and bar.timeframe is timeframe]
        if not candidates:
            return []

        # Only the window the batch covers needs to be checked
        existing = self.bar_store.existing_timestamps(
            symbol, timeframe,
            start=min(bar.timestamp for bar in candidates),
            end=max(bar.timestamp for bar in candidates),
        )

        fresh: List[Bar] = []
        for bar in candidates:
            if bar.timestamp in existing:
                continue
            existing.add(bar.timestamp)
            fresh.append(bar)
        return fresh

    def write_new(self, symbol: str, timeframe: Timeframe, bars: Iterable[Bar]) -> int:
        """
        Store the bars that are not present yet.

        Returns:
            Number of rows actually written (0 when everything was already stored)
        """
        bars = list(bars)
        fresh = self.filter_new(symbol, timeframe, bars)

        skipped = len(bars) - len(fresh)
        if not fresh:
            logger.debug(f"No new bars for {symbol} {Timeframe.parse(timeframe).value} ({skipped} already stored)")
            return 0

        written = self.bar_store.insert_ignore((bar.to_row() for bar in fresh), batch_size=self.batch_size)

        if written < len(fresh):
            # Lost a race with another writer for some keys
            logger.info(f"{len(fresh) - written} bars for {symbol} were written concurrently and skipped")

        logger.debug(f"Wrote {written} new bars for {symbol} {Timeframe.parse(timeframe).value}, "
                     f"skipped {skipped} existing")
        return written
