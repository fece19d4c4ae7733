"""
Test Dedup Writer
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from conftest import make_bar, minute_bars, utc
from core.database.models import Timeframe
from data.backfill.dedup_writer import DedupWriter

START = utc(2024, 1, 10, 14, 30)


@pytest.fixture
def writer(bar_store):
    return DedupWriter(bar_store, batch_size=50)


class TestDedupWriter:

    def test_writes_everything_into_empty_store(self, writer, bar_store):
        assert writer.write_new("AAPL", Timeframe.ONE_MINUTE, minute_bars(START, 120)) == 120
        assert bar_store.count("AAPL", Timeframe.ONE_MINUTE) == 120

    def test_second_write_is_a_no_op(self, writer, bar_store):
        bars = minute_bars(START, 10)
        writer.write_new("AAPL", Timeframe.ONE_MINUTE, bars)

        assert writer.write_new("AAPL", Timeframe.ONE_MINUTE, bars) == 0
        assert bar_store.count("AAPL", Timeframe.ONE_MINUTE) == 10

    def test_partial_overlap(self, writer, bar_store):
        writer.write_new("AAPL", Timeframe.ONE_MINUTE, minute_bars(START, 10))

        written = writer.write_new("AAPL", Timeframe.ONE_MINUTE, minute_bars(START + timedelta(minutes=5), 10))

        assert written == 5
        assert bar_store.count("AAPL", Timeframe.ONE_MINUTE) == 15

    def test_duplicates_within_input_written_once(self, writer, bar_store):
        bar = make_bar(START)
        assert writer.write_new("AAPL", Timeframe.ONE_MINUTE, [bar, bar, make_bar(START, price="101")]) == 1
        assert bar_store.get_bars("AAPL", Timeframe.ONE_MINUTE)[0].open == Decimal("100.00")

    def test_stored_values_are_kept(self, writer, bar_store):
        writer.write_new("AAPL", Timeframe.ONE_MINUTE, [make_bar(START, price="100")])
        writer.write_new("AAPL", Timeframe.ONE_MINUTE, [make_bar(START, price="999")])

        assert bar_store.get_bars("AAPL", Timeframe.ONE_MINUTE)[0].open == Decimal("100")

    def test_other_series_are_ignored(self, writer, bar_store):
        bars = minute_bars(START, 3) + minute_bars(START, 2, symbol="MSFT")
        bars.append(make_bar(START, timeframe=Timeframe.FIVE_MINUTE))

        assert writer.write_new("aapl", "1M", bars) == 3
        assert bar_store.count("MSFT", Timeframe.ONE_MINUTE) == 0
        assert bar_store.count("AAPL", Timeframe.FIVE_MINUTE) == 0

    def test_empty_input(self, writer):
        assert writer.write_new("AAPL", Timeframe.ONE_MINUTE, []) == 0

    def test_existence_check_is_bounded_to_batch_window(self, writer, bar_store):
        bars = minute_bars(START, 10)
        with patch.object(bar_store, 'existing_timestamps', wraps=bar_store.existing_timestamps) as spy:
            writer.filter_new("AAPL", Timeframe.ONE_MINUTE, bars)

        kwargs = spy.call_args.kwargs
        assert kwargs['start'] == START
        assert kwargs['end'] == START + timedelta(minutes=9)

    def test_concurrent_insert_is_skipped(self, writer, bar_store):
        """A key stored between the existence check and the insert is not counted"""
        bars = minute_bars(START, 4)
        with patch.object(bar_store, 'existing_timestamps', return_value=set()):
            bar_store.insert_ignore([bars[0].to_row()])
            assert writer.write_new("AAPL", Timeframe.ONE_MINUTE, bars) == 3

        assert bar_store.count("AAPL", Timeframe.ONE_MINUTE) == 4

    def test_batch_size_must_be_positive(self, bar_store):
        with pytest.raises(ValueError):
            DedupWriter(bar_store, batch_size=0)
