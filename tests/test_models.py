"""
Test Database Models
Tests for the HistoricalBar and SyncJob ORM models and their enums
"""

import pytest
from datetime import datetime
from decimal import Decimal
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import IntegrityError

from core.database.models import (
    Base, HistoricalBar, SyncJob, Timeframe, JobStatus
)


@pytest.fixture(scope="function")
def test_db_session():
    """Create test database session"""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()


def _bar(**overrides):
    values = dict(
        symbol='AAPL',
        timestamp=datetime(2024, 1, 10, 14, 30),
        timeframe='1M',
        open=Decimal('185.10'),
        high=Decimal('185.60'),
        low=Decimal('184.90'),
        close=Decimal('185.42'),
        volume=12000,
    )
    values.update(overrides)
    return HistoricalBar(**values)


class TestTimeframe:
    """Test Timeframe enum"""

    @pytest.mark.parametrize("code,expected", [
        ("1M", (1, "minute")),
        ("5M", (5, "minute")),
        ("15M", (15, "minute")),
        ("30M", (30, "minute")),
        ("1H", (1, "hour")),
        ("1D", (1, "day")),
    ])
    def test_polygon_params(self, code, expected):
        assert Timeframe(code).polygon_params == expected

    @pytest.mark.parametrize("code,bars", [
        ("1M", 390), ("5M", 78), ("15M", 26), ("30M", 13), ("1H", 7), ("1D", 1),
    ])
    def test_bars_per_session(self, code, bars):
        assert Timeframe(code).bars_per_session == bars

    def test_minute_resolution(self):
        minute = {tf for tf in Timeframe if tf.is_minute_resolution}
        assert minute == {Timeframe.ONE_MINUTE, Timeframe.FIVE_MINUTE,
                          Timeframe.FIFTEEN_MINUTE, Timeframe.THIRTY_MINUTE}

    def test_parse_accepts_codes_and_names(self):
        assert Timeframe.parse("1m") is Timeframe.ONE_MINUTE
        assert Timeframe.parse("ONE_DAY") is Timeframe.ONE_DAY
        assert Timeframe.parse(Timeframe.ONE_HOUR) is Timeframe.ONE_HOUR

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            Timeframe.parse("4H")


class TestJobStatus:
    """Test JobStatus enum"""

    def test_terminal_states(self):
        assert not JobStatus.IN_PROGRESS.is_terminal
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal


class TestHistoricalBarModel:
    """Test HistoricalBar ORM model"""

    def test_create_bar(self, test_db_session):
        test_db_session.add(_bar())
        test_db_session.commit()

        stored = test_db_session.query(HistoricalBar).one()
        assert stored.symbol == 'AAPL'
        assert stored.close == Decimal('185.42')
        assert stored.created_at is not None

    def test_duplicate_key_rejected(self, test_db_session):
        """The (symbol, timestamp, timeframe) triple is unique at the storage layer"""
        test_db_session.add(_bar())
        test_db_session.commit()

        test_db_session.add(_bar(close=Decimal('190')))
        with pytest.raises(IntegrityError):
            test_db_session.commit()

    def test_same_timestamp_other_timeframe_allowed(self, test_db_session):
        test_db_session.add_all([_bar(), _bar(timeframe='5M')])
        test_db_session.commit()
        assert test_db_session.query(HistoricalBar).count() == 2

    def test_negative_volume_rejected(self, test_db_session):
        test_db_session.add(_bar(volume=-1))
        with pytest.raises(IntegrityError):
            test_db_session.commit()


class TestSyncJobModel:
    """Test SyncJob ORM model"""

    def test_defaults(self, test_db_session):
        job = SyncJob(
            symbol='AAPL', timeframe='1D', period='5Y',
            start_date=datetime(2019, 1, 1), end_date=datetime(2024, 1, 1),
        )
        test_db_session.add(job)
        test_db_session.commit()

        assert len(job.id) == 36
        assert job.status == JobStatus.IN_PROGRESS.value
        assert job.progress_percentage == 0.0
        assert job.current_records == 0

    def test_invalid_status_rejected(self, test_db_session):
        test_db_session.add(SyncJob(
            symbol='AAPL', timeframe='1D', period='5Y', status='paused',
            start_date=datetime(2019, 1, 1), end_date=datetime(2024, 1, 1),
        ))
        with pytest.raises(IntegrityError):
            test_db_session.commit()

    def test_progress_out_of_range_rejected(self, test_db_session):
        test_db_session.add(SyncJob(
            symbol='AAPL', timeframe='1D', period='5Y', progress_percentage=120.0,
            start_date=datetime(2019, 1, 1), end_date=datetime(2024, 1, 1),
        ))
        with pytest.raises(IntegrityError):
            test_db_session.commit()

    def test_tables_and_indexes(self):
        engine = create_engine("sqlite:///:memory:")
        Base.metadata.create_all(engine)
        inspector = inspect(engine)

        assert set(inspector.get_table_names()) == {'historical_bars', 'sync_jobs'}
        index_names = {ix['name'] for ix in inspector.get_indexes('historical_bars')}
        assert 'idx_bars_series' in index_names
